# gonkey

Building blocks for functional tests of services: structural comparison of
expected and actual values, a helper that runs a script under a time limit,
and loaders that fill PostgreSQL, MySQL, Aerospike and Redis with test data
described in YAML fixture files.

## Installation

```
pip install gonkey
pip install "gonkey[test]"   # with pytest, to run the test suite
```

## Comparing values

`gonkey.compare.compare(expected, actual, params=None)` walks an expected and
an actual value (decoded JSON, say) and returns a list of mismatch
descriptions, each naming the path where it was found (`$`, `$.key`,
`$[0]`, ...). An empty list means the values match. Keys present in `actual`
but not in `expected` are allowed unless `disallow_extra_fields` is set.

```python
from gonkey.compare import Params, compare, query

errors = compare(
    {"id": 1, "name": "$matchRegexp(^A\\w+)"},
    {"id": 1, "name": "Alice", "extra": True},
    Params(),
)
assert errors == []

errors = compare([1, 2], [2, 1], Params(ignore_arrays_ordering=True))
assert errors == []
```

`Params` fields:

- `ignore_values` – compare only types and structure, not scalar values;
- `ignore_arrays_ordering` – array elements may come in any order;
- `disallow_extra_fields` – objects must have as many keys as expected;
- `ignore_db_ordering` – carried for callers; `compare` itself does not read it.

An expected string of the form `$matchRegexp(<pattern>)` matches any actual
value whose text the pattern finds a match in.

`query(expected, actual)` tells whether two lists of query-string values match
regardless of order; expected values may use `$matchRegexp(...)`. It raises
`ValueError` when the lists differ in length.

```python
assert query(["tea", "$matchRegexp(^c\\w+)"], ["cake", "tea"]) is True
```

## Running a script

`gonkey.cmd_runner.cmd_run(script_path, timeout=0)` starts the executable at
`script_path`, waits up to `timeout` seconds (three when the timeout is not
positive), terminates it (its whole process group on POSIX) when the time runs
out, and then prints what it wrote to standard output. A script that exits
with a non-zero status raises `subprocess.CalledProcessError`.

## Fixtures

Fixture files are looked up by name in a fixtures directory (`name`,
`name.yml` or `name.yaml`). A file may list other files under `inherits`,
define named `templates`, and build rows or records on a template with
`$extend`.

### Choosing a loader

```python
from gonkey.fixtures.loader import LoaderConfig, fetch_db_type, new_loader

loader = new_loader(LoaderConfig(
    db=connection,                      # a DB-API connection
    db_type=fetch_db_type("postgres"),  # "postgres", "mysql", "aerospike" or "redis"
    location="fixtures/",
))
loader.load(["users", "orders"])
```

`new_loader` builds a `PostgresLoader`, `MysqlLoader` or `AerospikeLoader` for
those database types. For any other type it returns `cfg.fixture_loader`, and
raises `ValueError` when that is not set; a Redis loader is therefore created
directly (see below) or passed in as `fixture_loader`. `fetch_db_type` raises
`ValueError` for an unknown name.

### PostgreSQL

`gonkey.fixtures.postgres.PostgresLoader(db, location, debug=False)` truncates
every table named in the fixtures (`schema.table`, schema `public` by
default) with `CASCADE`, inserts each table's rows in one
`INSERT ... RETURNING row_to_json(row)` statement, resets sequences to the
highest id, and commits — all in one transaction, rolled back on error.
Column values may be `$eval(<sql>)` expressions, inserted as-is, or
`$refName.field` references to a row inserted earlier under `$name`.

### MySQL

`gonkey.fixtures.mysql.MysqlLoader(db, location, debug=False)` does the same
for MySQL, one `INSERT` per row. It reads inserted rows back through their
`id` column to resolve `$refName.field` references; tables without an `id`
column are loaded but cannot be referenced. The connection must use the `%s`
parameter style.

### Aerospike

`gonkey.fixtures.aerospike.AerospikeLoader(client, location, debug=False)`
truncates each set named in the fixtures once and writes bin maps through a
client that provides `truncate(set_name)` and
`insert_bin_map(set_name, key, bin_map)`.

### Redis

`gonkey.fixtures.redis_loader.RedisLoader` loads keys, sets, hashes, lists and
sorted sets into numbered Redis databases, flushing each database the first
time a load touches it:

```python
from gonkey.fixtures.redis_loader import RedisLoader

loader = RedisLoader.from_url("fixtures/", "redis://localhost:6379/0")
loader.load(["redis_data"])
```

Redis fixture files are parsed by `gonkey.fixtures.redis_parser.FileParser`
into `gonkey.fixtures.redis_fixture.Fixture` objects, which can be inspected
without a Redis server. Expirations are duration strings such as `10s` or
`1h30m` (`redis_fixture.parse_duration`). Parsers for other file extensions
can be added with `redis_parser.register_parser`.

## What this package does not do

It has no command-line tool and no test runner: it does not read test
definitions, send HTTP or gRPC requests, check responses or database state
against them, or write reports. It provides the comparison and fixture-loading
pieces such a runner would use.

## Running the tests

```
pytest
```