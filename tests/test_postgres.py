import pytest

from gonkey.fixtures.postgres import (
    LoadContext,
    PostgresLoader,
    TableName,
    quote_literal,
    to_db_value,
)

SQL_YAML = """
tables:
  table:
    - field1: value1
      field2: 1
    - field1: value2
      field2: 2
      field3: 2.569947773654566473
    - field1: '"'
      field4: false
      field5: null
    - field1: "'"
      field5: [1, "2"]
"""

SQL_SCHEMA_YAML = """
tables:
  schema1.table1:
    - f1: value1
      f2: value2
  schema2.table2:
    - f1: value3
      f2: value4
  table3:
    - f1: value5
      f2: value6
"""

SQL_REFS_YAML = """
tables:
  table1:
    - $name: ref1
      f1: value1
      f2: value2
  table2:
    - $name: ref2
      f1: $ref1.f2
      f2: $ref1.f1
  table3:
    - f1: $ref2.f2
      f2: $ref2.f1
"""

SQL_EXTEND_YAML = """
templates:
  baseTpl:
    f1: tplVal1
  ref3:
    $extend: baseTpl
    f2: tplVal2
tables:
  table1:
    - $name: ref1
      f1: value1
      f2: value2
  table2:
    - $name: ref2
      $extend: ref1
      f1: value1 overwritten
      f3: '$eval("1" || "2" || 3 + 5)'
  table3:
    - $extend: ref2
    - $extend: ref3
"""


class FakeCursor:
    def __init__(self, db):
        self.db = db
        self._result = []

    def execute(self, query):
        self.db.statements.append(query)
        if self.db.fail_on is not None and self.db.fail_on in query:
            raise RuntimeError("boom")
        if query.startswith("INSERT") and self.db.results:
            self._result = self.db.results.pop(0)
        else:
            self._result = []

    def fetchall(self):
        return self._result

    def close(self):
        self.db.closed += 1


class FakeDB:
    def __init__(self, results=None, fail_on=None):
        self.results = list(results or [])
        self.fail_on = fail_on
        self.statements = []
        self.commits = 0
        self.rollbacks = 0
        self.closed = 0

    def cursor(self):
        return FakeCursor(self)

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1


def insert(table, columns, values):
    return f"INSERT INTO {table} AS row ({columns}) VALUES {values} RETURNING row_to_json(row)"


def test_build_insert_query():
    loader = PostgresLoader(FakeDB(), "", False)
    ctx = LoadContext()
    loader.load_yaml(SQL_YAML, ctx)

    query = loader.build_insert_query(ctx, TableName.parse("table"), ctx.tables[0].rows)

    expected = (
        'INSERT INTO "public"."table" AS row ("field1", "field2", "field3", "field4", "field5") VALUES '
        "('value1', 1, default, default, default), "
        "('value2', 2, 2.5699477736545666, default, default), "
        "('\"', default, default, false, NULL), "
        "('''', default, default, default, '[1,\"2\"]') "
        "RETURNING row_to_json(row)"
    )
    assert query == expected


def test_load_tables_should_resolve_schema():
    db = FakeDB(
        results=[
            [('{"f1":"value1","f2":"value2"}',)],
            [('{"f1":"value3","f2":"value4"}',)],
            [('{"f1":"value5","f2":"value6"}',)],
        ]
    )
    loader = PostgresLoader(db, "", True)
    ctx = LoadContext()
    loader.load_yaml(SQL_SCHEMA_YAML, ctx)

    loader.load_tables(ctx)

    assert db.statements[0] == (
        'TRUNCATE TABLE "schema1"."table1","schema2"."table2","public"."table3" CASCADE'
    )
    assert db.statements[1] == insert('"schema1"."table1"', '"f1", "f2"', "('value1', 'value2')")
    assert db.statements[2] == insert('"schema2"."table2"', '"f1", "f2"', "('value3', 'value4')")
    assert db.statements[3] == insert('"public"."table3"', '"f1", "f2"', "('value5', 'value6')")
    assert db.statements[4].strip().startswith("DO $$")
    assert len(db.statements) == 5
    assert db.commits == 1
    assert db.rollbacks == 0


def test_load_tables_should_resolve_refs():
    db = FakeDB(
        results=[
            [('{"f1":"value1","f2":"value2"}',)],
            [('{"f1":"value2","f2":"value1"}',)],
            [('{"f1":"value1","f2":"value2"}',)],
        ]
    )
    loader = PostgresLoader(db, "", True)
    ctx = LoadContext()
    loader.load_yaml(SQL_REFS_YAML, ctx)

    loader.load_tables(ctx)

    assert db.statements[0] == (
        'TRUNCATE TABLE "public"."table1","public"."table2","public"."table3" CASCADE'
    )
    assert db.statements[1] == insert('"public"."table1"', '"f1", "f2"', "('value1', 'value2')")
    assert db.statements[2] == insert('"public"."table2"', '"f1", "f2"', "('value2', 'value1')")
    assert db.statements[3] == insert('"public"."table3"', '"f1", "f2"', "('value1', 'value2')")
    assert db.statements[4].strip().startswith("DO")
    assert db.commits == 1
    assert ctx.refs_inserted["ref1"] == {"f1": "value1", "f2": "value2"}


def test_load_tables_should_extend_rows():
    db = FakeDB(
        results=[
            [('{"f1":"value1","f2":"value2"}',)],
            [('{"f1":"value1 overwritten","f2":"value2","f3":"value3"}',)],
            [
                ('{"f1":"value1 overwritten","f2":"value2","f3":"value3"}',),
                ('{"f1":"tplValue1","f2":"tplValue2","f3":null}',),
            ],
        ]
    )
    loader = PostgresLoader(db, "", True)
    ctx = LoadContext()
    loader.load_yaml(SQL_EXTEND_YAML, ctx)

    loader.load_tables(ctx)

    assert db.statements[0] == (
        'TRUNCATE TABLE "public"."table1","public"."table2","public"."table3" CASCADE'
    )
    assert db.statements[1] == insert('"public"."table1"', '"f1", "f2"', "('value1', 'value2')")
    assert db.statements[2] == insert(
        '"public"."table2"',
        '"f1", "f2", "f3"',
        "('value1 overwritten', 'value2', (\"1\" || \"2\" || 3 + 5))",
    )
    assert db.statements[3] == insert(
        '"public"."table3"',
        '"f1", "f2", "f3"',
        "('value1 overwritten', 'value2', (\"1\" || \"2\" || 3 + 5)), "
        "('tplVal1', 'tplVal2', default)",
    )
    assert db.statements[4].strip().startswith("DO")
    assert db.commits == 1
    assert ctx.refs_inserted["ref2"]["f3"] == "value3"


def test_returned_rows_may_be_decoded_mappings():
    db = FakeDB(results=[[({"f1": "a", "id": 7},)]])
    loader = PostgresLoader(db, "", False)
    ctx = LoadContext()
    loader.load_yaml("tables:\n  t:\n    - $name: r\n      f1: a\n", ctx)

    loader.load_tables(ctx)

    assert ctx.refs_inserted["r"] == {"f1": "a", "id": 7}
    assert ctx.refs_definition["r"] == {"$name": "r", "f1": "a"}


def test_failure_rolls_back_and_names_the_table():
    db = FakeDB(fail_on="INSERT")
    loader = PostgresLoader(db, "", False)
    ctx = LoadContext()
    loader.load_yaml("tables:\n  s.t:\n    - f1: a\n", ctx)

    with pytest.raises(ValueError, match="failed to load table '\"s\".\"t\"' because"):
        loader.load_tables(ctx)
    assert db.rollbacks == 1
    assert db.commits == 0
    assert db.closed == 1


def test_duplicate_inserted_ref_name_fails():
    db = FakeDB(results=[[('{"f1":"a"}',)]])
    loader = PostgresLoader(db, "", False)
    ctx = LoadContext()
    loader.load_yaml("templates:\n  r:\n    f1: x\ntables:\n  t:\n    - $name: r\n      f1: a\n", ctx)

    with pytest.raises(ValueError, match="duplicating ref name r"):
        loader.load_tables(ctx)


def test_duplicate_template_fails():
    loader = PostgresLoader(FakeDB(), "", False)
    ctx = LoadContext()
    loader.load_yaml("templates:\n  a:\n    f: 1\n", ctx)
    with pytest.raises(ValueError, match="unable to load template a: duplicating ref name"):
        loader.load_yaml("templates:\n  a:\n    f: 2\n", ctx)


def test_template_extending_unknown_reference_fails():
    loader = PostgresLoader(FakeDB(), "", False)
    with pytest.raises(ValueError, match="undefined reference nope"):
        loader.load_yaml("templates:\n  a:\n    $extend: nope\n", LoadContext())


def test_table_must_be_a_list():
    loader = PostgresLoader(FakeDB(), "", False)
    with pytest.raises(ValueError, match="expected array at root level"):
        loader.load_yaml("tables:\n  t:\n    f1: a\n", LoadContext())


def test_bad_eval_usage_is_reported():
    loader = PostgresLoader(FakeDB(), "", False)
    ctx = LoadContext()
    loader.load_yaml("tables:\n  t:\n    - f1: $evalx\n", ctx)
    with pytest.raises(ValueError, match="usage: \\$evalx"):
        loader.build_insert_query(ctx, TableName.parse("t"), ctx.tables[0].rows)


def test_timestamps_stay_strings():
    loader = PostgresLoader(FakeDB(), "", False)
    ctx = LoadContext()
    loader.load_yaml("tables:\n  t:\n    - created: 2020-01-02\n", ctx)
    query = loader.build_insert_query(ctx, TableName.parse("t"), ctx.tables[0].rows)
    assert "('2020-01-02')" in query


def test_load_from_files_with_inherits(tmp_path):
    (tmp_path / "base.yaml").write_text("tables:\n  t1:\n    - f1: a\n")
    (tmp_path / "child.yml").write_text("inherits:\n  - base\ntables:\n  t2:\n    - f1: b\n")
    db = FakeDB()
    loader = PostgresLoader(db, str(tmp_path), False)

    loader.load(["child", "base"])

    assert db.statements[0] == 'TRUNCATE TABLE "public"."t1","public"."t2" CASCADE'
    assert db.statements[1] == insert('"public"."t1"', '"f1"', "('a')")
    assert db.statements[2] == insert('"public"."t2"', '"f1"', "('b')")
    assert db.commits == 1


def test_load_missing_file_fails(tmp_path):
    loader = PostgresLoader(FakeDB(), str(tmp_path), False)
    with pytest.raises(ValueError, match="unable to load fixture missing"):
        loader.load(["missing"])


@pytest.mark.parametrize(
    ("source", "schema", "name"),
    [
        ("table", "public", "table"),
        ("schema1.table1", "schema1", "table1"),
        (".table3", "public", "table3"),
        ("a.b.c", "a", "b.c"),
    ],
)
def test_table_name_parse(source, schema, name):
    table = TableName.parse(source)
    assert (table.schema, table.name) == (schema, name)


def test_table_name_full_name():
    assert TableName.parse("s.t").full_name() == '"s"."t"'


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (None, "NULL"),
        ("x", "'x'"),
        (True, "true"),
        (False, "false"),
        (5, "5"),
        (2.569947773654566473, "2.5699477736545666"),
        (1.0, "1"),
        (0.5, "0.5"),
        ([1, "2"], "'[1,\"2\"]'"),
        ({"b": 1, "a": "x"}, "'{\"a\":\"x\",\"b\":1}'"),
    ],
)
def test_to_db_value(value, expected):
    assert to_db_value(value) == expected


def test_to_db_value_rejects_unencodable():
    with pytest.raises(ValueError):
        to_db_value([float("nan")])


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("plain", "'plain'"),
        ("it's", "'it''s'"),
        ("a\\b", "E'a\\\\b'"),
    ],
)
def test_quote_literal(text, expected):
    assert quote_literal(text) == expected