"""Loading YAML fixtures into PostgreSQL tables."""

from __future__ import annotations

import json
import math
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, Protocol

import yaml

_EXTEND = "$extend"
_NAME = "$name"
_EVAL = re.compile(r"\$eval\((.+)\)")

Row = dict[str, Any]

_FIX_SEQUENCES_SQL = """
DO $$
DECLARE
    r record;
BEGIN
    FOR r IN (
        SELECT 'SELECT SETVAL(' || quote_literal(quote_ident(seq_ns.nspname) || '.' || quote_ident(seq.relname))
            || ', COALESCE(MAX(' || quote_ident(col.attname) || '), 1) ) FROM '
            || quote_ident(tbl_ns.nspname) || '.' || quote_ident(tbl.relname) AS q
        FROM pg_class seq
            JOIN pg_namespace seq_ns ON (seq.relnamespace = seq_ns.oid)
            JOIN pg_depend dep ON (dep.objid = seq.oid)
            JOIN pg_class tbl ON (dep.refobjid = tbl.oid)
            JOIN pg_namespace tbl_ns ON (tbl.relnamespace = tbl_ns.oid)
            JOIN pg_attribute col ON (col.attrelid = tbl.oid AND dep.refobjsubid = col.attnum)
        WHERE
            seq.relkind = 'S'
        ORDER BY seq.relname
    ) LOOP
        EXECUTE r.q;
    END LOOP;
END$$
"""


class _FixtureYamlLoader(yaml.SafeLoader):
    """Safe loader that leaves timestamps as plain strings."""


_FixtureYamlLoader.yaml_implicit_resolvers = {
    first: [(tag, rx) for tag, rx in resolvers if tag != "tag:yaml.org,2002:timestamp"]
    for first, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
}


class _Cursor(Protocol):
    def execute(self, query: str) -> Any: ...

    def fetchall(self) -> list: ...

    def close(self) -> None: ...


class _Connection(Protocol):
    def cursor(self) -> _Cursor: ...

    def commit(self) -> None: ...

    def rollback(self) -> None: ...


def _quote_ident(text: str) -> str:
    return json.dumps(text, ensure_ascii=False)


@dataclass(frozen=True)
class TableName:
    """A table qualified by its schema."""

    schema: str
    name: str

    @classmethod
    def parse(cls, source: str) -> TableName:
        """Split ``schema.table``; a missing schema means ``public``."""
        schema, sep, name = source.partition(".")
        if not sep:
            return cls(schema="public", name=source)
        return cls(schema=schema or "public", name=name)

    def full_name(self) -> str:
        return f"{_quote_ident(self.schema)}.{_quote_ident(self.name)}"


@dataclass
class LoadedTable:
    """Rows of one table as read from a fixture file."""

    name: TableName
    rows: list[Row]


@dataclass
class LoadContext:
    """What has been gathered from the fixture files so far."""

    files: list[str] = field(default_factory=list)
    tables: list[LoadedTable] = field(default_factory=list)
    refs_definition: dict[str, Row] = field(default_factory=dict)
    refs_inserted: dict[str, Row] = field(default_factory=dict)


class PostgresLoader:
    """Truncates the tables named in fixtures and fills them with rows.

    ``db`` is a DB-API connection; everything runs in one transaction.
    """

    def __init__(self, db: _Connection, location: str, debug: bool = False) -> None:
        self.db = db
        self.location = location
        self.debug = debug

    def load(self, names: list[str]) -> None:
        """Read the named fixture files and load their tables."""
        ctx = LoadContext()
        for name in names:
            try:
                self._load_file(name, ctx)
            except (OSError, ValueError, yaml.YAMLError) as err:
                raise ValueError(f"unable to load fixture {name}: {err}") from err
        self.load_tables(ctx)

    def _load_file(self, name: str, ctx: LoadContext) -> None:
        candidates = [
            f"{self.location}/{name}",
            f"{self.location}/{name}.yml",
            f"{self.location}/{name}.yaml",
        ]
        file = next((c for c in candidates if Path(c).exists()), None)
        if file is None:
            raise FileNotFoundError(f"no such file or directory: {candidates[-1]}")
        if file in ctx.files:
            return
        if self.debug:
            print("Loading", file)
        data = Path(file).read_bytes()
        ctx.files.append(file)
        self.load_yaml(data, ctx)

    def load_yaml(self, data: str | bytes, ctx: LoadContext) -> None:
        """Add the templates and tables of one fixture document to ``ctx``."""
        document = yaml.load(data, Loader=_FixtureYamlLoader)
        if document is None:
            document = {}
        if not isinstance(document, Mapping):
            raise ValueError("expected map at root level")

        for inherit in document.get("inherits") or []:
            self._load_file(inherit, ctx)

        for name, body in _map_items(document.get("templates"), "templates"):
            if name in ctx.refs_definition:
                raise ValueError(f"unable to load template {name}: duplicating ref name")
            row = _row(body)
            if _EXTEND in row:
                base = self._resolve_reference(ctx.refs_definition, row[_EXTEND])
                base.update(row)
                row = base
            ctx.refs_definition[name] = row
            if self.debug:
                print(f"Populating ref {name} as {json.dumps(row, default=str)} from template")

        for name, body in _map_items(document.get("tables"), "tables"):
            if not isinstance(body, list):
                raise ValueError("expected array at root level")
            rows = [_row(item) for item in body]
            ctx.tables.append(LoadedTable(name=TableName.parse(name), rows=rows))

    def load_tables(self, ctx: LoadContext) -> None:
        """Truncate, insert and fix sequences in one transaction."""
        cursor = self.db.cursor()
        try:
            self._truncate_tables(cursor, ctx.tables)
            for loaded in ctx.tables:
                if not loaded.rows:
                    continue
                try:
                    self._load_table(ctx, cursor, loaded.name, loaded.rows)
                except Exception as err:
                    raise ValueError(
                        f"failed to load table '{loaded.name.full_name()}' because:\n{err}"
                    ) from err
            self._execute(cursor, _FIX_SEQUENCES_SQL)
            self.db.commit()
        except BaseException:
            self.db.rollback()
            raise
        finally:
            cursor.close()

    def _execute(self, cursor: _Cursor, query: str) -> None:
        if self.debug:
            print("Issuing SQL:", query)
        cursor.execute(query)

    def _truncate_tables(self, cursor: _Cursor, tables: list[LoadedTable]) -> None:
        names = list(dict.fromkeys(t.name.full_name() for t in tables))
        self._execute(cursor, f"TRUNCATE TABLE {','.join(names)} CASCADE")

    def _load_table(
        self, ctx: LoadContext, cursor: _Cursor, table: TableName, rows: list[Row]
    ) -> None:
        for index, row in enumerate(rows):
            if _EXTEND not in row:
                continue
            base = self._resolve_reference(ctx.refs_definition, row[_EXTEND])
            base.update(row)
            rows[index] = base

        query = self.build_insert_query(ctx, table, rows)
        self._execute(cursor, query)
        inserted = cursor.fetchall()

        # RETURNING rows come back in the order the values were given.
        for row, result in zip(rows, inserted):
            if _NAME not in row:
                continue
            name = row[_NAME]
            if not isinstance(name, str):
                raise ValueError(f"ref name must be a string, got {name!r}")
            if name in ctx.refs_definition:
                raise ValueError(f"duplicating ref name {name}")
            values = _decode_returned(result)
            ctx.refs_definition[name] = row
            if self.debug:
                print(
                    f"Populating ref {name} as {json.dumps(row, default=str)} "
                    "from row definition"
                )
            ctx.refs_inserted[name] = values
            if self.debug:
                print(
                    f"Populating ref {name} as {json.dumps(values, default=str)} "
                    "from inserted values"
                )

    def build_insert_query(self, ctx: LoadContext, table: TableName, rows: list[Row]) -> str:
        """Build one INSERT ... RETURNING statement for all ``rows``."""
        fields = sorted({name for row in rows for name in row if not name.startswith("$")})

        values_sql = []
        for index, row in enumerate(rows):
            cells = []
            for name in fields:
                if name not in row:
                    cells.append("default")
                    continue
                value = row[name]
                if isinstance(value, str) and value.startswith("$"):
                    cells.append(self._resolve_expression(value, ctx))
                    continue
                try:
                    cells.append(to_db_value(value))
                except ValueError as err:
                    raise ValueError(
                        f"unable to process {name} value "
                        f"(row {index} of {table.full_name()}): {err}"
                    ) from err
            values_sql.append("(" + ", ".join(cells) + ")")

        columns = ", ".join(f'"{name}"' for name in fields)
        return (
            f"INSERT INTO {table.full_name()} AS row ({columns}) "
            f"VALUES {', '.join(values_sql)} RETURNING row_to_json(row)"
        )

    def _resolve_expression(self, expr: str, ctx: LoadContext) -> str:
        """Turn ``$eval(...)`` or ``$ref.field`` into an SQL value."""
        if expr[:5] == "$eval":
            match = _EVAL.fullmatch(expr)
            if match:
                return f"({match.group(1)})"
            raise ValueError(f"icorrect $eval() usage: {expr}")
        try:
            value = self._resolve_field_reference(ctx.refs_inserted, expr)
        except ValueError:
            # An unresolved field reference yields an empty value.
            return ""
        return to_db_value(value)

    @staticmethod
    def _resolve_reference(refs: dict[str, Row], ref_name: Any) -> Row:
        """Copy a named row, leaving out its ``$``-prefixed fields."""
        if not isinstance(ref_name, str):
            raise ValueError(f"reference name must be a string, got {ref_name!r}")
        try:
            target = refs[ref_name]
        except KeyError:
            raise ValueError(f"undefined reference {ref_name}") from None
        return {k: v for k, v in target.items() if not k.startswith("$")}

    @staticmethod
    def _resolve_field_reference(refs: dict[str, Row], ref: str) -> Any:
        head, sep, field_name = ref.partition(".")
        if not sep or len(head) < 2 or not field_name:
            raise ValueError(f"invalid reference {ref}, correct form is $refName.field")
        ref_name = head[1:]
        try:
            target = refs[ref_name]
        except KeyError:
            raise ValueError(f"undefined reference {ref_name}") from None
        try:
            return target[field_name]
        except KeyError:
            raise ValueError(f"undefined reference field {field_name}") from None


def to_db_value(value: Any) -> str:
    """Render a value as an SQL literal."""
    if value is None:
        return "NULL"
    if isinstance(value, str):
        return quote_literal(value)
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return _format_float(value)
    try:
        encoded = json.dumps(
            value,
            ensure_ascii=False,
            separators=(",", ":"),
            sort_keys=True,
            allow_nan=False,
        )
    except (TypeError, ValueError) as err:
        raise ValueError(f"json: unsupported value: {err}") from err
    for char, escape in (
        ("<", "\\u003c"),
        (">", "\\u003e"),
        ("&", "\\u0026"),
        ("\u2028", "\\u2028"),
        ("\u2029", "\\u2029"),
    ):
        encoded = encoded.replace(char, escape)
    return quote_literal(encoded)


def quote_literal(s: str) -> str:
    """Quote a string for SQL, using an escape string when it holds backslashes."""
    prefix = "E" if "\\" in s else ""
    escaped = s.replace("'", "''").replace("\\", "\\\\")
    return f"{prefix}'{escaped}'"


def _format_float(value: float) -> str:
    """Shortest representation, exponent form outside 1e-4 .. 1e6."""
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    sign = "-" if math.copysign(1.0, value) < 0 else ""
    if value == 0:
        return sign + "0"

    _, digit_tuple, exponent = Decimal(repr(abs(value))).as_tuple()
    point = len(digit_tuple) + exponent
    digits = "".join(map(str, digit_tuple)).rstrip("0") or "0"
    exp = point - 1

    if exp < -4 or exp >= 6:
        mantissa = digits[0] + ("." + digits[1:] if len(digits) > 1 else "")
        return f"{sign}{mantissa}e{'+' if exp >= 0 else '-'}{abs(exp):02d}"
    if point <= 0:
        return f"{sign}0.{'0' * -point}{digits}"
    if point >= len(digits):
        return sign + digits + "0" * (point - len(digits))
    return f"{sign}{digits[:point]}.{digits[point:]}"


def _decode_returned(result: Any) -> Row:
    cell = result[0] if isinstance(result, (tuple, list)) else result
    if isinstance(cell, (bytes, bytearray)):
        cell = cell.decode()
    if isinstance(cell, str):
        cell = json.loads(cell)
    if not isinstance(cell, Mapping):
        raise ValueError(f"expected a JSON object for the inserted row, got {cell!r}")
    return dict(cell)


def _string_key(key: Any) -> str:
    if not isinstance(key, str):
        raise ValueError(f"expected string key, got {key!r}")
    return key


def _map_items(node: Any, what: str) -> list[tuple[str, Any]]:
    if node is None:
        return []
    if not isinstance(node, Mapping):
        raise ValueError(f"expected map for {what}")
    return [(_string_key(key), value) for key, value in node.items()]


def _row(node: Any) -> Row:
    if not isinstance(node, Mapping):
        raise ValueError("expected map as row")
    return {_string_key(key): value for key, value in node.items()}