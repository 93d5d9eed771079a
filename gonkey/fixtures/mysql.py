"""Loading YAML fixtures into MySQL tables."""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

import yaml

from gonkey.fixtures.postgres import _FixtureYamlLoader, _format_float, _map_items, _row

_EXTEND = "$extend"
_NAME = "$name"
_EVAL = re.compile(r"\$eval\((.+)\)")

_NO_ID_COLUMN_CODE = "1054"
_NO_ID_COLUMN_MESSAGE = "Unknown column 'id'"

Row = dict[str, Any]


class _Cursor(Protocol):
    lastrowid: Any
    description: Any

    def execute(self, query: str, params: Any = None) -> Any: ...

    def fetchone(self) -> Any: ...

    def close(self) -> None: ...


class _Connection(Protocol):
    def cursor(self) -> _Cursor: ...

    def commit(self) -> None: ...

    def rollback(self) -> None: ...


@dataclass
class LoadedTable:
    """Rows of one table as read from a fixture file."""

    name: str
    rows: list[Row]


@dataclass
class LoadContext:
    """What has been gathered from the fixture files so far."""

    files: list[str] = field(default_factory=list)
    tables: list[LoadedTable] = field(default_factory=list)
    refs_definition: dict[str, Row] = field(default_factory=dict)
    refs_inserted: dict[str, Row] = field(default_factory=dict)


class MysqlLoader:
    """Truncates the tables named in fixtures and fills them with rows.

    ``db`` is a DB-API connection using the ``%s`` parameter style;
    everything runs in one transaction.
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

    def _print_debug(self, *args: Any) -> None:
        if self.debug:
            print(*args)

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
        self._print_debug("Loading", file)
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
            ctx.tables.append(LoadedTable(name=name, rows=[_row(item) for item in body]))

    def load_tables(self, ctx: LoadContext) -> None:
        """Truncate every table once, then insert the rows, in one transaction."""
        cursor = self.db.cursor()
        try:
            truncated: set[str] = set()
            for loaded in ctx.tables:
                if loaded.name in truncated:
                    continue
                self._execute(cursor, f"TRUNCATE TABLE `{loaded.name}`")
                truncated.add(loaded.name)

            for loaded in ctx.tables:
                if loaded.rows:
                    self._load_table(cursor, ctx, loaded.name, loaded.rows)
            self.db.commit()
        except BaseException:
            self.db.rollback()
            raise
        finally:
            cursor.close()

    def _execute(self, cursor: _Cursor, query: str) -> None:
        self._print_debug("Issuing SQL:", query)
        cursor.execute(query)

    def _load_table(
        self, cursor: _Cursor, ctx: LoadContext, table: str, rows: list[Row]
    ) -> None:
        for index, row in enumerate(rows):
            if _EXTEND not in row:
                continue
            base = self._resolve_reference(ctx.refs_definition, row[_EXTEND])
            base.update(row)
            rows[index] = base

        for row in rows:
            self._load_row(cursor, ctx, table, row)

    def _load_row(self, cursor: _Cursor, ctx: LoadContext, table: str, row: Row) -> None:
        query = self.build_insert_query(ctx, table, row)
        self._execute(cursor, query)

        if not self._select_inserted(cursor, table):
            # Without an `id` column the inserted row cannot be found.
            return

        inserted = cursor.fetchone()
        if inserted is None:
            raise ValueError("can't get inserted row")

        if _NAME not in row:
            return
        name = row[_NAME]
        if not isinstance(name, str):
            raise ValueError(f"ref name must be a string, got {name!r}")
        if name in ctx.refs_definition:
            raise ValueError(f"duplicating ref name {name}")

        values = _fetch_row(cursor, inserted)
        ctx.refs_definition[name] = row
        if self.debug:
            print(
                f"Populating ref {name} as {json.dumps(values, default=str)} "
                "from row definition"
            )
        ctx.refs_inserted[name] = values
        if self.debug:
            print(
                f"Populating ref {name} as {json.dumps(values, default=str)} "
                "from inserted values"
            )

    @staticmethod
    def _select_inserted(cursor: _Cursor, table: str) -> bool:
        last_id = cursor.lastrowid
        if last_id is None:
            raise ValueError("last insert id is not available")
        try:
            cursor.execute(f"SELECT * FROM `{table}` WHERE `id` = %s", (last_id,))
        except Exception as err:
            message = str(err)
            if _NO_ID_COLUMN_CODE in message and _NO_ID_COLUMN_MESSAGE in message:
                return False
            raise
        return True

    def build_insert_query(self, ctx: LoadContext, table: str, row: Row) -> str:
        """Build the INSERT statement for one row."""
        fields = sorted(name for name in row if not name.startswith("$"))
        values = []
        for name in fields:
            try:
                values.append(self._row_insert_value(ctx, row[name]))
            except ValueError as err:
                raise ValueError(f"unable to process {name} value (of {table}): {err}") from err

        columns = ", ".join(f"`{name}`" for name in fields)
        return f"INSERT INTO `{table}` ({columns}) VALUES ({', '.join(values)})"

    def _row_insert_value(self, ctx: LoadContext, value: Any) -> str:
        if isinstance(value, str) and value.startswith("$"):
            return self._resolve_expression(value, ctx)
        return to_db_value(value)

    def _resolve_expression(self, expr: str, ctx: LoadContext) -> str:
        """Turn ``$eval(...)`` or ``$ref.field`` into an SQL value."""
        if expr[:5] == "$eval":
            match = _EVAL.fullmatch(expr)
            if match:
                return f"({match.group(1)})"
            raise ValueError(f"icorrect $eval() usage: {expr}")
        return to_db_value(self._resolve_field_reference(ctx.refs_inserted, expr))

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


def _fetch_row(cursor: _Cursor, values: Any) -> Row:
    columns = [column[0] for column in cursor.description or []]
    result: Row = {}
    for column, raw in zip(columns, values):
        if raw is None:
            result[column] = "NULL"
        elif isinstance(raw, (bytes, bytearray)):
            result[column] = raw.decode()
        else:
            result[column] = str(raw)
    return result


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
    """Quote a string for a MySQL query."""
    escaped = s.replace("'", "''").replace("\\", "\\\\")
    return f"'{escaped}'"