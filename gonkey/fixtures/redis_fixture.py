"""Data model of Redis fixture files and the state shared while parsing them."""

from __future__ import annotations

import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any, TypeVar, Union

import yaml

ScalarT = Union[int, str, float, None]
_RecordT = TypeVar("_RecordT")

_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")
_MICROSECONDS_PER_UNIT = {
    "ns": 0.001,
    "us": 1.0,
    "µs": 1.0,
    "μs": 1.0,
    "ms": 1_000.0,
    "s": 1_000_000.0,
    "m": 60_000_000.0,
    "h": 3_600_000_000.0,
}


def parse_duration(text: str) -> timedelta:
    """Parse a duration such as ``10s``, ``1h30m`` or ``-1.5ms``."""
    if not isinstance(text, str):
        raise ValueError(f"time: invalid duration {text!r}")
    body = text
    sign = 1
    if body[:1] in ("+", "-"):
        sign = -1 if body[0] == "-" else 1
        body = body[1:]
    if body == "0":
        return timedelta(0)
    if not body:
        raise ValueError(f"time: invalid duration {text!r}")

    total = 0.0
    pos = 0
    while pos < len(body):
        match = _DURATION_PART.match(body, pos)
        if match is None:
            raise ValueError(f"time: invalid duration {text!r}")
        total += float(match.group(1)) * _MICROSECONDS_PER_UNIT[match.group(2)]
        pos = match.end()
    return timedelta(microseconds=sign * total)


class ValueType(str, Enum):
    """Kind of a scalar stored in Redis."""

    INT = "int"
    STR = "str"
    FLOAT = "float"


@dataclass(frozen=True)
class Value:
    """A typed scalar; an empty value has neither type nor value."""

    type: ValueType | None = None
    value: ScalarT = None

    @classmethod
    def from_str(cls, value: str) -> Value:
        return cls(ValueType.STR, value)

    @classmethod
    def from_int(cls, value: int) -> Value:
        return cls(ValueType.INT, value)

    @classmethod
    def from_float(cls, value: float) -> Value:
        return cls(ValueType.FLOAT, value)

    @classmethod
    def from_yaml(cls, raw: Any) -> Value:
        """Build a value from a decoded YAML scalar."""
        if isinstance(raw, bool) or raw is None:
            raise ValueError(f"unknown value type: {type(raw).__name__}")
        if isinstance(raw, str):
            return cls.from_str(raw)
        if isinstance(raw, int):
            return cls.from_int(raw)
        if isinstance(raw, float):
            return cls.from_float(raw)
        raise ValueError(f"unknown value type: {type(raw).__name__}")


@dataclass
class KeyValue:
    """A single key's value and its time to live."""

    value: Value = field(default_factory=Value)
    expiration: timedelta = field(default_factory=timedelta)


@dataclass
class Keys:
    """Plain key/value pairs of one database or template."""

    name: str = ""
    extend: str = ""
    values: dict[str, KeyValue | None] = field(default_factory=dict)


@dataclass
class HashValue:
    key: Value = field(default_factory=Value)
    value: Value = field(default_factory=Value)


@dataclass
class HashRecordValue:
    """One hash structure."""

    name: str = ""
    extend: str = ""
    values: list[HashValue | None] = field(default_factory=list)
    expiration: timedelta = field(default_factory=timedelta)


@dataclass
class Hashes:
    values: dict[str, HashRecordValue] = field(default_factory=dict)


@dataclass
class SetValue:
    value: Value = field(default_factory=Value)


@dataclass
class SetRecordValue:
    """One set structure."""

    name: str = ""
    extend: str = ""
    values: list[SetValue | None] = field(default_factory=list)
    expiration: timedelta = field(default_factory=timedelta)


@dataclass
class Sets:
    values: dict[str, SetRecordValue] = field(default_factory=dict)


@dataclass
class ListValue:
    value: Value = field(default_factory=Value)


@dataclass
class ListRecordValue:
    """One list structure."""

    name: str = ""
    extend: str = ""
    values: list[ListValue | None] = field(default_factory=list)
    expiration: timedelta = field(default_factory=timedelta)


@dataclass
class Lists:
    values: dict[str, ListRecordValue] = field(default_factory=dict)


@dataclass
class ZSetValue:
    value: Value = field(default_factory=Value)
    score: float = 0.0


@dataclass
class ZSetRecordValue:
    """One sorted set structure."""

    name: str = ""
    extend: str = ""
    values: list[ZSetValue | None] = field(default_factory=list)
    expiration: timedelta = field(default_factory=timedelta)


@dataclass
class ZSets:
    values: dict[str, ZSetRecordValue] = field(default_factory=dict)


@dataclass
class Database:
    """Everything to load into one numbered Redis database."""

    keys: Keys | None = None
    hashes: Hashes | None = None
    sets: Sets | None = None
    lists: Lists | None = None
    zsets: ZSets | None = None


@dataclass
class Templates:
    """Named records that other records may extend."""

    keys: list[Keys] = field(default_factory=list)
    hashes: list[HashRecordValue] = field(default_factory=list)
    sets: list[SetRecordValue] = field(default_factory=list)
    lists: list[ListRecordValue] = field(default_factory=list)
    zsets: list[ZSetRecordValue] = field(default_factory=list)


@dataclass
class Fixture:
    """Test data preloaded into Redis before a test starts."""

    inherits: list[str] = field(default_factory=list)
    templates: Templates = field(default_factory=Templates)
    databases: dict[int, Database] = field(default_factory=dict)

    @classmethod
    def from_yaml(cls, data: str | bytes) -> Fixture:
        """Decode a fixture document."""
        root = _mapping(yaml.safe_load(data), "fixture")
        templates = _mapping(root.get("templates"), "templates")
        return cls(
            inherits=[_text(item) for item in _sequence(root.get("inherits"), "inherits")],
            templates=Templates(
                keys=[_keys(item) for item in _sequence(templates.get("keys"), "keys")],
                hashes=[
                    _record(HashRecordValue, _hash_value, item)
                    for item in _sequence(templates.get("hashes"), "hashes")
                ],
                sets=[
                    _record(SetRecordValue, _set_value, item)
                    for item in _sequence(templates.get("sets"), "sets")
                ],
                lists=[
                    _record(ListRecordValue, _list_value, item)
                    for item in _sequence(templates.get("lists"), "lists")
                ],
                zsets=[
                    _record(ZSetRecordValue, _zset_value, item)
                    for item in _sequence(templates.get("zsets"), "zsets")
                ],
            ),
            databases={
                _database_id(key): _database(node)
                for key, node in _mapping(root.get("databases"), "databases").items()
            },
        )


@dataclass
class Context:
    """Named references collected across the files of one load."""

    key_refs: dict[str, Keys] = field(default_factory=dict)
    hash_refs: dict[str, HashRecordValue] = field(default_factory=dict)
    set_refs: dict[str, SetRecordValue] = field(default_factory=dict)
    list_refs: dict[str, ListRecordValue] = field(default_factory=dict)
    zset_refs: dict[str, ZSetRecordValue] = field(default_factory=dict)


def _mapping(node: Any, what: str) -> Mapping:
    if node is None:
        return {}
    if not isinstance(node, Mapping):
        raise ValueError(f"expected a mapping for {what}, got {type(node).__name__}")
    return node


def _sequence(node: Any, what: str) -> list:
    if node is None:
        return []
    if not isinstance(node, list):
        raise ValueError(f"expected a sequence for {what}, got {type(node).__name__}")
    return node


def _text(node: Any) -> str:
    if node is None:
        return ""
    if isinstance(node, bool):
        return "true" if node else "false"
    if isinstance(node, (Mapping, list)):
        raise ValueError(f"expected a scalar, got {type(node).__name__}")
    return str(node)


def _database_id(key: Any) -> int:
    if isinstance(key, bool) or not isinstance(key, int):
        raise ValueError(f"database id must be an integer, got {key!r}")
    return key


def _value(node: Any) -> Value:
    return Value() if node is None else Value.from_yaml(node)


def _expiration(node: Any) -> timedelta:
    if node is None:
        return timedelta(0)
    if not isinstance(node, str):
        raise ValueError(f"expiration must be a duration string, got {node!r}")
    return parse_duration(node)


def _score(node: Any) -> float:
    if node is None:
        return 0.0
    if isinstance(node, bool) or not isinstance(node, (int, float)):
        raise ValueError(f"score must be a number, got {node!r}")
    return float(node)


def _key_value(node: Any) -> KeyValue | None:
    if node is None:
        return None
    body = _mapping(node, "key value")
    return KeyValue(value=_value(body.get("value")), expiration=_expiration(body.get("expiration")))


def _keys(node: Any) -> Keys:
    body = _mapping(node, "keys")
    return Keys(
        name=_text(body.get("$name")),
        extend=_text(body.get("$extend")),
        values={
            _text(key): _key_value(item)
            for key, item in _mapping(body.get("values"), "values").items()
        },
    )


def _hash_value(body: Mapping) -> HashValue:
    return HashValue(key=_value(body.get("key")), value=_value(body.get("value")))


def _set_value(body: Mapping) -> SetValue:
    return SetValue(value=_value(body.get("value")))


def _list_value(body: Mapping) -> ListValue:
    return ListValue(value=_value(body.get("value")))


def _zset_value(body: Mapping) -> ZSetValue:
    return ZSetValue(value=_value(body.get("value")), score=_score(body.get("score")))


def _record(
    record_cls: Callable[..., _RecordT],
    item_parser: Callable[[Mapping], Any],
    node: Any,
) -> _RecordT:
    body = _mapping(node, "record")
    return record_cls(
        name=_text(body.get("$name")),
        extend=_text(body.get("$extend")),
        values=[
            None if item is None else item_parser(_mapping(item, "record value"))
            for item in _sequence(body.get("values"), "values")
        ],
        expiration=_expiration(body.get("expiration")),
    )


def _collection(record_cls, item_parser, node: Any) -> dict:
    body = _mapping(node, "collection")
    return {
        _text(key): _record(record_cls, item_parser, item)
        for key, item in _mapping(body.get("values"), "values").items()
    }


def _database(node: Any) -> Database:
    body = _mapping(node, "database")
    database = Database()
    if body.get("keys") is not None:
        database.keys = _keys(body["keys"])
    if body.get("hashes") is not None:
        database.hashes = Hashes(_collection(HashRecordValue, _hash_value, body["hashes"]))
    if body.get("sets") is not None:
        database.sets = Sets(_collection(SetRecordValue, _set_value, body["sets"]))
    if body.get("lists") is not None:
        database.lists = Lists(_collection(ListRecordValue, _list_value, body["lists"]))
    if body.get("zsets") is not None:
        database.zsets = ZSets(_collection(ZSetRecordValue, _zset_value, body["zsets"]))
    return database