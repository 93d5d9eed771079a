"""Reading Redis fixture files, resolving inheritance and ``$extend`` references."""

from __future__ import annotations

import dataclasses
import glob
import os
from abc import ABC, abstractmethod
from collections.abc import Callable
from pathlib import Path
from typing import Any, TypeVar

import yaml

from gonkey.fixtures.redis_fixture import (
    Context,
    Fixture,
    Keys,
)

_T = TypeVar("_T")


class FixtureNotFoundError(FileNotFoundError):
    """No file exists for a fixture name."""

    def __init__(self) -> None:
        super().__init__("fixture not found")


class FixtureFileLoadError(ValueError):
    """A fixture file could not be located."""

    def __init__(self, fixture_name: str, reason: Exception) -> None:
        super().__init__(f"failed to load fixture file {fixture_name}: {reason}")
        self.fixture_name = fixture_name
        self.reason = reason


class FixtureParseError(ValueError):
    """A fixture file was found but could not be parsed."""

    def __init__(self, fixture_name: str, reason: Exception) -> None:
        super().__init__(f"failed to parse fixture file {fixture_name}: {reason}")
        self.fixture_name = fixture_name
        self.reason = reason


class ParserNotFoundError(ValueError):
    """No parser is registered for a file's extension."""

    def __init__(self, fmt: str = "") -> None:
        super().__init__("parser not found")
        self.format = fmt


class FixtureFileParser(ABC):
    """Turns one fixture file into a Fixture, recording references in a Context."""

    @abstractmethod
    def parse(self, ctx: Context, filename: str) -> Fixture:
        """Parse ``filename`` and return its fixture."""

    @abstractmethod
    def copy(self, file_parser: FileParser) -> FixtureFileParser:
        """Return a parser bound to ``file_parser`` for resolving inherited files."""


_registry: dict[str, FixtureFileParser] = {}


def register_parser(fmt: str, parser: FixtureFileParser) -> None:
    """Register ``parser`` for files with the extension ``fmt``."""
    _registry[fmt] = parser


def get_parser(fmt: str) -> FixtureFileParser | None:
    """Return the parser registered for ``fmt``, or None."""
    return _registry.get(fmt)


class FileParser:
    """Finds fixture files by name in a list of directories and parses them."""

    def __init__(self, locations: list[str]) -> None:
        self.locations = list(locations)

    def parse_files(self, ctx: Context, names: list[str]) -> list[Fixture]:
        """Parse the named fixtures, each file at most once."""
        seen: set[str] = set()
        fixtures: list[Fixture] = []

        for name in names:
            for location in self.locations:
                try:
                    filename = _first_existing_file(name, location)
                except FixtureNotFoundError as err:
                    raise FixtureFileLoadError(name, err) from err
                if filename in seen:
                    continue

                extension = _extension(filename)
                parser = get_parser(extension)
                if parser is None:
                    raise ParserNotFoundError(extension)

                try:
                    fixture = parser.copy(self).parse(ctx, filename)
                except (OSError, ValueError, yaml.YAMLError) as err:
                    raise FixtureParseError(filename, err) from err

                fixtures.append(fixture)
                seen.add(filename)

        return fixtures


def _first_existing_file(name: str, location: str) -> str:
    for candidate in (name, f"{name}.yaml", f"{name}.yml"):
        paths = sorted(glob.glob(os.path.join(location, candidate)))
        if paths:
            return paths[0]
    raise FixtureNotFoundError()


def _extension(filename: str) -> str:
    base = os.path.basename(filename)
    return base.rpartition(".")[2] if "." in base else ""


class YamlFixtureParser(FixtureFileParser):
    """Parser for YAML fixture files."""

    def __init__(self, file_parser: FileParser | None = None) -> None:
        self.file_parser = file_parser

    def copy(self, file_parser: FileParser) -> YamlFixtureParser:
        return YamlFixtureParser(file_parser)

    def parse(self, ctx: Context, filename: str) -> Fixture:
        fixture = Fixture.from_yaml(Path(filename).read_bytes())

        if fixture.inherits and self.file_parser is None:
            raise ValueError("inherited fixtures need a file parser")
        for parent in fixture.inherits:
            self.file_parser.parse_files(ctx, [parent])

        _build_templates(ctx, fixture)
        _build_databases(ctx, fixture)
        return fixture


def _copy_keys(src: Keys) -> Keys:
    return Keys(
        values={
            key: None if value is None else dataclasses.replace(value)
            for key, value in src.values.items()
        }
    )


def _copy_record(src: _T) -> _T:
    return type(src)(
        values=[None if value is None else dataclasses.replace(value) for value in src.values],
        expiration=src.expiration,
    )


def _resolve(refs: dict[str, _T], ref_name: str, copier: Callable[[_T], _T]) -> _T:
    try:
        template = refs[ref_name]
    except KeyError:
        raise ValueError(f"ref not found: {ref_name}") from None
    return copier(template)


def _extend_keys(ctx: Context, child: Keys) -> None:
    if not child.extend:
        return
    parent = _resolve(ctx.key_refs, child.extend, _copy_keys)
    parent.values.update(child.values)
    child.values = parent.values


def _extend_record(refs: dict, child: Any, merge: Callable[[list, list], list]) -> None:
    if not child.extend:
        return
    parent = _resolve(refs, child.extend, _copy_record)
    child.values = merge(parent.values, child.values)
    child.expiration = parent.expiration


def _merge_unique(parent: list, child: list, key: Callable[[Any], Any]) -> list:
    """Parent values first; a child value with a known key replaces it in place."""
    merged: dict[Any, Any] = {}
    order: list[Any] = []
    for value in parent:
        k = key(value)
        merged[k] = value
        order.append(k)
    for value in child:
        k = key(value)
        if k not in merged:
            order.append(k)
        merged[k] = value
    return [merged[k] for k in order]


def _merge_by_identity(parent: list, child: list) -> list:
    return _merge_unique(parent, child, lambda v: None if v is None else id(v))


def _merge_by_hash_key(parent: list, child: list) -> list:
    return _merge_unique(parent, child, lambda v: v.key)


def _concat(parent: list, child: list) -> list:
    return parent + child


def _build_templates(ctx: Context, fixture: Fixture) -> None:
    templates = fixture.templates
    kinds = (
        (templates.keys, ctx.key_refs, lambda t: _extend_keys(ctx, t), _copy_keys),
        (
            templates.sets,
            ctx.set_refs,
            lambda t: _extend_record(ctx.set_refs, t, _merge_by_identity),
            _copy_record,
        ),
        (
            templates.hashes,
            ctx.hash_refs,
            lambda t: _extend_record(ctx.hash_refs, t, _merge_by_hash_key),
            _copy_record,
        ),
        (
            templates.lists,
            ctx.list_refs,
            lambda t: _extend_record(ctx.list_refs, t, _concat),
            _copy_record,
        ),
        (
            templates.zsets,
            ctx.zset_refs,
            lambda t: _extend_record(ctx.zset_refs, t, _merge_by_identity),
            _copy_record,
        ),
    )
    for records, refs, extend, copier in kinds:
        for template in records:
            if not template.name:
                raise ValueError("template $name is required")
            if template.name in refs:
                raise ValueError(
                    f"unable to load template {template.name}: duplicating ref name"
                )
            extend(template)
            refs[template.name] = copier(template)


def _build_databases(ctx: Context, fixture: Fixture) -> None:
    for database in fixture.databases.values():
        if database.keys is not None:
            _extend_keys(ctx, database.keys)
            if database.keys.name:
                ctx.key_refs[database.keys.name] = _copy_keys(database.keys)

        collections = (
            (database.hashes, ctx.hash_refs, _merge_by_hash_key, "hash"),
            (database.sets, ctx.set_refs, _merge_by_identity, "set"),
            (database.lists, ctx.list_refs, _concat, "list"),
            (database.zsets, ctx.zset_refs, _merge_by_identity, "zset"),
        )
        for collection, refs, merge, label in collections:
            if collection is None:
                continue
            for record in collection.values.values():
                try:
                    _extend_record(refs, record, merge)
                except ValueError as err:
                    raise ValueError(f"extend {label} error: {err}") from err
                if record.name:
                    refs[record.name] = _copy_record(record)


register_parser("yaml", YamlFixtureParser())