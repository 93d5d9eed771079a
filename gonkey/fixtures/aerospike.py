"""Loading YAML fixtures into Aerospike sets."""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

import yaml

_EXTEND = "$extend"

BinMap = dict[str, Any]
SetData = dict[str, BinMap]


class _AerospikeClient(Protocol):
    def truncate(self, set_name: str) -> None: ...

    def insert_bin_map(self, set_name: str, key: str, bin_map: BinMap) -> None: ...


@dataclass
class LoadedSet:
    """Records of one set as read from a fixture file."""

    name: str
    data: SetData


@dataclass
class LoadContext:
    """What has been gathered from the fixture files so far."""

    files: list[str] = field(default_factory=list)
    sets: list[LoadedSet] = field(default_factory=list)
    refs_definition: dict[str, BinMap] = field(default_factory=dict)


class AerospikeLoader:
    """Truncates the sets named in fixtures and fills them with records."""

    def __init__(self, client: _AerospikeClient, location: str, debug: bool = False) -> None:
        self.client = client
        self.location = location
        self.debug = debug

    def load(self, names: list[str]) -> None:
        """Read the named fixture files and load their sets."""
        ctx = LoadContext()
        for name in names:
            try:
                self._load_file(name, ctx)
            except (OSError, ValueError, yaml.YAMLError) as err:
                raise ValueError(f"unable to load fixture {name}: {err}") from err
        self.load_sets(ctx)

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
        """Add the templates and sets of one fixture document to ``ctx``."""
        document = yaml.safe_load(data)
        if document is None:
            document = {}
        if not isinstance(document, Mapping):
            raise ValueError("expected map at root level")

        for inherit in document.get("inherits") or []:
            self._load_file(inherit, ctx)

        for name, body in _map_items(document.get("templates"), "templates"):
            if name in ctx.refs_definition:
                raise ValueError(f"unable to load template {name}: duplicating ref name")
            bin_map = _bin_map(body)
            if _EXTEND in bin_map:
                base = self._resolve_reference(ctx.refs_definition, bin_map[_EXTEND])
                base.update(bin_map)
                bin_map = base
            ctx.refs_definition[name] = bin_map
            if self.debug:
                print(f"Populating ref {name} as {json.dumps(bin_map, default=str)} from template")

        for name, body in _map_items(document.get("sets"), "sets"):
            if not isinstance(body, Mapping):
                raise ValueError("expected map/array as set")
            data_set = {_string_key(key): _bin_map(bins) for key, bins in body.items()}
            ctx.sets.append(LoadedSet(name=name, data=data_set))

    def load_sets(self, ctx: LoadContext) -> None:
        """Truncate every set once, then insert the gathered records."""
        truncated: set[str] = set()
        for loaded in ctx.sets:
            if loaded.name in truncated:
                continue
            self.client.truncate(loaded.name)
            truncated.add(loaded.name)

        for loaded in ctx.sets:
            if not loaded.data:
                continue
            try:
                self._load_set(ctx, loaded)
            except Exception as err:
                raise ValueError(
                    f"failed to load set '{loaded.name}' because:\n{err}"
                ) from err

    def _load_set(self, ctx: LoadContext, loaded: LoadedSet) -> None:
        for key, bin_map in list(loaded.data.items()):
            if _EXTEND not in bin_map:
                continue
            base = self._resolve_reference(ctx.refs_definition, bin_map[_EXTEND])
            base.update(bin_map)
            loaded.data[key] = base

        for key, bin_map in loaded.data.items():
            self.client.insert_bin_map(loaded.name, key, bin_map)

    @staticmethod
    def _resolve_reference(refs: dict[str, BinMap], ref_name: Any) -> BinMap:
        """Copy a named record, leaving out its ``$``-prefixed bins."""
        if not isinstance(ref_name, str):
            raise ValueError(f"reference name must be a string, got {ref_name!r}")
        try:
            target = refs[ref_name]
        except KeyError:
            raise ValueError(f"undefined reference {ref_name}") from None
        return {k: v for k, v in target.items() if not k.startswith("$")}


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


def _bin_map(node: Any) -> BinMap:
    if not isinstance(node, Mapping):
        raise ValueError("expected map/array as binmap")
    return {_string_key(key): value for key, value in node.items()}