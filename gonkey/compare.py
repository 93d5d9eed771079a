"""Structural comparison of expected and actual values, and query matching."""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from typing import Any

_REGEX_EXPR = re.compile(r"\$matchRegexp\((.+)\)")

_ARRAY = "array"
_MAP = "map"


@dataclass
class Params:
    """Options that relax or tighten a comparison."""

    ignore_values: bool = False
    ignore_arrays_ordering: bool = False
    disallow_extra_fields: bool = False
    ignore_db_ordering: bool = False
    _fail_fast: bool = field(default=False, repr=False, compare=False)


def compare(expected: Any, actual: Any, params: Params | None = None) -> list[str]:
    """Compare two values and return a description of every mismatch.

    Leaves are compared either for equality or, when the expected value has
    the form ``$matchRegexp(<pattern>)``, by searching ``actual`` with the
    pattern.
    """
    return _compare_branch("$", expected, actual, params or Params())


def query(expected: list[str], actual: list[str]) -> bool:
    """Tell whether two lists of query values match regardless of order.

    Expected values may use ``$matchRegexp(<pattern>)``. Raises ValueError
    when the lists differ in length and ``re.error`` for a bad pattern.
    """
    if len(expected) != len(actual):
        raise ValueError("expected and actual query params have different lengths")

    expected_left = list(expected)
    actual_left = list(actual)

    while expected_left:
        pair = next(
            (
                (i, j)
                for i, expected_value in enumerate(expected_left)
                for j, actual_value in enumerate(actual_left)
                if _query_value_matches(expected_value, actual_value)
            ),
            None,
        )
        if pair is None:
            return False
        i, j = pair
        _swap_remove(expected_left, i)
        _swap_remove(actual_left, j)

    return True


def _query_value_matches(expected: str, actual: str) -> bool:
    pattern = _regex_body(expected)
    if pattern is None:
        return expected == actual
    return re.search(pattern, actual) is not None


def _swap_remove(items: list, index: int) -> None:
    items[index] = items[-1]
    items.pop()


def _compare_branch(path: str, expected: Any, actual: Any, params: Params) -> list[str]:
    expected_type = _type_name(expected)
    actual_type = _type_name(actual)

    if _regex_body(expected) is None and expected_type != actual_type:
        return [_make_error(path, "types do not match", expected_type, actual_type)]

    if actual_type not in (_ARRAY, _MAP):
        if params.ignore_values:
            return []
        return _compare_leafs(path, expected, actual)

    errors: list[str] = []

    if actual_type == _ARRAY:
        expected_items = list(expected)
        actual_items = list(actual)

        if len(expected_items) != len(actual_items):
            return [
                _make_error(
                    path, "array lengths do not match", len(expected_items), len(actual_items)
                )
            ]

        if params.ignore_arrays_ordering:
            expected_items, actual_items = _unmatched(expected_items, actual_items, params)

        for index, (item, actual_item) in enumerate(zip(expected_items, actual_items)):
            errors.extend(_compare_branch(f"{path}[{index}]", item, actual_item, params))
            if params._fail_fast and errors:
                return errors
        return errors

    if not isinstance(expected, Mapping):
        return [_make_error(path, "types do not match", expected_type, actual_type)]

    if params.disallow_extra_fields and len(expected) != len(actual):
        return [_make_error(path, "map lengths do not match", len(expected), len(actual))]

    for key, expected_value in expected.items():
        if key not in actual:
            errors.append(_make_error(path, "key is missing", key, "<missing>"))
            if params._fail_fast:
                return errors
            continue

        errors.extend(_compare_branch(f"{path}.{key}", expected_value, actual[key], params))
        if params._fail_fast and errors:
            return errors

    return errors


def _unmatched(expected: list, actual: list, params: Params) -> tuple[list, list]:
    """Pair off equal elements and return the ones left without a partner."""
    strict = replace(params, _fail_fast=True)
    remaining = list(actual)
    missing = []

    for item in expected:
        for index, candidate in enumerate(remaining):
            if not _compare_branch("", item, candidate, strict):
                _swap_remove(remaining, index)
                break
        else:
            missing.append(item)
            if params._fail_fast:
                return missing, remaining[:1]

    return missing, remaining


def _compare_leafs(path: str, expected: Any, actual: Any) -> list[str]:
    pattern = _regex_body(expected)
    if pattern is None:
        if expected != actual:
            return [_make_error(path, "values do not match", expected, actual)]
        return []

    try:
        rx = re.compile(pattern)
    except re.error:
        return [_make_error(path, "can not compile regex", None, "error")]

    if rx.search(_format(actual)) is None:
        return [_make_error(path, "value does not match regex", expected, actual)]
    return []


def _regex_body(value: Any) -> str | None:
    if isinstance(value, str):
        match = _REGEX_EXPR.fullmatch(value)
        if match:
            return match.group(1)
    return None


def _type_name(value: Any) -> str:
    if value is None:
        return "nil"
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, (list, tuple)):
        return _ARRAY
    if isinstance(value, Mapping):
        return _MAP
    if isinstance(value, (int, float)):
        return "number"
    return type(value).__name__


def _format(value: Any) -> str:
    if value is None:
        return "<nil>"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer() and abs(value) < 1e21:
        return str(int(value))
    return str(value)


def _make_error(path: str, message: str, expected: Any, actual: Any) -> str:
    return (
        f"at path {path} {message}:\n"
        f"     expected: {_format(expected)}\n"
        f"       actual: {_format(actual)}"
    )