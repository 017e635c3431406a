"""
Filter matching and update operators for the document store.

A small Mongo-flavoured subset, enough for the engine's needs:

Filters: equality on dotted paths, ``$eq``, ``$ne``, ``$in``, ``$nin``,
``$exists``, ``$lt``, ``$lte``, ``$gt``, ``$gte``, plus top-level ``$or``.

Updates: ``$set`` / ``$unset`` on dotted paths, ``$inc``, ``$push`` (with
optional ``$each``), ``$addToSet``, ``$pull``.
"""

from __future__ import annotations

import copy
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, TypeAdapter

from taskweave.workflows.paths import MISSING, get_path, set_path, unset_path

Filter = dict[str, Any]
Update = dict[str, Any]
Sort = list[tuple[str, int]]

_DATETIME = TypeAdapter(datetime)


def to_jsonable(value: Any) -> Any:
    """Normalize enums, datetimes, and models to the JSON shapes stored in documents."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return _DATETIME.dump_python(value, mode="json")
    if isinstance(value, dict):
        return {k: to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_jsonable(v) for v in value]
    return value


def _compare(actual: Any, op: str, expected: Any) -> bool:
    if op == "$eq":
        return _equals(actual, expected)
    if op == "$ne":
        return not _equals(actual, expected)
    if op == "$in":
        return any(_equals(actual, e) for e in expected)
    if op == "$nin":
        return not any(_equals(actual, e) for e in expected)
    if op == "$exists":
        return (actual is not MISSING) == bool(expected)
    if actual is MISSING or actual is None:
        return False
    try:
        if op == "$lt":
            return actual < expected
        if op == "$lte":
            return actual <= expected
        if op == "$gt":
            return actual > expected
        if op == "$gte":
            return actual >= expected
    except TypeError:
        return False
    raise ValueError(f"Unsupported filter operator: {op}")


def _equals(actual: Any, expected: Any) -> bool:
    if expected is None:
        return actual is None or actual is MISSING
    if isinstance(actual, list) and not isinstance(expected, list):
        return expected in actual
    return actual == expected


def _is_operator_dict(value: Any) -> bool:
    return isinstance(value, dict) and bool(value) and all(k.startswith("$") for k in value)


def match_filter(doc: dict, flt: Optional[Filter]) -> bool:
    for key, condition in (flt or {}).items():
        if key == "$or":
            if not any(match_filter(doc, sub) for sub in condition):
                return False
            continue
        actual = get_path(doc, key)
        if _is_operator_dict(condition):
            if not all(_compare(actual, op, expected) for op, expected in condition.items()):
                return False
        elif not _equals(actual, condition):
            return False
    return True


def apply_update(doc: dict, update: Update) -> dict:
    """Return a copy of *doc* with *update* applied."""
    result = copy.deepcopy(doc)
    for op, fields in update.items():
        for path, value in fields.items():
            if op == "$set":
                set_path(result, path, copy.deepcopy(value))
            elif op == "$unset":
                unset_path(result, path)
            elif op == "$inc":
                current = get_path(result, path)
                set_path(result, path, (0 if current in (MISSING, None) else current) + value)
            elif op in ("$push", "$addToSet"):
                current = get_path(result, path)
                items = list(current) if isinstance(current, list) else []
                values = value["$each"] if isinstance(value, dict) and "$each" in value else [value]
                for item in values:
                    if op == "$push" or item not in items:
                        items.append(copy.deepcopy(item))
                set_path(result, path, items)
            elif op == "$pull":
                current = get_path(result, path)
                if isinstance(current, list):
                    set_path(result, path, [item for item in current if item != value])
            else:
                raise ValueError(f"Unsupported update operator: {op}")
    return result


def sort_documents(docs: list[dict], sort: Optional[Sort]) -> list[dict]:
    """Stable multi-key sort; missing values sort first."""
    ordered = list(docs)
    for field, direction in reversed(sort or []):
        def _key(doc: dict, field: str = field) -> tuple:
            value = get_path(doc, field)
            return (value is not MISSING and value is not None, value if value not in (MISSING, None) else 0)
        ordered.sort(key=_key, reverse=direction < 0)
    return ordered
