"""
Dotted-path lookups over JSON-like values.

Shared by the template resolver, the join aggregator, the decision evaluator,
and the document store's filter operators.  Lookups never raise: any missing
key or non-container intermediate yields ``MISSING``.
"""

from __future__ import annotations

from typing import Any


class _Missing:
    __slots__ = ()

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


def split_path(path: str) -> list[str]:
    """Strip a leading ``$.`` or ``.`` and split on dots, dropping empty segments."""
    path = (path or "").strip()
    if path.startswith("$"):
        path = path[1:]
    return [segment for segment in path.split(".") if segment]


def get_path(value: Any, path: str) -> Any:
    """Walk *path* through nested dicts (and list indices); ``MISSING`` when absent."""
    current = value
    for segment in split_path(path):
        if isinstance(current, dict):
            if segment not in current:
                return MISSING
            current = current[segment]
        elif isinstance(current, list) and segment.isdigit():
            index = int(segment)
            if index >= len(current):
                return MISSING
            current = current[index]
        else:
            return MISSING
    return current


def get_or(value: Any, path: str, default: Any = None) -> Any:
    found = get_path(value, path)
    return default if found is MISSING else found


def set_path(target: dict, path: str, value: Any) -> None:
    """Assign *value* at *path*, creating intermediate dicts as needed."""
    segments = split_path(path)
    if not segments:
        raise ValueError("empty path")
    current = target
    for segment in segments[:-1]:
        nxt = current.get(segment)
        if not isinstance(nxt, dict):
            nxt = {}
            current[segment] = nxt
        current = nxt
    current[segments[-1]] = value


def unset_path(target: dict, path: str) -> None:
    segments = split_path(path)
    current: Any = target
    for segment in segments[:-1]:
        current = current.get(segment) if isinstance(current, dict) else None
        if current is None:
            return
    if isinstance(current, dict):
        current.pop(segments[-1], None)
