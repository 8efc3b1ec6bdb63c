"""Dotted-path helpers for plain dict documents.

Paths traverse nested dicts and fan out over lists, so ``participants.alias``
on a chat yields every participant alias.
"""

from __future__ import annotations

from typing import Any, List


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


def get_path(document: Any, path: str) -> Any:
    """Return the value at ``path`` or ``MISSING`` when any segment is absent."""

    parts = path.split(".")
    current = document
    for position, part in enumerate(parts):
        if isinstance(current, list):
            rest = ".".join(parts[position:])
            collected: List[Any] = []
            for item in current:
                value = get_path(item, rest)
                if value is MISSING:
                    continue
                if isinstance(value, list):
                    collected.extend(value)
                else:
                    collected.append(value)
            return collected if collected else MISSING
        if not isinstance(current, dict) or part not in current:
            return MISSING
        current = current[part]
    return current


def set_path(document: dict, path: str, value: Any) -> None:
    """Assign ``value`` at ``path``, creating intermediate dicts as needed."""

    parts = path.split(".")
    current = document
    for part in parts[:-1]:
        child = current.get(part)
        if not isinstance(child, dict):
            child = {}
            current[part] = child
        current = child
    current[parts[-1]] = value


def candidate_values(value: Any) -> List[Any]:
    """Values an operator is compared against (array fields match per element)."""

    if value is MISSING:
        return []
    if isinstance(value, list):
        return list(value)
    return [value]


def hashable(value: Any) -> Any:
    """Return a hashable stand-in for index keys."""

    if isinstance(value, dict):
        return tuple(sorted((key, hashable(item)) for key, item in value.items()))
    if isinstance(value, (list, set, frozenset, tuple)):
        return tuple(hashable(item) for item in value)
    return value
