"""Filter compilation (MongoDB-style query documents).

A filter is a dict of ``{path: value}`` equalities or ``{path: {"$op": arg}}``
comparisons, optionally combined with ``$and`` / ``$or``. Compiling up front
means a malformed filter fails before any document is read.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Mapping, Optional, Set

from core.documents import MISSING, candidate_values, get_path
from core.errors import PipelineError

Predicate = Callable[[dict], bool]

LOGICAL_OPERATORS = {"$and", "$or"}


def _equals(value: Any, expected: Any) -> bool:
    if expected is None:
        return value is MISSING or value is None or (isinstance(value, list) and None in value)
    if value is MISSING:
        return False
    if value == expected:
        return True
    return isinstance(value, list) and expected in value


def _compare(value: Any, check: Callable[[Any], bool]) -> bool:
    for item in candidate_values(value):
        try:
            if check(item):
                return True
        except TypeError:
            continue
    return False


def _compile_operator(path: str, operator: str, argument: Any) -> Predicate:
    if operator == "$eq":
        return lambda doc: _equals(get_path(doc, path), argument)
    if operator == "$ne":
        return lambda doc: not _equals(get_path(doc, path), argument)
    if operator in ("$in", "$nin"):
        if not isinstance(argument, (list, tuple, set, frozenset)):
            raise PipelineError(f"{operator} on {path!r} needs a list")
        options = list(argument)

        def _in(doc: dict) -> bool:
            value = get_path(doc, path)
            return any(_equals(value, option) for option in options)

        if operator == "$in":
            return _in
        return lambda doc: not _in(doc)
    if operator == "$gt":
        return lambda doc: _compare(get_path(doc, path), lambda item: item > argument)
    if operator == "$gte":
        return lambda doc: _compare(get_path(doc, path), lambda item: item >= argument)
    if operator == "$lt":
        return lambda doc: _compare(get_path(doc, path), lambda item: item < argument)
    if operator == "$lte":
        return lambda doc: _compare(get_path(doc, path), lambda item: item <= argument)
    if operator == "$exists":
        wanted = bool(argument)
        return lambda doc: (get_path(doc, path) is not MISSING) is wanted
    if operator == "$elemMatch":
        if not isinstance(argument, Mapping):
            raise PipelineError(f"$elemMatch on {path!r} needs a filter document")
        inner = compile_filter(argument)

        def _elem_match(doc: dict) -> bool:
            value = get_path(doc, path)
            if not isinstance(value, list):
                return False
            return any(isinstance(item, dict) and inner(item) for item in value)

        return _elem_match
    raise PipelineError(f"Unsupported filter operator {operator!r} on {path!r}")


def _is_operator_document(value: Any) -> bool:
    return isinstance(value, Mapping) and bool(value) and all(
        isinstance(key, str) and key.startswith("$") for key in value
    )


def compile_filter(spec: Optional[Mapping[str, Any]]) -> Predicate:
    """Compile a filter document into a predicate over documents."""

    if not spec:
        return lambda doc: True
    if not isinstance(spec, Mapping):
        raise PipelineError(f"Filter must be a mapping, got {type(spec).__name__}")

    predicates: List[Predicate] = []
    for key, value in spec.items():
        if key in LOGICAL_OPERATORS:
            if not isinstance(value, (list, tuple)) or not value:
                raise PipelineError(f"{key} needs a non-empty list of filters")
            branches = [compile_filter(branch) for branch in value]
            if key == "$and":
                predicates.append(lambda doc, b=branches: all(p(doc) for p in b))
            else:
                predicates.append(lambda doc, b=branches: any(p(doc) for p in b))
        elif key.startswith("$"):
            raise PipelineError(f"Unsupported top-level operator {key!r}")
        elif _is_operator_document(value):
            for operator, argument in value.items():
                predicates.append(_compile_operator(key, operator, argument))
        else:
            predicates.append(lambda doc, p=key, v=value: _equals(get_path(doc, p), v))

    return lambda doc: all(predicate(doc) for predicate in predicates)


def _is_index_value(value: Any) -> bool:
    try:
        hash(value)
    except TypeError:
        return False
    return value is not None


def equality_fields(spec: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Return ``{path: value}`` for fields pinned by equality.

    Only conjunctive equalities qualify; anything under ``$or`` may or may not
    hold, so it cannot narrow an index lookup.
    """

    result: Dict[str, Any] = {}
    if not spec:
        return result
    for key, value in spec.items():
        if key == "$and":
            for branch in value:
                for path, item in equality_fields(branch).items():
                    result.setdefault(path, item)
        elif key.startswith("$"):
            continue
        elif _is_operator_document(value):
            if "$eq" in value and _is_index_value(value["$eq"]):
                result[key] = value["$eq"]
            elif "$elemMatch" in value and isinstance(value["$elemMatch"], Mapping):
                for path, item in equality_fields(value["$elemMatch"]).items():
                    result.setdefault(f"{key}.{path}", item)
        elif _is_index_value(value):
            result[key] = value
    return result


def referenced_fields(spec: Optional[Mapping[str, Any]]) -> Set[str]:
    """Every document path a filter reads."""

    paths: Set[str] = set()
    if not spec:
        return paths
    for key, value in spec.items():
        if key in LOGICAL_OPERATORS:
            for branch in value:
                paths.update(referenced_fields(branch))
        elif key.startswith("$"):
            continue
        else:
            paths.add(key)
            if _is_operator_document(value) and isinstance(value.get("$elemMatch"), Mapping):
                paths.update(f"{key}.{inner}" for inner in referenced_fields(value["$elemMatch"]))
    return paths

