"""Aggregation engine.

A pipeline is an ordered list of stages (match, project, group, sort, limit)
over one collection. Pipelines are validated when they are built: every path
a stage reads must exist in the collection schema or be produced by an
earlier stage. Execution composes the stages as generators, so ``Limit``
stops pulling from upstream once it has enough records.
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from typing import (
    Any,
    Dict,
    FrozenSet,
    Iterable,
    Iterator,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Union,
)

from core.documents import MISSING, get_path, hashable
from core.errors import PipelineCancelled, PipelineError, QueryTimeoutError
from core.filters import compile_filter, referenced_fields
from core.indexes import ASCENDING, DESCENDING
from core.models import COLLECTION_FIELDS
from core.ports import DocumentStorePort

LOGGER = logging.getLogger(__name__)

Record = Dict[str, Any]


def _path_available(path: str, available: FrozenSet[str]) -> bool:
    if path in available:
        return True
    parts = path.split(".")
    for depth in range(1, len(parts)):
        if ".".join(parts[:depth]) in available:
            return True
    prefix = path + "."
    return any(name.startswith(prefix) for name in available)


# Expressions


class Field:
    """The value at a document path, or None when absent."""

    def __init__(self, path: str) -> None:
        if not isinstance(path, str) or not path:
            raise PipelineError("Field path must be a non-empty string")
        self.path = path

    def paths(self) -> Tuple[str, ...]:
        return (self.path,)

    def evaluate(self, record: Record) -> Any:
        value = get_path(record, self.path)
        return None if value is MISSING else value


class Size:
    """Cardinality of the collection at a path; absent or null counts as 0."""

    def __init__(self, path: str) -> None:
        if not isinstance(path, str) or not path:
            raise PipelineError("Size path must be a non-empty string")
        self.path = path

    def paths(self) -> Tuple[str, ...]:
        return (self.path,)

    def evaluate(self, record: Record) -> int:
        value = get_path(record, self.path)
        if value is MISSING or value is None:
            return 0
        if isinstance(value, (list, tuple, set, frozenset, dict)):
            return len(value)
        raise PipelineError(f"Cannot take the size of {type(value).__name__} at {self.path!r}")


Expression = Union[Field, Size]


def _as_expression(value: Union[str, Expression]) -> Expression:
    if isinstance(value, str):
        return Field(value)
    if isinstance(value, (Field, Size)):
        return value
    raise PipelineError(f"Unsupported projection expression: {value!r}")


# Reducers


class Count:
    def paths(self) -> Tuple[str, ...]:
        return ()

    def initial(self) -> int:
        return 0

    def step(self, state: int, record: Record) -> int:
        return state + 1


class Sum:
    def __init__(self, path: str) -> None:
        self.path = path

    def paths(self) -> Tuple[str, ...]:
        return (self.path,)

    def initial(self) -> Any:
        return 0

    def step(self, state: Any, record: Record) -> Any:
        value = get_path(record, self.path)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return state
        return state + value


class Max:
    def __init__(self, path: str) -> None:
        self.path = path

    def paths(self) -> Tuple[str, ...]:
        return (self.path,)

    def initial(self) -> Any:
        return None

    def step(self, state: Any, record: Record) -> Any:
        value = get_path(record, self.path)
        if value is MISSING or value is None:
            return state
        if state is None:
            return value
        try:
            return value if value > state else state
        except TypeError:
            raise PipelineError(f"Values at {self.path!r} are not comparable") from None


Reducer = Union[Count, Sum, Max]


# Stages


class Stage:
    name = "stage"

    def paths(self) -> Iterable[str]:
        return ()

    def output_fields(self, available: FrozenSet[str]) -> FrozenSet[str]:
        return available

    def apply(self, records: Iterator[Record]) -> Iterator[Record]:
        raise NotImplementedError


class Match(Stage):
    name = "match"

    def __init__(self, filter: Mapping[str, Any]) -> None:
        if not isinstance(filter, Mapping):
            raise PipelineError("match needs a filter document")
        self.filter = dict(filter)
        self._predicate = compile_filter(self.filter)

    def paths(self) -> Iterable[str]:
        return referenced_fields(self.filter)

    def apply(self, records: Iterator[Record]) -> Iterator[Record]:
        return (record for record in records if self._predicate(record))


class Project(Stage):
    name = "project"

    def __init__(self, mapping: Mapping[str, Union[str, Expression]]) -> None:
        if not isinstance(mapping, Mapping) or not mapping:
            raise PipelineError("project needs a non-empty field mapping")
        self.mapping = {name: _as_expression(value) for name, value in mapping.items()}

    def paths(self) -> Iterable[str]:
        for expression in self.mapping.values():
            yield from expression.paths()

    def output_fields(self, available: FrozenSet[str]) -> FrozenSet[str]:
        return frozenset(self.mapping)

    def apply(self, records: Iterator[Record]) -> Iterator[Record]:
        for record in records:
            yield {name: expression.evaluate(record) for name, expression in self.mapping.items()}


class Group(Stage):
    """Group by the value at ``key``; output records carry it as ``_id``."""

    name = "group"

    def __init__(self, key: str, reducers: Mapping[str, Reducer]) -> None:
        if not isinstance(key, str) or not key:
            raise PipelineError("group needs a key path")
        if not reducers:
            raise PipelineError("group needs at least one reducer")
        if "_id" in reducers:
            raise PipelineError("group reducers cannot be named '_id'")
        for output, reducer in reducers.items():
            if not isinstance(reducer, (Count, Sum, Max)):
                raise PipelineError(f"Unsupported reducer for {output!r}: {reducer!r}")
        self.key = key
        self.reducers = dict(reducers)

    def paths(self) -> Iterable[str]:
        yield self.key
        for reducer in self.reducers.values():
            yield from reducer.paths()

    def output_fields(self, available: FrozenSet[str]) -> FrozenSet[str]:
        return frozenset({"_id", *self.reducers})

    def apply(self, records: Iterator[Record]) -> Iterator[Record]:
        groups: Dict[Any, Tuple[Any, Dict[str, Any]]] = {}
        for record in records:
            value = get_path(record, self.key)
            value = None if value is MISSING else value
            bucket_key = hashable(value)
            if bucket_key not in groups:
                groups[bucket_key] = (
                    value,
                    {name: reducer.initial() for name, reducer in self.reducers.items()},
                )
            _, states = groups[bucket_key]
            for name, reducer in self.reducers.items():
                states[name] = reducer.step(states[name], record)
        for value, states in groups.values():
            yield {"_id": value, **states}


class Sort(Stage):
    """Stable multi-key sort; missing values order first ascending, last descending."""

    name = "sort"

    def __init__(self, *keys: Tuple[str, int]) -> None:
        if not keys:
            raise PipelineError("sort needs at least one key")
        for key in keys:
            if (
                not isinstance(key, tuple)
                or len(key) != 2
                or not isinstance(key[0], str)
                or key[1] not in (ASCENDING, DESCENDING)
            ):
                raise PipelineError(f"Bad sort key {key!r}; use (path, ASCENDING|DESCENDING)")
        self.keys = keys

    def paths(self) -> Iterable[str]:
        return (path for path, _ in self.keys)

    def apply(self, records: Iterator[Record]) -> Iterator[Record]:
        ordered: List[Record] = list(records)
        for path, direction in reversed(self.keys):
            try:
                ordered.sort(key=lambda record: _sort_value(record, path), reverse=direction == DESCENDING)
            except TypeError:
                raise PipelineError(f"Values at {path!r} are not comparable") from None
        return iter(ordered)


def _sort_value(record: Record, path: str) -> Tuple[int, Any]:
    value = get_path(record, path)
    if value is MISSING or value is None:
        return (0, 0)
    return (1, value)


class Limit(Stage):
    name = "limit"

    def __init__(self, count: int) -> None:
        if isinstance(count, bool) or not isinstance(count, int) or count <= 0:
            raise PipelineError(f"limit needs a positive integer, got {count!r}")
        self.count = count

    def apply(self, records: Iterator[Record]) -> Iterator[Record]:
        return itertools.islice(records, self.count)


class Pipeline:
    """Validated, reusable sequence of stages over one collection."""

    def __init__(
        self,
        collection: str,
        stages: Sequence[Stage],
        fields: Optional[Iterable[str]] = None,
    ) -> None:
        if fields is None:
            if collection not in COLLECTION_FIELDS:
                raise PipelineError(f"Unknown collection {collection!r}")
            fields = COLLECTION_FIELDS[collection]
        self.collection = collection
        self.stages: Tuple[Stage, ...] = tuple(stages)
        self._validate(frozenset(fields))

    def _validate(self, available: FrozenSet[str]) -> None:
        for position, stage in enumerate(self.stages):
            if not isinstance(stage, Stage):
                raise PipelineError(f"Stage {position} is not a pipeline stage: {stage!r}")
            for path in stage.paths():
                if not _path_available(path, available):
                    raise PipelineError(
                        f"Stage {position} ({stage.name}) references {path!r}, "
                        f"which is not available on {self.collection!r} at that point"
                    )
            available = stage.output_fields(available)


class AggregationEngine:
    """Runs pipelines against a DocumentStorePort."""

    def __init__(self, store: DocumentStorePort, timeout: Optional[float] = None) -> None:
        self._store = store
        self._timeout = timeout

    def aggregate(
        self,
        pipeline: Pipeline,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> List[Record]:
        """Execute ``pipeline`` and return every result record.

        A leading match is handed to the store so the index catalog can pick an
        access path. Timeout and cancellation are checked as records flow
        between stages; either one discards everything produced so far.
        """

        timeout = self._timeout if timeout is None else timeout
        deadline = time.monotonic() + timeout if timeout is not None else None
        started = time.monotonic()

        stages = list(pipeline.stages)
        self._checkpoint(deadline, cancel)
        try:
            if stages and isinstance(stages[0], Match):
                source = self._store.find(pipeline.collection, stages.pop(0).filter)
            else:
                source = self._store.find(pipeline.collection)
            records = self._guard(source, deadline, cancel)
            for stage in stages:
                records = self._guard(stage.apply(records), deadline, cancel)
            results = list(records)
        except QueryTimeoutError:
            raise
        except TimeoutError as exc:
            raise QueryTimeoutError(f"Store timed out reading {pipeline.collection!r}") from exc

        LOGGER.debug(
            "Aggregated %s records from %s in %.3fs",
            len(results),
            pipeline.collection,
            time.monotonic() - started,
        )
        return results

    def _guard(
        self,
        records: Iterable[Record],
        deadline: Optional[float],
        cancel: Optional[threading.Event],
    ) -> Iterator[Record]:
        for record in records:
            self._checkpoint(deadline, cancel)
            yield record
        self._checkpoint(deadline, cancel)

    @staticmethod
    def _checkpoint(deadline: Optional[float], cancel: Optional[threading.Event]) -> None:
        if cancel is not None and cancel.is_set():
            raise PipelineCancelled("Aggregation cancelled")
        if deadline is not None and time.monotonic() > deadline:
            raise QueryTimeoutError("Aggregation exceeded its deadline")
