from __future__ import annotations

import threading
import time
from typing import Iterator, List, Optional

import pytest

from core.aggregation import (
    AggregationEngine,
    Count,
    Field,
    Group,
    Limit,
    Match,
    Max,
    Pipeline,
    Project,
    Size,
    Sort,
    Sum,
)
from core.errors import PipelineCancelled, PipelineError, QueryTimeoutError
from core.indexes import ASCENDING, DESCENDING
from core.models import MESSAGES


class FakeStore:
    """Yields prepared documents and records how many were pulled."""

    def __init__(self, documents: List[dict], delay: float = 0.0) -> None:
        self.documents = documents
        self.delay = delay
        self.pulled = 0
        self.filters: List[Optional[dict]] = []

    def find(self, collection: str, filter: Optional[dict] = None) -> Iterator[dict]:
        self.filters.append(filter)
        for document in self.documents:
            if self.delay:
                time.sleep(self.delay)
            self.pulled += 1
            yield dict(document)


class TimingOutStore:
    def find(self, collection: str, filter: Optional[dict] = None) -> Iterator[dict]:
        raise TimeoutError("storage engine did not answer")


def _docs() -> List[dict]:
    return [
        {"_id": "m1", "chat_id": "c1", "sender": "Ana", "timestamp": 3, "interactions": {"likes": ["Seba"]}},
        {"_id": "m2", "chat_id": "c1", "sender": "Seba", "timestamp": 1},
        {"_id": "m3", "chat_id": "c1", "sender": "Ana", "timestamp": 2, "interactions": {"likes": []}},
    ]


def test_group_key_missing_from_schema_fails_at_construction() -> None:
    with pytest.raises(PipelineError):
        Pipeline(MESSAGES, [Group("author", {"count": Count()})])


def test_fields_dropped_by_project_are_not_available_downstream() -> None:
    with pytest.raises(PipelineError):
        Pipeline(MESSAGES, [Project({"who": "sender"}), Sort(("timestamp", ASCENDING))])
    Pipeline(MESSAGES, [Project({"who": "sender"}), Sort(("who", ASCENDING))])


def test_group_output_fields_replace_document_fields() -> None:
    Pipeline(MESSAGES, [Group("sender", {"n": Count()}), Sort(("n", DESCENDING), ("_id", ASCENDING))])
    with pytest.raises(PipelineError):
        Pipeline(MESSAGES, [Group("sender", {"n": Count()}), Project({"t": "timestamp"})])


@pytest.mark.parametrize(
    "build",
    [
        lambda: Limit(0),
        lambda: Limit(True),
        lambda: Sort(("timestamp", 2)),
        lambda: Sort(),
        lambda: Group("sender", {}),
        lambda: Group("sender", {"_id": Count()}),
        lambda: Group("sender", {"n": "count"}),
        lambda: Project({}),
        lambda: Project({"x": 42}),
        lambda: Match({"sender": {"$regex": "A"}}),
        lambda: Pipeline("reactions", []),
        lambda: Pipeline(MESSAGES, ["match"]),
    ],
)
def test_malformed_stage_configuration_fails_fast(build) -> None:
    with pytest.raises(PipelineError):
        build()


def test_leading_match_is_pushed_into_the_store() -> None:
    store = FakeStore(_docs())
    engine = AggregationEngine(store)
    engine.aggregate(Pipeline(MESSAGES, [Match({"chat_id": "c1"}), Limit(1)]))
    assert store.filters == [{"chat_id": "c1"}]


def test_stages_compose_left_to_right() -> None:
    engine = AggregationEngine(FakeStore(_docs()))
    pipeline = Pipeline(
        MESSAGES,
        [
            Sort(("timestamp", ASCENDING)),
            Project({"id": Field("_id"), "likes": Size("interactions.likes")}),
        ],
    )
    assert engine.aggregate(pipeline) == [
        {"id": "m2", "likes": 0},
        {"id": "m3", "likes": 0},
        {"id": "m1", "likes": 1},
    ]


def test_group_reducers() -> None:
    engine = AggregationEngine(FakeStore(_docs()))
    pipeline = Pipeline(
        MESSAGES,
        [
            Group("sender", {"n": Count(), "total": Sum("timestamp"), "latest": Max("timestamp")}),
            Sort(("_id", ASCENDING)),
        ],
    )
    assert engine.aggregate(pipeline) == [
        {"_id": "Ana", "n": 2, "total": 5, "latest": 3},
        {"_id": "Seba", "n": 1, "total": 1, "latest": 1},
    ]


def test_sort_places_missing_values_first_when_ascending() -> None:
    docs = [{"_id": "a", "timestamp": 2}, {"_id": "b"}, {"_id": "c", "timestamp": 1}]
    engine = AggregationEngine(FakeStore(docs))
    ascending = engine.aggregate(Pipeline(MESSAGES, [Sort(("timestamp", ASCENDING))]))
    descending = engine.aggregate(Pipeline(MESSAGES, [Sort(("timestamp", DESCENDING))]))
    assert [doc["_id"] for doc in ascending] == ["b", "c", "a"]
    assert [doc["_id"] for doc in descending] == ["a", "c", "b"]


def test_limit_stops_pulling_from_the_store() -> None:
    store = FakeStore([{"_id": f"m{n}", "timestamp": n} for n in range(100)])
    results = AggregationEngine(store).aggregate(Pipeline(MESSAGES, [Limit(2)]))
    assert len(results) == 2
    assert store.pulled == 2


def test_timeout_discards_partial_results() -> None:
    store = FakeStore(_docs(), delay=0.05)
    engine = AggregationEngine(store)
    with pytest.raises(QueryTimeoutError) as excinfo:
        engine.aggregate(Pipeline(MESSAGES, [Sort(("timestamp", ASCENDING))]), timeout=0.01)
    assert isinstance(excinfo.value, TimeoutError)


def test_store_timeout_is_surfaced_as_query_timeout() -> None:
    engine = AggregationEngine(TimingOutStore())
    with pytest.raises(QueryTimeoutError) as excinfo:
        engine.aggregate(Pipeline(MESSAGES, [Match({"chat_id": "c1"})]))
    assert isinstance(excinfo.value.__cause__, TimeoutError)


def test_cancelled_before_start() -> None:
    cancel = threading.Event()
    cancel.set()
    store = FakeStore(_docs())
    with pytest.raises(PipelineCancelled):
        AggregationEngine(store).aggregate(Pipeline(MESSAGES, [Limit(5)]), cancel=cancel)
    assert store.pulled == 0


def test_cancelled_mid_flight() -> None:
    cancel = threading.Event()

    class CancellingStore(FakeStore):
        def find(self, collection: str, filter: Optional[dict] = None) -> Iterator[dict]:
            for document in super().find(collection, filter):
                yield document
                cancel.set()

    store = CancellingStore(_docs())
    with pytest.raises(PipelineCancelled):
        AggregationEngine(store).aggregate(
            Pipeline(MESSAGES, [Sort(("timestamp", ASCENDING))]), cancel=cancel
        )
    assert store.pulled < len(_docs())


def test_size_of_scalar_is_an_error() -> None:
    engine = AggregationEngine(FakeStore([{"_id": "m1", "interactions": {"likes": "Ana"}}]))
    with pytest.raises(PipelineError):
        engine.aggregate(Pipeline(MESSAGES, [Project({"n": Size("interactions.likes")})]))
