"""Chat analytics queries.

Each query is a pipeline builder plus a thin method on ChatAnalytics that runs
it. Every leading match pins the fields of one declared index, so the store
never needs a full scan for these queries.
"""

from __future__ import annotations

import threading
from typing import List, Optional

from core.aggregation import (
    AggregationEngine,
    Count,
    Group,
    Limit,
    Match,
    Max,
    Pipeline,
    Project,
    Record,
    Size,
    Sort,
)
from core.indexes import ASCENDING, DESCENDING
from core.models import CHATS, MESSAGES, ContentKind, MessageType, ModerationState


def public_timeline_pipeline(chat_id: str) -> Pipeline:
    return Pipeline(
        MESSAGES,
        [
            Match({"chat_id": chat_id, "type": MessageType.PUBLIC.value}),
            Sort(("timestamp", ASCENDING)),
            Project(
                {
                    "timestamp": "timestamp",
                    "sender": "sender",
                    "text": "content.text",
                    "like_count": Size("interactions.likes"),
                    "report_count": Size("interactions.reports"),
                }
            ),
        ],
    )


def sender_ranking_pipeline(
    chat_id: str, limit: Optional[int] = None, include_last_sent: bool = True
) -> Pipeline:
    """Senders by message count, highest first; equal counts order by alias."""

    reducers = {"message_count": Count()}
    output = {"alias": "_id", "message_count": "message_count"}
    if include_last_sent:
        reducers["last_sent"] = Max("timestamp")
        output["last_sent"] = "last_sent"
    stages = [
        Match({"chat_id": chat_id}),
        Group("sender", reducers),
        Sort(("message_count", DESCENDING), ("_id", ASCENDING)),
    ]
    if limit is not None:
        stages.append(Limit(limit))
    stages.append(Project(output))
    return Pipeline(MESSAGES, stages)


def private_thread_pipeline(chat_id: str, alias: str) -> Pipeline:
    return Pipeline(
        MESSAGES,
        [
            Match(
                {
                    "chat_id": chat_id,
                    "type": MessageType.PRIVATE.value,
                    "$or": [{"sender": alias}, {"recipient": alias}],
                }
            ),
            Project(
                {
                    "timestamp": "timestamp",
                    "sender": "sender",
                    "recipient": "recipient",
                    "text": "content.text",
                    "like_count": Size("interactions.likes"),
                }
            ),
            Sort(("timestamp", ASCENDING)),
        ],
    )


def _message_listing(limit: Optional[int] = None) -> List:
    stages = [
        Project(
            {
                "id": "_id",
                "chat_id": "chat_id",
                "timestamp": "timestamp",
                "type": "type",
                "sender": "sender",
                "recipient": "recipient",
                "kind": "content.kind",
                "text": "content.text",
                "state": "state",
            }
        )
    ]
    if limit is not None:
        stages.insert(0, Limit(limit))
    return stages


class ChatAnalytics:
    """Read-side entry points for reporting tools."""

    def __init__(self, engine: AggregationEngine, timeout: Optional[float] = None) -> None:
        self._engine = engine
        self._timeout = timeout

    def _run(self, pipeline: Pipeline, cancel: Optional[threading.Event]) -> List[Record]:
        return self._engine.aggregate(pipeline, timeout=self._timeout, cancel=cancel)

    def public_timeline(
        self, chat_id: str, cancel: Optional[threading.Event] = None
    ) -> List[Record]:
        """Public messages oldest first, with like and report counts."""

        return self._run(public_timeline_pipeline(chat_id), cancel)

    def most_active_sender(
        self, chat_id: str, cancel: Optional[threading.Event] = None
    ) -> Optional[Record]:
        """Top sender as ``{alias, message_count}``, or None for an empty chat."""

        pipeline = sender_ranking_pipeline(chat_id, limit=1, include_last_sent=False)
        results = self._run(pipeline, cancel)
        return results[0] if results else None

    def sender_ranking(
        self,
        chat_id: str,
        limit: Optional[int] = None,
        cancel: Optional[threading.Event] = None,
    ) -> List[Record]:
        return self._run(sender_ranking_pipeline(chat_id, limit), cancel)

    def private_thread(
        self, chat_id: str, alias: str, cancel: Optional[threading.Event] = None
    ) -> List[Record]:
        """Private messages sent or received by ``alias`` in one chat, oldest first."""

        return self._run(private_thread_pipeline(chat_id, alias), cancel)

    def sender_history(self, alias: str, limit: Optional[int] = None) -> List[Record]:
        pipeline = Pipeline(
            MESSAGES,
            [Match({"sender": alias}), Sort(("timestamp", DESCENDING)), *_message_listing(limit)],
        )
        return self._run(pipeline, None)

    def private_inbox(self, alias: str) -> List[Record]:
        pipeline = Pipeline(
            MESSAGES,
            [
                Match({"recipient": alias, "type": MessageType.PRIVATE.value}),
                Sort(("timestamp", ASCENDING)),
                *_message_listing(),
            ],
        )
        return self._run(pipeline, None)

    def messages_by_state(self, state: ModerationState) -> List[Record]:
        pipeline = Pipeline(
            MESSAGES,
            [
                Match({"state": ModerationState(state).value}),
                Sort(("timestamp", ASCENDING)),
                *_message_listing(),
            ],
        )
        return self._run(pipeline, None)

    def messages_by_kind(self, kind: ContentKind, chat_id: Optional[str] = None) -> List[Record]:
        query = {"content.kind": ContentKind(kind).value}
        if chat_id is not None:
            query["chat_id"] = chat_id
        pipeline = Pipeline(
            MESSAGES,
            [Match(query), Sort(("timestamp", ASCENDING)), *_message_listing()],
        )
        return self._run(pipeline, None)

    def chats_by_recency(self, limit: Optional[int] = None) -> List[Record]:
        stages = [Sort(("stats.last_message", DESCENDING), ("_id", ASCENDING))]
        if limit is not None:
            stages.append(Limit(limit))
        stages.append(
            Project(
                {
                    "chat_id": "_id",
                    "last_message": "stats.last_message",
                    "message_count": "stats.message_count",
                }
            )
        )
        return self._run(Pipeline(CHATS, stages), None)

    def chats_by_creation(self) -> List[Record]:
        pipeline = Pipeline(
            CHATS,
            [
                Sort(("created_at", ASCENDING), ("_id", ASCENDING)),
                Project({"chat_id": "_id", "created_at": "created_at"}),
            ],
        )
        return self._run(pipeline, None)

    def chats_with_active_participant(self, alias: str) -> List[str]:
        pipeline = Pipeline(
            CHATS,
            [
                Match({"participants": {"$elemMatch": {"alias": alias, "active": True}}}),
                Sort(("_id", ASCENDING)),
                Project({"chat_id": "_id"}),
            ],
        )
        return [record["chat_id"] for record in self._run(pipeline, None)]
