from __future__ import annotations

import json
import os
from datetime import datetime

from adapters.formatting import format_index, format_records
from app import load_seed
from core.aggregation import AggregationEngine
from core.analytics import ChatAnalytics
from core.chats import ChatService
from core.indexes import REQUIRED_INDEXES
from core.store import DocumentStore

SEED_PATH = os.path.join(os.path.dirname(__file__), "..", "data", "partida_uru_2025_final.json")


def test_load_seed_feeds_the_canonical_queries() -> None:
    store = DocumentStore()
    store.create_indexes(REQUIRED_INDEXES)
    with open(SEED_PATH, "r", encoding="utf-8") as handle:
        payload = json.load(handle)

    assert load_seed(ChatService(store), payload) == (1, 4)

    analytics = ChatAnalytics(AggregationEngine(store))
    timeline = analytics.public_timeline("PARTIDA_URU_2025_FINAL")
    assert [(row["sender"], row["like_count"], row["report_count"]) for row in timeline] == [
        ("Ana", 2, 0),
        ("Lucia", 0, 1),
        ("Ana", 0, 0),
    ]
    assert isinstance(timeline[0]["timestamp"], datetime)
    assert analytics.most_active_sender("PARTIDA_URU_2025_FINAL") == {
        "alias": "Ana",
        "message_count": 2,
    }
    thread = analytics.private_thread("PARTIDA_URU_2025_FINAL", "Seba")
    assert [(row["sender"], row["recipient"], row["like_count"]) for row in thread] == [
        ("Seba", "Ana", 1)
    ]


def test_format_records_renders_json() -> None:
    rendered = format_records([{"timestamp": datetime(2025, 1, 1), "likes": {"Ana"}}])
    assert json.loads(rendered) == [{"timestamp": "2025-01-01T00:00:00", "likes": ["Ana"]}]
    assert format_records(None) == "null"


def test_format_index_lists_options() -> None:
    by_name = {spec.name: spec for spec in REQUIRED_INDEXES}
    assert format_index(by_name["sender-history"]) == "sender-history  messages  sender:asc, timestamp:desc"
    assert "[unique]" in format_index(by_name["unique-participant"])
    assert 'partial={"participants.active": true}' in format_index(by_name["active-participants"])
