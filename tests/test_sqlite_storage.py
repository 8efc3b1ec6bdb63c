from __future__ import annotations

import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from adapters.sqlite_storage import SQLiteDocumentStore, decode_document, encode_document
from core.aggregation import AggregationEngine
from core.analytics import ChatAnalytics
from core.chats import ChatService
from core.errors import ValidationError
from core.indexes import ASCENDING, REQUIRED_INDEXES, IndexSpec
from core.models import CHATS, MESSAGES, TextContent

START = datetime(2025, 3, 1, 20, 0, tzinfo=timezone.utc)


def _seed(store: SQLiteDocumentStore) -> None:
    service = ChatService(store)
    service.create_chat("PARTIDA_URU_2025_FINAL", ["Ana", "Seba"], created_at=START)
    first = service.send_message(
        "PARTIDA_URU_2025_FINAL", "Ana", TextContent("hola"), timestamp=START + timedelta(minutes=1)
    )
    service.send_message(
        "PARTIDA_URU_2025_FINAL",
        "Seba",
        TextContent("psst"),
        recipient="Ana",
        timestamp=START + timedelta(minutes=2),
    )
    service.like(first.message_id, "Seba")


def test_documents_survive_reopen(tmp_path) -> None:
    path = str(tmp_path / "chatstore.db")
    _seed(SQLiteDocumentStore(path).open())

    reopened = SQLiteDocumentStore(path).open()
    analytics = ChatAnalytics(AggregationEngine(reopened))

    timeline = analytics.public_timeline("PARTIDA_URU_2025_FINAL")
    assert timeline == [
        {
            "timestamp": START + timedelta(minutes=1),
            "sender": "Ana",
            "text": "hola",
            "like_count": 1,
            "report_count": 0,
        }
    ]
    assert analytics.most_active_sender("PARTIDA_URU_2025_FINAL") == {
        "alias": "Ana",
        "message_count": 1,
    }
    chat = reopened.get(CHATS, "PARTIDA_URU_2025_FINAL")
    assert chat["stats"]["message_count"] == 2
    assert chat["created_at"] == START


def test_index_specs_are_reapplied_idempotently(tmp_path) -> None:
    path = str(tmp_path / "chatstore.db")
    store = SQLiteDocumentStore(path).open()
    store.create_index(IndexSpec("by-chat-state", MESSAGES, (("chat_id", ASCENDING), ("state", ASCENDING))))

    reopened = SQLiteDocumentStore(path).open()
    names = sorted(spec.name for spec in reopened.indexes())
    assert names == sorted([spec.name for spec in REQUIRED_INDEXES] + ["by-chat-state"])

    again = SQLiteDocumentStore(path).open()
    assert len(again.indexes()) == len(REQUIRED_INDEXES) + 1
    with sqlite3.connect(path) as conn:
        (rows,) = conn.execute("SELECT COUNT(*) FROM index_specs").fetchone()
    assert rows == len(REQUIRED_INDEXES) + 1


def test_rejected_write_never_reaches_disk(tmp_path) -> None:
    path = str(tmp_path / "chatstore.db")
    store = SQLiteDocumentStore(path).open()
    _seed(store)
    rows_before = store.count_rows()

    with pytest.raises(ValidationError):
        ChatService(store).add_participant("PARTIDA_URU_2025_FINAL", "Ana")
    with pytest.raises(ValidationError):
        ChatService(store).create_chat("PARTIDA_URU_2025_FINAL", ["Lucia"])

    assert store.count_rows() == rows_before
    reopened = SQLiteDocumentStore(path).open()
    aliases = [p["alias"] for p in reopened.get(CHATS, "PARTIDA_URU_2025_FINAL")["participants"]]
    assert aliases == ["Ana", "Seba"]


def test_engine_requires_open(tmp_path) -> None:
    store = SQLiteDocumentStore(str(tmp_path / "chatstore.db"))
    with pytest.raises(RuntimeError):
        store.get(CHATS, "anything")


def test_datetimes_round_trip_through_json() -> None:
    document = {"_id": "m1", "timestamp": START, "nested": {"when": [START]}}
    assert decode_document(encode_document(document)) == document
