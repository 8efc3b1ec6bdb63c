"""SQLite storage adapter.

Implements the core DocumentStorePort by keeping documents in an in-memory
DocumentStore and writing every accepted change through to SQLite. Index
specifications are stored alongside the documents and re-applied on open.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from datetime import datetime
from typing import Any, Callable, Iterable, Iterator, List, Mapping, Optional

from core.config import StoreConfig
from core.indexes import REQUIRED_INDEXES, Index, IndexSpec
from core.store import DocumentStore

LOGGER = logging.getLogger(__name__)


def _encode_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return {"$date": value.isoformat()}
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    raise TypeError(f"Cannot store value of type {type(value).__name__}")


def _decode_hook(value: dict) -> Any:
    if len(value) == 1 and "$date" in value:
        return datetime.fromisoformat(value["$date"])
    return value


def encode_document(document: Mapping[str, Any]) -> str:
    return json.dumps(document, default=_encode_default, ensure_ascii=False, sort_keys=True)


def decode_document(body: str) -> dict:
    return json.loads(body, object_hook=_decode_hook)


class SQLiteDocumentStore:
    """Write-through SQLite persistence that satisfies the DocumentStorePort contract."""

    def __init__(
        self,
        db_path: str,
        config: Optional[StoreConfig] = None,
        indexes: Iterable[IndexSpec] = REQUIRED_INDEXES,
    ) -> None:
        self._db_path = db_path
        self._config = config
        self._default_indexes = tuple(indexes)
        self._engine: Optional[DocumentStore] = None
        self._write_lock = threading.Lock()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        """Create tables if they do not exist.

        Tables:
        - documents: one JSON body per (collection, id)
        - index_specs: index definitions re-applied on every open
        """

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS documents (
                    collection TEXT NOT NULL,
                    id TEXT NOT NULL,
                    body TEXT NOT NULL,
                    PRIMARY KEY (collection, id)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS index_specs (
                    name TEXT PRIMARY KEY,
                    collection TEXT NOT NULL,
                    spec TEXT NOT NULL
                )
                """
            )

    def open(self) -> "SQLiteDocumentStore":
        """Load persisted indexes and documents into a fresh in-memory engine."""

        self.init_db()
        engine = DocumentStore(config=self._config)
        with self._connect() as conn:
            spec_rows = conn.execute("SELECT spec FROM index_specs ORDER BY name").fetchall()
            doc_rows = conn.execute(
                "SELECT collection, body FROM documents ORDER BY rowid"
            ).fetchall()

        specs = [IndexSpec.from_document(json.loads(row["spec"])) for row in spec_rows]
        for spec in [*specs, *self._default_indexes]:
            engine.create_index(spec)
        for row in doc_rows:
            engine.create_collection(row["collection"])
            engine.insert(row["collection"], decode_document(row["body"]))

        self._engine = engine
        for spec in self._default_indexes:
            self._save_spec(spec)
        LOGGER.info(
            "Opened %s: %s documents, %s indexes",
            self._db_path,
            len(doc_rows),
            len(engine.indexes()),
        )
        return self

    @property
    def engine(self) -> DocumentStore:
        if self._engine is None:
            raise RuntimeError("SQLiteDocumentStore.open() must be called first")
        return self._engine

    def _save_spec(self, spec: IndexSpec) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO index_specs (name, collection, spec)
                VALUES (?, ?, ?)
                ON CONFLICT(name) DO NOTHING
                """,
                (spec.name, spec.collection, json.dumps(spec.to_document(), sort_keys=True)),
            )

    def _save_document(self, collection: str, doc_id: str) -> None:
        # The body is read under the lock so the last writer always persists
        # the newest version of the document.
        with self._write_lock:
            document = self.engine.get(collection, doc_id)
            if document is None:
                return
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO documents (collection, id, body)
                    VALUES (?, ?, ?)
                    ON CONFLICT(collection, id) DO UPDATE SET body = excluded.body
                    """,
                    (collection, doc_id, encode_document(document)),
                )

    def create_index(self, spec: IndexSpec) -> Index:
        index = self.engine.create_index(spec)
        self._save_spec(spec)
        return index

    def indexes(self, collection: Optional[str] = None) -> List[IndexSpec]:
        return self.engine.indexes(collection)

    def insert(self, collection: str, document: Mapping[str, Any]) -> str:
        doc_id = self.engine.insert(collection, document)
        self._save_document(collection, doc_id)
        return doc_id

    def update(self, collection: str, doc_id: str, mutate: Callable[[dict], Any]) -> dict:
        updated = self.engine.update(collection, doc_id, mutate)
        self._save_document(collection, doc_id)
        return updated

    def add_to_set(self, collection: str, doc_id: str, path: str, value: Any) -> bool:
        changed = self.engine.add_to_set(collection, doc_id, path, value)
        if changed:
            self._save_document(collection, doc_id)
        return changed

    def set_fields(self, collection: str, doc_id: str, fields: Mapping[str, Any]) -> dict:
        updated = self.engine.set_fields(collection, doc_id, fields)
        self._save_document(collection, doc_id)
        return updated

    def get(self, collection: str, doc_id: str) -> Optional[dict]:
        return self.engine.get(collection, doc_id)

    def find(self, collection: str, filter: Optional[Mapping[str, Any]] = None) -> Iterator[dict]:
        return self.engine.find(collection, filter)

    def scan(
        self, collection: str, predicate: Optional[Callable[[dict], bool]] = None
    ) -> Iterator[dict]:
        return self.engine.scan(collection, predicate)

    def count_rows(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) AS total FROM documents").fetchone()
        return int(row["total"])
