"""In-memory document store.

Documents are never mutated in place: every write builds a new dict and swaps
it in, so a snapshot taken by a reader stays consistent while writers carry
on. Read-modify-write updates are serialized per document; the collection
lock is only held for the short check-and-swap that keeps indexes in step.
"""

from __future__ import annotations

import copy
import logging
import threading
import uuid
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional

from core.config import StoreConfig
from core.documents import get_path, set_path
from core.errors import NoIndexAvailable, NotFoundError, ValidationError
from core.filters import compile_filter, equality_fields
from core.indexes import Index, IndexCatalog, IndexSpec
from core.models import CHATS, COLLECTION_VALIDATORS, MESSAGES

LOGGER = logging.getLogger(__name__)

Validator = Callable[[dict], None]


class _Collection:
    def __init__(self, name: str, validator: Optional[Validator]) -> None:
        self.name = name
        self.validator = validator
        self.documents: Dict[str, dict] = {}
        self.lock = threading.RLock()
        self._document_locks: Dict[str, threading.Lock] = {}

    def document_lock(self, doc_id: str) -> threading.Lock:
        """Lock serializing updates to one stored document.

        Documents are never deleted, so a lock only exists for an id that is
        stored.
        """

        with self.lock:
            if doc_id not in self.documents:
                raise NotFoundError(f"No document {doc_id!r} in {self.name!r}")
            lock = self._document_locks.get(doc_id)
            if lock is None:
                lock = threading.Lock()
                self._document_locks[doc_id] = lock
            return lock


class DocumentStore:
    """Thread-safe in-memory engine that satisfies DocumentStorePort."""

    def __init__(
        self,
        catalog: Optional[IndexCatalog] = None,
        config: Optional[StoreConfig] = None,
        validators: Optional[Mapping[str, Validator]] = None,
    ) -> None:
        self._catalog = catalog or IndexCatalog()
        self._config = config or StoreConfig()
        self._validators = dict(COLLECTION_VALIDATORS if validators is None else validators)
        self._collections: Dict[str, _Collection] = {}
        self._lock = threading.Lock()
        for name in (CHATS, MESSAGES):
            self.create_collection(name)

    @property
    def catalog(self) -> IndexCatalog:
        return self._catalog

    def create_collection(self, name: str) -> None:
        with self._lock:
            if name not in self._collections:
                self._collections[name] = _Collection(name, self._validators.get(name))

    def _collection(self, name: str) -> _Collection:
        collection = self._collections.get(name)
        if collection is None:
            raise NotFoundError(f"Unknown collection {name!r}")
        return collection

    # Indexes

    def create_index(self, spec: IndexSpec) -> Index:
        """Register an index and backfill it; identical specs are a no-op."""

        collection = self._collection(spec.collection)
        with collection.lock:
            existing = self._catalog.find_equivalent(spec)
            index = self._catalog.register(spec)
            if existing is not None:
                return index
            try:
                for doc_id, document in collection.documents.items():
                    index.check(document, doc_id)
                    index.add(document, doc_id)
            except ValidationError:
                self._catalog.drop(spec.name)
                raise
        return index

    def create_indexes(self, specs: Iterable[IndexSpec]) -> List[Index]:
        return [self.create_index(spec) for spec in specs]

    def indexes(self, collection: Optional[str] = None) -> List[IndexSpec]:
        return [index.spec for index in self._catalog.indexes(collection)]

    # Writes

    def insert(self, collection: str, document: Mapping[str, Any]) -> str:
        """Insert a copy of ``document`` and return its ``_id``.

        Fails with ValidationError before anything becomes visible when a
        required field is missing or a unique index would be violated.
        """

        target = self._collection(collection)
        stored = copy.deepcopy(dict(document))
        doc_id = stored.setdefault("_id", uuid.uuid4().hex)
        if target.validator is not None:
            target.validator(stored)
        with target.lock:
            if doc_id in target.documents:
                raise ValidationError(f"Duplicate _id {doc_id!r} in {collection!r}")
            self._catalog.check(collection, stored, doc_id)
            target.documents[doc_id] = stored
            self._catalog.add(collection, stored, doc_id)
        LOGGER.debug("Inserted %s into %s", doc_id, collection)
        return doc_id

    def update(self, collection: str, doc_id: str, mutate: Callable[[dict], Any]) -> dict:
        """Apply ``mutate`` to a private copy and commit it atomically.

        Updates to the same document are serialized. If validation or a unique
        index rejects the result, the stored document is left unchanged.
        """

        target = self._collection(collection)
        with target.document_lock(doc_id):
            current = target.documents.get(doc_id)
            if current is None:
                raise NotFoundError(f"No document {doc_id!r} in {collection!r}")
            updated = copy.deepcopy(current)
            mutate(updated)
            if updated.get("_id") != doc_id:
                raise ValidationError("_id is immutable")
            if target.validator is not None:
                target.validator(updated)
            with target.lock:
                self._catalog.check(collection, updated, doc_id)
                target.documents[doc_id] = updated
                self._catalog.add(collection, updated, doc_id)
        return copy.deepcopy(updated)

    def add_to_set(self, collection: str, doc_id: str, path: str, value: Any) -> bool:
        """Set-union ``value`` into the list at ``path``; False if already present."""

        changed = False

        def _merge(document: dict) -> None:
            nonlocal changed
            values = get_path(document, path)
            values = list(values) if isinstance(values, list) else []
            if value in values:
                return
            values.append(value)
            set_path(document, path, values)
            changed = True

        self.update(collection, doc_id, _merge)
        return changed

    def push(self, collection: str, doc_id: str, path: str, value: Any) -> dict:
        def _append(document: dict) -> None:
            values = get_path(document, path)
            values = list(values) if isinstance(values, list) else []
            values.append(copy.deepcopy(value))
            set_path(document, path, values)

        return self.update(collection, doc_id, _append)

    def set_fields(self, collection: str, doc_id: str, fields: Mapping[str, Any]) -> dict:
        def _assign(document: dict) -> None:
            for path, value in fields.items():
                set_path(document, path, copy.deepcopy(value))

        return self.update(collection, doc_id, _assign)

    # Reads

    def get(self, collection: str, doc_id: str) -> Optional[dict]:
        document = self._collection(collection).documents.get(doc_id)
        return copy.deepcopy(document) if document is not None else None

    def snapshot(self, collection: str) -> List[dict]:
        """Point-in-time copy of every document in the collection."""

        target = self._collection(collection)
        with target.lock:
            documents = list(target.documents.values())
        return [copy.deepcopy(document) for document in documents]

    def count(self, collection: str) -> int:
        return len(self._collection(collection).documents)

    def scan(self, collection: str, predicate: Optional[Callable[[dict], bool]] = None) -> Iterator[dict]:
        """Lazy full scan over a point-in-time view."""

        target = self._collection(collection)
        with target.lock:
            documents = list(target.documents.values())
        return (
            copy.deepcopy(document)
            for document in documents
            if predicate is None or predicate(document)
        )

    def find(self, collection: str, filter: Optional[Mapping[str, Any]] = None) -> Iterator[dict]:
        """Lazy filtered read; uses the best index and falls back to a scan."""

        predicate = compile_filter(filter)
        target = self._collection(collection)
        equalities = equality_fields(filter)
        with target.lock:
            candidates = self._candidates(target, equalities)
        return (copy.deepcopy(document) for document in candidates if predicate(document))

    def _candidates(self, target: _Collection, equalities: Mapping[str, Any]) -> List[dict]:
        if equalities:
            try:
                index, prefix = self._catalog.choose_index(target.name, equalities)
            except NoIndexAvailable as exc:
                if self._config.warn_on_full_scan:
                    LOGGER.warning("Full scan on %s: %s", target.name, exc)
            else:
                LOGGER.debug("Using index %s for %s", index.name, target.name)
                documents = target.documents
                return [documents[doc_id] for doc_id in index.lookup(prefix) if doc_id in documents]
        return list(target.documents.values())

