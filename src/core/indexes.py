"""Index catalog.

The catalog holds no documents. Each index maps key tuples to the ids of the
documents that produce them, which is enough to narrow a lookup and to
enforce uniqueness before a write becomes visible.
"""

from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple

from core.documents import MISSING, get_path, hashable
from core.errors import IndexConflictError, NoIndexAvailable, ValidationError
from core.filters import compile_filter, equality_fields
from core.models import CHATS, MESSAGES

LOGGER = logging.getLogger(__name__)

ASCENDING = 1
DESCENDING = -1

IndexKey = Tuple[Any, ...]


@dataclass(frozen=True)
class IndexSpec:
    """Declarative index definition, persisted as configuration data."""

    name: str
    collection: str
    keys: Tuple[Tuple[str, int], ...]
    unique: bool = False
    partial_filter: Optional[Mapping[str, Any]] = field(default=None, hash=False)

    def __post_init__(self) -> None:
        if not self.keys:
            raise ValueError(f"Index {self.name!r} needs at least one key")
        for path, direction in self.keys:
            if direction not in (ASCENDING, DESCENDING):
                raise ValueError(f"Index {self.name!r}: bad direction {direction!r} for {path!r}")

    @property
    def fields(self) -> Tuple[str, ...]:
        return tuple(path for path, _ in self.keys)

    def same_definition(self, other: "IndexSpec") -> bool:
        """True when both specs index the same keys with the same options."""

        return (
            self.collection == other.collection
            and self.keys == other.keys
            and self.unique == other.unique
            and dict(self.partial_filter or {}) == dict(other.partial_filter or {})
        )

    def to_document(self) -> dict:
        return {
            "name": self.name,
            "collection": self.collection,
            "keys": [[path, direction] for path, direction in self.keys],
            "unique": self.unique,
            "partial_filter": dict(self.partial_filter) if self.partial_filter else None,
        }

    @classmethod
    def from_document(cls, document: dict) -> "IndexSpec":
        return cls(
            name=document["name"],
            collection=document["collection"],
            keys=tuple((path, int(direction)) for path, direction in document["keys"]),
            unique=bool(document.get("unique", False)),
            partial_filter=document.get("partial_filter") or None,
        )


REQUIRED_INDEXES: Tuple[IndexSpec, ...] = (
    IndexSpec("by-creation", CHATS, (("created_at", ASCENDING),)),
    IndexSpec("by-last-message", CHATS, (("stats.last_message", DESCENDING),)),
    IndexSpec(
        "active-participants",
        CHATS,
        (("participants.alias", ASCENDING),),
        partial_filter={"participants.active": True},
    ),
    IndexSpec(
        "unique-participant",
        CHATS,
        (("_id", ASCENDING), ("participants.alias", ASCENDING)),
        unique=True,
    ),
    IndexSpec("chat-timeline", MESSAGES, (("chat_id", ASCENDING), ("timestamp", ASCENDING))),
    IndexSpec(
        "private-thread",
        MESSAGES,
        (
            ("chat_id", ASCENDING),
            ("type", ASCENDING),
            ("sender", ASCENDING),
            ("recipient", ASCENDING),
        ),
    ),
    IndexSpec("sender-history", MESSAGES, (("sender", ASCENDING), ("timestamp", DESCENDING))),
    IndexSpec(
        "recipient-history", MESSAGES, (("recipient", ASCENDING), ("timestamp", DESCENDING))
    ),
    IndexSpec("sender-per-chat", MESSAGES, (("chat_id", ASCENDING), ("sender", ASCENDING))),
    IndexSpec(
        "recipient-by-time-asc", MESSAGES, (("recipient", ASCENDING), ("timestamp", ASCENDING))
    ),
    IndexSpec("by-moderation-state", MESSAGES, (("state", ASCENDING),)),
    IndexSpec("by-content-kind", MESSAGES, (("content.kind", ASCENDING),)),
)


class Index:
    """Live lookup structure for one IndexSpec."""

    def __init__(self, spec: IndexSpec) -> None:
        self.spec = spec
        self._covers = compile_filter(spec.partial_filter) if spec.partial_filter else None
        # _prefixes[n] maps the first n+1 key values to owning document ids.
        self._prefixes: List[Dict[IndexKey, Set[str]]] = [{} for _ in spec.keys]
        self._owned: Dict[str, List[IndexKey]] = {}
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return self.spec.name

    def covers(self, document: dict) -> bool:
        return self._covers is None or self._covers(document)

    def keys_for(self, document: dict) -> List[IndexKey]:
        """Key tuples for a document; array paths produce one key per element."""

        if not self.covers(document):
            return []
        per_field = []
        for path in self.spec.fields:
            value = get_path(document, path)
            if value is MISSING:
                per_field.append([None])
            elif isinstance(value, list):
                per_field.append([hashable(item) for item in value] or [None])
            else:
                per_field.append([hashable(value)])
        return [tuple(combo) for combo in itertools.product(*per_field)]

    def check(self, document: dict, owner_id: str) -> None:
        """Raise ValidationError if the document would break uniqueness."""

        if not self.spec.unique:
            return
        keys = self.keys_for(document)
        if len(set(keys)) != len(keys):
            raise ValidationError(
                f"Duplicate key inside document {owner_id!r} for unique index {self.name!r}"
            )
        full = self._prefixes[-1]
        with self._lock:
            for key in keys:
                others = full.get(key, set()) - {owner_id}
                if others:
                    raise ValidationError(
                        f"Unique index {self.name!r} violated by key {key!r}"
                    )

    def add(self, document: dict, owner_id: str) -> None:
        keys = self.keys_for(document)
        with self._lock:
            self._discard(owner_id)
            if not keys:
                return
            self._owned[owner_id] = keys
            for key in keys:
                for depth, bucket in enumerate(self._prefixes):
                    bucket.setdefault(key[: depth + 1], set()).add(owner_id)

    def _discard(self, owner_id: str) -> None:
        for key in self._owned.pop(owner_id, []):
            for depth, bucket in enumerate(self._prefixes):
                prefix = key[: depth + 1]
                owners = bucket.get(prefix)
                if owners is None:
                    continue
                owners.discard(owner_id)
                if not owners:
                    del bucket[prefix]

    def lookup(self, prefix: IndexKey) -> Set[str]:
        """Ids of documents whose leading key values equal ``prefix``."""

        if not prefix or len(prefix) > len(self._prefixes):
            raise ValueError(f"Prefix length {len(prefix)} invalid for index {self.name!r}")
        with self._lock:
            return set(self._prefixes[len(prefix) - 1].get(tuple(prefix), ()))


class IndexCatalog:
    """Registry of indexes per collection, with access-path selection."""

    def __init__(self) -> None:
        self._indexes: Dict[str, Index] = {}
        self._lock = threading.Lock()

    def find_equivalent(self, spec: IndexSpec) -> Optional[Index]:
        with self._lock:
            existing = self._indexes.get(spec.name)
            if existing is not None:
                return existing
            for index in self._indexes.values():
                if index.spec.same_definition(spec):
                    return index
        return None

    def register(self, spec: IndexSpec) -> Index:
        """Register an index; an identical re-registration is a no-op."""

        with self._lock:
            existing = self._indexes.get(spec.name)
            if existing is not None:
                if existing.spec.same_definition(spec):
                    return existing
                raise IndexConflictError(
                    f"Index {spec.name!r} already exists with a different definition"
                )
            for index in self._indexes.values():
                if index.spec.same_definition(spec):
                    LOGGER.debug("Index %s already covered by %s", spec.name, index.name)
                    return index
            index = Index(spec)
            self._indexes[spec.name] = index
        LOGGER.info("Registered index %s on %s", spec.name, spec.collection)
        return index

    def drop(self, name: str) -> None:
        with self._lock:
            self._indexes.pop(name, None)

    def indexes(self, collection: Optional[str] = None) -> List[Index]:
        with self._lock:
            found = list(self._indexes.values())
        if collection is None:
            return found
        return [index for index in found if index.spec.collection == collection]

    def choose_index(self, collection: str, equalities: Mapping[str, Any]) -> Tuple[Index, IndexKey]:
        """Pick the index with the longest key prefix pinned by ``equalities``.

        Returns the index and the prefix values to look up. Partial indexes are
        only eligible when the query pins their filter to the same values.
        Ties prefer the shorter index, then the name.
        """

        best: Optional[Tuple[int, int, str]] = None
        chosen: Optional[Index] = None
        for index in self.indexes(collection):
            if index.spec.partial_filter and not _implies(equalities, index.spec.partial_filter):
                continue
            depth = 0
            for path in index.spec.fields:
                if path not in equalities:
                    break
                depth += 1
            if depth == 0:
                continue
            rank = (-depth, len(index.spec.keys), index.name)
            if best is None or rank < best:
                best = rank
                chosen = index
        if chosen is None or best is None:
            raise NoIndexAvailable(collection, equalities.keys())
        depth = -best[0]
        prefix = tuple(hashable(equalities[path]) for path in chosen.spec.fields[:depth])
        return chosen, prefix

    def check(self, collection: str, document: dict, owner_id: str) -> None:
        for index in self.indexes(collection):
            index.check(document, owner_id)

    def add(self, collection: str, document: dict, owner_id: str) -> None:
        for index in self.indexes(collection):
            index.add(document, owner_id)

    def __contains__(self, name: object) -> bool:
        return name in self._indexes

    def __len__(self) -> int:
        return len(self._indexes)


def _implies(equalities: Mapping[str, Any], partial_filter: Mapping[str, Any]) -> bool:
    required = equality_fields(partial_filter)
    if len(required) != len(partial_filter):
        return False
    return all(path in equalities and equalities[path] == value for path, value in required.items())

