"""Ports (interfaces) used by the core.

The aggregation engine and the chat service only depend on this contract, so
the in-memory engine and the SQLite-backed adapter are interchangeable.
"""

from __future__ import annotations

from typing import Any, Callable, Iterator, List, Mapping, Optional, Protocol

from core.indexes import Index, IndexSpec


class DocumentStorePort(Protocol):
    """Storage operations required by the aggregation engine and services."""

    def create_index(self, spec: IndexSpec) -> Index:
        ...

    def indexes(self, collection: Optional[str] = None) -> List[IndexSpec]:
        ...

    def insert(self, collection: str, document: Mapping[str, Any]) -> str:
        ...

    def update(self, collection: str, doc_id: str, mutate: Callable[[dict], Any]) -> dict:
        ...

    def add_to_set(self, collection: str, doc_id: str, path: str, value: Any) -> bool:
        ...

    def set_fields(self, collection: str, doc_id: str, fields: Mapping[str, Any]) -> dict:
        ...

    def get(self, collection: str, doc_id: str) -> Optional[dict]:
        ...

    def find(self, collection: str, filter: Optional[Mapping[str, Any]] = None) -> Iterator[dict]:
        ...

    def scan(
        self, collection: str, predicate: Optional[Callable[[dict], bool]] = None
    ) -> Iterator[dict]:
        ...
