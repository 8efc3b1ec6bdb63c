"""Error taxonomy shared by the store, the index catalog and the engine.

Validation and pipeline errors surface to callers unchanged. NoIndexAvailable
is recovered inside the store by falling back to a full scan.
"""

from __future__ import annotations

from typing import Iterable


class ChatStoreError(Exception):
    """Base class for every error raised by chatstore."""


class ValidationError(ChatStoreError):
    """A write was rejected before persistence (uniqueness or required field)."""


class NotFoundError(ChatStoreError):
    """A write referenced a chat or message that does not exist."""


class IndexConflictError(ChatStoreError):
    """An index name was re-registered with a different definition."""


class NoIndexAvailable(ChatStoreError):
    """No registered index can serve the query shape."""

    def __init__(self, collection: str, fields: Iterable[str]) -> None:
        self.collection = collection
        self.fields = tuple(sorted(fields))
        super().__init__(
            f"No index on {collection!r} covers fields {', '.join(self.fields) or '(none)'}"
        )


class PipelineError(ChatStoreError):
    """An aggregation stage is malformed or cannot be evaluated."""


class PipelineCancelled(ChatStoreError):
    """An in-flight aggregation was cancelled; partial results were discarded."""


class QueryTimeoutError(ChatStoreError, TimeoutError):
    """The store did not produce a complete result before the deadline."""
