"""Core configuration dataclasses.

Config parsing stays outside the core; these dataclasses define the shape the
core expects so the settings module and tests can build them safely.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class StoreConfig:
    """Document store behaviour."""

    warn_on_full_scan: bool = True


@dataclass(frozen=True)
class QueryConfig:
    """Aggregation settings consumed by the analytics layer."""

    timeout_seconds: Optional[float] = None
