"""Shared record formatting for the CLI.

Keeping formatting here prevents drift between commands and keeps output
consistent regardless of which query produced the records.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Iterable, Mapping, Union

from core.indexes import ASCENDING, IndexSpec


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    return str(value)


def format_records(records: Union[Mapping[str, Any], Iterable[Mapping[str, Any]], None]) -> str:
    """Render query results as indented JSON; ``None`` renders as ``null``."""

    if records is None or isinstance(records, Mapping):
        payload: Any = records
    else:
        payload = list(records)
    return json.dumps(payload, default=_json_default, ensure_ascii=False, indent=2)


def format_index(spec: IndexSpec) -> str:
    """One-line summary such as ``chat-timeline  messages  chat_id:asc, timestamp:asc``."""

    keys = ", ".join(
        f"{path}:{'asc' if direction == ASCENDING else 'desc'}" for path, direction in spec.keys
    )
    options = []
    if spec.unique:
        options.append("unique")
    if spec.partial_filter:
        options.append(f"partial={json.dumps(spec.partial_filter, sort_keys=True)}")
    suffix = f"  [{'; '.join(options)}]" if options else ""
    return f"{spec.name}  {spec.collection}  {keys}{suffix}"
