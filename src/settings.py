"""Static configuration for chatstore.

Database location, query timeouts and logging live in a single JSON file;
environment variables (optionally from a .env file) override the database
path and the query timeout.
"""

import json
import os
from typing import Optional

from dotenv import load_dotenv

from core.config import QueryConfig, StoreConfig

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))

CONFIG_PATH = os.environ.get("CHATSTORE_CONFIG", os.path.join(PROJECT_ROOT, "config.json"))

load_dotenv()


def _load_json_config() -> dict:
    """Load config.json with a flat, user-friendly schema."""

    if not os.path.exists(CONFIG_PATH):
        raise FileNotFoundError(f"Config file not found: {CONFIG_PATH}")

    with open(CONFIG_PATH, "r", encoding="utf-8") as handle:
        return json.load(handle)


def _optional_float(value) -> Optional[float]:
    if value in (None, ""):
        return None
    return float(value)


_CONFIG = _load_json_config()

# Expose the raw config for modules that need structured access.
CONFIG = _CONFIG

# Where to store the SQLite database. Relative paths resolve from the project root.
_database = _CONFIG.get("database", {})
DB_PATH = os.getenv("CHATSTORE_DB_PATH") or _database.get("path", "chatstore.db")
if not os.path.isabs(DB_PATH):
    DB_PATH = os.path.join(PROJECT_ROOT, DB_PATH)

# Query controls.
# - QUERY_TIMEOUT_SECONDS: deadline per aggregation, None disables it
# - WARN_ON_FULL_SCAN: log a warning whenever no index serves a filter
_queries = _CONFIG.get("queries", {})
QUERY_TIMEOUT_SECONDS = _optional_float(
    os.getenv("CHATSTORE_QUERY_TIMEOUT", _queries.get("timeout_seconds"))
)
WARN_ON_FULL_SCAN = bool(_queries.get("warn_on_full_scan", True))

STORE_CONFIG = StoreConfig(warn_on_full_scan=WARN_ON_FULL_SCAN)
QUERY_CONFIG = QueryConfig(timeout_seconds=QUERY_TIMEOUT_SECONDS)

# Logging configuration (optional).
LOGGING = _CONFIG.get("logging", {})
