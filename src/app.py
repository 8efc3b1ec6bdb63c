"""Application entry point for the chatstore CLI."""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from datetime import datetime
from logging.handlers import RotatingFileHandler
from typing import Any, Optional, Tuple

from art import tprint

import settings
from adapters.formatting import format_index, format_records
from adapters.sqlite_storage import SQLiteDocumentStore
from core.aggregation import AggregationEngine
from core.analytics import ChatAnalytics
from core.chats import ChatService
from core.errors import ChatStoreError
from core.models import content_from_document

NAME = "CHATSTORE"
FONT = "tarty-1"

LOGGER = logging.getLogger(__name__)


def _print_banner() -> None:
    tprint(NAME, FONT, space=1)


def _configure_logging() -> None:
    config = settings.LOGGING or {}
    if not config.get("enabled", False):
        return

    level_name = str(config.get("level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    formatter = logging.Formatter(
        fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    handlers: list[logging.Handler] = []

    if config.get("console", True):
        # Query output goes to stdout, so log lines go to stderr.
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    file_cfg = config.get("file", {})
    if file_cfg.get("enabled", False):
        path = file_cfg.get("path", "logs/chatstore.log")
        if not os.path.isabs(path):
            path = os.path.join(settings.PROJECT_ROOT, path)
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        file_handler = RotatingFileHandler(
            path,
            maxBytes=int(file_cfg.get("max_bytes", 5 * 1024 * 1024)),
            backupCount=int(file_cfg.get("backup_count", 5)),
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    if not handlers:
        return

    logging.basicConfig(level=level, handlers=handlers)


def _parse_time(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return value
    return value


def load_seed(service: ChatService, payload: dict) -> Tuple[int, int]:
    """Load chats and messages from a seed document; returns (chats, messages)."""

    chats = 0
    for entry in payload.get("chats", []):
        service.create_chat(
            entry["chat_id"],
            entry.get("participants", []),
            created_at=_parse_time(entry.get("created_at")),
        )
        chats += 1

    messages = 0
    for entry in payload.get("messages", []):
        message = service.send_message(
            entry["chat_id"],
            entry["sender"],
            content_from_document(entry["content"]),
            recipient=entry.get("recipient"),
            timestamp=_parse_time(entry.get("timestamp")),
            message_id=entry.get("id"),
        )
        for alias in entry.get("likes", []):
            service.like(message.message_id, alias)
        for report in entry.get("reports", []):
            service.report(message.message_id, report["alias"], report.get("reason"))
        if entry.get("state"):
            service.moderate(message.message_id, entry["state"])
        messages += 1
    return chats, messages


def _open_store() -> SQLiteDocumentStore:
    return SQLiteDocumentStore(settings.DB_PATH, config=settings.STORE_CONFIG).open()


def _analytics(store: SQLiteDocumentStore) -> ChatAnalytics:
    engine = AggregationEngine(store)
    return ChatAnalytics(engine, timeout=settings.QUERY_CONFIG.timeout_seconds)


def _run(args: argparse.Namespace) -> None:
    if args.command in {"init", "load"}:
        _print_banner()

    store = _open_store()

    if args.command == "init":
        LOGGER.info("Store ready at %s", settings.DB_PATH)
        return
    if args.command == "load":
        with open(args.file, "r", encoding="utf-8") as handle:
            payload = json.load(handle)
        chats, messages = load_seed(ChatService(store), payload)
        LOGGER.info("Loaded %s chats and %s messages from %s", chats, messages, args.file)
        return
    if args.command == "indexes":
        for spec in store.indexes():
            print(format_index(spec))
        return

    analytics = _analytics(store)
    if args.command == "timeline":
        print(format_records(analytics.public_timeline(args.chat_id)))
    elif args.command == "top-sender":
        print(format_records(analytics.most_active_sender(args.chat_id)))
    elif args.command == "ranking":
        print(format_records(analytics.sender_ranking(args.chat_id, limit=args.limit)))
    elif args.command == "private":
        print(format_records(analytics.private_thread(args.chat_id, args.alias)))


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="chatstore")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init", help="Create the database and required indexes")
    load = subparsers.add_parser("load", help="Import chats and messages from a JSON seed file")
    load.add_argument("file")
    subparsers.add_parser("indexes", help="List registered indexes")

    timeline = subparsers.add_parser("timeline", help="Public messages with interaction counts")
    timeline.add_argument("chat_id")
    top = subparsers.add_parser("top-sender", help="Most active sender in a chat")
    top.add_argument("chat_id")
    ranking = subparsers.add_parser("ranking", help="Senders ranked by message count")
    ranking.add_argument("chat_id")
    ranking.add_argument("--limit", type=int, default=None)
    private = subparsers.add_parser("private", help="Private messages sent or received by an alias")
    private.add_argument("chat_id")
    private.add_argument("alias")

    args = parser.parse_args(argv)
    _configure_logging()
    try:
        _run(args)
    except ChatStoreError:
        LOGGER.exception("Command %s failed", args.command)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
