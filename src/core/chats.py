"""Write-side chat operations.

The service builds documents from the domain models and applies every
post-creation change as a single-document update, so concurrent senders in
one chat never need more than the store's per-document serialization.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional

from core.errors import NotFoundError, ValidationError
from core.models import (
    CHATS,
    MESSAGES,
    Chat,
    ChatStats,
    Content,
    Message,
    MessageType,
    ModerationState,
    Participant,
    Report,
)
from core.ports import DocumentStorePort

LOGGER = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _is_later(timestamp: Any, last: Any) -> bool:
    if last is None:
        return True
    try:
        return timestamp > last
    except TypeError:
        raise ValidationError(
            f"Timestamp {timestamp!r} cannot be compared with the chat's last message {last!r}"
        ) from None


class ChatService:
    """Creates chats and messages and records interactions."""

    def __init__(self, store: DocumentStorePort, clock: Callable[[], Any] = _utcnow) -> None:
        self._store = store
        self._clock = clock

    def _chat(self, chat_id: str) -> Chat:
        document = self._store.get(CHATS, chat_id)
        if document is None:
            raise NotFoundError(f"Chat {chat_id!r} does not exist")
        return Chat.from_document(document)

    def get_chat(self, chat_id: str) -> Chat:
        return self._chat(chat_id)

    def get_message(self, message_id: str) -> Message:
        document = self._store.get(MESSAGES, message_id)
        if document is None:
            raise NotFoundError(f"Message {message_id!r} does not exist")
        return Message.from_document(document)

    def create_chat(
        self,
        chat_id: str,
        aliases: Iterable[str] = (),
        created_at: Any = None,
    ) -> Chat:
        """Create a chat; duplicate aliases are rejected by the unique index."""

        created_at = self._clock() if created_at is None else created_at
        chat = Chat(
            chat_id=chat_id,
            created_at=created_at,
            participants=tuple(Participant(alias, joined_at=created_at) for alias in aliases),
            stats=ChatStats(),
        )
        self._store.insert(CHATS, chat.to_document())
        LOGGER.info("Created chat %s with %s participants", chat_id, len(chat.participants))
        return chat

    def add_participant(self, chat_id: str, alias: str, joined_at: Any = None) -> Chat:
        participant = Participant(alias, joined_at=self._clock() if joined_at is None else joined_at)

        def _append(document: dict) -> None:
            document.setdefault("participants", []).append(participant.to_document())

        return Chat.from_document(self._update_chat(chat_id, _append))

    def deactivate_participant(self, chat_id: str, alias: str) -> Chat:
        """Soft-remove a participant; their messages stay in place."""

        def _deactivate(document: dict) -> None:
            for item in document.get("participants", []):
                if item.get("alias") == alias:
                    item["active"] = False
                    return
            raise ValidationError(f"{alias!r} is not a participant of {chat_id!r}")

        return Chat.from_document(self._update_chat(chat_id, _deactivate))

    def _update_chat(self, chat_id: str, mutate: Callable[[dict], None]) -> dict:
        try:
            return self._store.update(CHATS, chat_id, mutate)
        except NotFoundError:
            raise NotFoundError(f"Chat {chat_id!r} does not exist") from None

    def send_message(
        self,
        chat_id: str,
        sender: str,
        content: Content,
        recipient: Optional[str] = None,
        timestamp: Any = None,
        message_id: Optional[str] = None,
    ) -> Message:
        """Store a message and fold it into the chat statistics.

        A recipient makes the message private. Sender and recipient must be
        active participants of the chat.
        """

        chat = self._chat(chat_id)
        members = chat.active_aliases()
        if sender not in members:
            raise ValidationError(f"{sender!r} is not an active participant of {chat_id!r}")
        if recipient is not None and recipient not in members:
            raise ValidationError(f"{recipient!r} is not an active participant of {chat_id!r}")

        message = Message(
            message_id=message_id or uuid.uuid4().hex,
            chat_id=chat_id,
            type=MessageType.PRIVATE if recipient is not None else MessageType.PUBLIC,
            sender=sender,
            recipient=recipient,
            timestamp=self._clock() if timestamp is None else timestamp,
            content=content,
        )
        # Must fail before the insert.
        _is_later(message.timestamp, chat.stats.last_message)
        self._store.insert(MESSAGES, message.to_document())

        def _record(document: dict) -> None:
            stats = document.setdefault("stats", {})
            stats["message_count"] = int(stats.get("message_count", 0)) + 1
            if _is_later(message.timestamp, stats.get("last_message")):
                stats["last_message"] = message.timestamp

        self._update_chat(chat_id, _record)
        LOGGER.debug("Stored %s message %s in %s", message.type.value, message.message_id, chat_id)
        return message

    def like(self, message_id: str, alias: str) -> bool:
        """Add ``alias`` to the likes set; returns False if it was already there."""

        return self._store.add_to_set(MESSAGES, message_id, "interactions.likes", alias)

    def report(
        self,
        message_id: str,
        alias: str,
        reason: Optional[str] = None,
        timestamp: Any = None,
    ) -> bool:
        """Record one report per alias; repeated reports are ignored."""

        entry = Report(alias, reason, self._clock() if timestamp is None else timestamp)
        added = False

        def _add(document: dict) -> None:
            nonlocal added
            interactions = document.setdefault("interactions", {})
            reports = interactions.setdefault("reports", [])
            if any(item.get("alias") == alias for item in reports):
                return
            reports.append(entry.to_document())
            added = True

        self._store.update(MESSAGES, message_id, _add)
        return added

    def moderate(self, message_id: str, state: ModerationState) -> Message:
        state = ModerationState(state)
        document = self._store.set_fields(MESSAGES, message_id, {"state": state.value})
        LOGGER.info("Message %s moderation state set to %s", message_id, state.value)
        return Message.from_document(document)
