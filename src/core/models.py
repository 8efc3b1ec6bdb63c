"""Core domain models.

Documents live in the store as plain dicts; these dataclasses build and read
them so the rest of the code never guesses at field names.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Tuple, Union

from core.errors import ValidationError

CHATS = "chats"
MESSAGES = "messages"


class MessageType(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"


class ContentKind(str, Enum):
    TEXT = "text"
    PROPOSAL = "proposal"
    VOTE = "vote"
    ACTION = "action"


class ModerationState(str, Enum):
    ACTIVE = "active"
    MODERATED = "moderated"
    REMOVED = "removed"


@dataclass(frozen=True)
class Participant:
    alias: str
    active: bool = True
    joined_at: Optional[datetime] = None

    def to_document(self) -> dict:
        return {"alias": self.alias, "active": self.active, "joined_at": self.joined_at}

    @classmethod
    def from_document(cls, document: dict) -> "Participant":
        return cls(
            alias=document["alias"],
            active=bool(document.get("active", True)),
            joined_at=document.get("joined_at"),
        )


@dataclass(frozen=True)
class ChatStats:
    message_count: int = 0
    last_message: Any = None


@dataclass(frozen=True)
class Chat:
    """A conversation; the chat id is the document ``_id``."""

    chat_id: str
    created_at: Any
    participants: Tuple[Participant, ...] = ()
    stats: ChatStats = field(default_factory=ChatStats)

    def active_aliases(self) -> set[str]:
        return {p.alias for p in self.participants if p.active}

    def to_document(self) -> dict:
        return {
            "_id": self.chat_id,
            "created_at": self.created_at,
            "participants": [p.to_document() for p in self.participants],
            "stats": {
                "message_count": self.stats.message_count,
                "last_message": self.stats.last_message,
            },
        }

    @classmethod
    def from_document(cls, document: dict) -> "Chat":
        stats = document.get("stats") or {}
        return cls(
            chat_id=document["_id"],
            created_at=document.get("created_at"),
            participants=tuple(
                Participant.from_document(item) for item in document.get("participants", [])
            ),
            stats=ChatStats(
                message_count=int(stats.get("message_count", 0)),
                last_message=stats.get("last_message"),
            ),
        )


# Content is a tagged variant: the ``kind`` field selects the payload shape.


@dataclass(frozen=True)
class TextContent:
    text: str
    kind: ContentKind = field(default=ContentKind.TEXT, init=False)

    def payload(self) -> dict:
        return {}


@dataclass(frozen=True)
class ProposalContent:
    text: str
    options: Tuple[str, ...] = ()
    kind: ContentKind = field(default=ContentKind.PROPOSAL, init=False)

    def payload(self) -> dict:
        return {"options": list(self.options)}


@dataclass(frozen=True)
class VoteContent:
    proposal_id: str
    choice: str
    text: Optional[str] = None
    kind: ContentKind = field(default=ContentKind.VOTE, init=False)

    def payload(self) -> dict:
        return {"proposal_id": self.proposal_id, "choice": self.choice}


@dataclass(frozen=True)
class ActionContent:
    action: str
    target: Optional[str] = None
    text: Optional[str] = None
    kind: ContentKind = field(default=ContentKind.ACTION, init=False)

    def payload(self) -> dict:
        return {"action": self.action, "target": self.target}


Content = Union[TextContent, ProposalContent, VoteContent, ActionContent]


def content_to_document(content: Content) -> dict:
    document = {"kind": content.kind.value, "text": content.text}
    document.update(content.payload())
    return document


def content_from_document(document: dict) -> Content:
    """Rebuild a content variant, rejecting unknown kinds."""

    if not isinstance(document, dict):
        raise ValidationError("content must be a mapping")
    try:
        kind = ContentKind(document.get("kind"))
    except ValueError:
        raise ValidationError(f"Unsupported content kind: {document.get('kind')!r}") from None

    try:
        if kind is ContentKind.TEXT:
            return TextContent(text=document["text"])
        if kind is ContentKind.PROPOSAL:
            return ProposalContent(
                text=document["text"], options=tuple(document.get("options") or ())
            )
        if kind is ContentKind.VOTE:
            return VoteContent(
                proposal_id=document["proposal_id"],
                choice=document["choice"],
                text=document.get("text"),
            )
        return ActionContent(
            action=document["action"],
            target=document.get("target"),
            text=document.get("text"),
        )
    except KeyError as exc:
        raise ValidationError(f"{kind.value} content is missing {exc.args[0]!r}") from None


@dataclass(frozen=True)
class Report:
    alias: str
    reason: Optional[str] = None
    timestamp: Any = None

    def to_document(self) -> dict:
        return {"alias": self.alias, "reason": self.reason, "timestamp": self.timestamp}


@dataclass(frozen=True)
class Interactions:
    likes: frozenset = frozenset()
    reports: Tuple[Report, ...] = ()

    def to_document(self) -> dict:
        return {
            "likes": sorted(self.likes),
            "reports": [report.to_document() for report in self.reports],
        }


@dataclass(frozen=True)
class Message:
    message_id: str
    chat_id: str
    type: MessageType
    sender: str
    timestamp: Any
    content: Content
    recipient: Optional[str] = None
    state: ModerationState = ModerationState.ACTIVE
    interactions: Interactions = field(default_factory=Interactions)

    def to_document(self) -> dict:
        document = {
            "_id": self.message_id,
            "chat_id": self.chat_id,
            "type": self.type.value,
            "sender": self.sender,
            "timestamp": self.timestamp,
            "content": content_to_document(self.content),
            "state": self.state.value,
            "interactions": self.interactions.to_document(),
        }
        if self.recipient is not None:
            document["recipient"] = self.recipient
        validate_message_document(document)
        return document

    @classmethod
    def from_document(cls, document: dict) -> "Message":
        interactions = document.get("interactions") or {}
        return cls(
            message_id=document["_id"],
            chat_id=document["chat_id"],
            type=MessageType(document["type"]),
            sender=document["sender"],
            timestamp=document["timestamp"],
            content=content_from_document(document["content"]),
            recipient=document.get("recipient"),
            state=ModerationState(document.get("state", ModerationState.ACTIVE.value)),
            interactions=Interactions(
                likes=frozenset(interactions.get("likes") or ()),
                reports=tuple(
                    Report(
                        alias=item["alias"],
                        reason=item.get("reason"),
                        timestamp=item.get("timestamp"),
                    )
                    for item in interactions.get("reports") or ()
                ),
            ),
        )


def _require(document: dict, name: str, collection: str) -> Any:
    value = document.get(name)
    if value is None or value == "":
        raise ValidationError(f"{collection} document is missing required field {name!r}")
    return value


def validate_chat_document(document: dict) -> None:
    """Reject chat documents with malformed participant lists."""

    participants = document.get("participants", [])
    if not isinstance(participants, list):
        raise ValidationError("participants must be a list")
    for participant in participants:
        if not isinstance(participant, dict) or not participant.get("alias"):
            raise ValidationError("every participant needs a non-empty alias")


def validate_message_document(document: dict) -> None:
    """Enforce the required fields and the public/private recipient rule."""

    _require(document, "chat_id", MESSAGES)
    _require(document, "sender", MESSAGES)
    if document.get("timestamp") is None:
        raise ValidationError("messages document is missing required field 'timestamp'")

    try:
        message_type = MessageType(document.get("type"))
    except ValueError:
        raise ValidationError(f"Unsupported message type: {document.get('type')!r}") from None

    recipient = document.get("recipient")
    if message_type is MessageType.PRIVATE:
        if not recipient:
            raise ValidationError("private messages require a recipient")
        if recipient == document["sender"]:
            raise ValidationError("private messages cannot be addressed to the sender")
    elif recipient is not None:
        raise ValidationError("public messages cannot have a recipient")

    content_from_document(_require(document, "content", MESSAGES))

    state = document.get("state")
    if state is not None:
        try:
            ModerationState(state)
        except ValueError:
            raise ValidationError(f"Unsupported moderation state: {state!r}") from None

    interactions = document.get("interactions")
    if interactions is not None:
        if not isinstance(interactions, dict):
            raise ValidationError("interactions must be a mapping")
        for name in ("likes", "reports"):
            if not isinstance(interactions.get(name, []), list):
                raise ValidationError(f"interactions.{name} must be a list")


COLLECTION_VALIDATORS = {
    CHATS: validate_chat_document,
    MESSAGES: validate_message_document,
}

# Field paths each collection can produce; pipelines are checked against these.
COLLECTION_FIELDS = {
    CHATS: frozenset(
        {
            "_id",
            "created_at",
            "participants",
            "participants.alias",
            "participants.active",
            "participants.joined_at",
            "stats",
            "stats.message_count",
            "stats.last_message",
        }
    ),
    MESSAGES: frozenset(
        {
            "_id",
            "chat_id",
            "type",
            "sender",
            "recipient",
            "timestamp",
            "content",
            "content.kind",
            "content.text",
            "content.options",
            "content.proposal_id",
            "content.choice",
            "content.action",
            "content.target",
            "state",
            "interactions",
            "interactions.likes",
            "interactions.reports",
            "interactions.reports.alias",
            "interactions.reports.reason",
            "interactions.reports.timestamp",
        }
    ),
}
