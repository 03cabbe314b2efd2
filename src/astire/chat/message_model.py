"""Chat session, message and pending/executed bookkeeping data models."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional


def _utcnow() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""

    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class Sender(str, Enum):
    """Who authored a message."""

    USER = "USER"
    AI = "AI"


class MessageKind(str, Enum):
    """What a message represents inside the session log."""

    TEXT = "TEXT"
    QUESTION = "QUESTION"
    ACTION = "ACTION"

    @property
    def is_actionable(self) -> bool:
        """True for kinds that must be acknowledged before the next turn."""

        return self is not MessageKind.TEXT


# Payload values are restricted to JSON primitives.
Primitive = str | int | float | bool | None


@dataclass(slots=True)
class ChatMessage:
    """Atomic unit of a session's log."""

    session_id: str
    sender: Sender
    kind: MessageKind = MessageKind.TEXT
    content: str = ""
    action_type: Optional[str] = None
    action_payload: Optional[Dict[str, Primitive]] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=_utcnow)

    def __post_init__(self) -> None:
        self.sender = Sender(self.sender)
        self.kind = MessageKind(self.kind)
        if self.kind.is_actionable and self.sender is not Sender.AI:
            raise ValueError(f"Only AI messages may have kind {self.kind.value}")
        if self.kind is not MessageKind.ACTION:
            self.action_type = None
            self.action_payload = None
        elif self.action_payload is not None:
            self.action_payload = dict(self.action_payload)

    @property
    def is_actionable(self) -> bool:
        return self.kind.is_actionable

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the message using the wire/persistence key names."""

        payload: Dict[str, Any] = {
            "id": self.id,
            "sessionId": self.session_id,
            "sender": self.sender.value,
            "type": self.kind.value,
            "content": self.content,
            "createdAt": self.created_at.isoformat(),
        }
        if self.kind is MessageKind.ACTION:
            payload["actionType"] = self.action_type
            payload["actionPayload"] = dict(self.action_payload) if self.action_payload else None
        return payload

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ChatMessage":
        created_raw = data.get("createdAt")
        created_at = datetime.fromisoformat(created_raw) if created_raw else _utcnow()
        return cls(
            id=str(data["id"]),
            session_id=str(data["sessionId"]),
            sender=Sender(data["sender"]),
            kind=MessageKind(data.get("type", MessageKind.TEXT.value)),
            content=str(data.get("content") or ""),
            action_type=data.get("actionType"),
            action_payload=data.get("actionPayload"),
            created_at=created_at,
        )


@dataclass(slots=True)
class ChatSession:
    """One conversation thread between a user and the model backend."""

    owner_id: str
    goal_id: Optional[str] = None
    name: str = ""
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=_utcnow)
    messages: list[ChatMessage] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.name:
            self.name = f"Session {self.created_at.strftime('%Y-%m-%d %H:%M:%S')}"

    @property
    def key(self) -> tuple[str, Optional[str]]:
        """Canonical (owner, goal) pair; at most one session per key."""

        return (self.owner_id, self.goal_id)

    def to_dict(self, *, include_messages: bool = True) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "ownerId": self.owner_id,
            "goalId": self.goal_id,
            "name": self.name,
            "createdAt": self.created_at.isoformat(),
        }
        if include_messages:
            payload["messages"] = [message.to_dict() for message in self.messages]
        return payload

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ChatSession":
        created_raw = data.get("createdAt")
        session = cls(
            id=str(data["id"]),
            owner_id=str(data["ownerId"]),
            goal_id=data.get("goalId"),
            name=str(data.get("name") or ""),
            created_at=datetime.fromisoformat(created_raw) if created_raw else _utcnow(),
        )
        session.messages = [ChatMessage.from_dict(item) for item in data.get("messages") or []]
        return session


@dataclass(slots=True, frozen=True)
class PendingEntry:
    """Marker recording that a QUESTION/ACTION message is still unacknowledged."""

    message_id: str
    kind: MessageKind

    def to_dict(self) -> Dict[str, str]:
        return {"messageId": self.message_id, "type": self.kind.value}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PendingEntry":
        return cls(message_id=str(data["messageId"]), kind=MessageKind(data["type"]))


@dataclass(slots=True)
class ExecutedAction:
    """Record that an ACTION message's side effect has run.

    The reversal procedure is looked up by ``action_type`` in the action
    registry; ``result`` carries whatever the execute handler returned so the
    compensating handler can reverse exactly that effect.
    """

    message_id: str
    action_type: str
    payload: Dict[str, Primitive] = field(default_factory=dict)
    result: Dict[str, Any] = field(default_factory=dict)
    executed_at: datetime = field(default_factory=_utcnow)
