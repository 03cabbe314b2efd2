"""Chat session model, stream parser, pending queue and session store."""

from .event_parser import StreamEventParser, StructuredEvent, TextDelta, parse_stream
from .message_model import ChatMessage, ChatSession, ExecutedAction, MessageKind, PendingEntry, Sender
from .pending_queue import PendingQueue
from .persistence import InMemorySessionBackend, JsonFileSessionBackend, SessionBackend, SessionSnapshot
from .session_store import (
    MessageImmutableError,
    MessageNotFoundError,
    SessionNotFoundError,
    SessionStore,
)

__all__ = [
    "ChatMessage",
    "ChatSession",
    "ExecutedAction",
    "InMemorySessionBackend",
    "JsonFileSessionBackend",
    "MessageImmutableError",
    "MessageKind",
    "MessageNotFoundError",
    "PendingEntry",
    "PendingQueue",
    "Sender",
    "SessionBackend",
    "SessionNotFoundError",
    "SessionSnapshot",
    "SessionStore",
    "StreamEventParser",
    "StructuredEvent",
    "TextDelta",
    "parse_stream",
]
