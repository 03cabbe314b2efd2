"""Event bus used to observe chat sessions without coupling to the engine.

Consumers (a CLI, a web socket bridge, tests) subscribe to the event types
they care about; the session store, action executor and orchestrator publish
them as state changes happen.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import (
    Any,
    Callable,
    Generic,
    TypeVar,
    TYPE_CHECKING,
)
from weakref import WeakMethod, ref

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from typing import DefaultDict

logger = logging.getLogger(__name__)

E = TypeVar("E", bound="Event")

Handler = Callable[[E], None]


@dataclass(slots=True)
class Event:
    """Base class for all events in the system."""

    pass


# =============================================================================
# Session store events
# =============================================================================


@dataclass(slots=True)
class SessionCreated(Event):
    """Emitted when a new chat session is created.

    Attributes:
        session_id: Identifier of the new session.
        owner_id: Owning user.
        goal_id: Goal the session is attached to, ``None`` for general chat.
    """

    session_id: str
    owner_id: str
    goal_id: str | None = None


@dataclass(slots=True)
class MessageAppended(Event):
    """Emitted after a message has been appended to a session log."""

    session_id: str
    message_id: str
    sender: str
    kind: str


@dataclass(slots=True)
class MessageContentUpdated(Event):
    """Emitted when a streaming AI text message grows.

    Attributes:
        session_id: Owning session.
        message_id: The running AI text message.
        content: Full content after the update.
        delta: The text appended by this update.
    """

    session_id: str
    message_id: str
    content: str
    delta: str = ""


@dataclass(slots=True)
class PendingResolved(Event):
    """Emitted when a pending question/action is acknowledged."""

    session_id: str
    message_id: str
    forced: bool = False


@dataclass(slots=True)
class SessionReset(Event):
    """Emitted when a session's message log has been cleared."""

    session_id: str
    removed_message_ids: tuple[str, ...] = ()


# =============================================================================
# Action events
# =============================================================================


@dataclass(slots=True)
class ActionExecuted(Event):
    """Emitted after an ACTION message's side effect ran."""

    message_id: str
    action_type: str
    result: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ActionFailed(Event):
    """Emitted when an ACTION could not be executed (unknown type or handler error)."""

    message_id: str
    action_type: str | None
    reason: str


@dataclass(slots=True)
class ActionUndone(Event):
    """Emitted after an executed action has been compensated."""

    message_id: str
    action_type: str


# =============================================================================
# Turn events
# =============================================================================


@dataclass(slots=True)
class TurnStarted(Event):
    """Emitted when a user message is forwarded to the model backend."""

    session_id: str
    user_message_id: str
    ai_message_id: str


@dataclass(slots=True)
class TurnBlocked(Event):
    """Emitted when user input is refused (pending items or a turn in flight)."""

    session_id: str
    reason: str
    notice_message_id: str


@dataclass(slots=True)
class TurnCompleted(Event):
    """Emitted when the model stream finished and the AI message is final."""

    session_id: str
    ai_message_id: str
    event_count: int = 0


@dataclass(slots=True)
class TurnFailed(Event):
    """Emitted when the backend call or stream failed mid-flight."""

    session_id: str
    ai_message_id: str | None
    error: str


@dataclass(slots=True)
class TurnCanceled(Event):
    """Emitted when a streaming turn was cancelled by the caller."""

    session_id: str
    ai_message_id: str | None


_QUIET_EVENT_TYPES: set[type] = {MessageContentUpdated}


class EventBus(Generic[E]):
    """A typed publish-subscribe event bus.

    Example::

        bus = EventBus()

        def on_appended(event: MessageAppended) -> None:
            print(f"{event.sender}: {event.message_id}")

        bus.subscribe(MessageAppended, on_appended)

    Thread Safety:
        Not thread-safe. Publish and subscribe from the event loop thread.
    """

    __slots__ = ("_handlers",)

    def __init__(self) -> None:
        self._handlers: DefaultDict[type[Event], list[_HandlerRef]] = defaultdict(list)

    def subscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        """Register a handler to receive events of the specified type.

        Bound methods are held weakly so subscribers can be collected; plain
        functions and lambdas are held strongly.
        """
        handler_ref = _HandlerRef.create(handler)
        self._handlers[event_type].append(handler_ref)
        logger.debug(
            "Subscribed handler %s to event type %s",
            _handler_name(handler),
            event_type.__name__,
        )

    def unsubscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        """Remove a previously registered handler (first occurrence only)."""
        handlers = self._handlers.get(event_type)
        if handlers is None:
            return

        for i, handler_ref in enumerate(handlers):
            if handler_ref.matches(handler):
                handlers.pop(i)
                logger.debug(
                    "Unsubscribed handler %s from event type %s",
                    _handler_name(handler),
                    event_type.__name__,
                )
                return

    def publish(self, event: E) -> None:
        """Broadcast an event to all registered handlers.

        Handlers run synchronously in registration order. A handler that
        raises is logged and the remaining handlers still run.
        """
        event_type = type(event)
        handlers = self._handlers.get(event_type)
        is_quiet = event_type in _QUIET_EVENT_TYPES

        if handlers is None:
            if not is_quiet:
                logger.debug("No handlers for event type %s", event_type.__name__)
            return

        if not is_quiet:
            logger.debug(
                "Publishing %s to %d handler(s)",
                event_type.__name__,
                len(handlers),
            )

        dead_indices: list[int] = []

        for i, handler_ref in enumerate(handlers):
            handler = handler_ref.resolve()
            if handler is None:
                dead_indices.append(i)
                continue

            try:
                handler(event)
            except Exception:
                logger.exception(
                    "Handler %s raised exception for event %s",
                    _handler_name(handler),
                    event_type.__name__,
                )

        for i in reversed(dead_indices):
            handlers.pop(i)

    def clear(self) -> None:
        """Remove all registered handlers."""
        self._handlers.clear()
        logger.debug("Cleared all event handlers")

    def handler_count(self, event_type: type[E] | None = None) -> int:
        """Return the number of registered handlers, optionally for one event type."""
        if event_type is not None:
            return len(self._handlers.get(event_type, []))
        return sum(len(handlers) for handlers in self._handlers.values())


class _HandlerRef:
    """Wrapper holding bound methods weakly and other callables strongly."""

    __slots__ = ("_ref", "_is_weak")

    def __init__(self, handler_ref: WeakMethod | ref | Handler, is_weak: bool) -> None:
        self._ref = handler_ref
        self._is_weak = is_weak

    @classmethod
    def create(cls, handler: Handler) -> _HandlerRef:
        if hasattr(handler, "__self__") and hasattr(handler, "__func__"):
            try:
                return cls(WeakMethod(handler), is_weak=True)
            except TypeError:
                pass

        return cls(handler, is_weak=False)

    def resolve(self) -> Handler | None:
        if not self._is_weak:
            return self._ref  # type: ignore[return-value]
        return self._ref()  # type: ignore[operator]

    def matches(self, handler: Handler) -> bool:
        resolved = self.resolve()
        if resolved is None:
            return False
        return resolved == handler


def _handler_name(handler: Handler) -> str:
    if hasattr(handler, "__self__") and hasattr(handler, "__func__"):
        cls_name = type(handler.__self__).__name__
        return f"{cls_name}.{handler.__func__.__name__}"
    if hasattr(handler, "__name__"):
        return handler.__name__
    return repr(handler)


__all__ = [
    "Event",
    "EventBus",
    "Handler",
    "SessionCreated",
    "MessageAppended",
    "MessageContentUpdated",
    "PendingResolved",
    "SessionReset",
    "ActionExecuted",
    "ActionFailed",
    "ActionUndone",
    "TurnStarted",
    "TurnBlocked",
    "TurnCompleted",
    "TurnFailed",
    "TurnCanceled",
]
