"""Drives one chat turn: backpressure, streaming, parsing and action dispatch."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from ..actions.executor import ActionExecutor
from ..ai.ai_types import ChatBackend
from ..ai.prompts import build_chat_messages, build_system_prompt
from ..chat.event_parser import StreamEventParser, StructuredEvent, TextDelta, ParsedUnit
from ..chat.message_model import ChatMessage, ChatSession, MessageKind, PendingEntry, Sender
from ..chat.session_store import MessageNotFoundError, SessionStore
from ..events import (
    EventBus,
    TurnBlocked,
    TurnCanceled,
    TurnCompleted,
    TurnFailed,
    TurnStarted,
)
from ..utils import logging as logging_utils
from .event_log import TurnEventLogger

__all__ = [
    "BLOCKED_NOTICE",
    "BUSY_NOTICE",
    "ChatStreamError",
    "SessionBusyError",
    "SessionOrchestrator",
    "TurnOutcome",
    "TurnStatus",
    "default_greeting",
]

LOGGER = logging.getLogger(__name__)

BLOCKED_NOTICE = "Please resolve pending actions or questions before proceeding."
BUSY_NOTICE = "Please wait for the current reply to finish before sending another message."


def default_greeting(goal_id: Optional[str]) -> str:
    if goal_id is None:
        return "Hello! I am your AI assistant for general chat."
    return "Hello! I am your AI assistant for this goal."


class ChatStreamError(Exception):
    """Raised when the model backend fails before or during a streamed reply.

    Partial AI text already written to the session is kept.
    """

    def __init__(self, message: str, *, session_id: str, ai_message_id: str | None) -> None:
        self.session_id = session_id
        self.ai_message_id = ai_message_id
        super().__init__(message)


class SessionBusyError(RuntimeError):
    """Raised by administrative operations while a turn is streaming."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Session '{session_id}' has a reply in flight")


class TurnStatus(str, Enum):
    COMPLETED = "completed"
    BLOCKED = "blocked"
    BUSY = "busy"
    IGNORED = "ignored"


@dataclass(slots=True)
class TurnOutcome:
    """Result of :meth:`SessionOrchestrator.send_user_message`."""

    status: TurnStatus
    session_id: str
    user_message_id: str | None = None
    ai_message_id: str | None = None
    notice_message_id: str | None = None
    event_message_ids: List[str] = field(default_factory=list)
    response_text: str = ""


class SessionOrchestrator:
    """Consumer-facing entry point for chat sessions.

    One turn: refuse softly while anything is pending, append the user's
    message, stream the model reply through :class:`StreamEventParser`, grow
    a single AI TEXT message with the prose, append each QUESTION/ACTION as
    its own message, and run ACTION side effects through the executor as they
    arrive. Everything is applied strictly in parse order.
    """

    def __init__(
        self,
        store: SessionStore,
        executor: ActionExecutor,
        backend: ChatBackend,
        *,
        event_bus: EventBus | None = None,
        system_prompt: str | None = None,
        max_context_messages: int | None = None,
        event_logger: TurnEventLogger | None = None,
    ) -> None:
        self._store = store
        self._executor = executor
        self._backend = backend
        self._bus = event_bus or store.event_bus
        self._system_prompt = system_prompt or build_system_prompt(executor.registry.describe())
        self._max_context_messages = max_context_messages
        self._event_logger = event_logger or TurnEventLogger(enabled=False)
        self._in_flight: set[str] = set()

    @property
    def store(self) -> SessionStore:
        return self._store

    @property
    def executor(self) -> ActionExecutor:
        return self._executor

    @property
    def system_prompt(self) -> str:
        return self._system_prompt

    def is_streaming(self, session_id: str) -> bool:
        return session_id in self._in_flight

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def create_session(
        self,
        goal_id: Optional[str],
        owner_id: str,
        *,
        name: str | None = None,
    ) -> ChatSession:
        return await self._store.create_session(goal_id, owner_id, name=name)

    async def start_session(
        self,
        goal_id: Optional[str],
        owner_id: str,
        *,
        greeting: str | None = None,
        name: str | None = None,
    ) -> tuple[ChatSession, TurnOutcome | None]:
        """Open the session for ``(owner_id, goal_id)``.

        A brand-new, empty session is started with a greeting turn; an
        existing session is returned untouched. Pass ``greeting=""`` to skip
        the greeting.
        """
        existed = self._store.find_session(owner_id, goal_id) is not None
        session = await self._store.create_session(goal_id, owner_id, name=name)
        if existed or session.messages:
            return session, None
        text = default_greeting(goal_id) if greeting is None else greeting
        if not text.strip():
            return session, None
        outcome = await self.send_user_message(session.id, text)
        return session, outcome

    def list_sessions(
        self,
        owner_id: str | None = None,
        goal_id: str | None = None,
    ) -> List[ChatSession]:
        return self._store.list_sessions(owner_id=owner_id, goal_id=goal_id)

    async def reset_session(self, session_id: str) -> List[str]:
        """Clear a session's log and pending entries and forget its executed actions.

        Side effects are not compensated; undo them first if that matters.
        """
        if session_id in self._in_flight:
            raise SessionBusyError(session_id)
        removed = await self._store.reset_session(session_id)
        forgotten = self._executor.forget(removed)
        LOGGER.debug("Reset session %s (forgot %d executed action(s))", session_id, forgotten)
        return removed

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_messages(self, session_id: str) -> List[ChatMessage]:
        return self._store.get_messages(session_id)

    def has_pending(self, session_id: str) -> bool:
        return self._store.has_pending(session_id)

    def list_pending(self, session_id: str) -> List[ChatMessage]:
        """Return the pending QUESTION/ACTION messages in log order."""

        entries: Sequence[PendingEntry] = self._store.pending_entries(session_id)
        pending_ids = {entry.message_id for entry in entries}
        return [message for message in self._store.get_messages(session_id) if message.id in pending_ids]

    # ------------------------------------------------------------------
    # Resolution and undo
    # ------------------------------------------------------------------

    async def resolve_pending(self, message_id: str) -> bool:
        """Acknowledge a QUESTION/ACTION. Idempotent; unknown ids are a no-op."""

        try:
            session_id = self._store.session_for_message(message_id)
        except MessageNotFoundError:
            LOGGER.debug("resolve_pending: unknown message %s", message_id)
            return False
        return await self._store.resolve_pending(session_id, message_id)

    async def undo_action(self, message_id: str) -> bool:
        """Reverse the side effect of an executed ACTION; the message itself stays."""

        return await self._executor.undo(message_id)

    async def force_clear_pending(self, session_id: str) -> List[str]:
        """Administrative escape hatch: resolve every pending entry at once."""

        cleared = await self._store.clear_pending(session_id)
        if cleared:
            LOGGER.warning(
                "Force-cleared %d pending item(s) in session %s: %s",
                len(cleared),
                session_id,
                ", ".join(cleared),
            )
        return cleared

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def send_user_message(self, session_id: str, text: str) -> TurnOutcome:
        """Run one user turn against the model backend.

        Returns:
            The outcome; ``blocked``/``busy`` turns append one informational
            AI message and never contact the backend.

        Raises:
            SessionNotFoundError: If ``session_id`` is unknown.
            ChatStreamError: If the backend fails; partial text is kept.
        """
        self._store.get_session(session_id)
        if not text or not text.strip():
            LOGGER.debug("Ignoring blank input for session %s", session_id)
            return TurnOutcome(status=TurnStatus.IGNORED, session_id=session_id)

        if session_id in self._in_flight:
            return await self._soft_block(session_id, TurnStatus.BUSY, BUSY_NOTICE)
        if self._store.has_pending(session_id):
            return await self._soft_block(session_id, TurnStatus.BLOCKED, BLOCKED_NOTICE)

        self._in_flight.add(session_id)
        try:
            with logging_utils.bind_session(session_id):
                return await self._run_turn(session_id, text)
        finally:
            self._in_flight.discard(session_id)

    async def _soft_block(self, session_id: str, status: TurnStatus, notice: str) -> TurnOutcome:
        message = await self._store.append_message(
            session_id,
            ChatMessage(session_id=session_id, sender=Sender.AI, content=notice),
        )
        LOGGER.debug("Turn %s for session %s", status.value, session_id)
        self._bus.publish(
            TurnBlocked(session_id=session_id, reason=status.value, notice_message_id=message.id)
        )
        return TurnOutcome(status=status, session_id=session_id, notice_message_id=message.id)

    async def _run_turn(self, session_id: str, text: str) -> TurnOutcome:
        user_message = await self._store.append_message(
            session_id,
            ChatMessage(session_id=session_id, sender=Sender.USER, content=text),
        )
        context = build_chat_messages(
            self._store.get_messages(session_id),
            system_prompt=self._system_prompt,
            max_messages=self._max_context_messages,
        )
        ai_message = await self._store.append_message(
            session_id,
            ChatMessage(session_id=session_id, sender=Sender.AI),
        )
        self._bus.publish(
            TurnStarted(
                session_id=session_id,
                user_message_id=user_message.id,
                ai_message_id=ai_message.id,
            )
        )
        outcome = TurnOutcome(
            status=TurnStatus.COMPLETED,
            session_id=session_id,
            user_message_id=user_message.id,
            ai_message_id=ai_message.id,
        )

        parser = StreamEventParser()
        log_run = self._event_logger.start_turn(
            session_id=session_id,
            user_message_id=user_message.id,
            prompt=text,
            history=context,
        )
        with log_run:
            try:
                stream = self._backend.stream_text(context)
                try:
                    async for chunk in stream:
                        for unit in parser.feed(chunk):
                            await self._apply(unit, outcome, log_run)
                finally:
                    aclose = getattr(stream, "aclose", None)
                    if aclose is not None:
                        await aclose()
                for unit in parser.finish():
                    await self._apply(unit, outcome, log_run)
            except asyncio.CancelledError:
                parser.reset()
                LOGGER.debug("Turn canceled for session %s", session_id)
                log_run.log_failure(message="canceled")
                self._bus.publish(TurnCanceled(session_id=session_id, ai_message_id=ai_message.id))
                raise
            except Exception as exc:
                parser.reset()
                LOGGER.warning("Model stream failed for session %s: %s", session_id, exc)
                log_run.log_failure(message=str(exc) or type(exc).__name__)
                self._bus.publish(
                    TurnFailed(session_id=session_id, ai_message_id=ai_message.id, error=str(exc))
                )
                raise ChatStreamError(
                    f"Model stream failed: {exc}",
                    session_id=session_id,
                    ai_message_id=ai_message.id,
                ) from exc

            log_run.log_completion(
                response_text=outcome.response_text,
                event_message_ids=outcome.event_message_ids,
            )

        LOGGER.debug(
            "Turn completed for session %s: %d char(s), %d event(s)",
            session_id,
            len(outcome.response_text),
            len(outcome.event_message_ids),
        )
        self._bus.publish(
            TurnCompleted(
                session_id=session_id,
                ai_message_id=ai_message.id,
                event_count=len(outcome.event_message_ids),
            )
        )
        return outcome

    async def _apply(self, unit: ParsedUnit, outcome: TurnOutcome, log_run: Any) -> None:
        session_id = outcome.session_id
        if isinstance(unit, TextDelta):
            if not unit.content:
                return
            outcome.response_text += unit.content
            await self._store.update_message_content(
                session_id,
                outcome.ai_message_id,
                outcome.response_text,
                delta=unit.content,
            )
            return

        message = self._event_message(session_id, unit)
        await self._store.append_message(session_id, message)
        outcome.event_message_ids.append(message.id)
        log_run.log_event(message_id=message.id, event=_event_payload(unit))
        if message.kind is MessageKind.ACTION:
            record = await self._executor.execute(message)
            log_run.log_action(
                message_id=message.id,
                action_type=message.action_type,
                result=record.result if record is not None else None,
            )

    @staticmethod
    def _event_message(session_id: str, event: StructuredEvent) -> ChatMessage:
        return ChatMessage(
            session_id=session_id,
            sender=Sender.AI,
            kind=event.kind,
            content=event.content,
            action_type=event.action_type,
            action_payload=event.action_payload,
        )


def _event_payload(event: StructuredEvent) -> Dict[str, Any]:
    return {
        "type": event.kind.value,
        "content": event.content,
        "actionType": event.action_type,
        "actionPayload": event.action_payload,
    }
