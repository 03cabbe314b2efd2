"""Session store service.

Single writer of record for chat sessions, their message logs and the
pending-entry index derived from them. Writes to one session are serialized
with a per-session lock so insertion order always matches call order, and a
QUESTION/ACTION message is appended together with its pending entry in the
same critical section and the same persisted snapshot.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional

from ..events import (
    EventBus,
    MessageAppended,
    MessageContentUpdated,
    PendingResolved,
    SessionCreated,
    SessionReset,
)
from .message_model import ChatMessage, ChatSession, MessageKind, PendingEntry, Sender
from .pending_queue import PendingQueue
from .persistence import InMemorySessionBackend, SessionBackend, SessionSnapshot

__all__ = [
    "SessionStore",
    "SessionNotFoundError",
    "MessageNotFoundError",
    "MessageImmutableError",
]

LOGGER = logging.getLogger(__name__)


class SessionNotFoundError(KeyError):
    """Raised when a session id is not known to the store."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Session '{session_id}' not found")


class MessageNotFoundError(KeyError):
    """Raised when a message id is not present in any session."""

    def __init__(self, message_id: str) -> None:
        self.message_id = message_id
        super().__init__(f"Message '{message_id}' not found")


class MessageImmutableError(Exception):
    """Raised when trying to edit a message whose content is fixed."""

    def __init__(self, message_id: str, kind: MessageKind, sender: Sender) -> None:
        self.message_id = message_id
        self.kind = kind
        self.sender = sender
        super().__init__(
            f"Message '{message_id}' ({sender.value} {kind.value}) cannot be edited"
        )


class SessionStore:
    """Owns sessions and messages; keeps the pending queue in step with them."""

    def __init__(
        self,
        backend: SessionBackend | None = None,
        *,
        event_bus: EventBus | None = None,
        pending: PendingQueue | None = None,
    ) -> None:
        self._backend = backend or InMemorySessionBackend()
        self._bus = event_bus or EventBus()
        self._pending = pending or PendingQueue()
        self._sessions: Dict[str, ChatSession] = {}
        self._by_key: Dict[tuple[str, Optional[str]], str] = {}
        self._message_index: Dict[str, str] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._create_lock = asyncio.Lock()

    @property
    def pending(self) -> PendingQueue:
        return self._pending

    @property
    def event_bus(self) -> EventBus:
        return self._bus

    @property
    def backend(self) -> SessionBackend:
        return self._backend

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def load(self) -> int:
        """Rehydrate sessions from the backend. Returns the number loaded."""

        snapshots = await self._backend.load_sessions()
        snapshots.sort(key=lambda snap: snap.session.created_at)
        loaded = 0
        for snapshot in snapshots:
            session = snapshot.session
            if session.id in self._sessions:
                continue
            if session.key in self._by_key:
                LOGGER.warning(
                    "Ignoring duplicate session %s for owner=%s goal=%s",
                    session.id,
                    session.owner_id,
                    session.goal_id,
                )
                continue
            self._register(session)
            self._pending.restore(session.id, snapshot.pending)
            loaded += 1
        LOGGER.debug("SessionStore.load: %d session(s) restored", loaded)
        return loaded

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
        """Return the canonical session for ``(owner_id, goal_id)``, creating it once."""

        async with self._create_lock:
            existing = self.find_session(owner_id, goal_id)
            if existing is not None:
                LOGGER.debug(
                    "SessionStore.create_session: reusing %s (owner=%s goal=%s)",
                    existing.id,
                    owner_id,
                    goal_id,
                )
                return existing

            session = ChatSession(owner_id=owner_id, goal_id=goal_id, name=name or "")
            self._register(session)
            try:
                await self._persist(session)
            except Exception:
                self._unregister(session)
                raise
        LOGGER.debug("SessionStore.create_session: created %s", session.id)
        self._bus.publish(SessionCreated(session_id=session.id, owner_id=owner_id, goal_id=goal_id))
        return session

    def get_session(self, session_id: str) -> ChatSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def find_session(self, owner_id: str, goal_id: Optional[str]) -> ChatSession | None:
        session_id = self._by_key.get((owner_id, goal_id))
        return self._sessions.get(session_id) if session_id else None

    def list_sessions(
        self,
        owner_id: str | None = None,
        goal_id: str | None = None,
    ) -> List[ChatSession]:
        """List sessions oldest first, optionally filtered by owner and goal."""

        sessions = [
            session
            for session in self._sessions.values()
            if (owner_id is None or session.owner_id == owner_id)
            and (goal_id is None or session.goal_id == goal_id)
        ]
        sessions.sort(key=lambda session: session.created_at)
        return sessions

    def session_lock(self, session_id: str) -> asyncio.Lock:
        self.get_session(session_id)
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def get_messages(self, session_id: str) -> List[ChatMessage]:
        return list(self.get_session(session_id).messages)

    def session_for_message(self, message_id: str) -> str:
        session_id = self._message_index.get(message_id)
        if session_id is None:
            raise MessageNotFoundError(message_id)
        return session_id

    def get_message(self, message_id: str) -> ChatMessage:
        session = self.get_session(self.session_for_message(message_id))
        for message in session.messages:
            if message.id == message_id:
                return message
        raise MessageNotFoundError(message_id)  # pragma: no cover - index drift

    async def append_message(self, session_id: str, message: ChatMessage) -> ChatMessage:
        """Append ``message`` to the session log.

        QUESTION/ACTION messages get their pending entry in the same critical
        section; if persisting fails both writes are rolled back.
        """
        if message.session_id != session_id:
            raise ValueError(
                f"Message belongs to session '{message.session_id}', not '{session_id}'"
            )
        if message.id in self._message_index:
            raise ValueError(f"Message '{message.id}' already appended")

        async with self.session_lock(session_id):
            session = self.get_session(session_id)
            session.messages.append(message)
            self._message_index[message.id] = session_id
            if message.is_actionable:
                self._pending.add(message)
            try:
                await self._persist(session)
            except Exception:
                session.messages.pop()
                self._message_index.pop(message.id, None)
                self._pending.resolve(session_id, message.id)
                raise

        self._bus.publish(
            MessageAppended(
                session_id=session_id,
                message_id=message.id,
                sender=message.sender.value,
                kind=message.kind.value,
            )
        )
        return message

    async def update_message_content(
        self,
        session_id: str,
        message_id: str,
        new_content: str,
        *,
        delta: str = "",
    ) -> None:
        """Replace the content of a streaming AI text message in place."""

        async with self.session_lock(session_id):
            message = self._find_in_session(session_id, message_id)
            if message.kind is not MessageKind.TEXT or message.sender is not Sender.AI:
                raise MessageImmutableError(message.id, message.kind, message.sender)
            message.content = new_content
            await self._persist(self.get_session(session_id))

        self._bus.publish(
            MessageContentUpdated(
                session_id=session_id,
                message_id=message_id,
                content=new_content,
                delta=delta,
            )
        )

    # ------------------------------------------------------------------
    # Pending entries
    # ------------------------------------------------------------------

    def has_pending(self, session_id: str) -> bool:
        self.get_session(session_id)
        return self._pending.has_pending(session_id)

    def pending_entries(self, session_id: str) -> List[PendingEntry]:
        self.get_session(session_id)
        return self._pending.entries(session_id)

    async def resolve_pending(self, session_id: str, message_id: str) -> bool:
        """Mark a pending message resolved. Idempotent; returns True on first resolution."""

        async with self.session_lock(session_id):
            removed = self._pending.resolve(session_id, message_id)
            if removed:
                await self._persist(self.get_session(session_id))
        if removed:
            self._bus.publish(PendingResolved(session_id=session_id, message_id=message_id))
        return removed

    async def clear_pending(self, session_id: str) -> List[str]:
        """Resolve every pending entry of ``session_id`` at once."""

        async with self.session_lock(session_id):
            cleared = self._pending.clear(session_id)
            if cleared:
                await self._persist(self.get_session(session_id))
        for message_id in cleared:
            self._bus.publish(
                PendingResolved(session_id=session_id, message_id=message_id, forced=True)
            )
        return cleared

    async def reset_session(self, session_id: str) -> List[str]:
        """Drop the session's messages and pending entries; returns removed ids."""

        async with self.session_lock(session_id):
            session = self.get_session(session_id)
            removed = [message.id for message in session.messages]
            session.messages.clear()
            for message_id in removed:
                self._message_index.pop(message_id, None)
            self._pending.clear(session_id)
            await self._persist(session)
        LOGGER.debug("SessionStore.reset_session: %s cleared %d message(s)", session_id, len(removed))
        self._bus.publish(SessionReset(session_id=session_id, removed_message_ids=tuple(removed)))
        return removed

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _register(self, session: ChatSession) -> None:
        self._sessions[session.id] = session
        self._by_key[session.key] = session.id
        for message in session.messages:
            self._message_index[message.id] = session.id

    def _unregister(self, session: ChatSession) -> None:
        self._sessions.pop(session.id, None)
        self._by_key.pop(session.key, None)
        self._locks.pop(session.id, None)

    def _find_in_session(self, session_id: str, message_id: str) -> ChatMessage:
        for message in reversed(self.get_session(session_id).messages):
            if message.id == message_id:
                return message
        raise MessageNotFoundError(message_id)

    async def _persist(self, session: ChatSession) -> None:
        snapshot = SessionSnapshot(session=session, pending=self._pending.entries(session.id))
        await self._backend.save_session(snapshot)
