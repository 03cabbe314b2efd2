"""Persistence backends for the session store.

A backend receives whole-session snapshots: the session, its ordered
messages and its pending entries travel together so a message and its
pending marker are always written by the same atomic operation.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Protocol, runtime_checkable

from ..utils.file_io import read_json, write_json
from .message_model import ChatSession, PendingEntry

__all__ = [
    "SessionSnapshot",
    "SessionBackend",
    "InMemorySessionBackend",
    "JsonFileSessionBackend",
]

LOGGER = logging.getLogger(__name__)
_SNAPSHOT_VERSION = 1


@dataclass(slots=True)
class SessionSnapshot:
    """Serializable image of one session and its pending entries."""

    session: ChatSession
    pending: List[PendingEntry] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": _SNAPSHOT_VERSION,
            "session": self.session.to_dict(),
            "pending": [entry.to_dict() for entry in self.pending],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SessionSnapshot":
        session = ChatSession.from_dict(data["session"])
        known_ids = {message.id for message in session.messages}
        pending: List[PendingEntry] = []
        for item in data.get("pending") or []:
            entry = PendingEntry.from_dict(item)
            if entry.message_id not in known_ids:
                LOGGER.warning(
                    "Dropping pending entry %s with no matching message in session %s",
                    entry.message_id,
                    session.id,
                )
                continue
            pending.append(entry)
        return cls(session=session, pending=pending)


@runtime_checkable
class SessionBackend(Protocol):
    """Storage collaborator behind :class:`~astire.chat.session_store.SessionStore`."""

    async def save_session(self, snapshot: SessionSnapshot) -> None:
        """Persist ``snapshot`` atomically, replacing any previous image."""

    async def load_sessions(self) -> List[SessionSnapshot]:
        """Return every persisted session snapshot."""


class InMemorySessionBackend:
    """Backend that keeps serialized snapshots in process memory."""

    def __init__(self) -> None:
        self._snapshots: Dict[str, Dict[str, Any]] = {}
        self.save_count = 0

    async def save_session(self, snapshot: SessionSnapshot) -> None:
        self._snapshots[snapshot.session.id] = copy.deepcopy(snapshot.to_dict())
        self.save_count += 1

    async def load_sessions(self) -> List[SessionSnapshot]:
        return [SessionSnapshot.from_dict(data) for data in self._snapshots.values()]


class JsonFileSessionBackend:
    """Backend storing one JSON document per session under ``directory``."""

    def __init__(self, directory: Path | str) -> None:
        self._directory = Path(directory).expanduser()

    @property
    def directory(self) -> Path:
        return self._directory

    def path_for(self, session_id: str) -> Path:
        return self._directory / f"{session_id}.json"

    async def save_session(self, snapshot: SessionSnapshot) -> None:
        payload = snapshot.to_dict()
        path = self.path_for(snapshot.session.id)
        await asyncio.to_thread(write_json, path, payload)
        LOGGER.debug("Session %s persisted to %s", snapshot.session.id, path)

    async def load_sessions(self) -> List[SessionSnapshot]:
        if not self._directory.exists():
            return []
        return await asyncio.to_thread(self._load_all)

    def _load_all(self) -> List[SessionSnapshot]:
        snapshots: List[SessionSnapshot] = []
        for path in sorted(self._directory.glob("*.json")):
            try:
                snapshots.append(SessionSnapshot.from_dict(read_json(path)))
            except (OSError, ValueError, KeyError, TypeError) as exc:
                LOGGER.warning("Skipping unreadable session file %s: %s", path, exc)
        return snapshots
