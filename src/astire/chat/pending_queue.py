"""Per-session queue of unacknowledged QUESTION/ACTION messages.

While a session has pending entries the orchestrator refuses to forward new
user input to the model. Entries only ever move from unresolved to resolved
(removed); there is no expiry.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List

from .message_model import ChatMessage, PendingEntry

__all__ = ["PendingQueue"]

LOGGER = logging.getLogger(__name__)


class PendingQueue:
    """Index of pending entries keyed by session id, in insertion order."""

    def __init__(self) -> None:
        self._entries: Dict[str, Dict[str, PendingEntry]] = {}

    def add(self, message: ChatMessage) -> PendingEntry:
        """Record ``message`` as unresolved. Only QUESTION/ACTION messages qualify."""

        if not message.is_actionable:
            raise ValueError("Only QUESTION and ACTION messages can be pending")
        entry = PendingEntry(message_id=message.id, kind=message.kind)
        self._entries.setdefault(message.session_id, {})[message.id] = entry
        LOGGER.debug(
            "Pending %s %s added to session %s",
            entry.kind.value,
            entry.message_id,
            message.session_id,
        )
        return entry

    def has_pending(self, session_id: str) -> bool:
        return bool(self._entries.get(session_id))

    def is_pending(self, session_id: str, message_id: str) -> bool:
        return message_id in self._entries.get(session_id, {})

    def entries(self, session_id: str) -> List[PendingEntry]:
        return list(self._entries.get(session_id, {}).values())

    def resolve(self, session_id: str, message_id: str) -> bool:
        """Remove the entry if present. Resolving twice is a no-op.

        Returns:
            True if an entry was removed by this call.
        """
        bucket = self._entries.get(session_id)
        if not bucket or message_id not in bucket:
            return False
        bucket.pop(message_id)
        if not bucket:
            self._entries.pop(session_id, None)
        LOGGER.debug("Pending %s resolved in session %s", message_id, session_id)
        return True

    def clear(self, session_id: str) -> List[str]:
        """Drop every entry for ``session_id`` and return the cleared message ids."""

        bucket = self._entries.pop(session_id, {})
        return list(bucket)

    def restore(self, session_id: str, entries: Iterable[PendingEntry]) -> None:
        """Replace the entries of ``session_id`` (used when loading snapshots)."""

        bucket = {entry.message_id: entry for entry in entries}
        if bucket:
            self._entries[session_id] = bucket
        else:
            self._entries.pop(session_id, None)

    def __len__(self) -> int:
        return sum(len(bucket) for bucket in self._entries.values())
