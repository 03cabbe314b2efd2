"""Debug event logging utilities for chat turns."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Mapping, Sequence

from ..utils import logging as logging_utils

LOGGER = logging.getLogger(__name__)


def _default_event_dir() -> Path:
    return logging_utils.resolve_log_layout().events_dir


@dataclass(slots=True)
class _NullTurnEventLogRun:
    """No-op implementation used when event logging is disabled."""

    path: Path | None = None

    def __enter__(self) -> "_NullTurnEventLogRun":  # noqa: D401
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:  # noqa: D401
        return False

    def log_event(self, *_: Any, **__: Any) -> None:
        return

    def log_action(self, *_: Any, **__: Any) -> None:
        return

    def log_completion(self, *_: Any, **__: Any) -> None:
        return

    def log_failure(self, *_: Any, **__: Any) -> None:
        return


class TurnEventLogRun:
    """Context manager that writes structured JSONL entries for a chat turn."""

    def __init__(self, path: Path, *, context: Mapping[str, Any]) -> None:
        self.path = path
        self._file = path.open("w", encoding="utf-8")
        self._finalized = False
        self._write_entry("start", context)

    def __enter__(self) -> "TurnEventLogRun":  # noqa: D401
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:  # noqa: D401
        if exc is not None and not self._finalized:
            self.log_failure(message=str(exc) or type(exc).__name__)
        elif not self._finalized:
            self.log_failure(message="turn aborted without completion")
        return False

    def close(self) -> None:
        try:
            self._file.close()
        except OSError:  # pragma: no cover - best effort
            LOGGER.debug("Failed to close event log %s", self.path, exc_info=True)

    def log_event(self, *, message_id: str, event: Mapping[str, Any]) -> None:
        """Record one structured event recognized in the model stream."""

        self._write_entry("event", {"message_id": message_id, "payload": dict(event)})

    def log_action(
        self,
        *,
        message_id: str,
        action_type: str | None,
        result: Mapping[str, Any] | None,
    ) -> None:
        payload = {
            "message_id": message_id,
            "action_type": action_type,
            "executed": result is not None,
            "result": dict(result or {}),
        }
        self._write_entry("action", payload)

    def log_completion(
        self,
        *,
        response_text: str,
        event_message_ids: Sequence[str],
    ) -> None:
        if self._finalized:
            return
        payload = {
            "response_text": response_text,
            "event_message_ids": list(event_message_ids),
            "status": "success",
        }
        self._write_entry("completion", payload)
        self._finalized = True
        self.close()

    def log_failure(self, *, message: str, details: Mapping[str, Any] | None = None) -> None:
        if self._finalized:
            return
        payload: dict[str, Any] = {
            "status": "failure",
            "message": message,
        }
        if details:
            payload["details"] = self._safe_json(dict(details))
        self._write_entry("failure", payload)
        self._finalized = True
        self.close()

    def _write_entry(self, event: str, payload: Mapping[str, Any] | None = None) -> None:
        entry: dict[str, Any] = {
            "event": event,
            "timestamp": time.time(),
        }
        if payload:
            for key, value in payload.items():
                entry[key] = self._safe_json(value)
        json.dump(entry, self._file, ensure_ascii=False)
        self._file.write("\n")
        self._file.flush()

    def _safe_json(self, value: Any, *, depth: int = 0) -> Any:
        if depth > 6:
            return repr(value)
        if value is None or isinstance(value, (str, int, float, bool)):
            return value
        if isinstance(value, Mapping):
            return {str(key): self._safe_json(val, depth=depth + 1) for key, val in value.items()}
        if isinstance(value, (list, tuple, set)):
            return [self._safe_json(item, depth=depth + 1) for item in value]
        return repr(value)


class TurnEventLogger:
    """Factory for per-turn event logs when debug event logging is enabled."""

    def __init__(self, *, enabled: bool, base_dir: Path | str | None = None) -> None:
        self.enabled = bool(enabled)
        self._base_dir = Path(base_dir) if base_dir else _default_event_dir()

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    def start_turn(
        self,
        *,
        session_id: str,
        user_message_id: str,
        prompt: str,
        history: Sequence[Mapping[str, Any]] | None = None,
    ) -> TurnEventLogRun | _NullTurnEventLogRun:
        if not self.enabled:
            return _NullTurnEventLogRun()
        try:
            self._base_dir.mkdir(parents=True, exist_ok=True)
            path = self._allocate_path(session_id)
            context = {
                "session_id": session_id,
                "user_message_id": user_message_id,
                "prompt": prompt,
                "history": list(history or ()),
            }
            log_run = TurnEventLogRun(path, context=context)
            LOGGER.debug("Turn event log started: %s", path)
            return log_run
        except OSError:  # pragma: no cover - best effort logging
            LOGGER.debug("Failed to start turn event log", exc_info=True)
            return _NullTurnEventLogRun()

    def _allocate_path(self, session_id: str) -> Path:
        timestamp = datetime.now(UTC).strftime("%Y%m%d-%H%M%S-%f")
        safe_id = "".join(ch for ch in session_id if ch.isalnum())[:12] or "session"
        return self._base_dir / f"turn-{timestamp}-{safe_id}.jsonl"


__all__ = [
    "TurnEventLogger",
    "TurnEventLogRun",
]
