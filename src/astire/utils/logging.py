"""Logging setup for the Astire chat engine.

Every file the engine writes for diagnostics lives under a single log root:

``<root>/astire.log``
    Rotating engine log shared by all modules.
``<root>/events/``
    Per-turn JSONL event logs written when debug event logging is enabled.

The root is ``log_dir`` when given, else ``$ASTIRE_LOG_DIR``, else
``~/.astire/logs``. Records emitted while a chat turn runs carry the id of
the session that turn belongs to (see :func:`bind_session`).
"""

from __future__ import annotations

import contextvars
import logging
import logging.handlers
import os
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

__all__ = [
    "LogLayout",
    "SessionContextFilter",
    "bind_session",
    "current_session",
    "get_log_layout",
    "resolve_log_layout",
    "setup_logging",
]

LOG_DIR_ENV = "ASTIRE_LOG_DIR"
_DEFAULT_LOG_DIR = Path.home() / ".astire" / "logs"
_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(session_id)s | %(message)s"
_NO_SESSION = "-"
_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "openai")

_session_var: contextvars.ContextVar[str | None] = contextvars.ContextVar("astire_session_id", default=None)
_LAYOUT: LogLayout | None = None


@dataclass(frozen=True, slots=True)
class LogLayout:
    """Where the engine log and the per-turn event logs are written."""

    root: Path

    @property
    def engine_log(self) -> Path:
        return self.root / "astire.log"

    @property
    def events_dir(self) -> Path:
        return self.root / "events"


def resolve_log_layout(log_dir: Path | str | None = None) -> LogLayout:
    """Return the layout for ``log_dir`` or the configured/default root."""

    if log_dir is not None:
        return LogLayout(Path(log_dir).expanduser())
    if _LAYOUT is not None:
        return _LAYOUT
    env_override = os.environ.get(LOG_DIR_ENV)
    return LogLayout(Path(env_override or _DEFAULT_LOG_DIR).expanduser())


def get_log_layout() -> LogLayout | None:
    """Return the layout installed by :func:`setup_logging`, if any."""

    return _LAYOUT


class SessionContextFilter(logging.Filter):
    """Stamp each record with the session bound to the current task."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.session_id = _session_var.get() or _NO_SESSION
        return True


@contextmanager
def bind_session(session_id: str) -> Iterator[None]:
    """Attribute log records emitted inside the block to ``session_id``.

    The binding is task-local, so concurrent turns on different sessions
    keep their own ids.
    """

    token = _session_var.set(session_id)
    try:
        yield
    finally:
        _session_var.reset(token)


def current_session() -> str | None:
    return _session_var.get()


def setup_logging(
    level: int = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> LogLayout:
    """Install the rotating engine log and an optional stderr console handler.

    The console handler never goes below WARNING: the interactive chat owns
    stdout and informational records belong in the file only.
    """

    global _LAYOUT
    if _LAYOUT is not None and not force:
        return _LAYOUT

    if log_dir is None:
        log_dir = os.environ.get(LOG_DIR_ENV) or _DEFAULT_LOG_DIR
    layout = LogLayout(Path(log_dir).expanduser())
    layout.root.mkdir(parents=True, exist_ok=True)

    formatter = logging.Formatter(fmt=_LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    session_filter = SessionContextFilter()

    file_handler = logging.handlers.RotatingFileHandler(
        layout.engine_log, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)
    file_handler.addFilter(session_filter)
    handlers: list[logging.Handler] = [file_handler]

    if console:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(max(level, logging.WARNING))
        console_handler.setFormatter(formatter)
        console_handler.addFilter(session_filter)
        handlers.append(console_handler)

    logging.basicConfig(level=level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    _tune_external_loggers(level)

    _LAYOUT = layout
    return layout


def _tune_external_loggers(root_level: int) -> None:
    quiet_level = max(root_level, logging.WARNING)
    for logger_name in _NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(quiet_level)
