"""Chat turn orchestration and per-turn debug event logs."""

from .event_log import TurnEventLogger, TurnEventLogRun
from .orchestrator import (
    BLOCKED_NOTICE,
    BUSY_NOTICE,
    ChatStreamError,
    SessionBusyError,
    SessionOrchestrator,
    TurnOutcome,
    TurnStatus,
)

__all__ = [
    "BLOCKED_NOTICE",
    "BUSY_NOTICE",
    "ChatStreamError",
    "SessionBusyError",
    "SessionOrchestrator",
    "TurnEventLogRun",
    "TurnEventLogger",
    "TurnOutcome",
    "TurnStatus",
]
