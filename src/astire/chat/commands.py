"""Parsing helpers for slash commands typed into the interactive chat."""

from __future__ import annotations

import shlex
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Sequence


class ChatCommandType(str, Enum):
    """Commands handled locally without contacting the model."""

    PENDING = "pending"
    RESOLVE = "resolve"
    UNDO = "undo"
    MESSAGES = "messages"
    SESSIONS = "sessions"
    CLEAR_PENDING = "clear_pending"
    RESET = "reset"
    HELP = "help"
    QUIT = "quit"


@dataclass(slots=True)
class ChatCommand:
    """Parsed representation of a slash command string."""

    command: ChatCommandType
    args: tuple[str, ...]
    raw: str

    @property
    def target(self) -> str | None:
        return self.args[0] if self.args else None


_COMMAND_PREFIXES = ("/", "::", "!")
_COMMAND_ALIASES = {
    "pending": ChatCommandType.PENDING,
    "p": ChatCommandType.PENDING,
    "resolve": ChatCommandType.RESOLVE,
    "ack": ChatCommandType.RESOLVE,
    "ok": ChatCommandType.RESOLVE,
    "undo": ChatCommandType.UNDO,
    "messages": ChatCommandType.MESSAGES,
    "history": ChatCommandType.MESSAGES,
    "log": ChatCommandType.MESSAGES,
    "sessions": ChatCommandType.SESSIONS,
    "clear-pending": ChatCommandType.CLEAR_PENDING,
    "clear_pending": ChatCommandType.CLEAR_PENDING,
    "force-clear": ChatCommandType.CLEAR_PENDING,
    "reset": ChatCommandType.RESET,
    "help": ChatCommandType.HELP,
    "?": ChatCommandType.HELP,
    "quit": ChatCommandType.QUIT,
    "exit": ChatCommandType.QUIT,
    "q": ChatCommandType.QUIT,
}
# Commands that need exactly one message id argument.
_TARGETED_COMMANDS = {ChatCommandType.RESOLVE, ChatCommandType.UNDO}

HELP_TEXT = """\
/pending            list unresolved questions and actions
/resolve <id>       acknowledge a pending item (id prefix is enough)
/undo <id>          reverse an executed action
/messages           print the session log
/sessions           list sessions for the current owner
/clear-pending      force-resolve every pending item
/reset              clear the session log
/quit               leave the chat"""


def is_chat_command(text: str) -> bool:
    """Return ``True`` when ``text`` starts with a command prefix."""

    normalized = (text or "").strip()
    if not normalized:
        return False
    return _split_prefix(normalized) is not None


def parse_chat_command(text: str) -> ChatCommand | None:
    """Parse ``text`` into a :class:`ChatCommand` when prefixed.

    Returns None for ordinary chat input.

    Raises:
        ValueError: For a prefixed line that is not a valid command.
    """
    normalized = (text or "").strip()
    if not normalized:
        return None
    prefix = _split_prefix(normalized)
    if prefix is None:
        return None
    _, remainder = prefix
    tokens = _tokenize(remainder)
    if not tokens:
        raise ValueError("Command is missing a verb. Try /help.")
    command_token = tokens.popleft().lower()
    command = _COMMAND_ALIASES.get(command_token)
    if command is None:
        raise ValueError(f"Unknown command '{command_token}'. Try /help.")
    if command in _TARGETED_COMMANDS and len(tokens) != 1:
        raise ValueError(f"/{command.value} expects exactly one message id")
    return ChatCommand(command=command, args=tuple(tokens), raw=normalized)


def match_message_id(candidate: str, message_ids: Sequence[str]) -> str:
    """Expand an id prefix to the single message id it identifies.

    Raises:
        ValueError: If the prefix matches no id or more than one.
    """
    candidate = candidate.strip()
    if candidate in message_ids:
        return candidate
    matches = [message_id for message_id in message_ids if message_id.startswith(candidate)]
    if not matches:
        raise ValueError(f"No message matches '{candidate}'")
    if len(matches) > 1:
        raise ValueError(f"'{candidate}' is ambiguous ({len(matches)} matches)")
    return matches[0]


def _split_prefix(text: str) -> tuple[str, str] | None:
    candidate = text.lstrip()
    for prefix in _COMMAND_PREFIXES:
        if candidate.startswith(prefix):
            remainder = candidate[len(prefix) :].lstrip()
            return prefix, remainder
    return None


def _tokenize(text: str) -> deque[str]:
    try:
        parts = shlex.split(text, posix=True)
    except ValueError as exc:  # pragma: no cover - shlex provides the details
        raise ValueError(f"Unable to parse command: {exc}") from exc
    return deque(parts)


__all__ = [
    "ChatCommand",
    "ChatCommandType",
    "HELP_TEXT",
    "is_chat_command",
    "match_message_id",
    "parse_chat_command",
]
