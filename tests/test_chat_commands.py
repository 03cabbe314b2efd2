"""Tests for chat command parsing."""

from __future__ import annotations

import pytest

from astire.chat.commands import (
    ChatCommandType,
    is_chat_command,
    match_message_id,
    parse_chat_command,
)


def test_plain_text_is_not_a_command() -> None:
    assert parse_chat_command("hello there") is None
    assert parse_chat_command("   ") is None
    assert not is_chat_command("hello /resolve")


@pytest.mark.parametrize(
    "text, expected",
    [
        ("/pending", ChatCommandType.PENDING),
        ("/p", ChatCommandType.PENDING),
        ("::history", ChatCommandType.MESSAGES),
        ("!sessions", ChatCommandType.SESSIONS),
        ("/clear-pending", ChatCommandType.CLEAR_PENDING),
        ("/RESET", ChatCommandType.RESET),
        ("/?", ChatCommandType.HELP),
        ("/exit", ChatCommandType.QUIT),
    ],
)
def test_aliases_and_prefixes(text: str, expected: ChatCommandType) -> None:
    command = parse_chat_command(text)

    assert command is not None
    assert command.command is expected
    assert is_chat_command(text)


def test_targeted_command_keeps_argument() -> None:
    command = parse_chat_command("  /ack 3f2a  ")

    assert command is not None
    assert command.command is ChatCommandType.RESOLVE
    assert command.target == "3f2a"
    assert command.raw == "/ack 3f2a"


@pytest.mark.parametrize("text", ["/resolve", "/undo a b", "/", "/launch"])
def test_invalid_commands_raise(text: str) -> None:
    with pytest.raises(ValueError):
        parse_chat_command(text)


def test_match_message_id_expands_unique_prefix() -> None:
    ids = ["abc123", "abd456", "xyz789"]

    assert match_message_id("x", ids) == "xyz789"
    assert match_message_id("abc123", ids) == "abc123"


def test_match_message_id_rejects_missing_and_ambiguous() -> None:
    ids = ["abc123", "abd456"]

    with pytest.raises(ValueError, match="No message"):
        match_message_id("zz", ids)
    with pytest.raises(ValueError, match="ambiguous"):
        match_message_id("ab", ids)
