"""Tests for session persistence backends."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from astire.chat.message_model import ChatMessage, ChatSession, MessageKind, PendingEntry, Sender
from astire.chat.persistence import (
    InMemorySessionBackend,
    JsonFileSessionBackend,
    SessionBackend,
    SessionSnapshot,
)
from astire.chat.session_store import SessionStore


def _snapshot() -> SessionSnapshot:
    session = ChatSession(owner_id="owner", goal_id="goal-1")
    question = ChatMessage(session_id=session.id, sender=Sender.AI, kind=MessageKind.QUESTION, content="?")
    session.messages.extend(
        [
            ChatMessage(session_id=session.id, sender=Sender.USER, content="hi"),
            question,
        ]
    )
    return SessionSnapshot(session=session, pending=[PendingEntry(question.id, MessageKind.QUESTION)])


def test_backends_satisfy_protocol(tmp_path: Path) -> None:
    assert isinstance(InMemorySessionBackend(), SessionBackend)
    assert isinstance(JsonFileSessionBackend(tmp_path), SessionBackend)


def test_snapshot_drops_dangling_pending_entries() -> None:
    snapshot = _snapshot()
    payload = snapshot.to_dict()
    payload["pending"].append({"messageId": "ghost", "type": "ACTION"})

    restored = SessionSnapshot.from_dict(payload)

    assert [entry.message_id for entry in restored.pending] == [snapshot.pending[0].message_id]


@pytest.mark.asyncio
async def test_in_memory_backend_isolates_saved_state() -> None:
    backend = InMemorySessionBackend()
    snapshot = _snapshot()

    await backend.save_session(snapshot)
    snapshot.session.messages.clear()
    (loaded,) = await backend.load_sessions()

    assert len(loaded.session.messages) == 2
    assert backend.save_count == 1


@pytest.mark.asyncio
async def test_json_backend_writes_one_file_per_session(tmp_path: Path) -> None:
    backend = JsonFileSessionBackend(tmp_path / "sessions")
    snapshot = _snapshot()

    await backend.save_session(snapshot)

    path = backend.path_for(snapshot.session.id)
    payload = json.loads(path.read_text(encoding="utf-8"))
    assert payload["version"] == 1
    assert payload["session"]["goalId"] == "goal-1"
    assert payload["pending"] == [entry.to_dict() for entry in snapshot.pending]
    (loaded,) = await backend.load_sessions()
    assert loaded.session.id == snapshot.session.id
    assert [m.content for m in loaded.session.messages] == ["hi", "?"]


@pytest.mark.asyncio
async def test_json_backend_skips_unreadable_files(tmp_path: Path) -> None:
    backend = JsonFileSessionBackend(tmp_path)
    await backend.save_session(_snapshot())
    (tmp_path / "broken.json").write_text("{not json", encoding="utf-8")

    loaded = await backend.load_sessions()

    assert len(loaded) == 1


@pytest.mark.asyncio
async def test_json_backend_missing_directory_loads_nothing(tmp_path: Path) -> None:
    backend = JsonFileSessionBackend(tmp_path / "absent")

    assert await backend.load_sessions() == []


@pytest.mark.asyncio
async def test_store_survives_restart_with_json_backend(tmp_path: Path) -> None:
    store = SessionStore(JsonFileSessionBackend(tmp_path))
    session = await store.create_session(None, "owner")
    question = await store.append_message(
        session.id,
        ChatMessage(session_id=session.id, sender=Sender.AI, kind=MessageKind.QUESTION, content="?"),
    )

    restarted = SessionStore(JsonFileSessionBackend(tmp_path))
    await restarted.load()

    assert restarted.has_pending(session.id)
    assert restarted.get_message(question.id).content == "?"
