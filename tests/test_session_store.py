"""Tests for the session store."""

from __future__ import annotations

import asyncio
from typing import List

import pytest

from astire.chat.message_model import ChatMessage, MessageKind, Sender
from astire.chat.persistence import InMemorySessionBackend, SessionSnapshot
from astire.chat.session_store import (
    MessageImmutableError,
    MessageNotFoundError,
    SessionNotFoundError,
    SessionStore,
)
from astire.events import (
    EventBus,
    MessageAppended,
    MessageContentUpdated,
    PendingResolved,
    SessionCreated,
    SessionReset,
)


class _FlakyBackend(InMemorySessionBackend):
    """In-memory backend that fails the next save when armed."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_next = False

    async def save_session(self, snapshot: SessionSnapshot) -> None:
        if self.fail_next:
            self.fail_next = False
            raise OSError("disk full")
        await super().save_session(snapshot)


def _action(session_id: str) -> ChatMessage:
    return ChatMessage(
        session_id=session_id,
        sender=Sender.AI,
        kind=MessageKind.ACTION,
        content="Create a task",
        action_type="CREATE_TASK",
        action_payload={"title": "Follow up"},
    )


@pytest.mark.asyncio
async def test_create_session_is_idempotent(store: SessionStore, event_bus: EventBus) -> None:
    created: List[SessionCreated] = []
    event_bus.subscribe(SessionCreated, created.append)

    first = await store.create_session("goal-1", "owner")
    second = await store.create_session("goal-1", "owner")

    assert first.id == second.id
    assert len(created) == 1
    assert store.list_sessions() == [first]


@pytest.mark.asyncio
async def test_concurrent_creates_yield_one_session(store: SessionStore) -> None:
    sessions = await asyncio.gather(*(store.create_session(None, "owner") for _ in range(5)))

    assert len({session.id for session in sessions}) == 1


@pytest.mark.asyncio
async def test_general_and_goal_sessions_are_distinct(store: SessionStore) -> None:
    general = await store.create_session(None, "owner")
    goal = await store.create_session("goal-1", "owner")
    other_owner = await store.create_session("goal-1", "someone-else")

    assert len({general.id, goal.id, other_owner.id}) == 3
    assert store.list_sessions(owner_id="owner") == [general, goal]
    assert store.list_sessions(goal_id="goal-1") == [goal, other_owner]
    assert store.find_session("owner", None) is general


@pytest.mark.asyncio
async def test_append_keeps_order_and_indexes_messages(store: SessionStore, event_bus: EventBus) -> None:
    appended: List[MessageAppended] = []
    event_bus.subscribe(MessageAppended, appended.append)
    session = await store.create_session(None, "owner")

    first = await store.append_message(session.id, ChatMessage(session_id=session.id, sender=Sender.USER, content="a"))
    second = await store.append_message(session.id, ChatMessage(session_id=session.id, sender=Sender.AI, content="b"))

    assert [m.id for m in store.get_messages(session.id)] == [first.id, second.id]
    assert store.session_for_message(second.id) == session.id
    assert store.get_message(first.id) is first
    assert [event.sender for event in appended] == ["USER", "AI"]


@pytest.mark.asyncio
async def test_get_messages_returns_a_copy(store: SessionStore) -> None:
    session = await store.create_session(None, "owner")
    await store.append_message(session.id, ChatMessage(session_id=session.id, sender=Sender.USER, content="a"))

    snapshot = store.get_messages(session.id)
    snapshot.clear()

    assert len(store.get_messages(session.id)) == 1


@pytest.mark.asyncio
async def test_actionable_append_creates_pending_in_same_snapshot(
    store: SessionStore, session_backend: InMemorySessionBackend
) -> None:
    session = await store.create_session(None, "owner")
    saves_before = session_backend.save_count

    message = await store.append_message(session.id, _action(session.id))

    assert store.has_pending(session.id)
    assert [entry.message_id for entry in store.pending_entries(session.id)] == [message.id]
    assert session_backend.save_count == saves_before + 1
    (snapshot,) = await session_backend.load_sessions()
    assert [entry.message_id for entry in snapshot.pending] == [message.id]
    assert snapshot.session.messages[-1].id == message.id


@pytest.mark.asyncio
async def test_failed_persist_rolls_back_message_and_pending(event_bus: EventBus) -> None:
    backend = _FlakyBackend()
    store = SessionStore(backend, event_bus=event_bus)
    session = await store.create_session(None, "owner")
    message = _action(session.id)

    backend.fail_next = True
    with pytest.raises(OSError):
        await store.append_message(session.id, message)

    assert store.get_messages(session.id) == []
    assert not store.has_pending(session.id)
    with pytest.raises(MessageNotFoundError):
        store.session_for_message(message.id)


@pytest.mark.asyncio
async def test_append_rejects_mismatched_session_and_duplicates(store: SessionStore) -> None:
    session = await store.create_session(None, "owner")
    message = ChatMessage(session_id="elsewhere", sender=Sender.USER, content="x")

    with pytest.raises(ValueError):
        await store.append_message(session.id, message)

    ok = await store.append_message(session.id, ChatMessage(session_id=session.id, sender=Sender.USER, content="x"))
    with pytest.raises(ValueError):
        await store.append_message(session.id, ok)


@pytest.mark.asyncio
async def test_update_message_content_only_for_ai_text(store: SessionStore, event_bus: EventBus) -> None:
    updates: List[MessageContentUpdated] = []
    event_bus.subscribe(MessageContentUpdated, updates.append)
    session = await store.create_session(None, "owner")
    running = await store.append_message(session.id, ChatMessage(session_id=session.id, sender=Sender.AI))
    action = await store.append_message(session.id, _action(session.id))
    user = await store.append_message(session.id, ChatMessage(session_id=session.id, sender=Sender.USER, content="u"))

    await store.update_message_content(session.id, running.id, "Hello", delta="Hello")

    assert store.get_messages(session.id)[0].content == "Hello"
    assert updates[-1].delta == "Hello"
    with pytest.raises(MessageImmutableError):
        await store.update_message_content(session.id, action.id, "changed")
    with pytest.raises(MessageImmutableError):
        await store.update_message_content(session.id, user.id, "changed")
    assert store.get_message(action.id).content == "Create a task"


@pytest.mark.asyncio
async def test_resolve_pending_is_idempotent(store: SessionStore, event_bus: EventBus) -> None:
    resolved: List[PendingResolved] = []
    event_bus.subscribe(PendingResolved, resolved.append)
    session = await store.create_session(None, "owner")
    message = await store.append_message(session.id, _action(session.id))

    assert await store.resolve_pending(session.id, message.id) is True
    assert await store.resolve_pending(session.id, message.id) is False
    assert not store.has_pending(session.id)
    assert len(resolved) == 1


@pytest.mark.asyncio
async def test_clear_pending_marks_entries_forced(store: SessionStore, event_bus: EventBus) -> None:
    resolved: List[PendingResolved] = []
    event_bus.subscribe(PendingResolved, resolved.append)
    session = await store.create_session(None, "owner")
    first = await store.append_message(session.id, _action(session.id))
    second = await store.append_message(session.id, _action(session.id))

    cleared = await store.clear_pending(session.id)

    assert cleared == [first.id, second.id]
    assert all(event.forced for event in resolved)
    assert store.get_messages(session.id)[-1].id == second.id


@pytest.mark.asyncio
async def test_reset_session_drops_messages_and_pending(store: SessionStore, event_bus: EventBus) -> None:
    resets: List[SessionReset] = []
    event_bus.subscribe(SessionReset, resets.append)
    session = await store.create_session(None, "owner")
    message = await store.append_message(session.id, _action(session.id))

    removed = await store.reset_session(session.id)

    assert removed == [message.id]
    assert store.get_messages(session.id) == []
    assert not store.has_pending(session.id)
    assert resets[0].removed_message_ids == (message.id,)


@pytest.mark.asyncio
async def test_unknown_ids_raise_key_errors(store: SessionStore) -> None:
    with pytest.raises(SessionNotFoundError):
        store.get_messages("missing")
    with pytest.raises(KeyError):
        store.get_message("missing")


@pytest.mark.asyncio
async def test_load_restores_sessions_and_pending(session_backend: InMemorySessionBackend) -> None:
    original = SessionStore(session_backend)
    session = await original.create_session("goal-1", "owner")
    message = await original.append_message(session.id, _action(session.id))

    reloaded = SessionStore(session_backend)
    count = await reloaded.load()

    assert count == 1
    restored = reloaded.find_session("owner", "goal-1")
    assert restored is not None and restored.id == session.id
    assert reloaded.has_pending(session.id)
    assert reloaded.get_message(message.id).action_type == "CREATE_TASK"
    again = await reloaded.create_session("goal-1", "owner")
    assert again.id == session.id
