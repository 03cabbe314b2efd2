"""Shared pytest fixtures."""

from __future__ import annotations

import os

import pytest

from astire.actions.builtin import ActionLedger, register_builtin_actions
from astire.actions.executor import ActionExecutor
from astire.actions.registry import ActionRegistry
from astire.chat.persistence import InMemorySessionBackend
from astire.chat.session_store import SessionStore
from astire.events import EventBus
from astire.utils import logging as logging_utils


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    for name in list(os.environ):
        if name.startswith("ASTIRE_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("ASTIRE_LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setattr(logging_utils, "_LAYOUT", None)


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def session_backend() -> InMemorySessionBackend:
    return InMemorySessionBackend()


@pytest.fixture
def store(session_backend: InMemorySessionBackend, event_bus: EventBus) -> SessionStore:
    return SessionStore(session_backend, event_bus=event_bus)


@pytest.fixture
def registry() -> ActionRegistry:
    return ActionRegistry()


@pytest.fixture
def ledger(registry: ActionRegistry) -> ActionLedger:
    return register_builtin_actions(registry)


@pytest.fixture
def executor(registry: ActionRegistry, ledger: ActionLedger, event_bus: EventBus) -> ActionExecutor:
    return ActionExecutor(registry, event_bus=event_bus)
