"""Tests for the action registry."""

from __future__ import annotations

import pytest

from astire.actions.registry import ActionHandler, ActionRegistry, DuplicateActionError


def _noop_execute(payload):
    return {"ok": True}


def _noop_compensate(payload, result):
    return None


def test_register_normalizes_type() -> None:
    registry = ActionRegistry()

    handler = registry.register_functions(" create_task ", execute=_noop_execute, compensate=_noop_compensate)

    assert handler.action_type == "CREATE_TASK"
    assert registry.get("create_task") is handler
    assert "Create_Task" in registry
    assert registry.action_types() == ["CREATE_TASK"]


def test_duplicate_registration_raises_unless_overridden() -> None:
    registry = ActionRegistry()
    registry.register(ActionHandler("PING", _noop_execute, _noop_compensate))

    with pytest.raises(DuplicateActionError) as excinfo:
        registry.register(ActionHandler("ping", _noop_execute, _noop_compensate))
    assert excinfo.value.action_type == "PING"

    replacement = registry.register(
        ActionHandler("PING", _noop_execute, _noop_compensate, description="v2"),
        allow_override=True,
    )
    assert registry.get("PING") is replacement


def test_blank_action_type_is_rejected() -> None:
    registry = ActionRegistry()

    with pytest.raises(ValueError):
        registry.register(ActionHandler("  ", _noop_execute, _noop_compensate))


def test_unregister_and_describe() -> None:
    registry = ActionRegistry()
    registry.register_functions("B", execute=_noop_execute, compensate=_noop_compensate, description="bee")
    registry.register_functions("A", execute=_noop_execute, compensate=_noop_compensate, description="ay")

    assert registry.describe() == {"A": "ay", "B": "bee"}
    assert registry.unregister("a") is True
    assert registry.unregister("a") is False
    assert len(registry) == 1
    assert registry.get(None) is None
