"""Executes ACTION messages through the registry and undoes them on request."""

from __future__ import annotations

import inspect
import logging
from typing import Any, Dict, Iterable, List, Mapping

from ..chat.message_model import ChatMessage, ExecutedAction, MessageKind
from ..events import ActionExecuted, ActionFailed, ActionUndone, EventBus
from .registry import ActionRegistry, normalize_action_type

__all__ = ["ActionExecutor"]

LOGGER = logging.getLogger(__name__)


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class ActionExecutor:
    """Runs registered handlers for ACTION messages and tracks what ran.

    Unknown action types and failing handlers are reported (log + event) and
    otherwise ignored: the ACTION message stays in the log and stays pending,
    it simply has no effect. Undo is only meaningful for messages with an
    :class:`ExecutedAction` record and is a no-op otherwise.
    """

    def __init__(self, registry: ActionRegistry, *, event_bus: EventBus | None = None) -> None:
        self._registry = registry
        self._bus = event_bus or EventBus()
        self._executed: Dict[str, ExecutedAction] = {}

    @property
    def registry(self) -> ActionRegistry:
        return self._registry

    async def execute(self, message: ChatMessage) -> ExecutedAction | None:
        """Dispatch ``message`` by action type.

        Returns:
            The execution record, or None when nothing ran.

        Raises:
            ValueError: If ``message`` is not an ACTION message.
        """
        if message.kind is not MessageKind.ACTION:
            raise ValueError(f"Message '{message.id}' is {message.kind.value}, not ACTION")

        existing = self._executed.get(message.id)
        if existing is not None:
            LOGGER.debug("Action %s already executed; skipping", message.id)
            return existing

        handler = self._registry.get(message.action_type)
        if handler is None:
            LOGGER.warning(
                "Unknown action type %r for message %s; no side effect executed",
                message.action_type,
                message.id,
            )
            self._bus.publish(
                ActionFailed(
                    message_id=message.id,
                    action_type=message.action_type,
                    reason="unknown_action_type",
                )
            )
            return None

        payload: Mapping[str, Any] = dict(message.action_payload or {})
        try:
            result = await _resolve(handler.execute(payload))
        except Exception as exc:
            LOGGER.exception("Action %s (%s) failed", message.id, handler.action_type)
            self._bus.publish(
                ActionFailed(message_id=message.id, action_type=handler.action_type, reason=str(exc))
            )
            return None
        if result is not None and not isinstance(result, Mapping):
            reason = f"handler returned {type(result).__name__}, expected a mapping or None"
            LOGGER.error("Action %s (%s): %s", message.id, handler.action_type, reason)
            self._bus.publish(ActionFailed(message_id=message.id, action_type=handler.action_type, reason=reason))
            return None

        record = ExecutedAction(
            message_id=message.id,
            action_type=handler.action_type,
            payload=dict(payload),
            result=dict(result or {}),
        )
        self._executed[message.id] = record
        LOGGER.debug("Executed action %s (%s)", message.id, handler.action_type)
        self._bus.publish(
            ActionExecuted(message_id=message.id, action_type=handler.action_type, result=dict(record.result))
        )
        return record

    async def undo(self, message_id: str) -> bool:
        """Run the compensating handler for ``message_id``.

        Returns:
            True if the side effect was reversed and the record removed.
        """
        record = self._executed.get(message_id)
        if record is None:
            LOGGER.debug("Undo requested for %s with no executed action; ignoring", message_id)
            return False

        handler = self._registry.get(record.action_type)
        if handler is None:
            LOGGER.warning(
                "Cannot undo %s: action type %s is no longer registered",
                message_id,
                record.action_type,
            )
            return False

        try:
            await _resolve(handler.compensate(dict(record.payload), dict(record.result)))
        except Exception:
            LOGGER.exception("Undo of action %s (%s) failed", message_id, record.action_type)
            return False

        self._executed.pop(message_id, None)
        LOGGER.debug("Undid action %s (%s)", message_id, record.action_type)
        self._bus.publish(ActionUndone(message_id=message_id, action_type=record.action_type))
        return True

    def executed(self, message_id: str) -> ExecutedAction | None:
        return self._executed.get(message_id)

    def executed_actions(self) -> List[ExecutedAction]:
        return list(self._executed.values())

    def can_execute(self, action_type: str | None) -> bool:
        return bool(normalize_action_type(action_type)) and self._registry.has(action_type)

    def forget(self, message_ids: Iterable[str]) -> int:
        """Drop records for messages removed from the log (no compensation runs)."""

        removed = 0
        for message_id in message_ids:
            if self._executed.pop(message_id, None) is not None:
                removed += 1
        return removed
