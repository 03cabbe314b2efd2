"""Registry mapping action types to execute/compensate handler pairs.

Reversal is looked up by action type rather than captured as a closure at
execution time, so executed-action records stay plain data.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Union

__all__ = [
    "ActionHandler",
    "ActionRegistry",
    "DuplicateActionError",
    "ExecuteFn",
    "CompensateFn",
    "normalize_action_type",
]

LOGGER = logging.getLogger(__name__)

# execute(payload) -> result mapping (or None); may be sync or async.
ExecuteFn = Callable[[Mapping[str, Any]], Union[Mapping[str, Any], None, Awaitable[Mapping[str, Any] | None]]]

# compensate(payload, result) reverses exactly what execute did.
CompensateFn = Callable[[Mapping[str, Any], Mapping[str, Any]], Union[None, Awaitable[None]]]


class DuplicateActionError(Exception):
    """Raised when registering an action type that already has a handler."""

    def __init__(self, action_type: str) -> None:
        self.action_type = action_type
        super().__init__(f"Action '{action_type}' is already registered")


def normalize_action_type(action_type: str | None) -> str:
    return (action_type or "").strip().upper()


@dataclass(slots=True, frozen=True)
class ActionHandler:
    """Execute/compensate pair for one action type.

    Attributes:
        action_type: Upper-case action identifier (e.g. ``CREATE_TASK``).
        execute: Runs the side effect and returns data needed to undo it.
        compensate: Reverses the side effect given the payload and that data.
        description: Human-readable summary, surfaced in prompts and the CLI.
    """

    action_type: str
    execute: ExecuteFn
    compensate: CompensateFn
    description: str = ""
    metadata: Mapping[str, Any] = field(default_factory=dict)


class ActionRegistry:
    """Registry of :class:`ActionHandler` entries keyed by action type.

    Example:
        registry = ActionRegistry()
        registry.register_functions(
            "CREATE_TASK",
            execute=lambda payload: {"task_id": create(payload)},
            compensate=lambda payload, result: delete(result["task_id"]),
        )
    """

    def __init__(self) -> None:
        self._handlers: dict[str, ActionHandler] = {}

    def register(self, handler: ActionHandler, *, allow_override: bool = False) -> ActionHandler:
        """Register ``handler``.

        Raises:
            DuplicateActionError: If the type is already registered and
                ``allow_override`` is False.
            ValueError: If the action type is blank.
        """
        key = normalize_action_type(handler.action_type)
        if not key:
            raise ValueError("action_type is required for action registration")
        if key in self._handlers and not allow_override:
            raise DuplicateActionError(key)
        if key != handler.action_type:
            handler = ActionHandler(
                action_type=key,
                execute=handler.execute,
                compensate=handler.compensate,
                description=handler.description,
                metadata=handler.metadata,
            )
        self._handlers[key] = handler
        LOGGER.debug("Registered action: %s", key)
        return handler

    def register_functions(
        self,
        action_type: str,
        *,
        execute: ExecuteFn,
        compensate: CompensateFn,
        description: str = "",
        allow_override: bool = False,
    ) -> ActionHandler:
        """Convenience wrapper building the :class:`ActionHandler` for you."""

        handler = ActionHandler(
            action_type=action_type,
            execute=execute,
            compensate=compensate,
            description=description,
        )
        return self.register(handler, allow_override=allow_override)

    def unregister(self, action_type: str) -> bool:
        key = normalize_action_type(action_type)
        if key in self._handlers:
            del self._handlers[key]
            LOGGER.debug("Unregistered action: %s", key)
            return True
        return False

    def get(self, action_type: str | None) -> ActionHandler | None:
        return self._handlers.get(normalize_action_type(action_type))

    def has(self, action_type: str | None) -> bool:
        return normalize_action_type(action_type) in self._handlers

    def action_types(self) -> list[str]:
        return sorted(self._handlers)

    def describe(self) -> dict[str, str]:
        """Return ``{action_type: description}`` for every registered action."""

        return {key: self._handlers[key].description for key in self.action_types()}

    def __len__(self) -> int:
        return len(self._handlers)

    def __contains__(self, action_type: object) -> bool:
        return isinstance(action_type, str) and self.has(action_type)
