"""Action registry, executor and built-in reversible actions."""

from .builtin import ActionLedger, register_builtin_actions
from .executor import ActionExecutor
from .registry import ActionHandler, ActionRegistry, DuplicateActionError

__all__ = [
    "ActionExecutor",
    "ActionHandler",
    "ActionLedger",
    "ActionRegistry",
    "DuplicateActionError",
    "register_builtin_actions",
]
