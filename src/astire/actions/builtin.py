"""Built-in actions the model may trigger: CV submission, fund allocation, tasks.

The side effects land in an :class:`ActionLedger`, an in-process record of
what the assistant has done on the user's behalf. Every execute handler
returns the identifiers its compensating handler needs, so undo restores
the ledger to exactly the state it had before.
"""

from __future__ import annotations

import copy
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping

from .registry import ActionHandler, ActionRegistry

__all__ = [
    "ActionLedger",
    "SUBMIT_CV",
    "ALLOCATE_FUNDS",
    "CREATE_TASK",
    "DEFAULT_CV_TARGET",
    "build_builtin_handlers",
    "register_builtin_actions",
]

LOGGER = logging.getLogger(__name__)

SUBMIT_CV = "SUBMIT_CV"
ALLOCATE_FUNDS = "ALLOCATE_FUNDS"
CREATE_TASK = "CREATE_TASK"
DEFAULT_CV_TARGET = "hr@example.com"
_DEFAULT_TASK_TITLE = "Follow-up Task"


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


@dataclass(slots=True)
class ActionLedger:
    """In-memory record of side effects produced by built-in actions."""

    cv_submissions: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    allocations: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    tasks: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def balance(self, target: str) -> float:
        """Total amount currently allocated to ``target``."""

        return sum(
            record["amount"] for record in self.allocations.values() if record["target"] == target
        )

    def snapshot(self) -> Dict[str, Dict[str, Dict[str, Any]]]:
        return copy.deepcopy(
            {
                "cv_submissions": self.cv_submissions,
                "allocations": self.allocations,
                "tasks": self.tasks,
            }
        )

    # ------------------------------------------------------------------
    # SUBMIT_CV
    # ------------------------------------------------------------------

    def submit_cv(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        target = str(payload.get("target") or DEFAULT_CV_TARGET)
        submission_id = _new_id("cv")
        self.cv_submissions[submission_id] = {
            "target": target,
            "content": str(payload.get("content") or ""),
            "goal_id": payload.get("goalId"),
        }
        LOGGER.info("Submitted CV %s to %s", submission_id, target)
        return {"submission_id": submission_id}

    def withdraw_cv(self, _payload: Mapping[str, Any], result: Mapping[str, Any]) -> None:
        submission_id = result.get("submission_id")
        if self.cv_submissions.pop(str(submission_id), None) is not None:
            LOGGER.info("Withdrew CV submission %s", submission_id)

    # ------------------------------------------------------------------
    # ALLOCATE_FUNDS
    # ------------------------------------------------------------------

    def allocate_funds(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        target = payload.get("target")
        if not isinstance(target, str) or not target.strip():
            raise ValueError("ALLOCATE_FUNDS requires a non-empty 'target'")
        amount = payload.get("amount")
        if isinstance(amount, bool) or not isinstance(amount, (int, float)):
            raise ValueError("ALLOCATE_FUNDS requires a numeric 'amount'")
        if amount <= 0:
            raise ValueError("ALLOCATE_FUNDS 'amount' must be positive")
        allocation_id = _new_id("alloc")
        self.allocations[allocation_id] = {
            "target": target.strip(),
            "amount": amount,
            "project_id": payload.get("projectId"),
        }
        LOGGER.info("Allocated %s to %s (%s)", amount, target, allocation_id)
        return {"allocation_id": allocation_id}

    def release_funds(self, _payload: Mapping[str, Any], result: Mapping[str, Any]) -> None:
        allocation_id = result.get("allocation_id")
        record = self.allocations.pop(str(allocation_id), None)
        if record is not None:
            LOGGER.info("Released %s from %s", record["amount"], record["target"])

    # ------------------------------------------------------------------
    # CREATE_TASK
    # ------------------------------------------------------------------

    def create_task(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        title = str(payload.get("title") or payload.get("target") or _DEFAULT_TASK_TITLE)
        task_id = _new_id("task")
        self.tasks[task_id] = {
            "title": title,
            "description": str(payload.get("description") or payload.get("content") or ""),
            "goal_id": payload.get("goalId"),
            "project_id": payload.get("projectId"),
        }
        LOGGER.info("Created task %s: %s", task_id, title)
        return {"task_id": task_id}

    def delete_task(self, _payload: Mapping[str, Any], result: Mapping[str, Any]) -> None:
        task_id = result.get("task_id")
        if self.tasks.pop(str(task_id), None) is not None:
            LOGGER.info("Deleted task %s", task_id)


def build_builtin_handlers(ledger: ActionLedger) -> list[ActionHandler]:
    return [
        ActionHandler(
            action_type=SUBMIT_CV,
            execute=ledger.submit_cv,
            compensate=ledger.withdraw_cv,
            description="Send the user's CV to a recipient (payload: target, content).",
        ),
        ActionHandler(
            action_type=ALLOCATE_FUNDS,
            execute=ledger.allocate_funds,
            compensate=ledger.release_funds,
            description="Allocate an amount to a target wallet or budget (payload: target, amount).",
        ),
        ActionHandler(
            action_type=CREATE_TASK,
            execute=ledger.create_task,
            compensate=ledger.delete_task,
            description="Create a follow-up task (payload: title, content, goalId, projectId).",
        ),
    ]


def register_builtin_actions(
    registry: ActionRegistry,
    ledger: ActionLedger | None = None,
) -> ActionLedger:
    """Register the built-in actions on ``registry`` and return their ledger."""

    ledger = ledger or ActionLedger()
    for handler in build_builtin_handlers(ledger):
        registry.register(handler)
    return ledger
