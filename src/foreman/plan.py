"""Plan and task state machine.

Task status only moves forward: ``pending -> in_progress -> completed|failed``,
or ``pending -> failed`` when a task is rejected before dispatch. A task's
result is written exactly once, at the moment it reaches a terminal status.
A plan may swap out its unexecuted suffix during replanning, but never edits
tasks that already ran.
"""

from __future__ import annotations

import copy
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from uuid import uuid4

from foreman.capabilities.base import CapabilityResult
from foreman.errors import InvalidTransitionError, ParameterResolutionError
from foreman.state.store import utcnow_iso

_RESULT_REF_RE = re.compile(r"\{\{tasks\[(\d+)\]\.result\}\}")


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in {TaskStatus.COMPLETED, TaskStatus.FAILED}


class PlanStatus(str, Enum):
    ACTIVE = "active"
    STALE = "stale"
    FAILED = "failed"


_TASK_TRANSITIONS = {
    TaskStatus.PENDING: {TaskStatus.IN_PROGRESS, TaskStatus.FAILED},
    TaskStatus.IN_PROGRESS: {TaskStatus.COMPLETED, TaskStatus.FAILED},
    TaskStatus.COMPLETED: set(),
    TaskStatus.FAILED: set(),
}


@dataclass(slots=True)
class TaskDraft:
    capability: str
    description: str = ""
    params: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> TaskDraft:
        capability = payload.get("capability") or payload.get("action") or payload.get("tool")
        params = payload.get("params", payload.get("parameters", {}))
        return cls(
            capability=str(capability or "").strip(),
            description=str(payload.get("description", "")).strip(),
            params=dict(params) if isinstance(params, dict) else {},
        )


@dataclass(slots=True)
class Task:
    id: int
    description: str
    capability: str
    params: dict[str, Any] = field(default_factory=dict)
    status: TaskStatus = TaskStatus.PENDING
    result: CapabilityResult | None = None
    accepted_failure: bool = False
    started_at: str | None = None
    completed_at: str | None = None

    @classmethod
    def from_draft(cls, task_id: int, draft: TaskDraft) -> Task:
        return cls(
            id=task_id,
            description=draft.description or draft.capability,
            capability=draft.capability,
            params=dict(draft.params),
        )

    def _transition(self, target: TaskStatus) -> None:
        if target not in _TASK_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Task {self.id} cannot move from {self.status.value} to {target.value}."
            )
        self.status = target

    def _set_result(self, result: CapabilityResult) -> None:
        if self.result is not None:
            raise InvalidTransitionError(f"Task {self.id} already has a result.")
        self.result = result
        self.completed_at = utcnow_iso()

    def start(self) -> None:
        self._transition(TaskStatus.IN_PROGRESS)
        self.started_at = utcnow_iso()

    def finish(self, result: CapabilityResult) -> None:
        if self.status is not TaskStatus.IN_PROGRESS:
            raise InvalidTransitionError(
                f"Task {self.id} cannot finish from {self.status.value}."
            )
        self._set_result(result)
        self._transition(TaskStatus.COMPLETED if result.success else TaskStatus.FAILED)

    def reject(self, result: CapabilityResult) -> None:
        """Fail a task that was never dispatched."""
        if self.status is not TaskStatus.PENDING:
            raise InvalidTransitionError(
                f"Task {self.id} cannot be rejected from {self.status.value}."
            )
        self._set_result(result)
        self._transition(TaskStatus.FAILED)

    def accept_failure(self) -> None:
        if self.status is not TaskStatus.FAILED:
            raise InvalidTransitionError(f"Task {self.id} has not failed.")
        self.accepted_failure = True

    @property
    def output(self) -> str:
        return self.result.output if self.result else ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "capability": self.capability,
            "params": copy.deepcopy(self.params),
            "status": self.status.value,
            "result": self.result.to_dict() if self.result else None,
            "accepted_failure": self.accepted_failure,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Task:
        result = payload.get("result")
        return cls(
            id=int(payload["id"]),
            description=str(payload.get("description", "")),
            capability=str(payload.get("capability", "")),
            params=dict(payload.get("params") or {}),
            status=TaskStatus(payload.get("status", "pending")),
            result=CapabilityResult.from_dict(result) if isinstance(result, dict) else None,
            accepted_failure=bool(payload.get("accepted_failure", False)),
            started_at=payload.get("started_at"),
            completed_at=payload.get("completed_at"),
        )


@dataclass(slots=True)
class Plan:
    objective: str
    session_id: str = "default"
    id: str = field(default_factory=lambda: f"plan-{uuid4().hex[:12]}")
    scratchpad: str = ""
    tasks: list[Task] = field(default_factory=list)
    investigation: list[Any] = field(default_factory=list)
    attempts: list[dict[str, Any]] = field(default_factory=list)
    status: PlanStatus = PlanStatus.ACTIVE
    retry_count: int = 0
    created_at: str = field(default_factory=utcnow_iso)

    def __setattr__(self, name: str, value: Any) -> None:
        if name == "objective" and hasattr(self, "objective"):
            raise AttributeError("Plan objective is immutable.")
        object.__setattr__(self, name, value)

    @classmethod
    def from_drafts(
        cls, objective: str, drafts: list[TaskDraft], *, session_id: str = "default"
    ) -> Plan:
        plan = cls(objective=objective, session_id=session_id)
        plan.tasks = [Task.from_draft(index, draft) for index, draft in enumerate(drafts, 1)]
        return plan

    def append_scratchpad(self, text: str) -> None:
        entry = text.strip()
        if not entry:
            return
        self.scratchpad = f"{self.scratchpad}\n\n{entry}" if self.scratchpad else entry

    def next_pending(self) -> Task | None:
        for task in self.tasks:
            if task.status is TaskStatus.PENDING:
                return task
        return None

    def in_progress(self) -> Task | None:
        for task in self.tasks:
            if task.status is TaskStatus.IN_PROGRESS:
                return task
        return None

    def task_by_id(self, task_id: int) -> Task | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    @property
    def is_complete(self) -> bool:
        return bool(self.tasks) and all(
            task.status is TaskStatus.COMPLETED
            or (task.status is TaskStatus.FAILED and task.accepted_failure)
            for task in self.tasks
        )

    def _next_task_id(self) -> int:
        return max((task.id for task in self.tasks), default=0) + 1

    def snapshot(self, status: PlanStatus = PlanStatus.STALE) -> dict[str, Any]:
        payload = self.to_dict()
        payload.pop("attempts", None)
        payload["status"] = status.value
        payload["archived_at"] = utcnow_iso()
        return payload

    def archive_attempt(self) -> dict[str, Any]:
        snapshot = self.snapshot(PlanStatus.STALE)
        self.attempts.append(snapshot)
        return snapshot

    def replace_from(self, failed_task: Task, drafts: list[TaskDraft]) -> list[Task]:
        """Swap ``failed_task`` and the pending tasks after it for a revision."""
        try:
            index = next(i for i, task in enumerate(self.tasks) if task is failed_task)
        except StopIteration as exc:
            raise InvalidTransitionError(
                f"Task {failed_task.id} is not part of plan {self.id}."
            ) from exc
        if failed_task.status is not TaskStatus.FAILED:
            raise InvalidTransitionError(
                f"Only a failed task can be replaced, task {failed_task.id} is "
                f"{failed_task.status.value}."
            )
        suffix = self.tasks[index + 1 :]
        if any(task.status is not TaskStatus.PENDING for task in suffix):
            raise InvalidTransitionError("Cannot replace tasks that have already run.")
        next_id = self._next_task_id()
        revised = [Task.from_draft(next_id + offset, draft) for offset, draft in enumerate(drafts)]
        self.tasks = self.tasks[:index] + revised
        return revised

    def replace_pending_suffix(self, drafts: list[TaskDraft]) -> list[Task]:
        """Swap every trailing pending task for ``drafts``."""
        cut = len(self.tasks)
        while cut > 0 and self.tasks[cut - 1].status is TaskStatus.PENDING:
            cut -= 1
        next_id = self._next_task_id()
        revised = [Task.from_draft(next_id + offset, draft) for offset, draft in enumerate(drafts)]
        self.tasks = self.tasks[:cut] + revised
        return revised

    def resolve_params(self, task: Task) -> dict[str, Any]:
        """Substitute ``{{tasks[N].result}}`` references in string parameters."""
        resolved: dict[str, Any] = {}
        for key, value in task.params.items():
            if not isinstance(value, str):
                resolved[key] = value
                continue

            def _substitute(match: re.Match[str]) -> str:
                source_id = int(match.group(1))
                source = self.task_by_id(source_id)
                if source is None or source.status is not TaskStatus.COMPLETED:
                    raise ParameterResolutionError(
                        f"Could not resolve parameter '{key}': task {source_id} has not "
                        "completed successfully."
                    )
                return source.output

            resolved[key] = _RESULT_REF_RE.sub(_substitute, value)
        return resolved

    def mark_failed(self) -> None:
        if self.status is PlanStatus.STALE:
            raise InvalidTransitionError(f"Plan {self.id} is stale.")
        self.status = PlanStatus.FAILED

    def reopen(self) -> None:
        """Return a failed plan to ``active`` after the operator continues past a failure."""
        if self.status is not PlanStatus.FAILED:
            raise InvalidTransitionError(
                f"Plan {self.id} cannot reopen from {self.status.value}."
            )
        self.status = PlanStatus.ACTIVE

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "objective": self.objective,
            "scratchpad": self.scratchpad,
            "tasks": [task.to_dict() for task in self.tasks],
            "investigation": copy.deepcopy(self.investigation),
            "attempts": copy.deepcopy(self.attempts),
            "status": self.status.value,
            "retry_count": self.retry_count,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Plan:
        return cls(
            objective=str(payload.get("objective", "")),
            session_id=str(payload.get("session_id", "default")),
            id=str(payload.get("id") or f"plan-{uuid4().hex[:12]}"),
            scratchpad=str(payload.get("scratchpad", "")),
            tasks=[Task.from_dict(item) for item in payload.get("tasks", [])],
            investigation=list(payload.get("investigation", [])),
            attempts=list(payload.get("attempts", [])),
            status=PlanStatus(payload.get("status", "active")),
            retry_count=int(payload.get("retry_count", 0)),
            created_at=str(payload.get("created_at") or utcnow_iso()),
        )
