"""Bounded retry-with-replan after a task failure."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any

import structlog

from foreman.errors import OperationCancelledError
from foreman.plan import Plan, Task
from foreman.planner import Planner
from foreman.processes import CancelToken
from foreman.state.store import utcnow_iso

FAILURE_OUTPUT_LIMIT = 300


@dataclass(slots=True)
class FailedAttempt:
    capability: str
    params: dict[str, Any]
    output: str
    at: str = field(default_factory=utcnow_iso)


class FailureMemory:
    """Remembers failed (capability, params) pairs so a revision can avoid them."""

    def __init__(self) -> None:
        self.failures: list[FailedAttempt] = []

    @staticmethod
    def _key(params: dict[str, Any]) -> str:
        return json.dumps(params, sort_keys=True, default=str)

    def record(self, capability: str, params: dict[str, Any], output: str) -> None:
        if self.has_failed_before(capability, params):
            return
        self.failures.append(FailedAttempt(capability, dict(params), output))

    def has_failed_before(self, capability: str, params: dict[str, Any]) -> bool:
        key = self._key(params)
        return any(
            failure.capability == capability and self._key(failure.params) == key
            for failure in self.failures
        )

    def render(self) -> str:
        if not self.failures:
            return ""
        blocks = [
            "# Actions that already failed",
            "Do not repeat any of these with the same parameters.",
        ]
        for index, failure in enumerate(self.failures, 1):
            blocks.append(
                f"[failure {index}] capability `{failure.capability}` with params "
                f"`{self._key(failure.params)}` returned:\n"
                f"{failure.output[:FAILURE_OUTPUT_LIMIT]}"
            )
        return "\n\n".join(blocks)

    def clear(self) -> None:
        self.failures.clear()


@dataclass(frozen=True, slots=True)
class Revised:
    tasks: list[Task]


@dataclass(frozen=True, slots=True)
class Escalate:
    reason: str


CorrectionOutcome = Revised | Escalate


class SelfCorrectionController:
    def __init__(
        self,
        planner: Planner,
        *,
        max_retries: int = 1,
        timeout_seconds: float = 120.0,
    ) -> None:
        self.planner = planner
        self.max_retries = max(0, max_retries)
        self.timeout_seconds = timeout_seconds
        self._memories: dict[str, FailureMemory] = {}
        self.logger = structlog.get_logger().bind(component="self_correction")

    def memory_for(self, plan_id: str) -> FailureMemory:
        """Failure memory scoped to one plan; sessions and plans never share it."""
        return self._memories.setdefault(plan_id, FailureMemory())

    def has_failed_before(self, plan_id: str, capability: str, params: dict[str, Any]) -> bool:
        memory = self._memories.get(plan_id)
        return memory is not None and memory.has_failed_before(capability, params)

    def release(self, plan_id: str) -> None:
        self._memories.pop(plan_id, None)

    def failure_context(self, plan: Plan, failed_task: Task) -> str:
        sections = [
            f"Task {failed_task.id} ({failed_task.capability}: {failed_task.description}) failed.",
            f"Parameters: {json.dumps(failed_task.params, sort_keys=True, default=str)}",
            f"Result:\n---\n{failed_task.output}\n---",
        ]
        memory = self.memory_for(plan.id).render()
        if memory:
            sections.append(memory)
        if plan.scratchpad:
            sections.append(f"# Scratchpad\n{plan.scratchpad}")
        return "\n\n".join(sections)

    async def attempt_correction(
        self,
        plan: Plan,
        failed_task: Task,
        retry_count: int,
        token: CancelToken,
    ) -> CorrectionOutcome:
        memory = self.memory_for(plan.id)
        memory.record(failed_task.capability, failed_task.params, failed_task.output)
        if retry_count >= self.max_retries:
            self.logger.info(
                "correction_exhausted",
                plan_id=plan.id,
                task_id=failed_task.id,
                retry_count=retry_count,
            )
            return Escalate(f"Retries exhausted after {retry_count} revision(s).")

        plan.retry_count = retry_count + 1
        plan.archive_attempt()
        self.logger.info(
            "replan_requested",
            plan_id=plan.id,
            task_id=failed_task.id,
            attempt=plan.retry_count,
        )
        try:
            drafts = await asyncio.wait_for(
                token.run(
                    self.planner.replan(plan, self.failure_context(plan, failed_task), token)
                ),
                timeout=self.timeout_seconds,
            )
        except OperationCancelledError:
            raise
        except TimeoutError:
            self.logger.warning("replan_timed_out", plan_id=plan.id)
            return Escalate(f"Replanning timed out after {self.timeout_seconds:.1f}s.")
        except Exception as exc:
            self.logger.warning("replan_failed", plan_id=plan.id, error=str(exc))
            return Escalate(f"Replanning failed: {exc}")

        if not drafts:
            return Escalate("Planner returned no replacement tasks.")
        revised = plan.replace_from(failed_task, drafts)
        self.logger.info("plan_revised", plan_id=plan.id, tasks=len(revised))
        return Revised(revised)
