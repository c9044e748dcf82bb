"""Plan-execute-observe loop for one session at a time."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import structlog

from foreman.capabilities.base import (
    Capability,
    CapabilityNotFoundError,
    CapabilityResult,
    ErrorKind,
    TransientCapabilityError,
)
from foreman.capabilities.registry import CapabilityRegistry
from foreman.context import ExecutionContext
from foreman.correction import Escalate, Revised, SelfCorrectionController
from foreman.errors import ForemanError, OperationCancelledError, ParameterResolutionError
from foreman.escalation import (
    EscalationEvent,
    EscalationHandler,
    Resolution,
    resolve_escalation,
)
from foreman.events import EventBus
from foreman.knowledge import KnowledgeStore
from foreman.permissions import PermissionDeniedError, PermissionPolicy, check_and_gate
from foreman.plan import Plan, PlanStatus, Task, TaskDraft, TaskStatus
from foreman.planner import Planner
from foreman.processes import ProcessRegistry
from foreman.session import SessionState, SessionStateStore
from foreman.state.store import JsonStateStore, utcnow_iso
from foreman.workspace import Workspace

SCRATCHPAD_OUTPUT_LIMIT = 2000


@dataclass(slots=True)
class RunSummary:
    session_id: str
    objective: str
    status: str
    plan: Plan
    started_at: str
    ended_at: str
    replans: int = 0
    escalations: list[EscalationEvent] = field(default_factory=list)

    @property
    def completed_tasks(self) -> int:
        return sum(1 for task in self.plan.tasks if task.status is TaskStatus.COMPLETED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "objective": self.objective,
            "status": self.status,
            "plan_id": self.plan.id,
            "total_tasks": len(self.plan.tasks),
            "completed_tasks": self.completed_tasks,
            "replans": self.replans,
            "escalations": [event.to_dict() for event in self.escalations],
            "started_at": self.started_at,
            "ended_at": self.ended_at,
        }


class Orchestrator:
    def __init__(
        self,
        *,
        registry: CapabilityRegistry,
        processes: ProcessRegistry,
        sessions: SessionStateStore,
        planner: Planner,
        controller: SelfCorrectionController,
        policy: PermissionPolicy,
        store: JsonStateStore,
        knowledge: KnowledgeStore,
        workspace: Workspace,
        events: EventBus | None = None,
        escalation_handler: EscalationHandler | None = None,
    ) -> None:
        self.registry = registry
        self.processes = processes
        self.sessions = sessions
        self.planner = planner
        self.controller = controller
        self.policy = policy
        self.store = store
        self.knowledge = knowledge
        self.workspace = workspace
        self.events = events or EventBus()
        self.escalation_handler = escalation_handler
        self.logger = structlog.get_logger().bind(component="orchestrator")

    def cancel_session(self, session_id: str) -> None:
        self.processes.cancel_all(session_id)

    def save_plan(self, plan: Plan) -> None:
        self.store.set_json("plans", plan.session_id, plan.to_dict())

    def load_plan(self, session_id: str) -> Plan | None:
        if not self.store.exists("plans", session_id):
            return None
        payload = self.store.get_json("plans", session_id, default={})
        return Plan.from_dict(payload) if isinstance(payload, dict) and payload else None

    async def _create_plan(
        self, session_id: str, objective: str, history: list[dict[str, Any]]
    ) -> Plan:
        process_id, token = self.processes.begin(session_id, "Planning")
        error: str | None = None
        drafts: list[TaskDraft] = []
        try:
            drafts = await token.run(self.planner.plan(objective, history, token))
        except OperationCancelledError as exc:
            error = f"Planning cancelled: {exc}"
        except ForemanError as exc:
            error = f"Planning failed: {exc}"
        finally:
            self.processes.end(process_id)

        if error is None and not drafts:
            error = "Planning failed: planner returned no tasks."
        if error is not None:
            plan = Plan(objective=objective, session_id=session_id)
            plan.append_scratchpad(error)
            plan.mark_failed()
            self.logger.warning("planning_failed", session_id=session_id, error=error)
            return plan

        plan = Plan.from_drafts(objective, drafts, session_id=session_id)
        plan.append_scratchpad(self.planner.last_scratchpad)
        return plan

    def _reject(self, task: Task, output: str, kind: ErrorKind) -> CapabilityResult:
        result = CapabilityResult.fail(output, kind)
        task.reject(result)
        self.logger.info(
            "task_rejected", task_id=task.id, capability=task.capability, kind=kind.value
        )
        return result

    async def _execute(
        self,
        capability: Capability,
        params: dict[str, Any],
        plan: Plan,
        task: Task,
        session: SessionState,
    ) -> CapabilityResult:
        process_id, token = self.processes.begin(
            plan.session_id, f"Task {task.id}: {task.description}"
        )
        context = ExecutionContext(
            session_id=plan.session_id,
            plan=plan,
            session=session if capability.uses_session_state else session.detached(),
            planner=self.planner,
            knowledge=self.knowledge,
            workspace=self.workspace,
            events=self.events,
            token=token,
        )
        self.logger.info(
            "task_dispatched",
            task_id=task.id,
            capability=capability.name,
            session_id=plan.session_id,
        )
        try:
            return await token.run(capability.execute(params, context, token))
        except OperationCancelledError as exc:
            return CapabilityResult.fail(f"Task cancelled: {exc}", ErrorKind.CANCELLED)
        except TransientCapabilityError as exc:
            return CapabilityResult.fail(str(exc), ErrorKind.TRANSIENT)
        except Exception as exc:
            self.logger.exception("capability_raised", capability=capability.name)
            return CapabilityResult.fail(str(exc) or type(exc).__name__)
        finally:
            self.processes.end(process_id)

    async def dispatch(self, plan: Plan, task: Task, session: SessionState) -> CapabilityResult:
        """Validate, gate and run one pending task, leaving it in a terminal status."""
        try:
            params = plan.resolve_params(task)
            capability = self.registry.lookup(task.capability)
        except (ParameterResolutionError, CapabilityNotFoundError) as exc:
            return self._reject(task, str(exc), ErrorKind.VALIDATION)
        if self.controller.has_failed_before(plan.id, task.capability, task.params):
            return self._reject(
                task,
                f"'{task.capability}' already failed with these parameters in this plan.",
                ErrorKind.VALIDATION,
            )

        problems = self.registry.validate_params(capability, params)
        if problems:
            return self._reject(
                task,
                f"Invalid parameters for '{capability.name}': " + "; ".join(problems),
                ErrorKind.VALIDATION,
            )
        try:
            check_and_gate(capability, self.policy)
        except PermissionDeniedError as exc:
            return self._reject(task, str(exc), ErrorKind.PERMISSION_DENIED)

        task.start()
        self.save_plan(plan)
        self.events.publish(
            "task_started",
            plan.session_id,
            {"plan_id": plan.id, "task_id": task.id, "capability": task.capability},
        )
        before = session.fingerprint()
        result = await self._execute(capability, params, plan, task, session)
        task.finish(result)
        if session.fingerprint() != before:
            self.sessions.persist(plan.session_id, session)
        return result

    def _record_outcome(self, plan: Plan, task: Task) -> None:
        output = task.output
        if len(output) > SCRATCHPAD_OUTPUT_LIMIT:
            output = output[:SCRATCHPAD_OUTPUT_LIMIT] + "..."
        plan.append_scratchpad(
            f"[task {task.id}] {task.capability} -> {task.status.value}\n{output}"
        )
        self.save_plan(plan)
        self.events.publish(
            "task_finished",
            plan.session_id,
            {
                "plan_id": plan.id,
                "task_id": task.id,
                "status": task.status.value,
                "output": task.output,
                "error_kind": task.result.error_kind.value
                if task.result and task.result.error_kind
                else None,
            },
        )

    def _finish(self, summary: RunSummary, status: str) -> RunSummary:
        summary.status = status
        summary.ended_at = utcnow_iso()
        self.controller.release(summary.plan.id)
        self.save_plan(summary.plan)
        kind = "plan_completed" if status == "completed" else "plan_failed"
        self.events.publish(kind, summary.session_id, summary.to_dict())
        self.logger.info(
            kind,
            session_id=summary.session_id,
            plan_id=summary.plan.id,
            tasks=len(summary.plan.tasks),
        )
        return summary

    def _fail(self, summary: RunSummary, reason: str) -> RunSummary:
        summary.plan.append_scratchpad(reason)
        if summary.plan.status is not PlanStatus.FAILED:
            summary.plan.mark_failed()
        return self._finish(summary, "failed")

    async def run(
        self,
        session_id: str,
        objective: str,
        history: list[dict[str, Any]] | None = None,
    ) -> RunSummary:
        started_at = utcnow_iso()
        self.processes.clear_session(session_id)
        session = self.sessions.load(session_id)

        plan = await self._create_plan(session_id, objective, history or [])
        summary = RunSummary(
            session_id=session_id,
            objective=objective,
            status="active",
            plan=plan,
            started_at=started_at,
            ended_at=started_at,
        )
        if plan.status is PlanStatus.FAILED:
            return self._finish(summary, "failed")

        self.save_plan(plan)
        self.events.publish(
            "plan_created",
            session_id,
            {"plan_id": plan.id, "tasks": [task.to_dict() for task in plan.tasks]},
        )

        while True:
            if self.processes.is_session_cancelled(session_id):
                return self._fail(summary, "Session cancelled by operator.")
            task = plan.next_pending()
            if task is None:
                return self._finish(summary, "completed")

            await self.dispatch(plan, task, session)
            self._record_outcome(plan, task)
            if task.status is TaskStatus.COMPLETED:
                continue
            if self.processes.is_session_cancelled(session_id):
                return self._fail(summary, "Session cancelled by operator.")

            process_id, token = self.processes.begin(
                session_id, f"Replanning after task {task.id}"
            )
            try:
                outcome = await self.controller.attempt_correction(
                    plan, task, plan.retry_count, token
                )
            except OperationCancelledError as exc:
                if self.processes.is_session_cancelled(session_id):
                    return self._fail(summary, "Session cancelled during replanning.")
                outcome = Escalate(f"Replanning cancelled: {exc}")
            finally:
                self.processes.end(process_id)

            if isinstance(outcome, Revised):
                summary.replans += 1
                plan.append_scratchpad(self.planner.last_scratchpad)
                self.save_plan(plan)
                self.events.publish(
                    "plan_revised",
                    session_id,
                    {
                        "plan_id": plan.id,
                        "retry_count": plan.retry_count,
                        "tasks": [revised.to_dict() for revised in outcome.tasks],
                    },
                )
                continue

            plan.mark_failed()
            self.save_plan(plan)
            resolution = await self._escalate(summary, task, outcome)
            if resolution is Resolution.STOP:
                return self._fail(summary, f"Stopped by operator: {outcome.reason}")
            plan.reopen()
            task.accept_failure()
            plan.append_scratchpad(f"[task {task.id}] failure accepted by operator.")
            self.save_plan(plan)

    async def _escalate(self, summary: RunSummary, task: Task, outcome: Escalate) -> Resolution:
        plan = summary.plan
        event = EscalationEvent(
            plan_id=plan.id,
            session_id=plan.session_id,
            failed_task=task.to_dict(),
            output=task.output,
            retry_count=plan.retry_count,
            reason=outcome.reason,
        )
        summary.escalations.append(event)
        self.events.publish("escalation", plan.session_id, event.to_dict())
        self.logger.warning(
            "escalation",
            plan_id=plan.id,
            task_id=task.id,
            reason=outcome.reason,
        )
        return await resolve_escalation(event, self.escalation_handler)
