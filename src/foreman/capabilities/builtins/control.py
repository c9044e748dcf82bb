"""Capabilities that steer the run itself rather than touching the workspace."""

from __future__ import annotations

from typing import Any

from foreman.capabilities.base import Capability, CapabilityResult, ErrorKind, ParameterSpec
from foreman.context import ExecutionContext
from foreman.errors import OperationCancelledError, PlanParseError
from foreman.processes import CancelToken


class Wait(Capability):
    name = "wait"
    description = "Pauses execution for a number of seconds."
    parameters = (ParameterSpec("seconds", "number", "Seconds to wait.", required=True),)

    async def execute(
        self, params: dict[str, Any], context: ExecutionContext, token: CancelToken
    ) -> CapabilityResult:
        seconds = float(params["seconds"])
        try:
            await token.sleep(seconds)
        except OperationCancelledError:
            return CapabilityResult.fail("Wait cancelled.", ErrorKind.CANCELLED)
        return CapabilityResult.ok(f"Waited for {seconds:g} seconds.")


class SubmitResponse(Capability):
    name = "submit_response"
    description = "Sends the final answer or a status update back to the operator."
    parameters = (
        ParameterSpec("response", "string", "Message for the operator (Markdown).", required=True),
    )

    async def execute(
        self, params: dict[str, Any], context: ExecutionContext, token: CancelToken
    ) -> CapabilityResult:
        context.events.publish(
            "response",
            context.session_id,
            {"plan_id": context.plan.id, "response": params["response"]},
        )
        return CapabilityResult.ok("Response submitted to the operator.")


class EditPlan(Capability):
    name = "edit_plan"
    description = (
        "Rewrites the remaining steps of the current plan from an instruction, "
        "e.g. 'also add a test file' or 'skip the database setup'."
    )
    parameters = (
        ParameterSpec("instruction", "string", "How the plan should change.", required=True),
    )

    async def execute(
        self, params: dict[str, Any], context: ExecutionContext, token: CancelToken
    ) -> CapabilityResult:
        failure_context = (
            "No task failed. The remaining steps must change as follows:\n"
            f"{params['instruction']}"
        )
        try:
            drafts = await context.planner.replan(context.plan, failure_context, token)
        except PlanParseError as exc:
            return CapabilityResult.fail(f"Could not revise the plan: {exc}")
        if not drafts:
            return CapabilityResult.fail("Planner returned no replacement steps.")
        revised = context.plan.replace_pending_suffix(drafts)
        steps = "\n".join(f"[{task.id}] {task.capability}: {task.description}" for task in revised)
        return CapabilityResult.ok(f"Plan updated. Remaining steps:\n{steps}")
