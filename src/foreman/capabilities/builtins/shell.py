from __future__ import annotations

from typing import Any

from foreman.capabilities.base import Capability, CapabilityResult, ParameterSpec
from foreman.context import ExecutionContext
from foreman.processes import CancelToken
from foreman.workspace import CommandResult


def command_outcome(result: CommandResult) -> CapabilityResult:
    if result.success:
        return CapabilityResult.ok(result.format())
    return CapabilityResult.fail(result.format())


class ExecuteCommand(Capability):
    name = "execute_command"
    description = "Executes a shell command in the workspace root."
    parameters = (
        ParameterSpec("command", "string", "The shell command to execute.", required=True),
        ParameterSpec("timeout", "number", "Seconds before the command is killed."),
    )
    permission_group = "shell_execution"

    async def execute(
        self, params: dict[str, Any], context: ExecutionContext, token: CancelToken
    ) -> CapabilityResult:
        result = await context.workspace.run_command(
            params["command"], token, timeout=params.get("timeout")
        )
        return command_outcome(result)
