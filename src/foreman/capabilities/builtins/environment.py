"""Python virtual environment capabilities and the stateful REPL."""

from __future__ import annotations

import json
import shlex
import shutil
import sys
import textwrap
from typing import Any
from uuid import uuid4

from foreman.capabilities.base import Capability, CapabilityResult, ErrorKind, ParameterSpec
from foreman.capabilities.builtins.shell import command_outcome
from foreman.context import ExecutionContext
from foreman.processes import CancelToken
from foreman.workspace import WorkspaceError

REPL_MEMORY_KEY = "thread_memory"
SCRATCH_DIR = ".foreman/tmp"

_REPL_WRAPPER = """
import json

with open({memory_in!r}, encoding="utf-8") as _handle:
    thread_memory = json.load(_handle)

try:
{code}
except Exception as exc:
    print(f"REPL_ERROR: {{exc}}")

with open({memory_out!r}, "w", encoding="utf-8") as _handle:
    json.dump(thread_memory, _handle, default=str)
"""


def _interpreter(context: ExecutionContext, env_name: str | None) -> str:
    name = env_name or context.session.active_environment
    if not name:
        return sys.executable
    return str(context.workspace.python_executable(name))


class CreatePythonEnvironment(Capability):
    name = "create_python_environment"
    description = "Creates a Python virtual environment and makes it the active one."
    parameters = (
        ParameterSpec(
            "env_name", "string", "Environment folder name, e.g. 'venv'.", required=True
        ),
    )
    permission_group = "shell_execution"
    uses_session_state = True

    async def execute(
        self, params: dict[str, Any], context: ExecutionContext, token: CancelToken
    ) -> CapabilityResult:
        env_name = params["env_name"]
        try:
            env_dir = context.workspace.resolve(env_name)
        except WorkspaceError as exc:
            return CapabilityResult.fail(str(exc), ErrorKind.VALIDATION)
        if (env_dir / "pyvenv.cfg").exists():
            context.session.record_environment("adopted", env_name)
            return CapabilityResult.ok(f"Environment '{env_name}' already exists; now active.")

        result = await context.workspace.run_command(
            f"{shlex.quote(sys.executable)} -m venv {shlex.quote(env_name)}", token
        )
        if result.success:
            context.session.record_environment("created", env_name)
        return command_outcome(result)


class SetActiveEnvironment(Capability):
    name = "set_active_environment"
    description = "Adopts an existing virtual environment for later Python tasks."
    parameters = (
        ParameterSpec("env_name", "string", "Environment folder name.", required=True),
    )
    uses_session_state = True

    async def execute(
        self, params: dict[str, Any], context: ExecutionContext, token: CancelToken
    ) -> CapabilityResult:
        env_name = params["env_name"]
        try:
            executable = context.workspace.python_executable(env_name)
        except WorkspaceError as exc:
            return CapabilityResult.fail(str(exc), ErrorKind.VALIDATION)
        if not executable.exists():
            return CapabilityResult.fail(f"No Python interpreter found at {executable}.")
        context.session.record_environment("adopted", env_name)
        return CapabilityResult.ok(f"Active environment set to '{env_name}'.")


class DeletePythonEnvironment(Capability):
    name = "delete_python_environment"
    description = "Deletes a virtual environment folder from the workspace."
    parameters = (
        ParameterSpec("env_name", "string", "Environment folder name.", required=True),
    )
    permission_group = "filesystem_write"
    uses_session_state = True

    async def execute(
        self, params: dict[str, Any], context: ExecutionContext, token: CancelToken
    ) -> CapabilityResult:
        env_name = params["env_name"]
        try:
            env_dir = context.workspace.resolve(env_name)
        except WorkspaceError as exc:
            return CapabilityResult.fail(str(exc), ErrorKind.VALIDATION)
        if env_dir == context.workspace.root or not (env_dir / "pyvenv.cfg").exists():
            return CapabilityResult.fail(f"'{env_name}' is not a virtual environment.")
        shutil.rmtree(env_dir)
        context.session.record_environment("deleted", env_name)
        return CapabilityResult.ok(f"Deleted environment '{env_name}'.")


class InstallPythonDependencies(Capability):
    name = "install_python_dependencies"
    description = "Installs packages with pip into a virtual environment."
    parameters = (
        ParameterSpec(
            "dependencies", "array", "Packages to install, e.g. ['numpy'].", required=True
        ),
        ParameterSpec("env_name", "string", "Environment folder; defaults to the active one."),
    )
    permission_group = "shell_execution"

    async def execute(
        self, params: dict[str, Any], context: ExecutionContext, token: CancelToken
    ) -> CapabilityResult:
        dependencies = [str(item) for item in params["dependencies"] if str(item).strip()]
        if not dependencies:
            return CapabilityResult.fail("No dependencies given.", ErrorKind.VALIDATION)
        env_name = params.get("env_name") or context.session.active_environment
        if not env_name:
            return CapabilityResult.fail(
                "No environment given and no active environment is set.", ErrorKind.VALIDATION
            )
        python = _interpreter(context, env_name)
        packages = " ".join(shlex.quote(dep) for dep in dependencies)
        result = await context.workspace.run_command(
            f"{shlex.quote(python)} -m pip install {packages}", token
        )
        return command_outcome(result)


class ExecutePythonScript(Capability):
    name = "execute_python_script"
    description = "Runs a Python script from the workspace."
    parameters = (
        ParameterSpec("script_path", "string", "Workspace-relative script path.", required=True),
        ParameterSpec("env_name", "string", "Environment folder; defaults to the active one."),
        ParameterSpec("args", "array", "Command-line arguments for the script."),
    )
    permission_group = "shell_execution"

    async def execute(
        self, params: dict[str, Any], context: ExecutionContext, token: CancelToken
    ) -> CapabilityResult:
        try:
            script = context.workspace.resolve(params["script_path"])
            python = _interpreter(context, params.get("env_name"))
        except WorkspaceError as exc:
            return CapabilityResult.fail(str(exc), ErrorKind.VALIDATION)
        if not script.is_file():
            return CapabilityResult.fail(f"Script not found: {params['script_path']}")
        args = " ".join(shlex.quote(str(arg)) for arg in params.get("args") or [])
        command = f"{shlex.quote(python)} {shlex.quote(str(script))} {args}".strip()
        return command_outcome(await context.workspace.run_command(command, token))


class PythonRepl(Capability):
    name = "python_repl"
    description = (
        "Runs Python code with a persistent 'thread_memory' dict that survives across "
        "calls in this session."
    )
    parameters = (
        ParameterSpec("code", "string", "Python code to execute.", required=True),
    )
    permission_group = "shell_execution"
    uses_session_state = True

    async def execute(
        self, params: dict[str, Any], context: ExecutionContext, token: CancelToken
    ) -> CapabilityResult:
        scratch = context.workspace.resolve(SCRATCH_DIR)
        scratch.mkdir(parents=True, exist_ok=True)
        stem = uuid4().hex[:12]
        memory_in = scratch / f"repl_{stem}_in.json"
        memory_out = scratch / f"repl_{stem}_out.json"
        script = scratch / f"repl_{stem}.py"

        memory = context.session.recall(REPL_MEMORY_KEY, {})
        memory_in.write_text(json.dumps(memory if isinstance(memory, dict) else {}), "utf-8")
        script.write_text(
            _REPL_WRAPPER.format(
                memory_in=str(memory_in),
                memory_out=str(memory_out),
                code=textwrap.indent(params["code"], "    ") or "    pass",
            ),
            encoding="utf-8",
        )
        python = _interpreter(context, None)
        try:
            result = await context.workspace.run_command(
                f"{shlex.quote(python)} {shlex.quote(str(script))}", token
            )
            if memory_out.exists():
                context.session.remember(
                    REPL_MEMORY_KEY, json.loads(memory_out.read_text(encoding="utf-8"))
                )
        finally:
            for path in (memory_in, memory_out, script):
                path.unlink(missing_ok=True)
        return command_outcome(result)
