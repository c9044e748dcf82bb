from __future__ import annotations

import asyncio
import contextlib
import json
import tempfile
from collections.abc import AsyncIterator
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from foreman.backends.base import AgentBackend, BackendExecutionError, BackendProcessError
from foreman.errors import OperationCancelledError

if TYPE_CHECKING:
    from foreman.processes import CancelToken

DEFAULT_ARGS = ("-p", "{prompt}", "--output-format", "stream-json")


class CommandBackend(AgentBackend):
    """Runs a model CLI as a subprocess and streams its reply.

    ``args`` may contain ``{prompt}``, ``{model}`` and ``{system_prompt_file}``
    placeholders. Without a ``{prompt}`` placeholder the prompt is written to
    stdin. Lines that parse as JSON events contribute their text content;
    anything else is passed through verbatim.
    """

    def __init__(
        self,
        command: str = "claude",
        args: list[str] | tuple[str, ...] = DEFAULT_ARGS,
        model: str = "",
        working_directory: Path | None = None,
    ) -> None:
        self.command = command
        self.args = list(args)
        self.model = model
        self.working_directory = working_directory
        self.logger = structlog.get_logger().bind(component="command_backend")

    def build_command(self, prompt: str, system_prompt_file: str = "") -> list[str]:
        values = {"prompt": prompt, "model": self.model, "system_prompt_file": system_prompt_file}
        command = [self.command]
        for arg in self.args:
            if arg == "{model}" and not self.model:
                if command and command[-1].startswith("-"):
                    command.pop()
                continue
            command.append(arg.format(**values) if "{" in arg else arg)
        return command

    def _uses_stdin(self) -> bool:
        return not any("{prompt}" in arg for arg in self.args)

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        content = event.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            return "".join(
                item["text"]
                for item in content
                if isinstance(item, dict) and isinstance(item.get("text"), str)
            )
        delta = event.get("delta")
        if isinstance(delta, str):
            return delta
        result = event.get("result")
        if isinstance(result, str):
            return result
        return ""

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    @staticmethod
    def compose_prompt(user_prompt: str, context: dict[str, Any]) -> str:
        if not context:
            return user_prompt
        return (
            f"{user_prompt}\n\nContext JSON:\n"
            f"{json.dumps(context, ensure_ascii=False, indent=2, default=str)}"
        )

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        token: CancelToken | None = None,
    ) -> AsyncIterator[str]:
        prompt = self.compose_prompt(user_prompt, context)
        if self._uses_stdin() and system_prompt:
            prompt = f"{system_prompt}\n\n{prompt}"

        with tempfile.NamedTemporaryFile(mode="w", suffix=".md", encoding="utf-8") as temp_file:
            temp_file.write(system_prompt)
            temp_file.flush()
            command = self.build_command(prompt, temp_file.name)
            try:
                process = await asyncio.create_subprocess_exec(
                    *command,
                    cwd=str(self.working_directory) if self.working_directory else None,
                    stdin=asyncio.subprocess.PIPE if self._uses_stdin() else None,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except FileNotFoundError as exc:
                raise BackendProcessError(
                    f"Model command not found: {self.command}",
                    backend=self.command,
                    retriable=False,
                ) from exc
            if process.stdout is None:
                raise BackendProcessError(
                    "Model command did not expose stdout.", backend=self.command, retriable=False
                )
            self.logger.debug("backend_started", command=self.command, pid=process.pid)

            killer: asyncio.Task[None] | None = None
            if token is not None:

                async def _kill_on_cancel() -> None:
                    await token.wait()
                    if process.returncode is None:
                        process.kill()

                killer = asyncio.ensure_future(_kill_on_cancel())

            try:
                if process.stdin is not None:
                    process.stdin.write(prompt.encode("utf-8"))
                    await process.stdin.drain()
                    process.stdin.close()

                parse_buffer = ""
                async for raw_line in process.stdout:
                    line = raw_line.decode("utf-8", errors="replace").strip()
                    if not line:
                        continue
                    candidate = f"{parse_buffer}{line}" if parse_buffer else line
                    try:
                        event = json.loads(candidate)
                        parse_buffer = ""
                    except json.JSONDecodeError:
                        if self._appears_partial_json(candidate):
                            parse_buffer = candidate
                            continue
                        parse_buffer = ""
                        yield line
                        continue
                    if not isinstance(event, dict):
                        yield candidate
                        continue
                    content = self._extract_content(event)
                    if content:
                        yield content

                if parse_buffer:
                    yield parse_buffer

                return_code = await process.wait()
            finally:
                if killer is not None:
                    killer.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await killer
                if process.returncode is None:
                    process.kill()
                    await process.wait()

            if token is not None and token.cancelled:
                raise OperationCancelledError(token.reason or "Backend call cancelled.")

            stderr_output = ""
            if process.stderr is not None:
                stderr_output = (
                    (await process.stderr.read()).decode("utf-8", errors="replace").strip()
                )
            if return_code != 0:
                raise BackendExecutionError(
                    f"Model command failed with exit code {return_code}: {stderr_output}",
                    backend=self.command,
                    exit_code=return_code,
                    retriable=True,
                )
