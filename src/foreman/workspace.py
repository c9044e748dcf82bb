from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass
from pathlib import Path

import structlog

from foreman.errors import ForemanError, OperationCancelledError
from foreman.processes import CancelToken

IGNORED_DIRECTORIES = {".git", "__pycache__", "node_modules", ".foreman", ".venv", "venv"}


class WorkspaceError(ForemanError):
    """Raised when a path escapes the workspace root."""


@dataclass(frozen=True, slots=True)
class CommandResult:
    command: str
    exit_code: int | None
    stdout: str
    stderr: str
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    def format(self) -> str:
        body = f"STDOUT:\n{self.stdout}\n\nSTDERR:\n{self.stderr}"
        if self.timed_out:
            return f"Command timed out:\n{body}"
        if self.success:
            return f"Command executed successfully:\n{body}"
        return f"Command failed with exit code {self.exit_code}:\n{body}"


class Workspace:
    """Filesystem and subprocess access confined to one root directory."""

    def __init__(self, root: Path, *, command_timeout: float = 600.0) -> None:
        self.root = root.expanduser().resolve()
        self.command_timeout = command_timeout
        self.logger = structlog.get_logger().bind(component="workspace")

    def resolve(self, relative: str | Path) -> Path:
        candidate = (self.root / relative).resolve()
        if candidate != self.root and self.root not in candidate.parents:
            raise WorkspaceError(f"Path escapes the workspace: {relative}")
        return candidate

    def relative(self, path: Path) -> str:
        return path.resolve().relative_to(self.root).as_posix() or "."

    def python_executable(self, env_name: str) -> Path:
        env_dir = self.resolve(env_name)
        if os.name == "nt":
            return env_dir / "Scripts" / "python.exe"
        return env_dir / "bin" / "python"

    async def run_command(
        self,
        command: str,
        token: CancelToken,
        *,
        timeout: float | None = None,
    ) -> CommandResult:
        token.raise_if_cancelled()
        self.logger.debug("command_started", command=command)
        process = await asyncio.create_subprocess_shell(
            command,
            cwd=str(self.root),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                token.run(process.communicate()),
                timeout=timeout or self.command_timeout,
            )
        except OperationCancelledError:
            await self._kill(process)
            self.logger.info("command_cancelled", command=command)
            raise
        except TimeoutError:
            await self._kill(process)
            self.logger.warning("command_timed_out", command=command)
            return CommandResult(command, None, "", "", timed_out=True)

        result = CommandResult(
            command=command,
            exit_code=process.returncode,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )
        self.logger.debug("command_finished", command=command, exit_code=result.exit_code)
        return result

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()

    def file_tree(self, relative: str = ".", *, max_entries: int = 300) -> list[str]:
        base = self.resolve(relative)
        if not base.is_dir():
            raise WorkspaceError(f"Not a directory: {relative}")
        entries: list[str] = []
        for current, directories, files in os.walk(base):
            directories[:] = sorted(d for d in directories if d not in IGNORED_DIRECTORIES)
            current_path = Path(current)
            for name in directories:
                entries.append(self.relative(current_path / name) + "/")
            for name in sorted(files):
                entries.append(self.relative(current_path / name))
            if len(entries) >= max_entries:
                break
        return sorted(entries)[:max_entries]
