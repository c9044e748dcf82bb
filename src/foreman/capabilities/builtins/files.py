from __future__ import annotations

from typing import Any

from foreman.capabilities.base import Capability, CapabilityResult, ErrorKind, ParameterSpec
from foreman.context import ExecutionContext
from foreman.processes import CancelToken
from foreman.workspace import WorkspaceError

MAX_READ_CHARS = 200_000


class ReadFile(Capability):
    name = "read_file"
    description = "Reads a text file from the workspace."
    parameters = (ParameterSpec("path", "string", "Workspace-relative path.", required=True),)
    permission_group = "filesystem_read"

    async def execute(
        self, params: dict[str, Any], context: ExecutionContext, token: CancelToken
    ) -> CapabilityResult:
        try:
            path = context.workspace.resolve(params["path"])
        except WorkspaceError as exc:
            return CapabilityResult.fail(str(exc), ErrorKind.VALIDATION)
        if not path.is_file():
            return CapabilityResult.fail(f"File not found: {params['path']}")
        text = path.read_text(encoding="utf-8", errors="replace")
        if len(text) > MAX_READ_CHARS:
            text = text[:MAX_READ_CHARS] + "\n... [truncated]"
        return CapabilityResult.ok(text)


class ListFiles(Capability):
    name = "list_files"
    description = "Lists files and folders under a workspace directory."
    parameters = (
        ParameterSpec("path", "string", "Workspace-relative directory; defaults to the root."),
    )
    permission_group = "filesystem_read"

    async def execute(
        self, params: dict[str, Any], context: ExecutionContext, token: CancelToken
    ) -> CapabilityResult:
        try:
            entries = context.workspace.file_tree(params.get("path") or ".")
        except WorkspaceError as exc:
            return CapabilityResult.fail(str(exc), ErrorKind.VALIDATION)
        return CapabilityResult.ok("\n".join(entries) if entries else "(empty)")


class WriteFile(Capability):
    name = "write_file"
    description = "Writes text to a workspace file, creating folders as needed."
    parameters = (
        ParameterSpec("path", "string", "Workspace-relative path.", required=True),
        ParameterSpec("content", "string", "Complete file content.", required=True),
    )
    permission_group = "filesystem_write"

    async def execute(
        self, params: dict[str, Any], context: ExecutionContext, token: CancelToken
    ) -> CapabilityResult:
        try:
            path = context.workspace.resolve(params["path"])
        except WorkspaceError as exc:
            return CapabilityResult.fail(str(exc), ErrorKind.VALIDATION)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(params["content"], encoding="utf-8")
        written = len(params["content"])
        return CapabilityResult.ok(f"Wrote {written} characters to {params['path']}.")


class DeleteFile(Capability):
    name = "delete_file"
    description = "Deletes a file from the workspace."
    parameters = (ParameterSpec("path", "string", "Workspace-relative path.", required=True),)
    permission_group = "filesystem_write"

    async def execute(
        self, params: dict[str, Any], context: ExecutionContext, token: CancelToken
    ) -> CapabilityResult:
        try:
            path = context.workspace.resolve(params["path"])
        except WorkspaceError as exc:
            return CapabilityResult.fail(str(exc), ErrorKind.VALIDATION)
        if not path.is_file():
            return CapabilityResult.fail(f"File not found: {params['path']}")
        path.unlink()
        return CapabilityResult.ok(f"Deleted {params['path']}.")
