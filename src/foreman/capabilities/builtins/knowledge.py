from __future__ import annotations

from typing import Any

from foreman.capabilities.base import Capability, CapabilityResult, ErrorKind, ParameterSpec
from foreman.context import ExecutionContext
from foreman.knowledge import KnowledgeError
from foreman.processes import CancelToken


class StoreKnowledge(Capability):
    name = "store_knowledge"
    description = (
        "Saves information into the knowledge base for later runs. Use it when asked to "
        "remember something or after discovering a reusable fix."
    )
    parameters = (
        ParameterSpec(
            "path", "array", "Category path, e.g. ['coding', 'python', 'api'].", required=True
        ),
        ParameterSpec("content", "string", "The full information to store.", required=True),
        ParameterSpec("summary", "string", "A one-line summary.", required=True),
        ParameterSpec("is_global", "boolean", "True to share across all projects."),
    )

    async def execute(
        self, params: dict[str, Any], context: ExecutionContext, token: CancelToken
    ) -> CapabilityResult:
        scope = "global" if params.get("is_global") else "local"
        try:
            context.knowledge.store(params["path"], params["content"], params["summary"], scope)
        except KnowledgeError as exc:
            return CapabilityResult.fail(str(exc), ErrorKind.VALIDATION)
        location = " > ".join(str(segment) for segment in params["path"])
        return CapabilityResult.ok(f"Stored knowledge in the {scope} zone at: {location}")
