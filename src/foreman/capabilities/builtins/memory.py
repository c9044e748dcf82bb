from __future__ import annotations

import json
from typing import Any

from foreman.capabilities.base import Capability, CapabilityResult, ParameterSpec
from foreman.context import ExecutionContext
from foreman.processes import CancelToken


class MemorySet(Capability):
    name = "memory_set"
    description = "Stores a JSON value in session memory under a key. Later writes replace it."
    parameters = (
        ParameterSpec("key", "string", "Memory key.", required=True),
        ParameterSpec("value", "string", "Value to store; JSON text is decoded.", required=True),
    )
    uses_session_state = True

    async def execute(
        self, params: dict[str, Any], context: ExecutionContext, token: CancelToken
    ) -> CapabilityResult:
        raw = params["value"]
        try:
            value = json.loads(raw)
        except json.JSONDecodeError:
            value = raw
        context.session.remember(params["key"], value)
        return CapabilityResult.ok(f"Stored '{params['key']}'.")


class MemoryGet(Capability):
    name = "memory_get"
    description = "Reads a value from session memory."
    parameters = (ParameterSpec("key", "string", "Memory key.", required=True),)

    async def execute(
        self, params: dict[str, Any], context: ExecutionContext, token: CancelToken
    ) -> CapabilityResult:
        key = params["key"]
        if key not in context.session.persistent_memory:
            return CapabilityResult.fail(f"No value stored under '{key}'.")
        return CapabilityResult.ok(json.dumps(context.session.recall(key), default=str))
