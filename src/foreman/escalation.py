"""Operator hand-off once self-correction has run out of retries."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import structlog


class Resolution(str, Enum):
    STOP = "stop"
    CONTINUE_ANYWAY = "continue_anyway"
    INSPECT = "inspect"


@dataclass(frozen=True, slots=True)
class EscalationEvent:
    plan_id: str
    session_id: str
    failed_task: dict[str, Any]
    output: str
    retry_count: int
    reason: str = ""

    def inspect_failure(self) -> str:
        """Raw failure output, for the Inspect choice."""
        return self.output

    def to_dict(self) -> dict[str, Any]:
        return {
            "plan_id": self.plan_id,
            "session_id": self.session_id,
            "failed_task": self.failed_task,
            "output": self.output,
            "retry_count": self.retry_count,
            "reason": self.reason,
        }


EscalationHandler = Callable[[EscalationEvent], Awaitable[Resolution]]

# Inspect round trips allowed before falling back to stop.
MAX_INSPECTIONS = 10


async def stop_handler(event: EscalationEvent) -> Resolution:
    return Resolution.STOP


async def resolve_escalation(
    event: EscalationEvent, handler: EscalationHandler | None
) -> Resolution:
    """Ask ``handler`` until it settles on stop or continue_anyway."""
    logger = structlog.get_logger().bind(component="escalation")
    if handler is None:
        return Resolution.STOP
    for _ in range(MAX_INSPECTIONS):
        resolution = Resolution(await handler(event))
        if resolution is not Resolution.INSPECT:
            logger.info(
                "escalation_resolved",
                plan_id=event.plan_id,
                resolution=resolution.value,
            )
            return resolution
        logger.debug("escalation_inspected", plan_id=event.plan_id)
    logger.warning("escalation_unresolved", plan_id=event.plan_id)
    return Resolution.STOP
