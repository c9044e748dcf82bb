"""Outbound event channel for orchestrator progress."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Literal

import structlog

from foreman.state.store import utcnow_iso

EventKind = Literal[
    "plan_created",
    "task_started",
    "task_finished",
    "plan_revised",
    "escalation",
    "plan_completed",
    "plan_failed",
    "response",
]
EventListener = Callable[["OrchestratorEvent"], None]


@dataclass(frozen=True, slots=True)
class OrchestratorEvent:
    kind: EventKind
    session_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "session_id": self.session_id,
            "payload": self.payload,
            "at": self.at,
        }


class EventBus:
    """Fan-out of orchestrator events to listeners and an optional bounded queue.

    When the queue is full the oldest event is dropped, so a slow consumer
    never blocks the loop. A listener that raises is logged and skipped.
    """

    def __init__(self, queue_size: int = 0) -> None:
        self._listeners: list[EventListener] = []
        self.queue: asyncio.Queue[OrchestratorEvent] | None = (
            asyncio.Queue(maxsize=queue_size) if queue_size > 0 else None
        )
        self.dropped = 0
        self.logger = structlog.get_logger().bind(component="event_bus")

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def publish(
        self, kind: EventKind, session_id: str, payload: dict[str, Any] | None = None
    ) -> OrchestratorEvent:
        event = OrchestratorEvent(kind=kind, session_id=session_id, payload=payload or {})
        self.logger.debug("event_published", kind=kind, session_id=session_id)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                self.logger.exception("event_listener_failed", kind=kind, session_id=session_id)
        if self.queue is not None:
            if self.queue.full():
                self.queue.get_nowait()
                self.dropped += 1
            self.queue.put_nowait(event)
        return event
