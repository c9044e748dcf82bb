"""Cancellation tokens and the registry of in-flight cancellable operations."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar
from uuid import uuid4

import structlog

from foreman.errors import OperationCancelledError

T = TypeVar("T")
ProcessListener = Callable[[], None]


class CancelToken:
    """Explicit cancellation value threaded through every dispatch.

    Cancelling only flips state; the operation holding the token decides how
    to stop. ``run`` races an awaitable against the token for callers that
    cannot poll.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise OperationCancelledError(self.reason or "Operation cancelled.")

    async def sleep(self, seconds: float) -> None:
        """Sleep for ``seconds`` unless cancelled first."""
        try:
            await asyncio.wait_for(self._event.wait(), timeout=max(0.0, seconds))
        except TimeoutError:
            return
        self.raise_if_cancelled()

    async def run(self, awaitable: Awaitable[T]) -> T:
        self.raise_if_cancelled()
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            waiter.cancel()
        if work.done():
            return work.result()
        work.cancel()
        await asyncio.gather(work, return_exceptions=True)
        raise OperationCancelledError(self.reason or "Operation cancelled.")


@dataclass(slots=True)
class Process:
    id: str
    session_id: str
    description: str
    start_time: float
    token: CancelToken = field(repr=False)

    def cancel(self, reason: str = "cancelled") -> None:
        self.token.cancel(reason)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "description": self.description,
            "start_time": self.start_time,
            "cancelled": self.token.cancelled,
        }


class ProcessRegistry:
    """Tracks cancellable operations keyed by id and owning session."""

    def __init__(self) -> None:
        self._processes: dict[str, Process] = {}
        self._cancelled_sessions: set[str] = set()
        self._listeners: list[ProcessListener] = []
        self.logger = structlog.get_logger().bind(component="process_registry")

    def subscribe(self, listener: ProcessListener) -> None:
        self._listeners.append(listener)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener()

    def begin(self, session_id: str, description: str) -> tuple[str, CancelToken]:
        process_id = f"{int(time.time() * 1000)}-{uuid4().hex[:7]}"
        token = CancelToken()
        if session_id in self._cancelled_sessions:
            token.cancel("session cancelled")
        self._processes[process_id] = Process(
            id=process_id,
            session_id=session_id,
            description=description,
            start_time=time.time(),
            token=token,
        )
        self.logger.debug(
            "process_registered",
            process_id=process_id,
            session_id=session_id,
            description=description,
        )
        self._notify()
        return process_id, token

    def end(self, process_id: str) -> None:
        if self._processes.pop(process_id, None) is None:
            return
        self.logger.debug("process_unregistered", process_id=process_id)
        self._notify()

    def cancel(self, process_id: str) -> None:
        process = self._processes.get(process_id)
        if process is None:
            return
        process.cancel("process cancelled")
        self.logger.info("process_cancelled", process_id=process_id)

    def cancel_all(self, session_id: str) -> None:
        self._cancelled_sessions.add(session_id)
        for process in self.for_session(session_id):
            process.cancel("session cancelled")
        self.logger.info("session_cancelled", session_id=session_id)

    def is_session_cancelled(self, session_id: str) -> bool:
        return session_id in self._cancelled_sessions

    def clear_session(self, session_id: str) -> None:
        self._cancelled_sessions.discard(session_id)

    def get(self, process_id: str) -> Process | None:
        return self._processes.get(process_id)

    def for_session(self, session_id: str) -> list[Process]:
        return [p for p in self._processes.values() if p.session_id == session_id]

    def all(self) -> list[Process]:
        return list(self._processes.values())
