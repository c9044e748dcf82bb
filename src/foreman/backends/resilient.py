from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

from foreman.backends.base import AgentBackend, BackendExecutionError, BackendTimeoutError
from foreman.errors import OperationCancelledError

if TYPE_CHECKING:
    from foreman.processes import CancelToken

BackendEventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5
    timeout_seconds: float = 120.0


class ResilientBackend(AgentBackend):
    """Wraps a backend with a per-attempt timeout and exponential-backoff retries."""

    def __init__(
        self,
        name: str,
        backend: AgentBackend,
        retry_policy: RetryPolicy,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.name = name
        self.backend = backend
        self.retry_policy = retry_policy
        self.event_hook = event_hook
        self.logger = structlog.get_logger().bind(component="resilient_backend", backend=name)

    def _emit(self, event: dict[str, Any]) -> None:
        self.logger.debug(event["event"], **{k: v for k, v in event.items() if k != "event"})
        if self.event_hook:
            self.event_hook(event)

    async def _collect_chunks(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        token: CancelToken | None,
    ) -> list[str]:
        async def _consume() -> list[str]:
            chunks: list[str] = []
            async for chunk in self.backend.execute(system_prompt, user_prompt, context, token):
                chunks.append(chunk)
            return chunks

        try:
            return await asyncio.wait_for(_consume(), timeout=self.retry_policy.timeout_seconds)
        except TimeoutError as exc:
            raise BackendTimeoutError(
                f"Backend request timed out after {self.retry_policy.timeout_seconds:.1f}s",
                backend=self.name,
                retriable=True,
            ) from exc

    async def _backoff(self, delay: float, token: CancelToken | None) -> None:
        if token is None:
            await asyncio.sleep(delay)
        else:
            await token.sleep(delay)

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        token: CancelToken | None = None,
    ) -> AsyncIterator[str]:
        errors: list[str] = []
        chunks: list[str] | None = None
        for attempt in range(self.retry_policy.max_retries + 1):
            if attempt > 0:
                delay = self.retry_policy.backoff_seconds * (2 ** (attempt - 1))
                self._emit(
                    {
                        "event": "backend_retry",
                        "backend": self.name,
                        "attempt": attempt,
                        "delay_seconds": delay,
                    }
                )
                await self._backoff(delay, token)
            try:
                chunks = await self._collect_chunks(system_prompt, user_prompt, context, token)
                break
            except OperationCancelledError:
                raise
            except BackendExecutionError as exc:
                errors.append(f"{self.name}[{attempt}]: {exc}")
                self._emit(
                    {
                        "event": "backend_attempt_failed",
                        "backend": self.name,
                        "attempt": attempt,
                        "error": str(exc),
                        "retriable": exc.retriable,
                    }
                )
                if not exc.retriable:
                    break

        if chunks is None:
            summary = "; ".join(errors[-6:])
            raise BackendExecutionError(
                f"All backend attempts failed. {summary}",
                backend=self.name,
                retriable=False,
            )
        for chunk in chunks:
            yield chunk
