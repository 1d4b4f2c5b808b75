from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Iterator
from dataclasses import dataclass
from typing import Any

from stageflow.backends.base import AgentBackend, BackendExecutionError, BackendTimeoutError
from stageflow.backends.cli import BackendEventHook

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5
    timeout_seconds: float = 600.0
    max_backoff_seconds: float = 30.0

    def delay_for(self, retry: int) -> float:
        """Exponential backoff before the ``retry``-th retry (1-based)."""

        if retry <= 0:
            return 0.0
        return min(self.backoff_seconds * (2 ** (retry - 1)), self.max_backoff_seconds)


@dataclass(slots=True)
class _AttemptLog:
    failures: list[str]
    timeouts_only: bool = True

    def record(self, backend_name: str, attempt: int, exc: Exception) -> None:
        self.failures.append(f"{backend_name}[{attempt}]: {exc}")
        self.timeouts_only = self.timeouts_only and isinstance(exc, BackendTimeoutError)

    def exhausted(self) -> BackendExecutionError:
        summary = "; ".join(self.failures[-6:])
        error_type = (
            BackendTimeoutError if self.timeouts_only and self.failures else BackendExecutionError
        )
        return error_type(f"All backend attempts failed. {summary}", retriable=False)


class ResilientBackend(AgentBackend):
    """Primary/fallback failover with per-call timeout and bounded retries.

    Output is buffered per attempt, so a caller never sees chunks from an
    attempt that later failed.
    """

    name = "resilient"

    def __init__(
        self,
        primary_name: str,
        primary_backend: AgentBackend,
        fallback_name: str,
        fallback_backend: AgentBackend,
        retry_policy: RetryPolicy,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.primary_name = primary_name
        self.primary_backend = primary_backend
        self.fallback_name = fallback_name
        self.fallback_backend = fallback_backend
        self.retry_policy = retry_policy
        self.event_hook = event_hook

    def _emit(self, event: str, **fields: Any) -> None:
        if self.event_hook:
            self.event_hook({"event": event, **fields})

    def _chain(self) -> Iterator[tuple[str, AgentBackend]]:
        yield self.primary_name, self.primary_backend
        if self.fallback_name != self.primary_name:
            yield self.fallback_name, self.fallback_backend

    async def _attempt(
        self,
        backend: AgentBackend,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None,
    ) -> list[str]:
        async def _drain() -> list[str]:
            return [
                chunk
                async for chunk in backend.execute(system_prompt, user_prompt, context, tools)
            ]

        timeout = self.retry_policy.timeout_seconds
        try:
            return await asyncio.wait_for(_drain(), timeout=timeout)
        except TimeoutError as exc:
            raise BackendTimeoutError(
                f"Backend request timed out after {timeout:.1f}s",
                retriable=True,
            ) from exc

    async def _run_chain(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None,
    ) -> list[str]:
        log = _AttemptLog(failures=[])
        for backend_name, backend in self._chain():
            for attempt in range(self.retry_policy.max_retries + 1):
                if attempt:
                    delay = self.retry_policy.delay_for(attempt)
                    self._emit(
                        "backend_retry",
                        backend=backend_name,
                        attempt=attempt,
                        delay_seconds=delay,
                    )
                    await asyncio.sleep(delay)
                try:
                    chunks = await self._attempt(
                        backend, system_prompt, user_prompt, context, tools
                    )
                except Exception as exc:
                    retriable = exc.retriable if isinstance(exc, BackendExecutionError) else True
                    log.record(backend_name, attempt, exc)
                    logger.warning(
                        "Backend %s attempt %d failed: %s", backend_name, attempt, exc
                    )
                    self._emit(
                        "backend_attempt_failed",
                        backend=backend_name,
                        attempt=attempt,
                        error=str(exc),
                        retriable=retriable,
                    )
                    if not retriable:
                        break
                    continue
                if backend_name != self.primary_name:
                    logger.info("Fallback backend %s succeeded", backend_name)
                    self._emit("backend_fallback_success", backend=backend_name, attempt=attempt)
                return chunks
        raise log.exhausted()

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        for chunk in await self._run_chain(system_prompt, user_prompt, context, tools):
            yield chunk
