from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any

import structlog

from consultancy.backends.base import (
    BackendExecutionError,
    BackendTimeoutError,
    GenerationBackend,
)

logger = structlog.get_logger()

BackendEventHook = Callable[[dict[str, Any]], None]

MAX_REPORTED_FAILURES = 6


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5
    timeout_seconds: float = 90.0

    @property
    def attempts_per_backend(self) -> int:
        return max(0, self.max_retries) + 1

    def delay_for(self, attempt: int) -> float:
        return self.backoff_seconds * (2 ** (attempt - 1))


@dataclass(slots=True)
class AttemptFailure:
    backend: str
    attempt: int
    error: str
    retriable: bool

    def describe(self) -> str:
        return f"{self.backend}[{self.attempt}]: {self.error}"


class ResilientBackend(GenerationBackend):
    """Primary/fallback generation with a per-attempt timeout and exponential backoff.

    Every agent shares one of these, so a role's prompt never sees which
    concrete CLI answered it. Attempts and failovers are logged and, when an
    ``event_hook`` is set, reported as plain dict events.
    """

    name = "resilient"

    def __init__(
        self,
        primary_name: str,
        primary_backend: GenerationBackend,
        fallback_name: str,
        fallback_backend: GenerationBackend,
        retry_policy: RetryPolicy,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.primary_name = primary_name
        self.primary_backend = primary_backend
        self.fallback_name = fallback_name
        self.fallback_backend = fallback_backend
        self.retry_policy = retry_policy
        self.event_hook = event_hook

    @property
    def candidates(self) -> list[tuple[str, GenerationBackend]]:
        ordered = [(self.primary_name, self.primary_backend)]
        if self.fallback_name != self.primary_name:
            ordered.append((self.fallback_name, self.fallback_backend))
        return ordered

    def _report(self, event_name: str, role: str | None, **fields: Any) -> None:
        log = logger.warning if event_name == "backend_attempt_failed" else logger.info
        log(event_name, role=role, **fields)
        if self.event_hook is not None:
            self.event_hook({"event": event_name, **fields})

    async def _attempt(
        self,
        backend: GenerationBackend,
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
                f"Generation timed out after {timeout:.1f}s", retriable=True
            ) from exc

    async def _generate_with_failover(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None,
    ) -> list[str]:
        role = context.get("role")
        failures: list[AttemptFailure] = []
        for backend_name, backend in self.candidates:
            for attempt in range(self.retry_policy.attempts_per_backend):
                if attempt:
                    delay = self.retry_policy.delay_for(attempt)
                    self._report(
                        "backend_retry",
                        role,
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
                    # untyped errors are treated as transient
                    retriable = exc.retriable if isinstance(exc, BackendExecutionError) else True
                    failure = AttemptFailure(backend_name, attempt, str(exc), retriable)
                    failures.append(failure)
                    self._report(
                        "backend_attempt_failed",
                        role,
                        backend=backend_name,
                        attempt=attempt,
                        error=failure.error,
                        retriable=retriable,
                    )
                    if not retriable:
                        break
                    continue

                if backend_name != self.primary_name:
                    self._report(
                        "backend_fallback_success", role, backend=backend_name, attempt=attempt
                    )
                return chunks

        summary = "; ".join(failure.describe() for failure in failures[-MAX_REPORTED_FAILURES:])
        raise BackendExecutionError(
            f"All backend attempts failed. {summary}",
            backend=self.name,
            retriable=False,
        )

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        for chunk in await self._generate_with_failover(
            system_prompt, user_prompt, context, tools
        ):
            yield chunk
