from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any

from specflow.backends.base import AgentBackend, CapabilityFailure, CapabilityTimeout

logger = logging.getLogger(__name__)

BackendEventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 2
    backoff_seconds: float = 0.5
    timeout_seconds: float = 900.0

    def delay_for(self, attempt: int) -> float:
        """Exponential backoff delay before retry number ``attempt`` (1-based)."""
        return self.backoff_seconds * (2 ** (attempt - 1))


class ResilientBackend(AgentBackend):
    """Wraps primary/fallback backends with timeout, retry, and failover."""

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

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def _collect_chunks(
        self,
        backend: AgentBackend,
        *,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None,
    ) -> list[str]:
        async def _consume() -> list[str]:
            chunks: list[str] = []
            async for chunk in backend.execute(system_prompt, user_prompt, context, tools):
                chunks.append(chunk)
            return chunks

        try:
            return await asyncio.wait_for(_consume(), timeout=self.retry_policy.timeout_seconds)
        except TimeoutError as exc:
            raise CapabilityTimeout(
                f"Backend request timed out after {self.retry_policy.timeout_seconds:.1f}s",
                retriable=True,
            ) from exc

    def _attempt_plan(self) -> list[tuple[str, AgentBackend]]:
        attempts: list[tuple[str, AgentBackend]] = [(self.primary_name, self.primary_backend)]
        if self.fallback_name != self.primary_name:
            attempts.append((self.fallback_name, self.fallback_backend))
        return attempts

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        call_name = str(context.get("operation") or "execute")
        errors: list[str] = []
        chunks: list[str] | None = None
        for backend_name, backend in self._attempt_plan():
            if backend_name != self.primary_name:
                self._emit(
                    {"event": "backend_failover_start", "backend": backend_name, "call": call_name}
                )
            for attempt in range(self.retry_policy.max_retries + 1):
                if attempt > 0:
                    delay = self.retry_policy.delay_for(attempt)
                    self._emit(
                        {
                            "event": "backend_retry",
                            "backend": backend_name,
                            "attempt": attempt,
                            "delay_seconds": delay,
                            "call": call_name,
                        }
                    )
                    await asyncio.sleep(delay)
                try:
                    chunks = await self._collect_chunks(
                        backend,
                        system_prompt=system_prompt,
                        user_prompt=user_prompt,
                        context=context,
                        tools=tools,
                    )
                except CapabilityFailure as exc:
                    errors.append(f"{backend_name}[{attempt}]: {exc}")
                    logger.warning(
                        "%s attempt %d failed for %s: %s", backend_name, attempt, call_name, exc
                    )
                    self._emit(
                        {
                            "event": "backend_attempt_failed",
                            "backend": backend_name,
                            "attempt": attempt,
                            "call": call_name,
                            "error": str(exc),
                            "retriable": exc.retriable,
                        }
                    )
                    if not exc.retriable:
                        break
                    continue
                if backend_name != self.primary_name:
                    self._emit(
                        {
                            "event": "backend_fallback_success",
                            "backend": backend_name,
                            "attempt": attempt,
                            "call": call_name,
                        }
                    )
                break
            if chunks is not None:
                break

        if chunks is None:
            summary = "; ".join(errors[-6:])
            raise CapabilityFailure(
                f"All backend attempts failed for {call_name}. {summary}",
                retriable=False,
            )
        for chunk in chunks:
            yield chunk
