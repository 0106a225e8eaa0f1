from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from typing import Any, TypeVar

from specflow.backends.base import AgentBackend, MalformedResponse
from specflow.backends.resilient import RetryPolicy
from specflow.specialists import (
    ClarifierAgent,
    CoderAgent,
    PlannerAgent,
    ReviewerAgent,
    Role,
    SpecAuthorAgent,
    SpecialistAgent,
    TextArtifact,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AgentCapability:
    """Uniform request/response entry point for every agent role."""

    def __init__(
        self,
        specialists: Mapping[Role | str, SpecialistAgent],
        *,
        structured_retries: int = 2,
        backoff_seconds: float = 0.5,
    ) -> None:
        self.specialists = {str(role): agent for role, agent in specialists.items()}
        self.structured_retries = max(0, int(structured_retries))
        self.retry_policy = RetryPolicy(
            max_retries=self.structured_retries, backoff_seconds=max(0.0, backoff_seconds)
        )

    @classmethod
    def from_backend(
        cls,
        backend: AgentBackend,
        *,
        model: str | None = None,
        reviewer_model: str | None = None,
        structured_retries: int = 2,
        backoff_seconds: float = 0.5,
    ) -> AgentCapability:
        return cls(
            {
                Role.CLARIFIER: ClarifierAgent(backend, model=model),
                Role.SPEC_AUTHOR: SpecAuthorAgent(backend, model=model),
                Role.PLANNER: PlannerAgent(backend, model=model),
                Role.CODER: CoderAgent(backend, model=model),
                Role.REVIEWER: ReviewerAgent(backend, model=reviewer_model or model),
            },
            structured_retries=structured_retries,
            backoff_seconds=backoff_seconds,
        )

    def specialist(self, role: Role | str) -> SpecialistAgent:
        specialist = self.specialists.get(str(role))
        if specialist is None:
            raise ValueError(f"No specialist registered for role '{role}'.")
        return specialist

    async def invoke(
        self,
        role: Role | str,
        context: dict[str, Any],
        instructions: str,
    ) -> TextArtifact:
        specialist = self.specialist(role)
        artifact = await specialist.run(instruction=instructions, context=context)
        if not artifact.content:
            raise MalformedResponse(
                f"{role} returned an empty response for {context.get('operation', 'call')}."
            )
        return artifact

    async def invoke_structured(
        self,
        role: Role | str,
        context: dict[str, Any],
        instructions: str,
        parser: Callable[[str], T],
    ) -> T:
        """Invoke ``role`` and parse its reply, retrying malformed replies."""
        operation = context.get("operation", "call")
        last_error: MalformedResponse | None = None
        for attempt in range(self.structured_retries + 1):
            if attempt > 0:
                delay = self.retry_policy.delay_for(attempt)
                logger.info(
                    "Retrying %s/%s after malformed response (attempt %d, %.2fs)",
                    role,
                    operation,
                    attempt,
                    delay,
                )
                await asyncio.sleep(delay)
            try:
                artifact = await self.invoke(role, context, instructions)
                return parser(artifact.content)
            except MalformedResponse as exc:
                last_error = exc
                logger.warning("Malformed %s response for %s: %s", role, operation, exc)
        raise MalformedResponse(
            f"{role} kept returning malformed output for {operation}: {last_error}",
            retriable=False,
        )
