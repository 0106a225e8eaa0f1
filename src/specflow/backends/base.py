from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any, Literal

FailureKind = Literal["unavailable", "timeout", "malformed"]


class CapabilityFailure(RuntimeError):
    """Raised when a call into the text-generation capability fails."""

    kind: FailureKind = "unavailable"

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class CapabilityUnavailable(CapabilityFailure):
    """Raised when the backend process, network, or credentials fail."""


class CapabilityTimeout(CapabilityFailure):
    """Raised when a call exceeds the configured timeout."""

    kind: FailureKind = "timeout"


class MalformedResponse(CapabilityFailure):
    """Raised when a response is empty or does not match the expected shape."""

    kind: FailureKind = "malformed"


class AgentBackend(ABC):
    @abstractmethod
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        """Execute an agent and stream textual chunks."""
