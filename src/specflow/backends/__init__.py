from specflow.backends.base import (
    AgentBackend,
    CapabilityFailure,
    CapabilityTimeout,
    CapabilityUnavailable,
    MalformedResponse,
)
from specflow.backends.claude import ClaudeCodeBackend
from specflow.backends.openai_sdk import OpenAIBackend
from specflow.backends.resilient import ResilientBackend, RetryPolicy

__all__ = [
    "AgentBackend",
    "CapabilityFailure",
    "CapabilityTimeout",
    "CapabilityUnavailable",
    "ClaudeCodeBackend",
    "MalformedResponse",
    "OpenAIBackend",
    "ResilientBackend",
    "RetryPolicy",
]
