import asyncio
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest

from specflow.backends import RetryPolicy
from specflow.backends.base import (
    AgentBackend,
    CapabilityFailure,
    CapabilityTimeout,
    CapabilityUnavailable,
)
from specflow.backends.claude import ClaudeCodeBackend
from specflow.backends.openai_sdk import OpenAIBackend
from specflow.backends.resilient import ResilientBackend


class AlwaysFailBackend(AgentBackend):
    def __init__(self, *, retriable: bool = True) -> None:
        self.retriable = retriable
        self.attempts = 0

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context, tools
        self.attempts += 1
        raise CapabilityUnavailable("boom", backend="fake", retriable=self.retriable)
        yield ""  # pragma: no cover


class SuccessBackend(AgentBackend):
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context, tools
        yield "ok"


class SlowBackend(AgentBackend):
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context, tools
        await asyncio.sleep(5)
        yield "late"


def _collect(backend: AgentBackend, context: dict[str, Any] | None = None) -> str:
    async def _run() -> str:
        parts: list[str] = []
        async for part in backend.execute("system", "user", context=context or {}):
            parts.append(part)
        return "".join(parts)

    return asyncio.run(_run())


def test_claude_build_command_shape() -> None:
    backend = ClaudeCodeBackend(binary="claude", working_directory=Path("."))
    command = backend.build_command("system", "implement feature", model="claude-sonnet-4-5")

    assert command[0:3] == ["claude", "-p", "implement feature"]
    assert "--output-format" in command
    assert "stream-json" in command
    assert command[command.index("--append-system-prompt") + 1] == "system"
    assert command[command.index("--model") + 1] == "claude-sonnet-4-5"


def test_claude_build_command_omits_model_when_unset() -> None:
    command = ClaudeCodeBackend().build_command("", "do it")

    assert "--model" not in command
    assert "--append-system-prompt" not in command


def test_claude_compose_user_prompt_embeds_context_and_tools() -> None:
    prompt = ClaudeCodeBackend.compose_user_prompt(
        "implement feature", {"task_id": "TASK-01"}, ["read_file"]
    )

    assert prompt.startswith("implement feature")
    assert "Context JSON:" in prompt
    assert '"task_id": "TASK-01"' in prompt
    assert "Allowed tools:" in prompt


class FakeStdout:
    def __init__(self, lines: list[bytes]) -> None:
        self._lines = lines
        self._index = 0

    def __aiter__(self) -> "FakeStdout":
        return self

    async def __anext__(self) -> bytes:
        if self._index >= len(self._lines):
            raise StopAsyncIteration
        line = self._lines[self._index]
        self._index += 1
        return line


class FakeStderr:
    def __init__(self, data: bytes = b"") -> None:
        self.data = data

    async def read(self) -> bytes:
        return self.data


class FakeProcess:
    def __init__(self, lines: list[bytes], return_code: int = 0, stderr: bytes = b"") -> None:
        self.stdout = FakeStdout(lines)
        self.stderr = FakeStderr(stderr)
        self.returncode: int | None = None
        self.pid = 4242
        self.killed = False
        self._return_code = return_code

    def kill(self) -> None:
        self.killed = True

    async def wait(self) -> int:
        self.returncode = self._return_code
        return self._return_code


def _patch_process(monkeypatch: pytest.MonkeyPatch, process: FakeProcess) -> list[tuple[Any, ...]]:
    commands: list[tuple[Any, ...]] = []

    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        _ = kwargs
        commands.append(args)
        return process

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)
    return commands


def test_claude_stream_prefers_final_result(monkeypatch: pytest.MonkeyPatch) -> None:
    process = FakeProcess(
        [
            b'{"type":"assistant","message":{"content":[{"type":"text","text":"draft"}]}}\n',
            b"noise-before-json\n",
            b'{"type":"result","result":"final answer","is_error":false}\n',
        ]
    )
    commands = _patch_process(monkeypatch, process)

    output = _collect(ClaudeCodeBackend(), {"model": "claude-opus-4-1"})

    assert output == "final answer"
    assert "--model" in commands[0]
    assert "claude-opus-4-1" in commands[0]


def test_claude_stream_joins_split_json_lines(monkeypatch: pytest.MonkeyPatch) -> None:
    process = FakeProcess(
        [
            b'{"type":"assistant","message":{"content":\n',
            b'[{"type":"text","text":"hello"}]}}\n',
        ]
    )
    _patch_process(monkeypatch, process)

    assert _collect(ClaudeCodeBackend()) == "hello"


def test_claude_nonzero_exit_is_retriable_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    _patch_process(monkeypatch, FakeProcess([], return_code=2, stderr=b"rate limited"))

    with pytest.raises(CapabilityUnavailable) as excinfo:
        _collect(ClaudeCodeBackend())

    assert excinfo.value.retriable
    assert excinfo.value.exit_code == 2
    assert "rate limited" in str(excinfo.value)


def test_claude_missing_binary_is_not_retriable(monkeypatch: pytest.MonkeyPatch) -> None:
    async def missing(*args: Any, **kwargs: Any) -> FakeProcess:
        _ = args, kwargs
        raise FileNotFoundError("claude")

    monkeypatch.setattr(asyncio, "create_subprocess_exec", missing)

    with pytest.raises(CapabilityUnavailable) as excinfo:
        _collect(ClaudeCodeBackend(binary="claude-missing"))

    assert not excinfo.value.retriable


def test_claude_error_result_kills_and_reaps_the_process(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    process = FakeProcess([b'{"type":"result","result":"overloaded","is_error":true}\n'])
    _patch_process(monkeypatch, process)

    with pytest.raises(CapabilityUnavailable, match="overloaded"):
        _collect(ClaudeCodeBackend())

    assert process.killed
    assert process.returncode == 0


class GatedStdout(FakeStdout):
    def __init__(self, lines: list[bytes], gate: asyncio.Event) -> None:
        super().__init__(lines)
        self.gate = gate

    async def __anext__(self) -> bytes:
        await asyncio.wait_for(self.gate.wait(), timeout=1.0)
        return await super().__anext__()


class SignallingStderr(FakeStderr):
    def __init__(self, gate: asyncio.Event) -> None:
        super().__init__(b"warning: slow disk")
        self.gate = gate

    async def read(self) -> bytes:
        self.gate.set()
        return self.data


def test_claude_reads_stderr_while_stdout_is_streaming(monkeypatch: pytest.MonkeyPatch) -> None:
    async def _run() -> str:
        gate = asyncio.Event()
        process = FakeProcess([b'{"type":"result","result":"done","is_error":false}\n'])
        process.stdout = GatedStdout(process.stdout._lines, gate)
        process.stderr = SignallingStderr(gate)
        _patch_process(monkeypatch, process)
        parts = [part async for part in ClaudeCodeBackend().execute("s", "u", context={})]
        return "".join(parts)

    assert asyncio.run(_run()) == "done"


def test_resilient_backend_fallback_and_retry_events() -> None:
    events: list[dict[str, Any]] = []

    backend = ResilientBackend(
        primary_name="primary",
        primary_backend=AlwaysFailBackend(),
        fallback_name="fallback",
        fallback_backend=SuccessBackend(),
        retry_policy=RetryPolicy(max_retries=1, backoff_seconds=0.0, timeout_seconds=5.0),
        event_hook=events.append,
    )

    output = _collect(backend, {"operation": "review"})

    assert output == "ok"
    event_names = [event["event"] for event in events]
    assert "backend_failover_start" in event_names
    assert "backend_retry" in event_names
    assert "backend_fallback_success" in event_names
    assert all(event["call"] == "review" for event in events)


def test_resilient_backend_skips_retries_for_permanent_failures() -> None:
    primary = AlwaysFailBackend(retriable=False)
    backend = ResilientBackend(
        primary_name="primary",
        primary_backend=primary,
        fallback_name="fallback",
        fallback_backend=SuccessBackend(),
        retry_policy=RetryPolicy(max_retries=3, backoff_seconds=0.0, timeout_seconds=5.0),
    )

    assert _collect(backend) == "ok"
    assert primary.attempts == 1


def test_resilient_backend_raises_when_every_attempt_fails() -> None:
    primary = AlwaysFailBackend()
    fallback = AlwaysFailBackend()
    backend = ResilientBackend(
        primary_name="primary",
        primary_backend=primary,
        fallback_name="fallback",
        fallback_backend=fallback,
        retry_policy=RetryPolicy(max_retries=1, backoff_seconds=0.0, timeout_seconds=5.0),
    )

    with pytest.raises(CapabilityFailure) as excinfo:
        _collect(backend, {"operation": "implement"})

    assert not excinfo.value.retriable
    assert "implement" in str(excinfo.value)
    assert primary.attempts == 2
    assert fallback.attempts == 2


def test_resilient_backend_times_out_slow_calls() -> None:
    events: list[dict[str, Any]] = []
    backend = ResilientBackend(
        primary_name="primary",
        primary_backend=SlowBackend(),
        fallback_name="primary",
        fallback_backend=SlowBackend(),
        retry_policy=RetryPolicy(max_retries=0, backoff_seconds=0.0, timeout_seconds=0.01),
        event_hook=events.append,
    )

    with pytest.raises(CapabilityFailure):
        _collect(backend)

    failures = [event for event in events if event["event"] == "backend_attempt_failed"]
    assert len(failures) == 1
    assert "timed out" in failures[0]["error"]


def test_capability_timeout_kind() -> None:
    assert CapabilityTimeout("slow").kind != CapabilityUnavailable("down").kind


def test_retry_policy_backoff_doubles() -> None:
    policy = RetryPolicy(backoff_seconds=0.5)

    assert [policy.delay_for(attempt) for attempt in (1, 2, 3)] == [0.5, 1.0, 2.0]


def test_openai_backend_uses_context_model() -> None:
    captured: dict[str, Any] = {}

    class FakeResponses:
        async def create(self, **kwargs: Any) -> dict[str, Any]:
            captured.update(kwargs)
            return {"output_text": "ok"}

    class FakeClient:
        def __init__(self) -> None:
            self.responses = FakeResponses()

    backend = OpenAIBackend(model="gpt-5-codex", client=FakeClient())

    output = _collect(backend, {"model": "gpt-5.1"})

    assert output == "ok"
    assert captured["model"] == "gpt-5.1"
    assert captured["input"][0] == {"role": "system", "content": "system"}
    assert "Context JSON:" in captured["input"][1]["content"]


def test_openai_backend_falls_back_to_default_model() -> None:
    captured: dict[str, Any] = {}

    class FakeResponses:
        async def create(self, **kwargs: Any) -> Any:
            captured.update(kwargs)

            class Payload:
                output_text = "done"

            return Payload()

    class FakeClient:
        responses = FakeResponses()

    output = _collect(OpenAIBackend(model="gpt-5-codex", client=FakeClient()), {"model": ""})

    assert output == "done"
    assert captured["model"] == "gpt-5-codex"
