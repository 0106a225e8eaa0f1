from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from specflow.backends.base import AgentBackend, CapabilityUnavailable

logger = logging.getLogger(__name__)


class ClaudeCodeBackend(AgentBackend):
    def __init__(
        self,
        binary: str = "claude",
        working_directory: Path | None = None,
        *,
        model: str | None = None,
    ) -> None:
        self.binary = binary
        self.working_directory = working_directory
        self.model = model

    def build_command(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        model: str | None = None,
    ) -> list[str]:
        command = [self.binary, "-p", user_prompt, "--output-format", "stream-json", "--verbose"]
        if system_prompt:
            command.extend(["--append-system-prompt", system_prompt])
        chosen_model = model or self.model
        if chosen_model:
            command.extend(["--model", chosen_model])
        return command

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        if event.get("type") == "result":
            result = event.get("result")
            return result if isinstance(result, str) else ""
        message = event.get("message")
        if isinstance(message, dict):
            event = message
        content = event.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts: list[str] = []
            for item in content:
                if isinstance(item, dict):
                    text = item.get("text")
                    if isinstance(text, str):
                        parts.append(text)
            return "".join(parts)
        delta = event.get("delta")
        if isinstance(delta, str):
            return delta
        return ""

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    @staticmethod
    def compose_user_prompt(
        user_prompt: str, context: dict[str, Any], tools: list[str] | None
    ) -> str:
        if context:
            user_prompt = (
                f"{user_prompt}\n\nContext JSON:\n"
                f"{json.dumps(context, ensure_ascii=False, indent=2)}"
            )
        if tools:
            user_prompt = (
                f"{user_prompt}\n\nAllowed tools:\n{json.dumps(tools, ensure_ascii=False)}"
            )
        return user_prompt

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        requested_model = context.get("model")
        model = requested_model if isinstance(requested_model, str) and requested_model else None
        command = self.build_command(
            system_prompt,
            self.compose_user_prompt(user_prompt, context, tools),
            model=model,
        )
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                env=os.environ.copy(),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise CapabilityUnavailable(
                f"Claude binary not found: {self.binary}",
                backend="claude",
                retriable=False,
            ) from exc

        if process.stdout is None:
            raise CapabilityUnavailable(
                "Claude backend did not expose stdout.", backend="claude", retriable=False
            )

        # stderr is drained concurrently with stdout.
        stderr_task = (
            asyncio.create_task(process.stderr.read()) if process.stderr is not None else None
        )
        # A result event repeats the assistant text already streamed, so only the
        # final result is yielded when one arrives.
        streamed: list[str] = []
        result_text: str | None = None
        try:
            parse_buffer = ""
            async for raw_line in process.stdout:
                line = raw_line.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                candidate = f"{parse_buffer}{line}" if parse_buffer else line
                try:
                    event = json.loads(candidate)
                    parse_buffer = ""
                except json.JSONDecodeError:
                    if self._appears_partial_json(candidate):
                        parse_buffer = candidate
                        continue
                    parse_buffer = ""
                    streamed.append(line)
                    continue

                if not isinstance(event, dict):
                    continue
                if event.get("type") == "result":
                    if event.get("is_error"):
                        raise CapabilityUnavailable(
                            f"Claude reported an error: {event.get('result', '')}",
                            backend="claude",
                            retriable=True,
                        )
                    result_text = self._extract_content(event)
                    continue
                content = self._extract_content(event)
                if content:
                    streamed.append(content)

            if parse_buffer:
                streamed.append(parse_buffer)

            return_code = await process.wait()
            stderr_output = ""
            if stderr_task is not None:
                stderr_output = (await stderr_task).decode("utf-8", errors="replace").strip()
        finally:
            if process.returncode is None:
                logger.debug("Killing claude process %s", process.pid)
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
                await process.wait()
            if stderr_task is not None and not stderr_task.done():
                stderr_task.cancel()

        if return_code != 0:
            raise CapabilityUnavailable(
                f"Claude backend failed with exit code {return_code}: {stderr_output}",
                backend="claude",
                exit_code=return_code,
                retriable=True,
            )

        if result_text is not None:
            yield result_text
            return
        for chunk in streamed:
            yield chunk
