from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any

import openai

from specflow.backends.base import AgentBackend, CapabilityUnavailable


class OpenAIBackend(AgentBackend):
    """Responses API backend built on the official ``openai`` SDK."""

    def __init__(self, *, model: str = "gpt-5-codex", client: Any | None = None) -> None:
        self.model = model
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = openai.AsyncOpenAI()
        return self._client

    @staticmethod
    def build_user_input(
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None,
    ) -> str:
        parts = [user_prompt]
        if context:
            parts.append("Context JSON:")
            parts.append(json.dumps(context, ensure_ascii=False, indent=2))
        if tools:
            parts.append("Allowed tools:")
            parts.append(json.dumps(tools, ensure_ascii=False))
        return "\n\n".join(parts)

    @staticmethod
    def _extract_text(payload: Any) -> str:
        if payload is None:
            return ""
        output_text = getattr(payload, "output_text", None)
        if isinstance(output_text, str):
            return output_text
        if isinstance(payload, dict):
            value = payload.get("output_text")
            if isinstance(value, str):
                return value
        return str(output_text or "")

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        requested_model = context.get("model")
        model_name = (
            requested_model.strip()
            if isinstance(requested_model, str) and requested_model.strip()
            else self.model
        )
        prompt = self.build_user_input(user_prompt, context, tools)
        try:
            payload = await self.client.responses.create(
                model=model_name,
                input=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": prompt},
                ],
            )
        except openai.AuthenticationError as exc:
            raise CapabilityUnavailable(
                f"OpenAI authentication failed: {exc}",
                backend="openai",
                retriable=False,
            ) from exc
        except openai.OpenAIError as exc:
            raise CapabilityUnavailable(
                f"OpenAI request failed: {exc}",
                backend="openai",
                retriable=True,
            ) from exc

        content = self._extract_text(payload).strip()
        if content:
            yield content
