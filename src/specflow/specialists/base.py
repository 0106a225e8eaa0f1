from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from importlib import resources
from typing import Any

from specflow.backends.base import AgentBackend

TOOL_POLICY_ALLOWLIST = {
    "read_file",
    "write_file",
    "edit_file",
    "run_command",
    "search",
}


class Role(StrEnum):
    CLARIFIER = "clarifier"
    SPEC_AUTHOR = "spec_author"
    PLANNER = "planner"
    CODER = "coder"
    REVIEWER = "reviewer"


@dataclass(slots=True)
class TextArtifact:
    role: str
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)


class SpecialistAgent:
    role: Role
    prompt_file: str | None = None
    fallback_prompt: str = "You are a software specialist."
    default_tools: tuple[str, ...] = ()

    def __init__(self, backend: AgentBackend, *, model: str | None = None) -> None:
        self.backend = backend
        self.model = model
        self.system_prompt = self._load_system_prompt()

    def _load_system_prompt(self) -> str:
        if not self.prompt_file:
            return self.fallback_prompt.strip()
        try:
            prompt_path = resources.files("specflow.prompts").joinpath(self.prompt_file)
            return prompt_path.read_text(encoding="utf-8").strip()
        except (FileNotFoundError, ModuleNotFoundError):
            return self.fallback_prompt.strip()

    @staticmethod
    def _normalize_allowed_tools(
        allowed_tools: list[str] | tuple[str, ...] | None,
    ) -> list[str] | None:
        if not allowed_tools:
            return None
        normalized = sorted({str(tool).strip() for tool in allowed_tools if str(tool).strip()})
        unknown = [tool for tool in normalized if tool not in TOOL_POLICY_ALLOWLIST]
        if unknown:
            raise ValueError(
                "Tool policy rejected unknown tools for specialist run: " + ", ".join(unknown)
            )
        return normalized

    async def run(
        self,
        instruction: str,
        context: dict[str, Any],
        allowed_tools: list[str] | None = None,
    ) -> TextArtifact:
        run_context = dict(context)
        run_context["role"] = str(self.role)
        if self.model:
            run_context["model"] = self.model
        tools = self._normalize_allowed_tools(
            allowed_tools if allowed_tools is not None else self.default_tools
        )

        chunks: list[str] = []
        async for chunk in self.backend.execute(
            system_prompt=self.system_prompt,
            user_prompt=instruction,
            context=run_context,
            tools=tools,
        ):
            chunks.append(chunk)
        return TextArtifact(
            role=str(self.role),
            content="".join(chunks).strip(),
            metadata={
                "instruction": instruction,
                "operation": run_context.get("operation"),
                "allowed_tools": list(tools or []),
            },
        )
