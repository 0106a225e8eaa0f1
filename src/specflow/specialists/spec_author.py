from __future__ import annotations

from specflow.specialists.base import Role, SpecialistAgent


class SpecAuthorAgent(SpecialistAgent):
    role = Role.SPEC_AUTHOR
    prompt_file = "spec_author.md"
    fallback_prompt = """
You are the specification author.
Describe what the system must do, never how it is implemented.
Every requirement must be testable.
""".strip()
