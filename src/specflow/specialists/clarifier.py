from __future__ import annotations

from specflow.specialists.base import Role, SpecialistAgent


class ClarifierAgent(SpecialistAgent):
    role = Role.CLARIFIER
    prompt_file = "clarifier.md"
    fallback_prompt = """
You are the requirements clarification specialist.
Ask only the questions that remove ambiguity before a specification can be written.
Return no questions once the request is clear enough.
""".strip()
