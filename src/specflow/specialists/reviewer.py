from __future__ import annotations

from specflow.specialists.base import Role, SpecialistAgent


class ReviewerAgent(SpecialistAgent):
    role = Role.REVIEWER
    prompt_file = "reviewer.md"
    fallback_prompt = """
You are the code review specialist.
Review against the specification and the task, never implement fixes.
Classify outstanding findings as MINOR or MAJOR.
""".strip()
    default_tools = ("read_file", "run_command", "search")
