from __future__ import annotations

from specflow.specialists.base import Role, SpecialistAgent


class CoderAgent(SpecialistAgent):
    role = Role.CODER
    prompt_file = "coder.md"
    fallback_prompt = """
You are the Coder/Engineer specialist.
Implement exactly the task you are given.
Match repository conventions and keep changes atomic.
""".strip()
    default_tools = ("edit_file", "read_file", "run_command", "search", "write_file")
