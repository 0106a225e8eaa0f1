from __future__ import annotations

from specflow.specialists.base import Role, SpecialistAgent


class PlannerAgent(SpecialistAgent):
    role = Role.PLANNER
    prompt_file = "planner.md"
    fallback_prompt = """
You are the Planner/Architect specialist.
Turn an approved specification into implementation tasks with explicit dependencies
so that independent tasks can be executed in parallel.
You produce plans, not code.
""".strip()
