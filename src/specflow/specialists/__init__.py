from specflow.specialists.base import Role, SpecialistAgent, TextArtifact
from specflow.specialists.clarifier import ClarifierAgent
from specflow.specialists.coder import CoderAgent
from specflow.specialists.planner import PlannerAgent
from specflow.specialists.reviewer import ReviewerAgent
from specflow.specialists.spec_author import SpecAuthorAgent

__all__ = [
    "ClarifierAgent",
    "CoderAgent",
    "PlannerAgent",
    "ReviewerAgent",
    "Role",
    "SpecAuthorAgent",
    "SpecialistAgent",
    "TextArtifact",
]
