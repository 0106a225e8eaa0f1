from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

import click


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class GateKind(StrEnum):
    SPECIFICATION = "specification"
    PLAN = "plan"
    FINAL_DELIVERY = "final_delivery"
    ESCALATION = "escalation"
    FAULT = "fault"
    AUTO_ACCEPT_ACK = "auto_accept_ack"


@dataclass(slots=True)
class ApprovalGate:
    """An artifact presented to a human together with the reason it is shown."""

    kind: GateKind
    title: str
    reason: str
    artifact: str = ""
    task_id: str | None = None
    unresolved_feedback: list[str] = field(default_factory=list)
    id: str = field(default_factory=lambda: f"gate-{uuid4().hex[:8]}")
    raised_at: str = field(default_factory=_utcnow_iso)

    def __post_init__(self) -> None:
        if not self.reason.strip():
            raise ValueError("Approval gates must explain why they are raised.")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": str(self.kind),
            "title": self.title,
            "reason": self.reason,
            "task_id": self.task_id,
            "unresolved_feedback": list(self.unresolved_feedback),
            "raised_at": self.raised_at,
        }


@dataclass(frozen=True, slots=True)
class Approve:
    note: str = ""


@dataclass(frozen=True, slots=True)
class ReviseWithFeedback:
    feedback: str

    def __post_init__(self) -> None:
        if not self.feedback.strip():
            raise ValueError("Revision requests need feedback text.")


Decision = Approve | ReviseWithFeedback


class HumanInterface(ABC):
    @abstractmethod
    async def decide(self, gate: ApprovalGate) -> Decision:
        """Present ``gate`` and wait for approve or revise."""

    @abstractmethod
    async def answer(self, questions: tuple[str, ...]) -> str | None:
        """Answer clarifying questions; ``None`` declines to answer.

        Declining ends clarification; during drafting the author proceeds on stated
        assumptions instead.
        """


class ConsoleHuman(HumanInterface):
    """Terminal implementation built on click prompts."""

    def _decide_sync(self, gate: ApprovalGate) -> Decision:
        click.echo("")
        click.secho(f"== {gate.title} [{gate.kind}]", bold=True)
        click.echo(f"Why: {gate.reason}")
        if gate.task_id:
            click.echo(f"Task: {gate.task_id}")
        if gate.unresolved_feedback:
            click.echo("Unresolved feedback:")
            for item in gate.unresolved_feedback:
                click.echo(f"  - {item}")
        if gate.artifact:
            click.echo("")
            click.echo(gate.artifact)
        click.echo("")
        if click.confirm("Approve?", default=True):
            return Approve()
        feedback = ""
        while not feedback.strip():
            feedback = click.prompt("Feedback for the revision", type=str)
        return ReviseWithFeedback(feedback=feedback)

    def _answer_sync(self, questions: tuple[str, ...]) -> str | None:
        click.echo("")
        click.secho("Clarifying questions:", bold=True)
        for index, question in enumerate(questions, start=1):
            click.echo(f"{index}. {question}")
        reply = click.prompt(
            "Answers (leave empty to let the agent assume)", default="", show_default=False
        )
        return reply.strip() or None

    async def decide(self, gate: ApprovalGate) -> Decision:
        return await asyncio.to_thread(self._decide_sync, gate)

    async def answer(self, questions: tuple[str, ...]) -> str | None:
        return await asyncio.to_thread(self._answer_sync, questions)
