from __future__ import annotations

import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from specflow.backends.base import MalformedResponse
from specflow.convergence import (
    AutoEvaluated,
    ConvergenceLoop,
    Ended,
    Evaluation,
    Feedback,
    LoopOutcome,
    Rejected,
    Satisfied,
)
from specflow.gates import ApprovalGate, Approve, GateKind, HumanInterface
from specflow.parsing import extract_json_object

logger = logging.getLogger(__name__)

SEVERITY_PATTERN = re.compile(r"\b(BLOCKER|MAJOR|MINOR|SUGGESTION)\b", re.IGNORECASE)
# A free-form verdict only counts on a line of its own, e.g. "Verdict: APPROVED".
VERDICT_LINE_PATTERN = re.compile(
    r"^[ \t>*#-]*(?:verdict[ \t]*:[ \t]*)?(APPROVED|APPROVE|REQUEST_CHANGES|ESCALATE)[ \t.!*]*$",
    re.IGNORECASE | re.MULTILINE,
)


class VerdictDecision(StrEnum):
    APPROVED = "approved"
    REVISION_REQUESTED = "revision_requested"
    ESCALATE = "escalate"


class Severity(StrEnum):
    MINOR = "minor"
    MAJOR = "major"


_DECISION_ALIASES = {
    "APPROVED": VerdictDecision.APPROVED,
    "APPROVE": VerdictDecision.APPROVED,
    "REQUEST_CHANGES": VerdictDecision.REVISION_REQUESTED,
    "REVISION_REQUESTED": VerdictDecision.REVISION_REQUESTED,
    "ESCALATE": VerdictDecision.ESCALATE,
}


@dataclass(frozen=True, slots=True)
class ReviewVerdict:
    decision: VerdictDecision
    severity: Severity = Severity.MAJOR
    feedback: str = ""
    findings: tuple[str, ...] = ()

    def unresolved(self) -> list[str]:
        if self.findings:
            return list(self.findings)
        return [self.feedback.strip()] if self.feedback.strip() else []

    def as_feedback_text(self) -> str:
        parts: list[str] = []
        if self.feedback.strip():
            parts.append(self.feedback.strip())
        if self.findings:
            parts.append("\n".join(f"- {item}" for item in self.findings))
        return "\n\n".join(parts) or "Changes requested without further detail."

    def to_dict(self) -> dict[str, Any]:
        return {
            "decision": str(self.decision),
            "severity": str(self.severity),
            "feedback": self.feedback,
            "findings": list(self.findings),
        }


def _severity_from_text(text: str) -> Severity | None:
    labels = {match.group(1).upper() for match in SEVERITY_PATTERN.finditer(text)}
    if not labels:
        return None
    if labels & {"BLOCKER", "MAJOR"}:
        return Severity.MAJOR
    return Severity.MINOR


def parse_review_verdict(raw_text: str) -> ReviewVerdict:
    try:
        payload = extract_json_object(raw_text, required_key="review_result")
    except MalformedResponse:
        return _parse_free_form_verdict(raw_text)

    raw_decision = str(payload.get("review_result", "")).strip().upper()
    decision = _DECISION_ALIASES.get(raw_decision)
    if decision is None:
        raise MalformedResponse(f"Unexpected review_result '{raw_decision}'.")
    raw_findings = payload.get("findings", [])
    if not isinstance(raw_findings, list):
        raise MalformedResponse("Review findings must be a list.")
    findings = tuple(str(item).strip() for item in raw_findings if str(item).strip())
    comment = str(payload.get("review_comment", "") or "").strip()

    raw_severity = str(payload.get("severity", "") or "").strip().upper()
    if raw_severity in {"MINOR", "SUGGESTION"}:
        severity = Severity.MINOR
    elif raw_severity in {"MAJOR", "BLOCKER"}:
        severity = Severity.MAJOR
    else:
        derived = _severity_from_text("\n".join(findings))
        if derived is not None:
            severity = derived
        else:
            severity = Severity.MINOR if decision is VerdictDecision.APPROVED else Severity.MAJOR
    return ReviewVerdict(decision=decision, severity=severity, feedback=comment, findings=findings)


def _parse_free_form_verdict(raw_text: str) -> ReviewVerdict:
    text = raw_text.strip()
    if not text:
        raise MalformedResponse("Reviewer returned an empty response.")
    findings = tuple(
        line.strip().lstrip("-* ").strip()
        for line in text.splitlines()
        if SEVERITY_PATTERN.search(line)
    )
    severity = _severity_from_text(text)
    match = VERDICT_LINE_PATTERN.search(text)
    stated = _DECISION_ALIASES[match.group(1).upper()] if match else None
    if stated is VerdictDecision.ESCALATE:
        decision = VerdictDecision.ESCALATE
    elif stated is VerdictDecision.APPROVED and severity is not Severity.MAJOR:
        decision = VerdictDecision.APPROVED
    elif findings or stated is VerdictDecision.REVISION_REQUESTED:
        decision = VerdictDecision.REVISION_REQUESTED
    else:
        raise MalformedResponse("Reviewer response carried neither a verdict nor findings.")
    if severity is None:
        severity = Severity.MINOR if decision is VerdictDecision.APPROVED else Severity.MAJOR
    return ReviewVerdict(decision=decision, severity=severity, feedback=text, findings=findings)


class ReviewPhase(StrEnum):
    DRAFTING = "drafting"
    UNDER_REVIEW = "under_review"
    REVISION_REQUESTED = "revision_requested"
    APPROVED = "approved"
    ITERATION_CAP_REACHED = "iteration_cap_reached"


class ReviewResolution(StrEnum):
    APPROVED = "approved"
    AUTO_ACCEPTED = "auto_accepted"
    ESCALATED = "escalated"


@dataclass(slots=True)
class ReviewEntry:
    iteration: int
    candidate: str
    verdict: ReviewVerdict

    def to_dict(self) -> dict[str, Any]:
        return {"iteration": self.iteration, **self.verdict.to_dict()}


@dataclass(slots=True)
class ReviewOutcome:
    task_id: str
    resolution: ReviewResolution
    entries: list[ReviewEntry] = field(default_factory=list)
    caveats: list[str] = field(default_factory=list)
    unresolved_feedback: list[str] = field(default_factory=list)
    reason: str = ""

    @property
    def accepted(self) -> bool:
        return self.resolution in {ReviewResolution.APPROVED, ReviewResolution.AUTO_ACCEPTED}

    @property
    def iterations(self) -> int:
        return len(self.entries)

    @property
    def final_candidate(self) -> str:
        return self.entries[-1].candidate if self.entries else ""


CandidateProducer = Callable[[str | None], Awaitable[str]]
Reviewer = Callable[[str, int, ReviewVerdict | None], Awaitable[ReviewVerdict]]
PhaseHook = Callable[[ReviewPhase], Awaitable[None]]


class ReviewCycle:
    """Coder/reviewer convergence for one task, bounded by ``max_iterations`` reviews."""

    def __init__(
        self,
        task_id: str,
        produce: CandidateProducer,
        review: Reviewer,
        *,
        max_iterations: int = 5,
        human: HumanInterface | None = None,
        require_ack: bool = False,
        on_phase: PhaseHook | None = None,
    ) -> None:
        if require_ack and human is None:
            raise ValueError("Acknowledging auto-accepted reviews requires a human interface.")
        self.task_id = task_id
        self._produce = produce
        self._review = review
        self.max_iterations = max(1, int(max_iterations))
        self.human = human
        self.require_ack = require_ack
        self.on_phase = on_phase
        self.phase = ReviewPhase.DRAFTING
        self.entries: list[ReviewEntry] = []

    async def _set_phase(self, phase: ReviewPhase) -> None:
        self.phase = phase
        if self.on_phase is not None:
            await self.on_phase(phase)

    async def _produce_candidate(self, feedback: Feedback | None) -> str:
        await self._set_phase(ReviewPhase.DRAFTING)
        return await self._produce(feedback.text if feedback else None)

    async def _evaluate(self, candidate: str, iteration: int) -> Evaluation:
        await self._set_phase(ReviewPhase.UNDER_REVIEW)
        previous = self.entries[-1].verdict if self.entries else None
        verdict = await self._review(candidate, iteration, previous)
        self.entries.append(ReviewEntry(iteration=iteration, candidate=candidate, verdict=verdict))
        logger.info(
            "Review of %s iteration %d: %s (%s)",
            self.task_id,
            iteration,
            verdict.decision,
            verdict.severity,
        )
        if verdict.decision is VerdictDecision.APPROVED:
            return Satisfied()
        if verdict.decision is VerdictDecision.ESCALATE:
            return Ended(reason=verdict.as_feedback_text())
        self.phase = ReviewPhase.REVISION_REQUESTED
        return Rejected(feedback=verdict.as_feedback_text())

    async def run(self) -> ReviewOutcome:
        loop: ConvergenceLoop[str] = ConvergenceLoop(
            name=f"review:{self.task_id}",
            produce=self._produce_candidate,
            evaluator=AutoEvaluated(self._evaluate),
            max_iterations=self.max_iterations,
        )
        result = await loop.run()

        if result.outcome is LoopOutcome.SATISFIED:
            await self._set_phase(ReviewPhase.APPROVED)
            return ReviewOutcome(self.task_id, ReviewResolution.APPROVED, list(self.entries))

        last = self.entries[-1].verdict
        unresolved = last.unresolved()
        if result.outcome is LoopOutcome.ENDED:
            return ReviewOutcome(
                self.task_id,
                ReviewResolution.ESCALATED,
                list(self.entries),
                unresolved_feedback=unresolved,
                reason=f"The reviewer escalated {self.task_id} at iteration {result.iterations}.",
            )

        self.phase = ReviewPhase.ITERATION_CAP_REACHED
        if last.severity is not Severity.MINOR:
            logger.warning(
                "Review of %s reached its cap with major findings; escalating", self.task_id
            )
            return ReviewOutcome(
                self.task_id,
                ReviewResolution.ESCALATED,
                list(self.entries),
                unresolved_feedback=unresolved,
                reason=(
                    f"Review of {self.task_id} reached its cap of {self.max_iterations} "
                    "iterations with major findings outstanding."
                ),
            )

        if self.require_ack and self.human is not None:
            gate = ApprovalGate(
                kind=GateKind.AUTO_ACCEPT_ACK,
                title=f"Accept {self.task_id} with known caveats?",
                reason=(
                    f"Review of {self.task_id} reached its cap of {self.max_iterations} "
                    "iterations; the remaining findings were classified as minor."
                ),
                artifact=self.entries[-1].candidate,
                task_id=self.task_id,
                unresolved_feedback=unresolved,
            )
            decision = await self.human.decide(gate)
            if not isinstance(decision, Approve):
                return ReviewOutcome(
                    self.task_id,
                    ReviewResolution.ESCALATED,
                    list(self.entries),
                    unresolved_feedback=[*unresolved, decision.feedback],
                    reason=f"Auto-acceptance of {self.task_id} was declined.",
                )

        return ReviewOutcome(
            self.task_id,
            ReviewResolution.AUTO_ACCEPTED,
            list(self.entries),
            caveats=unresolved,
            reason=(
                f"Review of {self.task_id} reached its cap of {self.max_iterations} "
                "iterations; remaining findings are minor."
            ),
        )
