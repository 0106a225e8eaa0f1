"""Bounded produce/evaluate loop shared by every drafting and review stage.

A loop repeatedly produces a candidate and hands it to an evaluation
strategy. Strategies are a small tagged variant: ``AutoEvaluated`` decides
with a coroutine (usually another capability call) and ``HumanGated`` presents
the candidate at a human approval gate. Iteration ``n + 1`` always receives
exactly the feedback produced by iteration ``n``.

Cancellation is plain asyncio cancellation of the task awaiting
:meth:`ConvergenceLoop.run`; the in-flight candidate is never recorded.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import ClassVar, Generic, Literal, TypeVar

from specflow.gates import ApprovalGate, Approve, HumanInterface

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class Satisfied:
    note: str = ""


@dataclass(frozen=True, slots=True)
class NeedsMoreInput:
    questions: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class Rejected:
    feedback: str


@dataclass(frozen=True, slots=True)
class Ended:
    reason: str


Evaluation = Satisfied | NeedsMoreInput | Rejected | Ended


@dataclass(frozen=True, slots=True)
class Feedback:
    """What the next ``produce`` call must take into account."""

    kind: Literal["answers", "revision"]
    text: str
    questions: tuple[str, ...] = ()
    iteration: int = 0


class LoopOutcome(StrEnum):
    SATISFIED = "satisfied"
    ENDED = "ended"
    CAP_REACHED = "cap_reached"


@dataclass(slots=True)
class IterationRecord(Generic[T]):
    iteration: int
    candidate: T
    evaluation: Evaluation
    feedback_in: Feedback | None


@dataclass(slots=True)
class ConvergenceResult(Generic[T]):
    outcome: LoopOutcome
    candidate: T | None
    iterations: int
    history: list[IterationRecord[T]] = field(default_factory=list)

    @property
    def satisfied(self) -> bool:
        return self.outcome is LoopOutcome.SATISFIED

    @property
    def last_evaluation(self) -> Evaluation | None:
        return self.history[-1].evaluation if self.history else None


class EvaluationStrategy(Generic[T]):
    kind: ClassVar[str] = "abstract"

    async def evaluate(self, candidate: T, iteration: int) -> Evaluation:
        raise NotImplementedError


class AutoEvaluated(EvaluationStrategy[T]):
    kind: ClassVar[str] = "auto"

    def __init__(self, evaluate: Callable[[T, int], Awaitable[Evaluation]]) -> None:
        self._evaluate = evaluate

    async def evaluate(self, candidate: T, iteration: int) -> Evaluation:
        return await self._evaluate(candidate, iteration)


class HumanGated(EvaluationStrategy[T]):
    """Presents each candidate at a gate; approve satisfies, revise rejects.

    ``precheck`` runs before the human sees the candidate and may short-circuit
    with its own evaluation (for example questions the author raised instead of
    a draft). ``on_approve`` runs after approval and may still reject, which is
    how structural validation sends an approved plan back for revision.
    """

    kind: ClassVar[str] = "human"

    def __init__(
        self,
        human: HumanInterface,
        gate_factory: Callable[[T, int], ApprovalGate],
        *,
        precheck: Callable[[T], Evaluation | None] | None = None,
        on_approve: Callable[[T], Awaitable[Evaluation]] | None = None,
    ) -> None:
        self.human = human
        self.gate_factory = gate_factory
        self.precheck = precheck
        self.on_approve = on_approve

    async def evaluate(self, candidate: T, iteration: int) -> Evaluation:
        if self.precheck is not None:
            early = self.precheck(candidate)
            if early is not None:
                return early
        gate = self.gate_factory(candidate, iteration)
        decision = await self.human.decide(gate)
        if isinstance(decision, Approve):
            if self.on_approve is not None:
                return await self.on_approve(candidate)
            return Satisfied(note=decision.note)
        return Rejected(feedback=decision.feedback)


Producer = Callable[[Feedback | None], Awaitable[T]]
Answerer = Callable[[tuple[str, ...]], Awaitable[str | None]]


class ConvergenceLoop(Generic[T]):
    def __init__(
        self,
        name: str,
        produce: Producer[T],
        evaluator: EvaluationStrategy[T],
        *,
        max_iterations: int,
        answer: Answerer | None = None,
    ) -> None:
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        self.name = name
        self.produce = produce
        self.evaluator = evaluator
        self.max_iterations = max_iterations
        self.answer = answer

    async def run(self) -> ConvergenceResult[T]:
        history: list[IterationRecord[T]] = []
        feedback: Feedback | None = None
        candidate: T | None = None

        for iteration in range(1, self.max_iterations + 1):
            candidate = await self.produce(feedback)
            evaluation = await self.evaluator.evaluate(candidate, iteration)
            record = IterationRecord(
                iteration=iteration,
                candidate=candidate,
                evaluation=evaluation,
                feedback_in=feedback,
            )
            history.append(record)
            logger.debug("%s iteration %d -> %s", self.name, iteration, type(evaluation).__name__)

            if isinstance(evaluation, Satisfied):
                return ConvergenceResult(LoopOutcome.SATISFIED, candidate, iteration, history)
            if isinstance(evaluation, Ended):
                logger.info("%s ended at iteration %d: %s", self.name, iteration, evaluation.reason)
                return ConvergenceResult(LoopOutcome.ENDED, candidate, iteration, history)
            if isinstance(evaluation, NeedsMoreInput):
                if self.answer is None:
                    raise RuntimeError(f"{self.name} needs input but has no answer hook.")
                if iteration == self.max_iterations:
                    break
                reply = await self.answer(evaluation.questions)
                if reply is None:
                    logger.info("%s ended by the human at iteration %d", self.name, iteration)
                    return ConvergenceResult(LoopOutcome.ENDED, candidate, iteration, history)
                feedback = Feedback(
                    kind="answers",
                    text=reply,
                    questions=evaluation.questions,
                    iteration=iteration,
                )
                continue
            feedback = Feedback(kind="revision", text=evaluation.feedback, iteration=iteration)

        logger.info("%s reached its iteration cap (%d)", self.name, self.max_iterations)
        return ConvergenceResult(
            LoopOutcome.CAP_REACHED, candidate, len(history), history
        )
