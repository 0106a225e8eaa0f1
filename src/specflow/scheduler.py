from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from specflow.backends.base import CapabilityFailure
from specflow.capability import AgentCapability
from specflow.gates import ApprovalGate, GateKind, HumanInterface
from specflow.graph import PlanGraph, TaskNode, TaskStatus
from specflow.handoff import HandoffArtifact, HandoffGenerator, HandoffStore, SessionTrace
from specflow.instructions import implement_instructions, review_instructions, revision_instructions
from specflow.parsing import parse_coding_report
from specflow.review import (
    ReviewCycle,
    ReviewOutcome,
    ReviewPhase,
    ReviewVerdict,
    parse_review_verdict,
)
from specflow.specialists import Role
from specflow.state.store import RunStore

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.READY}),
    TaskStatus.READY: frozenset({TaskStatus.RUNNING, TaskStatus.PENDING, TaskStatus.CANCELLED}),
    TaskStatus.RUNNING: frozenset(
        {TaskStatus.IN_REVIEW, TaskStatus.BLOCKED, TaskStatus.CANCELLED}
    ),
    TaskStatus.IN_REVIEW: frozenset(
        {TaskStatus.RUNNING, TaskStatus.APPROVED, TaskStatus.BLOCKED, TaskStatus.CANCELLED}
    ),
    # Re-runs: escalation guidance, final-approval revisions, resumed cancellations.
    TaskStatus.APPROVED: frozenset({TaskStatus.READY}),
    TaskStatus.BLOCKED: frozenset({TaskStatus.READY, TaskStatus.APPROVED}),
    TaskStatus.CANCELLED: frozenset({TaskStatus.READY}),
}


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class InvalidTransition(RuntimeError):
    """Raised when a node status change is not allowed by the lifecycle."""


@dataclass(slots=True)
class ExecutionReport:
    started_order: list[str] = field(default_factory=list)
    completed_order: list[str] = field(default_factory=list)
    statuses: dict[str, str] = field(default_factory=dict)
    halted: dict[str, str] = field(default_factory=dict)
    gates: list[ApprovalGate] = field(default_factory=list)
    outcomes: dict[str, ReviewOutcome] = field(default_factory=dict)
    cancelled: bool = False
    max_observed_concurrency: int = 0

    @property
    def blocked(self) -> list[str]:
        return [node_id for node_id, status in self.statuses.items() if status == "blocked"]

    @property
    def approved(self) -> list[str]:
        return [node_id for node_id, status in self.statuses.items() if status == "approved"]

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_order": list(self.started_order),
            "completed_order": list(self.completed_order),
            "statuses": dict(self.statuses),
            "halted": dict(self.halted),
            "gates": [gate.to_dict() for gate in self.gates],
            "resolutions": {
                node_id: str(outcome.resolution) for node_id, outcome in self.outcomes.items()
            },
            "cancelled": self.cancelled,
            "max_observed_concurrency": self.max_observed_concurrency,
        }


class TaskScheduler:
    """Runs a plan graph level by level with bounded, FIFO-admitted concurrency.

    Every status change goes through one ``asyncio.Lock``; nothing else in the
    graph is mutated while tasks run.
    """

    def __init__(
        self,
        capability: AgentCapability,
        handoffs: HandoffStore,
        *,
        specification: str = "",
        plan: str = "",
        max_concurrency: int = 2,
        review_max_iterations: int = 5,
        human: HumanInterface | None = None,
        auto_accept_requires_ack: bool = False,
        store: RunStore | None = None,
        generator: HandoffGenerator | None = None,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.capability = capability
        self.handoffs = handoffs
        self.generator = generator or HandoffGenerator(capability)
        self.specification = specification
        self.plan = plan
        self.max_concurrency = max_concurrency
        self.review_max_iterations = review_max_iterations
        self.human = human
        self.auto_accept_requires_ack = auto_accept_requires_ack
        self.store = store
        self.traces: dict[str, SessionTrace] = {}
        self._lock = asyncio.Lock()
        self._workers: list[asyncio.Task[None]] = []
        self._cancel_requested = False
        self._active = 0

    def _transition(self, node: TaskNode, status: TaskStatus, reason: str | None = None) -> None:
        if node.status is status:
            return
        if status not in ALLOWED_TRANSITIONS[node.status]:
            raise InvalidTransition(f"{node.id}: {node.status} -> {status} is not allowed.")
        logger.debug("%s: %s -> %s", node.id, node.status, status)
        node.status = status
        node.blocked_reason = reason if status is TaskStatus.BLOCKED else None
        if self.store is not None:
            self.store.set_task(
                node.id,
                {
                    "title": node.title,
                    "status": str(status),
                    "blocked_reason": node.blocked_reason,
                    "updated_at": _utcnow_iso(),
                },
            )

    async def _set_status(
        self,
        graph: PlanGraph,
        node_id: str,
        status: TaskStatus,
        *,
        reason: str | None = None,
    ) -> None:
        async with self._lock:
            self._transition(graph.node(node_id), status, reason)

    def _blocking_ancestor(
        self, graph: PlanGraph, node_id: str, halted: Mapping[str, str]
    ) -> str | None:
        for predecessor in graph.node(node_id).predecessors:
            status = graph.node(predecessor).status
            if status is TaskStatus.APPROVED:
                continue
            return halted.get(predecessor, predecessor)
        return None

    def _task_context(
        self,
        graph: PlanGraph,
        node: TaskNode,
        guidance: Mapping[str, str] | None,
    ) -> dict[str, Any]:
        context: dict[str, Any] = {
            "task_id": node.id,
            "task": {
                "id": node.id,
                "title": node.title,
                "description": node.description,
                "predecessors": list(node.predecessors),
            },
            "spec": self.specification,
            "plan": self.plan,
            "handoffs": self.handoffs.context_for(graph, node.id),
        }
        if guidance and guidance.get(node.id):
            context["guidance"] = guidance[node.id]
        return context

    def _record_gate(self, report: ExecutionReport, gate: ApprovalGate) -> None:
        report.gates.append(gate)
        if self.store is not None:
            self.store.add_gate(gate.to_dict())

    def _record_decision(self, node: TaskNode, outcome: ReviewOutcome) -> None:
        if self.store is None:
            return
        self.store.add_decision(
            {
                "id": f"dec-{node.id}-{uuid4().hex[:8]}",
                "topic": "review",
                "task_id": node.id,
                "resolution": str(outcome.resolution),
                "iterations": outcome.iterations,
                "caveats": list(outcome.caveats),
                "unresolved_feedback": list(outcome.unresolved_feedback),
                "created_at": _utcnow_iso(),
            }
        )

    async def run(
        self,
        graph: PlanGraph,
        targets: Iterable[str] | None = None,
        guidance: Mapping[str, str] | None = None,
    ) -> ExecutionReport:
        scope = set(graph.ids) if targets is None else set(targets)
        unknown = sorted(scope - set(graph.ids))
        if unknown:
            raise KeyError(f"Unknown task ids: {', '.join(unknown)}")

        report = ExecutionReport()
        for level_index, level in enumerate(graph.levels):
            if self._cancel_requested:
                break
            ready: list[str] = []
            for node_id in level:
                if node_id not in scope:
                    continue
                blocker = self._blocking_ancestor(graph, node_id, report.halted)
                if blocker is not None:
                    report.halted[node_id] = blocker
                    logger.info("%s halted: prerequisite %s is not approved", node_id, blocker)
                    continue
                await self._set_status(graph, node_id, TaskStatus.READY)
                ready.append(node_id)
            if ready:
                logger.info("Level %d: running %s", level_index, ", ".join(ready))
                await self._run_level(graph, ready, report, guidance)

        report.cancelled = self._cancel_requested
        report.statuses = graph.statuses()
        return report

    async def _run_level(
        self,
        graph: PlanGraph,
        ready: list[str],
        report: ExecutionReport,
        guidance: Mapping[str, str] | None,
    ) -> None:
        queue: asyncio.Queue[str] = asyncio.Queue()
        for node_id in ready:
            queue.put_nowait(node_id)

        worker_count = min(self.max_concurrency, len(ready))
        self._workers = [
            asyncio.create_task(
                self._worker(graph, queue, report, guidance), name=f"specflow-worker-{index}"
            )
            for index in range(worker_count)
        ]
        try:
            results = await asyncio.gather(*self._workers, return_exceptions=True)
        finally:
            self._workers = []

        # Admitted but never started.
        while not queue.empty():
            node_id = queue.get_nowait()
            await self._set_status(graph, node_id, TaskStatus.PENDING)

        for result in results:
            if isinstance(result, BaseException) and not isinstance(
                result, asyncio.CancelledError
            ):
                raise result

    async def _worker(
        self,
        graph: PlanGraph,
        queue: asyncio.Queue[str],
        report: ExecutionReport,
        guidance: Mapping[str, str] | None,
    ) -> None:
        while not self._cancel_requested:
            try:
                node_id = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            try:
                await self._execute_node(graph, node_id, report, guidance)
            finally:
                queue.task_done()

    async def _execute_node(
        self,
        graph: PlanGraph,
        node_id: str,
        report: ExecutionReport,
        guidance: Mapping[str, str] | None,
    ) -> None:
        node = graph.node(node_id)
        trace = SessionTrace(
            task_id=node.id,
            title=node.title,
            objective=node.description or node.title,
        )
        self._active += 1
        try:
            await self._set_status(graph, node_id, TaskStatus.RUNNING)
            report.started_order.append(node_id)
            report.max_observed_concurrency = max(
                report.max_observed_concurrency, self._active
            )
            context = self._task_context(graph, node, guidance)
            outcome = await self._review(graph, node, context, trace)
            report.outcomes[node_id] = outcome
            self._record_decision(node, outcome)
            if outcome.accepted:
                trace.known_caveats.extend(outcome.caveats)
                await self._approve(node, trace)
            else:
                self.traces[node_id] = trace
                gate = self._escalation_gate(node, outcome)
                self._record_gate(report, gate)
                await self._set_status(graph, node_id, TaskStatus.BLOCKED, reason=gate.reason)
            report.completed_order.append(node_id)
        except asyncio.CancelledError:
            logger.info("%s cancelled; discarding its partial session", node_id)
            await self._set_status(graph, node_id, TaskStatus.CANCELLED)
            raise
        except CapabilityFailure as exc:
            self.traces[node_id] = trace
            reason = f"Capability failure while executing {node_id}: {exc}"
            logger.error(reason)
            self._record_gate(
                report,
                ApprovalGate(
                    kind=GateKind.FAULT,
                    title=f"{node_id} could not be completed",
                    reason=reason,
                    task_id=node_id,
                    unresolved_feedback=[str(exc)],
                ),
            )
            await self._set_status(graph, node_id, TaskStatus.BLOCKED, reason=reason)
            report.completed_order.append(node_id)
        finally:
            self._active -= 1

    @staticmethod
    def _escalation_gate(node: TaskNode, outcome: ReviewOutcome) -> ApprovalGate:
        return ApprovalGate(
            kind=GateKind.ESCALATION,
            title=f"{node.id} needs a decision",
            reason=outcome.reason or f"Review of {node.id} did not converge.",
            artifact=outcome.final_candidate,
            task_id=node.id,
            unresolved_feedback=list(outcome.unresolved_feedback),
        )

    async def _review(
        self,
        graph: PlanGraph,
        node: TaskNode,
        context: dict[str, Any],
        trace: SessionTrace,
    ) -> ReviewOutcome:
        async def produce(feedback: str | None) -> str:
            if feedback is None:
                call_context = {**context, "operation": "implement"}
                instructions = implement_instructions(node.id, node.title)
            else:
                call_context = {**context, "operation": "revise", "review_feedback": feedback}
                instructions = revision_instructions(node.id, node.title)
            coding = await self.capability.invoke_structured(
                Role.CODER, call_context, instructions, parse_coding_report
            )
            if not coding.success:
                logger.warning("Coder reported %s as blocked; sending to review", node.id)
            trace.coding_reports.append(coding.report)
            return coding.report

        async def review(
            candidate: str, iteration: int, previous: ReviewVerdict | None
        ) -> ReviewVerdict:
            call_context = {**context, "operation": "review", "candidate": candidate}
            if previous is not None:
                call_context["previous_feedback"] = previous.as_feedback_text()
            verdict = await self.capability.invoke_structured(
                Role.REVIEWER,
                call_context,
                review_instructions(node.id, followup=previous is not None),
                parse_review_verdict,
            )
            trace.review_history.append({"iteration": iteration, **verdict.to_dict()})
            return verdict

        async def on_phase(phase: ReviewPhase) -> None:
            if phase is ReviewPhase.DRAFTING:
                await self._set_status(graph, node.id, TaskStatus.RUNNING)
            elif phase is ReviewPhase.UNDER_REVIEW:
                await self._set_status(graph, node.id, TaskStatus.IN_REVIEW)

        cycle = ReviewCycle(
            node.id,
            produce,
            review,
            max_iterations=self.review_max_iterations,
            human=self.human,
            require_ack=self.auto_accept_requires_ack,
            on_phase=on_phase,
        )
        return await cycle.run()

    async def _approve(self, node: TaskNode, trace: SessionTrace) -> None:
        artifact = await self.generator.generate(
            trace, revision=self.handoffs.next_revision(node.id)
        )
        async with self._lock:
            self.handoffs.put(artifact)
            self._transition(node, TaskStatus.APPROVED)
        self.traces[node.id] = trace
        logger.info("%s approved (handoff revision %d)", node.id, artifact.revision)

    async def force_accept(
        self, graph: PlanGraph, node_id: str, caveats: Iterable[str] = ()
    ) -> HandoffArtifact:
        """Approve a blocked node after a human decided to accept it as is."""
        node = graph.node(node_id)
        if node.status is not TaskStatus.BLOCKED:
            raise InvalidTransition(
                f"{node_id} is {node.status}; only blocked tasks can be force-accepted."
            )
        trace = self.traces.get(node_id) or SessionTrace(
            task_id=node.id, title=node.title, objective=node.description or node.title
        )
        trace.known_caveats.extend(item for item in caveats if item.strip())
        artifact = await self.generator.generate(
            trace, revision=self.handoffs.next_revision(node_id)
        )
        async with self._lock:
            self.handoffs.put(artifact)
            self._transition(node, TaskStatus.APPROVED)
        logger.info("%s force-accepted with %d caveat(s)", node_id, len(artifact.caveats))
        return artifact

    def cancel(self) -> None:
        """Cancel running units; approved tasks and their handoffs are kept.

        Cancellation is final for this scheduler: later ``run`` calls start nothing.
        """
        self._cancel_requested = True
        for worker in self._workers:
            if not worker.done():
                worker.cancel()
