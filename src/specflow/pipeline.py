from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from functools import partial
from pathlib import Path
from typing import Any
from uuid import uuid4

from specflow.backends.base import CapabilityFailure
from specflow.capability import AgentCapability
from specflow.config import SpecflowConfig
from specflow.convergence import (
    AutoEvaluated,
    ConvergenceLoop,
    Evaluation,
    Feedback,
    HumanGated,
    NeedsMoreInput,
    Rejected,
    Satisfied,
)
from specflow.documents import ImportedDocuments, validate_document
from specflow.gates import ApprovalGate, Approve, Decision, GateKind, HumanInterface
from specflow.graph import InvalidPlanGraph, PlanGraph, TaskStatus, plan_graph_from_tasks
from specflow.handoff import HandoffStore
from specflow.instructions import (
    affected_tasks_instructions,
    clarification_instructions,
    plan_draft_instructions,
    spec_draft_instructions,
    task_extraction_instructions,
)
from specflow.parsing import (
    DraftResponse,
    parse_affected_task_ids,
    parse_clarification_questions,
    parse_draft_response,
    parse_task_extraction,
)
from specflow.scheduler import ExecutionReport, TaskScheduler
from specflow.specialists import Role
from specflow.state.journal import Journal, JournalTag
from specflow.state.store import RunStore

logger = logging.getLogger(__name__)


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class Stage(StrEnum):
    CLARIFY = "clarify"
    SPECIFY = "specify"
    PLAN = "plan"
    EXECUTE = "execute"
    FINAL_APPROVAL = "final_approval"
    DONE = "done"


STAGE_TRANSITIONS: dict[Stage, frozenset[Stage]] = {
    Stage.CLARIFY: frozenset({Stage.SPECIFY}),
    Stage.SPECIFY: frozenset({Stage.PLAN}),
    Stage.PLAN: frozenset({Stage.EXECUTE}),
    Stage.EXECUTE: frozenset({Stage.FINAL_APPROVAL}),
    # Targeted re-runs requested at final approval.
    Stage.FINAL_APPROVAL: frozenset({Stage.EXECUTE, Stage.DONE}),
    Stage.DONE: frozenset(),
}

SCHEDULER_GATES = frozenset({GateKind.ESCALATION, GateKind.FAULT})
NO_ANSWER_FEEDBACK = (
    "No answers were given. Write the draft now, choose reasonable defaults for the open "
    "questions and list them as explicit assumptions."
)


class StageTransitionError(RuntimeError):
    """Raised when the pipeline is asked to move to a stage it cannot reach."""


class PipelineHalted(RuntimeError):
    """Raised when a human-gated stage does not converge."""

    def __init__(self, message: str, *, stage: Stage) -> None:
        super().__init__(message)
        self.stage = stage


class PipelineCancelled(RuntimeError):
    """Raised once a cancelled run has checkpointed its progress."""

    def __init__(self, message: str, *, stage: Stage) -> None:
        super().__init__(message)
        self.stage = stage


@dataclass(slots=True)
class PipelineState:
    run_id: str
    request: str
    stage: Stage = Stage.CLARIFY
    qa_log: list[dict[str, Any]] = field(default_factory=list)
    specification: str = ""
    plan: str = ""
    tasks: list[dict[str, Any]] = field(default_factory=list)
    task_statuses: dict[str, str] = field(default_factory=dict)
    outstanding_gates: list[dict[str, Any]] = field(default_factory=list)
    final_feedback: list[str] = field(default_factory=list)
    execution: dict[str, Any] = field(default_factory=dict)
    history: list[dict[str, str]] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.history:
            self.history.append({"stage": str(self.stage), "at": _utcnow_iso()})

    def advance(self, stage: Stage) -> None:
        if stage not in STAGE_TRANSITIONS[self.stage]:
            raise StageTransitionError(f"Cannot move from {self.stage} to {stage}.")
        logger.info("Pipeline %s: %s -> %s", self.run_id, self.stage, stage)
        self.stage = stage
        self.history.append({"stage": str(stage), "at": _utcnow_iso()})

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "request": self.request,
            "stage": str(self.stage),
            "qa_log": list(self.qa_log),
            "specification": self.specification,
            "plan": self.plan,
            "tasks": list(self.tasks),
            "task_statuses": dict(self.task_statuses),
            "outstanding_gates": list(self.outstanding_gates),
            "final_feedback": list(self.final_feedback),
            "execution": dict(self.execution),
            "history": list(self.history),
        }

    def to_markdown(self) -> str:
        lines = [f"# Pipeline run {self.run_id}", "", f"Stage: `{self.stage}`", ""]
        lines.extend(["## Request", "", self.request.strip(), ""])
        if self.qa_log:
            lines.extend(["## Clarification", ""])
            for index, round_ in enumerate(self.qa_log, start=1):
                lines.append(f"### Round {index}")
                lines.extend(f"- Q: {question}" for question in round_.get("questions", []))
                lines.extend([f"- A: {round_.get('answer', '')}", ""])
        lines.extend(["## Specification", "", self.specification.strip() or "_None._", ""])
        lines.extend(["## Plan", "", self.plan.strip() or "_None._", ""])
        if self.tasks:
            lines.extend(["## Tasks", ""])
            for task in self.tasks:
                task_id = task["task_id"]
                status = self.task_statuses.get(task_id, "pending")
                dependencies = ", ".join(task.get("dependencies", [])) or "none"
                lines.append(
                    f"- `{task_id}` {task.get('title', '')} "
                    f"(status: {status}; depends on: {dependencies})"
                )
            lines.append("")
        if self.final_feedback:
            lines.extend(["## Final approval feedback", ""])
            lines.extend(f"- {item}" for item in self.final_feedback)
            lines.append("")
        lines.extend(["## Stage history", ""])
        lines.extend(f"- {entry['at']}: {entry['stage']}" for entry in self.history)
        return "\n".join(lines).rstrip() + "\n"


@dataclass(slots=True)
class PipelineResult:
    state: PipelineState
    graph: PlanGraph
    report: ExecutionReport
    documents: list[Path] = field(default_factory=list)


def merge_reports(earlier: ExecutionReport, later: ExecutionReport) -> ExecutionReport:
    halted = {
        node_id: blocker
        for node_id, blocker in earlier.halted.items()
        if later.statuses.get(node_id) == "pending"
    }
    halted.update(later.halted)
    return ExecutionReport(
        started_order=[*earlier.started_order, *later.started_order],
        completed_order=[*earlier.completed_order, *later.completed_order],
        statuses=dict(later.statuses),
        halted=halted,
        gates=[*earlier.gates, *later.gates],
        outcomes={**earlier.outcomes, **later.outcomes},
        cancelled=earlier.cancelled or later.cancelled,
        max_observed_concurrency=max(
            earlier.max_observed_concurrency, later.max_observed_concurrency
        ),
    )


class _StateTrackingHuman(HumanInterface):
    def __init__(self, controller: PipelineController, state: PipelineState) -> None:
        self.controller = controller
        self.state = state

    async def decide(self, gate: ApprovalGate) -> Decision:
        return await self.controller.decide(self.state, gate)

    async def answer(self, questions: tuple[str, ...]) -> str | None:
        return await self.controller.human.answer(questions)


class PipelineController:
    def __init__(
        self,
        capability: AgentCapability,
        human: HumanInterface,
        config: SpecflowConfig | None = None,
        *,
        store: RunStore | None = None,
        journal: Journal | None = None,
    ) -> None:
        self.capability = capability
        self.human = human
        self.config = config or SpecflowConfig.default()
        self.store = store
        if journal is None and store is not None:
            journal = Journal(store.journal_path)
        self.journal = journal
        self.handoffs = HandoffStore(store.handoffs_dir if store is not None else None)
        self.scheduler: TaskScheduler | None = None
        self._cancel_requested = False
        # One gate at a time, even when concurrent tasks raise gates together.
        self._decide_lock = asyncio.Lock()

    def _journal(self, tag: JournalTag, content: str) -> None:
        if self.journal is not None:
            self.journal.append(tag, content)

    def _checkpoint(self, state: PipelineState) -> None:
        if self.store is not None:
            self.store.set_context(state.to_dict())

    def _count(self, metric: str) -> None:
        if self.store is not None:
            self.store.increment_metric(metric)

    def _advance(self, state: PipelineState, stage: Stage) -> None:
        state.advance(stage)
        self._checkpoint(state)

    async def decide(self, state: PipelineState, gate: ApprovalGate) -> Decision:
        """Present ``gate`` while tracking it as outstanding on ``state``."""
        async with self._decide_lock:
            state.outstanding_gates.append(gate.to_dict())
            # The scheduler records the escalation and fault gates it raises.
            if self.store is not None and gate.kind not in SCHEDULER_GATES:
                self.store.add_gate(gate.to_dict())
            self._checkpoint(state)
            decision = await self.human.decide(gate)
            state.outstanding_gates = [
                item for item in state.outstanding_gates if item["id"] != gate.id
            ]
            if self.store is not None:
                self.store.add_decision(
                    {
                        "id": f"dec-{gate.id}",
                        "topic": str(gate.kind),
                        "gate_id": gate.id,
                        "task_id": gate.task_id,
                        "decision": "approve" if isinstance(decision, Approve) else "revise",
                        "feedback": getattr(decision, "feedback", ""),
                        "created_at": _utcnow_iso(),
                    }
                )
            self._checkpoint(state)
            return decision

    def _gated(self, state: PipelineState, gate_factory, **kwargs: Any) -> HumanGated:
        return HumanGated(_StateTrackingHuman(self, state), gate_factory, **kwargs)

    def _require_scheduler(self) -> TaskScheduler:
        if self.scheduler is None:
            raise StageTransitionError("Tasks can only be re-run after the execute stage.")
        return self.scheduler

    async def run(
        self,
        request: str = "",
        *,
        run_id: str | None = None,
        imported: ImportedDocuments | None = None,
    ) -> PipelineResult:
        """Drive a request through every stage.

        With ``imported`` documents the specification (and, when given, the plan)
        are validated through the capability and their drafting stages are skipped.
        """
        if imported is not None:
            await self.validate_imports(imported)
            if not request.strip():
                request = f"Implement the imported specification {imported.spec_source}".strip()
        if not request.strip():
            raise ValueError("The request must not be empty.")
        if run_id is None:
            run_id = self.store.run_id if self.store is not None else f"run-{uuid4().hex[:8]}"
        state = PipelineState(run_id=run_id, request=request.strip())
        self._journal(JournalTag.REQUEST, state.request)
        self._checkpoint(state)

        if imported is None:
            await self.clarify(state)
            self._stop_if_cancelled(state)
            self._advance(state, Stage.SPECIFY)
            await self.specify(state)
            self._stop_if_cancelled(state)
            self._advance(state, Stage.PLAN)
            graph = await self.plan(state)
        else:
            state.specification = imported.specification.strip()
            self._journal(JournalTag.APPROVED_SPEC, state.specification)
            self._advance(state, Stage.SPECIFY)
            self._advance(state, Stage.PLAN)
            if imported.plan is None:
                graph = await self.plan(state)
            else:
                graph = await self.adopt_plan(state, imported.plan.strip())
        self._stop_if_cancelled(state)
        self._advance(state, Stage.EXECUTE)
        report = await self.execute(state, graph)
        self._advance(state, Stage.FINAL_APPROVAL)
        report = await self.final_approval(state, graph, report)
        self._stop_if_cancelled(state, graph, report)
        self._advance(state, Stage.DONE)
        documents = self._persist(state, graph, report)
        return PipelineResult(state=state, graph=graph, report=report, documents=documents)

    def cancel(self) -> None:
        """Stop the run: running tasks are cancelled and no later stage starts."""
        self._cancel_requested = True
        if self.scheduler is not None:
            self.scheduler.cancel()

    @property
    def cancelled(self) -> bool:
        return self._cancel_requested

    def _stop_if_cancelled(
        self,
        state: PipelineState,
        graph: PlanGraph | None = None,
        report: ExecutionReport | None = None,
    ) -> None:
        if not self._cancel_requested and not (report is not None and report.cancelled):
            return
        self._cancel_requested = True
        if graph is not None:
            state.task_statuses = graph.statuses()
        if report is not None:
            state.execution = report.to_dict()
        self._checkpoint(state)
        raise PipelineCancelled(
            f"Run {state.run_id} was cancelled during the {state.stage} stage.", stage=state.stage
        )

    async def validate_imports(self, imported: ImportedDocuments) -> None:
        for kind, text, source in imported.items():
            await validate_document(self.capability, kind, text, source=source)

    async def clarify(self, state: PipelineState) -> None:
        async def produce(feedback: Feedback | None) -> list[str]:
            if feedback is not None:
                self._record_answers(state, feedback)
            context = {"operation": "clarify", "request": state.request, "qa_log": state.qa_log}
            return await self.capability.invoke_structured(
                Role.CLARIFIER,
                context,
                clarification_instructions(),
                parse_clarification_questions,
            )

        async def evaluate(questions: list[str], iteration: int) -> Evaluation:
            if not questions:
                return Satisfied()
            self._journal_questions(questions)
            return NeedsMoreInput(tuple(questions))

        loop: ConvergenceLoop[list[str]] = ConvergenceLoop(
            "clarify",
            produce,
            AutoEvaluated(evaluate),
            max_iterations=self.config.pipeline.max_clarification_rounds,
            answer=self.human.answer,
        )
        result = await loop.run()
        if not result.satisfied:
            logger.info("Clarification stopped (%s); continuing with what is known", result.outcome)

    def _record_answers(self, state: PipelineState, feedback: Feedback) -> None:
        state.qa_log.append({"questions": list(feedback.questions), "answer": feedback.text})
        self._journal(JournalTag.USER_ANSWERS, feedback.text)
        self._checkpoint(state)

    def _journal_questions(self, questions: list[str]) -> None:
        if self.journal is not None:
            self.journal.append_questions(questions)

    async def _draft(
        self,
        state: PipelineState,
        *,
        subject: str,
        role: Role,
        operation: str,
        draft_field: str,
        gate_kind: GateKind,
        draft_tag: JournalTag,
        instructions: Callable[..., str],
        base_context: Callable[[], dict[str, Any]],
        on_approve: Callable[[DraftResponse], Awaitable[Evaluation]] | None = None,
    ) -> str:
        drafts: list[str] = []

        async def produce(feedback: Feedback | None) -> DraftResponse:
            context = {"operation": operation, **base_context(), "qa_log": state.qa_log}
            revising = False
            if feedback is not None and feedback.kind == "answers":
                self._record_answers(state, feedback)
                context["qa_log"] = state.qa_log
            elif feedback is not None:
                self._journal(JournalTag.USER_FEEDBACK, feedback.text)
                context["feedback"] = feedback.text
                revising = bool(drafts)
            if drafts:
                context["previous_draft"] = drafts[-1]
            return await self.capability.invoke_structured(
                role,
                context,
                instructions(revising=revising),
                partial(parse_draft_response, draft_field=draft_field),
            )

        def precheck(response: DraftResponse) -> Evaluation | None:
            if response.kind == "questions":
                self._journal_questions(response.questions)
                return NeedsMoreInput(tuple(response.questions))
            drafts.append(response.draft)
            self._journal(draft_tag, response.draft)
            return None

        def gate_factory(response: DraftResponse, iteration: int) -> ApprovalGate:
            return ApprovalGate(
                kind=gate_kind,
                title=f"Approve the {subject}?",
                reason=f"Draft {len(drafts)} of the {subject} is ready (iteration {iteration}).",
                artifact=response.draft,
            )

        async def answer(questions: tuple[str, ...]) -> str:
            reply = await self.human.answer(questions)
            if reply is None:
                logger.info("No answers for the %s; drafting on stated assumptions", subject)
                return NO_ANSWER_FEEDBACK
            return reply

        loop: ConvergenceLoop[DraftResponse] = ConvergenceLoop(
            operation,
            produce,
            self._gated(state, gate_factory, precheck=precheck, on_approve=on_approve),
            max_iterations=self.config.pipeline.max_draft_iterations,
            answer=answer,
        )
        result = await loop.run()
        if not result.satisfied or result.candidate is None:
            raise PipelineHalted(
                f"The {subject} was not approved ({result.outcome} after "
                f"{result.iterations} iteration(s)).",
                stage=state.stage,
            )
        return result.candidate.draft

    async def specify(self, state: PipelineState) -> str:
        state.specification = await self._draft(
            state,
            subject="specification",
            role=Role.SPEC_AUTHOR,
            operation="draft_spec",
            draft_field="spec_draft",
            gate_kind=GateKind.SPECIFICATION,
            draft_tag=JournalTag.SPEC_DRAFT,
            instructions=spec_draft_instructions,
            base_context=lambda: {"request": state.request},
        )
        self._journal(JournalTag.APPROVED_SPEC, state.specification)
        self._checkpoint(state)
        return state.specification

    async def _extract_graph(self, state: PipelineState, plan_text: str) -> PlanGraph:
        context = {"operation": "extract_tasks", "plan": plan_text, "spec": state.specification}
        tasks = await self.capability.invoke_structured(
            Role.PLANNER, context, task_extraction_instructions(), parse_task_extraction
        )
        graph = plan_graph_from_tasks(tasks)
        state.tasks = [
            {
                "task_id": task.task_id,
                "title": task.title,
                "description": task.description,
                "dependencies": list(task.dependencies),
            }
            for task in tasks
        ]
        return graph

    async def plan(self, state: PipelineState) -> PlanGraph:
        validated: dict[str, PlanGraph] = {}

        async def validate(response: DraftResponse) -> Evaluation:
            try:
                validated["graph"] = await self._extract_graph(state, response.draft)
            except InvalidPlanGraph as exc:
                logger.warning("Approved plan has an invalid task graph: %s", exc)
                return Rejected(
                    feedback=(
                        f"The task breakdown of this plan is not a valid dependency graph: {exc}. "
                        "Revise the plan so every dependency names an existing task and no "
                        "tasks depend on each other in a cycle."
                    )
                )
            return Satisfied()

        state.plan = await self._draft(
            state,
            subject="development plan",
            role=Role.PLANNER,
            operation="draft_plan",
            draft_field="plan_draft",
            gate_kind=GateKind.PLAN,
            draft_tag=JournalTag.PLAN_DRAFT,
            instructions=plan_draft_instructions,
            base_context=lambda: {"request": state.request, "spec": state.specification},
            on_approve=validate,
        )
        self._journal(JournalTag.APPROVED_PLAN, state.plan)
        self._checkpoint(state)
        return validated["graph"]

    async def adopt_plan(self, state: PipelineState, plan_text: str) -> PlanGraph:
        """Use an imported plan as the approved plan."""
        state.plan = plan_text
        try:
            graph = await self._extract_graph(state, plan_text)
        except InvalidPlanGraph as exc:
            raise PipelineHalted(
                f"The imported plan does not describe a valid task graph: {exc}",
                stage=state.stage,
            ) from exc
        self._journal(JournalTag.APPROVED_PLAN, state.plan)
        self._checkpoint(state)
        return graph

    async def execute(self, state: PipelineState, graph: PlanGraph) -> ExecutionReport:
        execution = self.config.execution
        self.scheduler = TaskScheduler(
            self.capability,
            self.handoffs,
            specification=state.specification,
            plan=state.plan,
            max_concurrency=execution.max_concurrency,
            review_max_iterations=execution.review_max_iterations,
            human=_StateTrackingHuman(self, state),
            auto_accept_requires_ack=execution.auto_accept_requires_ack,
            store=self.store,
        )
        if self._cancel_requested:
            self.scheduler.cancel()
        report = await self.scheduler.run(graph)
        self._stop_if_cancelled(state, graph, report)
        report = await self._resolve_escalations(state, graph, report, report.gates)
        state.task_statuses = graph.statuses()
        self._checkpoint(state)
        return report

    async def _resolve_escalations(
        self,
        state: PipelineState,
        graph: PlanGraph,
        report: ExecutionReport,
        gates: list[ApprovalGate],
    ) -> ExecutionReport:
        scheduler = self._require_scheduler()
        for round_index in range(self.config.pipeline.max_escalation_rounds):
            pending = [
                gate
                for gate in gates
                if gate.kind in SCHEDULER_GATES
                and gate.task_id is not None
                and graph.node(gate.task_id).status is TaskStatus.BLOCKED
            ]
            if not pending:
                break
            self._count("escalation_rounds")
            guidance: dict[str, str] = {}
            resolved: list[str] = []
            # Approved gates whose force accept failed are presented again next round.
            retry: list[ApprovalGate] = []
            for gate in pending:
                decision = await self.decide(state, gate)
                if isinstance(decision, Approve):
                    try:
                        await scheduler.force_accept(
                            graph, gate.task_id, caveats=gate.unresolved_feedback
                        )
                    except CapabilityFailure as exc:
                        logger.error(
                            "Could not accept %s: %s; it stays blocked", gate.task_id, exc
                        )
                        retry.append(gate)
                        continue
                else:
                    guidance[gate.task_id] = decision.feedback
                resolved.append(gate.task_id)

            targets = set(guidance)
            for task_id in resolved:
                targets.update(
                    successor
                    for successor in graph.transitive_successors(task_id)
                    if graph.node(successor).status is TaskStatus.PENDING
                )
            if not targets:
                gates = retry
                continue
            logger.info(
                "Escalation round %d: re-running %s", round_index + 1, ", ".join(sorted(targets))
            )
            followup = await scheduler.run(graph, targets=targets, guidance=guidance)
            report = merge_reports(report, followup)
            self._stop_if_cancelled(state, graph, report)
            gates = [*retry, *followup.gates]
        report.statuses = graph.statuses()
        return report

    async def affected_tasks(self, graph: PlanGraph, feedback: str) -> list[str]:
        context = {
            "operation": "affected_tasks",
            "feedback": feedback,
            "tasks": [
                {"task_id": node.id, "title": node.title, "description": node.description}
                for node in graph
            ],
        }
        try:
            task_ids = await self.capability.invoke_structured(
                Role.PLANNER, context, affected_tasks_instructions(), parse_affected_task_ids
            )
        except CapabilityFailure as exc:
            logger.warning("Could not identify affected tasks: %s", exc)
            task_ids = []
        affected = [task_id for task_id in task_ids if task_id in graph]
        if not affected:
            affected = [
                node.id
                for node in graph
                if re.search(rf"(?<![\w-]){re.escape(node.id)}(?![\w-])", feedback)
            ]
        if not affected:
            affected = graph.ids
        return sorted(set(affected), key=graph.declaration_index)

    def delivery_report(self, state: PipelineState, graph: PlanGraph) -> str:
        lines = ["# Delivery report", "", "## Request", "", state.request, "", "## Tasks", ""]
        for node in graph:
            lines.append(f"- `{node.id}` {node.title}: {node.status}")
            if node.blocked_reason:
                lines.append(f"  - blocked: {node.blocked_reason}")
            artifact = self.handoffs.latest(node.id)
            if artifact is not None:
                lines.extend(f"  - caveat: {caveat}" for caveat in artifact.caveats)
        lines.append("")
        for node in graph:
            artifact = self.handoffs.latest(node.id)
            if artifact is not None:
                lines.extend([artifact.to_markdown(), ""])
        return "\n".join(lines).rstrip() + "\n"

    async def final_approval(
        self, state: PipelineState, graph: PlanGraph, report: ExecutionReport
    ) -> ExecutionReport:
        scheduler = self._require_scheduler()
        current = {"report": report}

        async def produce(feedback: Feedback | None) -> str:
            if feedback is not None:
                state.final_feedback.append(feedback.text)
                self._journal(JournalTag.FINAL_FEEDBACK, feedback.text)
                targets = await self.affected_tasks(graph, feedback.text)
                logger.info("Final approval revision re-runs %s", ", ".join(targets))
                self._advance(state, Stage.EXECUTE)
                self._count("final_revisions")
                guidance = {task_id: feedback.text for task_id in targets}
                followup = await scheduler.run(graph, targets=targets, guidance=guidance)
                merged = merge_reports(current["report"], followup)
                self._stop_if_cancelled(state, graph, merged)
                current["report"] = await self._resolve_escalations(
                    state, graph, merged, followup.gates
                )
                state.task_statuses = graph.statuses()
                self._advance(state, Stage.FINAL_APPROVAL)
            return self.delivery_report(state, graph)

        def gate_factory(delivery: str, iteration: int) -> ApprovalGate:
            blocked = [node.id for node in graph if node.status is not TaskStatus.APPROVED]
            if blocked:
                reason = (
                    f"Execution finished with {len(blocked)} task(s) not approved "
                    f"({', '.join(blocked)}); accept the delivery or request changes."
                )
            else:
                reason = f"All {len(graph)} tasks are approved; review the delivery."
            return ApprovalGate(
                kind=GateKind.FINAL_DELIVERY,
                title="Accept the final delivery?",
                reason=reason,
                artifact=delivery,
            )

        loop: ConvergenceLoop[str] = ConvergenceLoop(
            "final_approval",
            produce,
            self._gated(state, gate_factory),
            max_iterations=self.config.pipeline.final_approval_max_iterations,
        )
        result = await loop.run()
        if not result.satisfied:
            raise PipelineHalted(
                f"The final delivery was not accepted after {result.iterations} iteration(s).",
                stage=state.stage,
            )
        return current["report"]

    def _persist(
        self, state: PipelineState, graph: PlanGraph, report: ExecutionReport
    ) -> list[Path]:
        state.task_statuses = graph.statuses()
        state.execution = report.to_dict()
        self._checkpoint(state)
        if self.store is None:
            return []
        return [
            self.store.write_document("pipeline.md", state.to_markdown()),
            self.store.write_document(
                "pipeline.json", json.dumps(state.to_dict(), ensure_ascii=False, indent=2) + "\n"
            ),
            self.store.write_document("specification.md", state.specification + "\n"),
            self.store.write_document("plan.md", state.plan + "\n"),
            self.store.write_document("delivery.md", self.delivery_report(state, graph)),
        ]
