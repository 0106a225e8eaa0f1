import asyncio
import json
from pathlib import Path
from typing import Any

import pytest

from fakes import ScriptedBackend, ScriptedHuman, coding_json, review_json, tasks_json
from specflow.capability import AgentCapability
from specflow.config import SpecflowConfig
from specflow.gates import ApprovalGate, Approve, Decision, ReviseWithFeedback
from specflow.graph import build_plan_graph
from specflow.backends.base import CapabilityUnavailable
from specflow.documents import DocumentRejected, ImportedDocuments
from specflow.pipeline import (
    NO_ANSWER_FEEDBACK,
    PipelineCancelled,
    PipelineController,
    PipelineHalted,
    PipelineState,
    Stage,
    StageTransitionError,
)
from specflow.state import Journal, JournalTag, RunStore

CHAIN = {"TASK-00": [], "TASK-01": ["TASK-00"]}


def _controller(
    backend: ScriptedBackend,
    human: ScriptedHuman,
    *,
    store: RunStore | None = None,
    config: SpecflowConfig | None = None,
) -> PipelineController:
    capability = AgentCapability.from_backend(backend, backoff_seconds=0.0)
    return PipelineController(capability, human, config or SpecflowConfig.default(), store=store)


def test_pipeline_runs_every_stage_and_writes_documents(tmp_path: Path) -> None:
    store = RunStore.create(tmp_path, "run-e2e")
    backend = ScriptedBackend({"extract_tasks": tasks_json(CHAIN)})
    human = ScriptedHuman()
    controller = _controller(backend, human, store=store)

    result = asyncio.run(controller.run("Build a todo CLI"))

    assert result.state.stage is Stage.DONE
    assert result.state.specification == "# Spec\nA CLI."
    assert result.state.plan == "# Plan\nSteps."
    assert result.report.approved == ["TASK-00", "TASK-01"]
    assert [str(gate.kind) for gate in human.gates] == [
        "specification",
        "plan",
        "final_delivery",
    ]
    assert [path.name for path in result.documents] == [
        "pipeline.md",
        "pipeline.json",
        "specification.md",
        "plan.md",
        "delivery.md",
    ]
    assert all(path.exists() for path in result.documents)
    assert "# Handoff: TASK-01 (revision 1)" in (store.run_dir / "delivery.md").read_text(
        encoding="utf-8"
    )
    assert (store.handoffs_dir / "TASK-00.r1.md").exists()

    context = store.get_context()
    assert context["stage"] == "done"
    assert context["outstanding_gates"] == []
    assert [entry["stage"] for entry in context["history"]] == [
        "clarify",
        "specify",
        "plan",
        "execute",
        "final_approval",
        "done",
    ]
    assert [gate["kind"] for gate in store.get_gates()] == [
        "specification",
        "plan",
        "final_delivery",
    ]
    tags = [entry.tag for entry in Journal(store.journal_path).entries()]
    assert tags == ["REQUEST", "SPEC_DRAFT", "APPROVED_SPEC", "PLAN_DRAFT", "APPROVED_PLAN"]
    saved = json.loads((store.run_dir / "pipeline.json").read_text(encoding="utf-8"))
    assert saved["task_statuses"] == {"TASK-00": "approved", "TASK-01": "approved"}


def test_clarification_answers_reach_the_specification(tmp_path: Path) -> None:
    store = RunStore.create(tmp_path, "run-clarify")
    backend = ScriptedBackend(
        {
            "clarify": [
                json.dumps({"questions": ["Which database?"]}),
                json.dumps({"questions": []}),
            ]
        }
    )
    human = ScriptedHuman(answers=["Postgres"])
    controller = _controller(backend, human, store=store)

    result = asyncio.run(controller.run("Build a todo API"))

    assert human.questions == [("Which database?",)]
    assert result.state.qa_log == [{"questions": ["Which database?"], "answer": "Postgres"}]
    assert len(backend.calls_for("clarify")) == 2
    assert backend.calls_for("draft_spec")[0]["qa_log"][0]["answer"] == "Postgres"
    tags = [entry.tag for entry in Journal(store.journal_path).entries()]
    assert tags[:3] == ["REQUEST", "CLARIFYING_QUESTIONS", "USER_ANSWERS"]


def test_declining_to_answer_moves_on_to_the_specification() -> None:
    backend = ScriptedBackend({"clarify": json.dumps({"questions": ["Which database?"]})})
    human = ScriptedHuman(answers=[None])

    result = asyncio.run(_controller(backend, human).run("Build a todo API"))

    assert len(backend.calls_for("clarify")) == 1
    assert result.state.qa_log == []
    assert result.state.stage is Stage.DONE


def test_specification_revision_carries_feedback_and_previous_draft(tmp_path: Path) -> None:
    store = RunStore.create(tmp_path, "run-revise")
    backend = ScriptedBackend(
        {
            "draft_spec": [
                json.dumps({"response_type": "spec_draft", "spec_draft": "# Spec v1"}),
                json.dumps({"response_type": "spec_draft", "spec_draft": "# Spec v2"}),
            ]
        }
    )
    human = ScriptedHuman(decisions={"specification": [ReviseWithFeedback("Add auth")]})

    result = asyncio.run(_controller(backend, human, store=store).run("Build a todo API"))

    assert result.state.specification == "# Spec v2"
    second = backend.calls_for("draft_spec")[1]
    assert second["feedback"] == "Add auth"
    assert second["previous_draft"] == "# Spec v1"
    entries = Journal(store.journal_path).entries()
    assert [entry.content for entry in entries if entry.tag == JournalTag.USER_FEEDBACK] == [
        "Add auth"
    ]
    decisions = [item["decision"] for item in store.get_decisions() if item.get("gate_id")]
    assert decisions[:2] == ["revise", "approve"]


def test_spec_author_questions_are_answered_before_the_gate() -> None:
    backend = ScriptedBackend(
        {
            "draft_spec": [
                json.dumps(
                    {
                        "response_type": "clarifying_questions",
                        "clarifying_questions": ["Single user?"],
                    }
                ),
                json.dumps({"response_type": "spec_draft", "spec_draft": "# Spec"}),
            ]
        }
    )
    human = ScriptedHuman(answers=["Yes"])

    result = asyncio.run(_controller(backend, human).run("Build a todo API"))

    assert human.questions == [("Single user?",)]
    assert len(human.gates_of("specification")) == 1
    assert result.state.qa_log[-1]["answer"] == "Yes"


def test_unapproved_specification_halts_the_pipeline() -> None:
    config = SpecflowConfig.default()
    config.pipeline.max_draft_iterations = 2
    human = ScriptedHuman(
        decisions={
            "specification": [ReviseWithFeedback("Too vague"), ReviseWithFeedback("Still vague")]
        }
    )

    with pytest.raises(PipelineHalted) as excinfo:
        asyncio.run(_controller(ScriptedBackend(), human, config=config).run("Build it"))

    assert excinfo.value.stage is Stage.SPECIFY


def test_cyclic_task_graph_sends_the_plan_back() -> None:
    backend = ScriptedBackend(
        {
            "extract_tasks": [
                tasks_json({"A": ["B"], "B": ["A"]}),
                tasks_json({"A": [], "B": ["A"]}),
            ]
        }
    )
    human = ScriptedHuman()

    result = asyncio.run(_controller(backend, human).run("Build it"))

    assert len(human.gates_of("plan")) == 2
    second_plan = backend.calls_for("draft_plan")[1]
    assert "cycle" in second_plan["feedback"]
    assert result.graph.levels == [["A"], ["B"]]
    assert [task["task_id"] for task in result.state.tasks] == ["A", "B"]


def _escalating_backend() -> ScriptedBackend:
    reviews = {"TASK-00": 0}

    def review(context: dict[str, Any]) -> str:
        if context["task_id"] != "TASK-00":
            return review_json()
        reviews["TASK-00"] += 1
        if reviews["TASK-00"] <= 2:
            return review_json("REQUEST_CHANGES", "MAJOR", ["Tests fail"])
        return review_json()

    return ScriptedBackend({"extract_tasks": tasks_json(CHAIN), "review": review})


def _short_reviews() -> SpecflowConfig:
    config = SpecflowConfig.default()
    config.execution.review_max_iterations = 2
    return config


def test_escalation_guidance_reruns_the_task_and_its_dependents() -> None:
    backend = _escalating_backend()
    human = ScriptedHuman(decisions={"escalation": [ReviseWithFeedback("Use sqlite")]})
    controller = _controller(backend, human, config=_short_reviews())

    result = asyncio.run(controller.run("Build it"))

    escalations = human.gates_of("escalation")
    assert len(escalations) == 1
    assert escalations[0].task_id == "TASK-00"
    assert escalations[0].unresolved_feedback == ["Tests fail"]
    assert backend.calls_for("implement", "TASK-00")[-1]["guidance"] == "Use sqlite"
    assert result.report.approved == ["TASK-00", "TASK-01"]
    assert result.report.halted == {}
    assert controller.handoffs.revisions("TASK-00") == [1]
    assert len(backend.calls_for("review", "TASK-00")) == 3


def test_escalation_approval_accepts_with_caveats(tmp_path: Path) -> None:
    store = RunStore.create(tmp_path, "run-accept")
    backend = _escalating_backend()
    human = ScriptedHuman(decisions={"escalation": [Approve()]})
    controller = _controller(backend, human, store=store, config=_short_reviews())

    result = asyncio.run(controller.run("Build it"))

    assert result.report.approved == ["TASK-00", "TASK-01"]
    handoff = controller.handoffs.latest("TASK-00")
    assert handoff is not None
    assert handoff.caveats == ("Tests fail",)
    assert len(backend.calls_for("implement", "TASK-00")) == 1
    assert "caveat: Tests fail" in (store.run_dir / "delivery.md").read_text(encoding="utf-8")


def test_final_revision_reruns_only_affected_tasks() -> None:
    adjacency = {"A": [], "B": ["A"], "C": []}
    backend = ScriptedBackend(
        {
            "extract_tasks": tasks_json(adjacency),
            "affected_tasks": json.dumps({"task_ids": ["B"]}),
        }
    )
    human = ScriptedHuman(
        decisions={"final_delivery": [ReviseWithFeedback("B should log errors")]}
    )
    controller = _controller(backend, human)

    result = asyncio.run(controller.run("Build it"))

    assert len(human.gates_of("final_delivery")) == 2
    assert result.state.final_feedback == ["B should log errors"]
    assert controller.handoffs.revisions("B") == [1, 2]
    assert controller.handoffs.revisions("A") == [1]
    assert controller.handoffs.revisions("C") == [1]
    assert backend.calls_for("implement", "B")[-1]["guidance"] == "B should log errors"
    assert len(backend.calls_for("implement", "A")) == 1
    stages = [entry["stage"] for entry in result.state.history]
    assert stages[-4:] == ["final_approval", "execute", "final_approval", "done"]
    assert result.report.started_order == ["A", "C", "B", "B"]


def test_affected_tasks_falls_back_to_ids_in_feedback() -> None:
    backend = ScriptedBackend({"affected_tasks": json.dumps({"task_ids": ["NOPE"]})})
    controller = _controller(backend, ScriptedHuman())
    graph = build_plan_graph({"TASK-1": [], "TASK-10": [], "TASK-2": ["TASK-1"]})

    assert asyncio.run(controller.affected_tasks(graph, "TASK-10 has a typo")) == ["TASK-10"]
    assert asyncio.run(controller.affected_tasks(graph, "Polish everything")) == [
        "TASK-1",
        "TASK-10",
        "TASK-2",
    ]


def test_stage_order_is_enforced() -> None:
    state = PipelineState(run_id="run-x", request="Build it")

    with pytest.raises(StageTransitionError):
        state.advance(Stage.EXECUTE)

    state.advance(Stage.SPECIFY)
    assert state.stage is Stage.SPECIFY
    assert "Stage: `specify`" in state.to_markdown()


def test_rerun_before_execution_is_refused() -> None:
    controller = _controller(ScriptedBackend(), ScriptedHuman())
    state = PipelineState(run_id="run-x", request="Build it")
    graph = build_plan_graph({"A": []})

    with pytest.raises(StageTransitionError):
        asyncio.run(controller.final_approval(state, graph, None))  # type: ignore[arg-type]


def test_unanswered_author_questions_lead_to_a_draft_on_assumptions() -> None:
    backend = ScriptedBackend(
        {
            "draft_spec": [
                json.dumps(
                    {
                        "response_type": "clarifying_questions",
                        "clarifying_questions": ["Single user?"],
                    }
                ),
                json.dumps({"response_type": "spec_draft", "spec_draft": "# Spec\nAssumes one."}),
            ]
        }
    )
    human = ScriptedHuman(answers=[None])

    result = asyncio.run(_controller(backend, human).run("Build a todo API"))

    assert result.state.stage is Stage.DONE
    assert result.state.specification == "# Spec\nAssumes one."
    assert backend.calls_for("draft_spec")[1]["qa_log"][-1] == {
        "questions": ["Single user?"],
        "answer": NO_ANSWER_FEEDBACK,
    }
    assert len(human.gates_of("specification")) == 1


def test_cancel_stops_the_pipeline_after_execution(tmp_path: Path) -> None:
    store = RunStore.create(tmp_path, "run-cancel")
    holder: dict[str, PipelineController] = {}

    async def implement(context: dict[str, Any]) -> str:
        if context["task_id"] == "B":
            holder["controller"].cancel()
            await asyncio.sleep(0)
        return coding_json()

    backend = ScriptedBackend(
        {"extract_tasks": tasks_json({"A": [], "B": ["A"], "C": ["B"]}), "implement": implement}
    )
    human = ScriptedHuman()
    controller = _controller(backend, human, store=store)
    holder["controller"] = controller

    with pytest.raises(PipelineCancelled) as excinfo:
        asyncio.run(controller.run("Build it"))

    assert excinfo.value.stage is Stage.EXECUTE
    assert controller.cancelled
    assert human.gates_of("final_delivery") == []
    context = store.get_context()
    assert context["stage"] == "execute"
    assert context["task_statuses"] == {"A": "approved", "B": "cancelled", "C": "pending"}
    assert context["execution"]["cancelled"] is True
    assert backend.calls_for("implement", "C") == []

    graph = build_plan_graph({"A": [], "B": ["A"], "C": ["B"]})
    assert controller.scheduler is not None
    rerun = asyncio.run(controller.scheduler.run(graph, targets=["A"]))
    assert rerun.cancelled
    assert rerun.started_order == []


def test_cancel_before_execution_starts_no_task() -> None:
    backend = ScriptedBackend()

    class CancellingHuman(ScriptedHuman):
        async def decide(self, gate: ApprovalGate) -> Decision:
            decision = await super().decide(gate)
            if gate.kind == "plan":
                holder["controller"].cancel()
            return decision

    human = CancellingHuman()
    holder = {"controller": _controller(backend, human)}

    with pytest.raises(PipelineCancelled) as excinfo:
        asyncio.run(holder["controller"].run("Build it"))

    assert excinfo.value.stage is Stage.PLAN
    assert backend.calls_for("implement") == []


def test_approving_a_fault_gate_while_the_capability_is_down_keeps_the_run_going(
    tmp_path: Path,
) -> None:
    store = RunStore.create(tmp_path, "run-fault")

    def implement(context: dict[str, Any]) -> str:
        if context["task_id"] == "A":
            raise CapabilityUnavailable("backend down", retriable=False)
        return coding_json()

    def handoff(context: dict[str, Any]) -> str:
        if context["task_id"] == "A":
            raise CapabilityUnavailable("backend down", retriable=False)
        return json.dumps(
            {"objective": "Deliver B", "decisions": [], "produced_changes": [], "caveats": []}
        )

    backend = ScriptedBackend(
        {
            "extract_tasks": tasks_json({"A": [], "B": []}),
            "implement": implement,
            "handoff": handoff,
        }
    )
    human = ScriptedHuman()
    controller = _controller(backend, human, store=store)

    result = asyncio.run(controller.run("Build it"))

    assert result.state.stage is Stage.DONE
    assert len(human.gates_of("fault")) == 2
    assert len(human.gates_of("final_delivery")) == 1
    assert result.report.statuses == {"A": "blocked", "B": "approved"}
    assert "backend down" in (result.graph.node("A").blocked_reason or "")
    assert controller.handoffs.latest("A") is None
    assert (store.run_dir / "delivery.md").exists()
    assert store.get_metrics()["escalation_rounds"] == 2


def _minor_at_cap_backend(adjacency: dict[str, list[str]]) -> ScriptedBackend:
    minor = review_json("REQUEST_CHANGES", "MINOR", ["Rename helper"])
    return ScriptedBackend({"extract_tasks": tasks_json(adjacency), "review": minor})


def _ack_config() -> SpecflowConfig:
    config = _short_reviews()
    config.execution.auto_accept_requires_ack = True
    config.execution.max_concurrency = 2
    return config


def test_auto_accept_acknowledgements_are_tracked(tmp_path: Path) -> None:
    store = RunStore.create(tmp_path, "run-ack")
    human = ScriptedHuman()
    controller = _controller(
        _minor_at_cap_backend({"A": []}), human, store=store, config=_ack_config()
    )

    result = asyncio.run(controller.run("Build it"))

    assert result.report.approved == ["A"]
    assert [gate["kind"] for gate in store.get_gates()] == [
        "specification",
        "plan",
        "auto_accept_ack",
        "final_delivery",
    ]
    ack = [item for item in store.get_decisions() if item.get("topic") == "auto_accept_ack"]
    assert [(item["task_id"], item["decision"]) for item in ack] == [("A", "approve")]
    assert store.get_context()["outstanding_gates"] == []


def test_concurrent_gates_are_presented_one_at_a_time() -> None:
    class SlowHuman(ScriptedHuman):
        def __init__(self) -> None:
            super().__init__()
            self.open = 0
            self.max_open = 0

        async def decide(self, gate: ApprovalGate) -> Decision:
            self.open += 1
            self.max_open = max(self.max_open, self.open)
            await asyncio.sleep(0.01)
            self.open -= 1
            return await super().decide(gate)

    human = SlowHuman()
    controller = _controller(
        _minor_at_cap_backend({"A": [], "B": []}), human, config=_ack_config()
    )

    result = asyncio.run(controller.run("Build it"))

    assert sorted(result.report.approved) == ["A", "B"]
    assert len(human.gates_of("auto_accept_ack")) == 2
    assert human.max_open == 1


def test_run_from_an_imported_specification_drafts_only_the_plan(tmp_path: Path) -> None:
    spec_path = tmp_path / "spec.md"
    spec_path.write_text("# Spec\n\nA todo CLI.\n", encoding="utf-8")
    backend = ScriptedBackend()
    human = ScriptedHuman()
    imported = ImportedDocuments.from_paths(spec_path)

    result = asyncio.run(_controller(backend, human).run("", imported=imported))

    assert result.state.specification == "# Spec\n\nA todo CLI."
    assert str(spec_path) in result.state.request
    assert [call["kind"] for call in backend.calls_for("validate_document")] == ["specification"]
    assert backend.calls_for("clarify") == []
    assert backend.calls_for("draft_spec") == []
    assert backend.calls_for("draft_plan")[0]["spec"] == "# Spec\n\nA todo CLI."
    assert [str(gate.kind) for gate in human.gates] == ["plan", "final_delivery"]
    assert [entry["stage"] for entry in result.state.history][:4] == [
        "clarify",
        "specify",
        "plan",
        "execute",
    ]


def test_imported_documents_are_validated_before_anything_runs() -> None:
    backend = ScriptedBackend(
        {"validate_document": json.dumps({"valid": False, "reason": "No requirements."})}
    )
    imported = ImportedDocuments(specification="hello", spec_source="notes.md")

    with pytest.raises(DocumentRejected, match="No requirements."):
        asyncio.run(_controller(backend, ScriptedHuman()).run("", imported=imported))

    assert [call["operation"] for call in backend.calls] == ["validate_document"]


def test_imported_plan_with_a_cyclic_task_graph_halts() -> None:
    backend = ScriptedBackend({"extract_tasks": tasks_json({"A": ["B"], "B": ["A"]})})
    imported = ImportedDocuments(specification="# Spec", plan="# Plan")

    with pytest.raises(PipelineHalted, match="imported plan") as excinfo:
        asyncio.run(_controller(backend, ScriptedHuman()).run("Build it", imported=imported))

    assert excinfo.value.stage is Stage.PLAN
    assert backend.calls_for("draft_plan") == []
