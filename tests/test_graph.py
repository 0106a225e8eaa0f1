import pytest

from specflow.graph import (
    InvalidPlanGraph,
    PlannedTask,
    TaskStatus,
    build_plan_graph,
    plan_graph_from_tasks,
)


def test_levels_follow_dependencies_and_declaration_order() -> None:
    graph = build_plan_graph({"A": [], "B": [], "C": ["A", "B"], "D": ["C"], "E": ["A"]})

    assert graph.levels == [["A", "B"], ["C", "E"], ["D"]]
    assert graph.ids == ["A", "B", "C", "D", "E"]
    assert graph.successors("A") == ("C", "E")
    assert graph.transitive_successors("A") == ["C", "D", "E"]
    assert all(node.status is TaskStatus.PENDING for node in graph)


def test_cycle_reports_involved_nodes() -> None:
    with pytest.raises(InvalidPlanGraph) as excinfo:
        build_plan_graph({"A": ["C"], "B": ["A"], "C": ["B"], "D": []})

    assert set(excinfo.value.cycle_involving) == {"A", "B", "C"}
    assert "cycle" in str(excinfo.value)


def test_self_dependency_is_a_cycle() -> None:
    with pytest.raises(InvalidPlanGraph) as excinfo:
        build_plan_graph({"A": ["A"]})

    assert excinfo.value.cycle_involving == ["A"]


def test_missing_prerequisite_is_reported() -> None:
    with pytest.raises(InvalidPlanGraph) as excinfo:
        build_plan_graph({"A": [], "B": ["A", "Z"]})

    assert excinfo.value.missing == {"B": ["Z"]}
    assert "Z" in str(excinfo.value)


def test_empty_plan_is_rejected() -> None:
    with pytest.raises(InvalidPlanGraph):
        build_plan_graph({})


def test_string_prerequisites_are_rejected() -> None:
    with pytest.raises(InvalidPlanGraph, match="must be a list"):
        build_plan_graph({"A": [], "B": "A"})


def test_duplicate_prerequisites_collapse() -> None:
    graph = build_plan_graph({"A": [], "B": ["A", "A", " "]})

    assert graph.node("B").predecessors == ("A",)


def test_graph_from_tasks_keeps_details_and_rejects_duplicates() -> None:
    graph = plan_graph_from_tasks(
        [
            PlannedTask("TASK-01", "Schema", "Create the schema"),
            PlannedTask("TASK-02", "API", "Expose the API", ["TASK-01"]),
        ]
    )

    assert graph.node("TASK-02").title == "API"
    assert graph.node("TASK-02").description == "Expose the API"
    assert graph.node("TASK-02").predecessors == ("TASK-01",)

    with pytest.raises(InvalidPlanGraph, match="Duplicate"):
        plan_graph_from_tasks(
            [PlannedTask("TASK-01", "a", ""), PlannedTask("TASK-01", "b", "")]
        )


def test_unknown_node_lookup_raises_key_error() -> None:
    graph = build_plan_graph({"A": []})

    with pytest.raises(KeyError, match="Unknown task id"):
        graph.node("B")
    assert "B" not in graph
    assert len(graph) == 1
