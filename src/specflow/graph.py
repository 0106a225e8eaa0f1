from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import StrEnum


class TaskStatus(StrEnum):
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    IN_REVIEW = "in_review"
    APPROVED = "approved"
    BLOCKED = "blocked"
    CANCELLED = "cancelled"


class InvalidPlanGraph(ValueError):
    """Raised when a plan's dependency structure is not a valid DAG."""

    def __init__(
        self,
        message: str,
        *,
        cycle_involving: Sequence[str] = (),
        missing: Mapping[str, Sequence[str]] | None = None,
    ) -> None:
        super().__init__(message)
        self.cycle_involving = list(cycle_involving)
        self.missing = {key: list(value) for key, value in (missing or {}).items()}


@dataclass(slots=True)
class PlannedTask:
    task_id: str
    title: str
    description: str
    dependencies: list[str] = field(default_factory=list)


@dataclass(slots=True)
class TaskNode:
    id: str
    title: str
    description: str
    predecessors: tuple[str, ...] = ()
    status: TaskStatus = TaskStatus.PENDING
    blocked_reason: str | None = None


class PlanGraph:
    """Validated DAG of task nodes.

    Edges are fixed once the graph is built. Node ``status`` is the only
    mutable part and belongs to the scheduler.
    """

    def __init__(self, nodes: dict[str, TaskNode], levels: list[list[str]]) -> None:
        self._nodes = nodes
        self._levels = levels
        self._order = {node_id: index for index, node_id in enumerate(nodes)}
        successors: dict[str, list[str]] = {node_id: [] for node_id in nodes}
        for node in nodes.values():
            for predecessor in node.predecessors:
                successors[predecessor].append(node.id)
        self._successors = {key: tuple(value) for key, value in successors.items()}

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __iter__(self):
        return iter(self._nodes.values())

    def __len__(self) -> int:
        return len(self._nodes)

    @property
    def ids(self) -> list[str]:
        return list(self._nodes)

    @property
    def levels(self) -> list[list[str]]:
        return [list(level) for level in self._levels]

    def node(self, node_id: str) -> TaskNode:
        try:
            return self._nodes[node_id]
        except KeyError:
            raise KeyError(f"Unknown task id: {node_id}") from None

    def declaration_index(self, node_id: str) -> int:
        return self._order[node_id]

    def successors(self, node_id: str) -> tuple[str, ...]:
        return self._successors[node_id]

    def transitive_successors(self, node_id: str) -> list[str]:
        seen: set[str] = set()
        stack = list(self._successors[node_id])
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self._successors[current])
        return sorted(seen, key=self.declaration_index)

    def statuses(self) -> dict[str, str]:
        return {node_id: str(node.status) for node_id, node in self._nodes.items()}


def _find_cycle(adjacency: Mapping[str, Sequence[str]]) -> list[str] | None:
    """Three-colour DFS over predecessor edges; returns one cycle path or ``None``."""
    white, grey, black = 0, 1, 2
    colour = {node_id: white for node_id in adjacency}
    parent: dict[str, str] = {}

    for root in adjacency:
        if colour[root] != white:
            continue
        colour[root] = grey
        stack: list[tuple[str, Iterable[str]]] = [(root, iter(adjacency[root]))]
        while stack:
            current, edges = stack[-1]
            advanced = False
            for neighbour in edges:
                if colour[neighbour] == white:
                    colour[neighbour] = grey
                    parent[neighbour] = current
                    stack.append((neighbour, iter(adjacency[neighbour])))
                    advanced = True
                    break
                if colour[neighbour] == grey:
                    cycle = [current]
                    walker = current
                    while walker != neighbour:
                        walker = parent[walker]
                        cycle.append(walker)
                    cycle.reverse()
                    return cycle
            if not advanced:
                colour[current] = black
                stack.pop()
    return None


def _execution_levels(adjacency: Mapping[str, Sequence[str]]) -> list[list[str]]:
    depth: dict[str, int] = {}
    remaining = list(adjacency)
    # Kahn-style layering; the input is already known to be acyclic.
    while remaining:
        progressed: list[str] = []
        for node_id in remaining:
            predecessors = adjacency[node_id]
            if all(item in depth for item in predecessors):
                depth[node_id] = 1 + max((depth[item] for item in predecessors), default=-1)
                progressed.append(node_id)
        if not progressed:
            raise InvalidPlanGraph(
                "Topological order could not consume every task.",
                cycle_involving=remaining,
            )
        remaining = [node_id for node_id in remaining if node_id not in depth]

    levels: list[list[str]] = [[] for _ in range(max(depth.values()) + 1)]
    for node_id in adjacency:
        levels[depth[node_id]].append(node_id)
    return levels


def build_plan_graph(
    adjacency: Mapping[str, Sequence[str]],
    details: Mapping[str, tuple[str, str]] | None = None,
) -> PlanGraph:
    """Validate ``adjacency`` (task id -> prerequisite ids) and build the DAG.

    ``details`` optionally maps a task id to ``(title, description)``.
    """
    if not adjacency:
        raise InvalidPlanGraph("Plan contains no tasks.")

    normalized: dict[str, list[str]] = {}
    for raw_id, raw_predecessors in adjacency.items():
        node_id = str(raw_id).strip()
        if not node_id:
            raise InvalidPlanGraph("Plan contains a task with an empty id.")
        if node_id in normalized:
            raise InvalidPlanGraph(f"Duplicate task id in plan: {node_id}")
        if isinstance(raw_predecessors, str):
            raise InvalidPlanGraph(f"Prerequisites of {node_id} must be a list of task ids.")
        predecessors: list[str] = []
        for item in raw_predecessors:
            predecessor = str(item).strip()
            if predecessor and predecessor not in predecessors:
                predecessors.append(predecessor)
        normalized[node_id] = predecessors

    missing = {
        node_id: [item for item in predecessors if item not in normalized]
        for node_id, predecessors in normalized.items()
    }
    missing = {node_id: items for node_id, items in missing.items() if items}
    if missing:
        described = ", ".join(
            f"{node_id} -> {', '.join(items)}" for node_id, items in missing.items()
        )
        raise InvalidPlanGraph(
            f"Plan references unknown prerequisites: {described}", missing=missing
        )

    cycle = _find_cycle(normalized)
    if cycle is not None:
        path = " -> ".join([*cycle, cycle[0]])
        raise InvalidPlanGraph(
            f"Plan dependencies contain a cycle: {path}", cycle_involving=cycle
        )

    levels = _execution_levels(normalized)
    details = details or {}
    nodes: dict[str, TaskNode] = {}
    for node_id, predecessors in normalized.items():
        title, description = details.get(node_id, (node_id, ""))
        nodes[node_id] = TaskNode(
            id=node_id,
            title=title,
            description=description,
            predecessors=tuple(predecessors),
        )
    return PlanGraph(nodes, levels)


def plan_graph_from_tasks(tasks: Sequence[PlannedTask]) -> PlanGraph:
    adjacency: dict[str, list[str]] = {}
    details: dict[str, tuple[str, str]] = {}
    for task in tasks:
        task_id = task.task_id.strip()
        if task_id in adjacency:
            raise InvalidPlanGraph(f"Duplicate task id in plan: {task_id}")
        adjacency[task_id] = list(task.dependencies)
        details[task_id] = (task.title, task.description)
    return build_plan_graph(adjacency, details)
