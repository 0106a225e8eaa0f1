"""Handoff artifacts passed from an approved task to its dependents.

A handoff is the only state that crosses task boundaries. Its shape is fixed
(objective, decisions, produced changes, caveats) so that downstream sessions
can rely on it; the content is written by the coder role from the finished
session trace. Dependents receive their predecessors' handoffs, never the raw
upstream trace.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from specflow.backends.base import MalformedResponse
from specflow.capability import AgentCapability
from specflow.graph import PlanGraph
from specflow.instructions import handoff_instructions
from specflow.parsing import extract_json_object
from specflow.specialists import Role

logger = logging.getLogger(__name__)

SECTION_TITLES = {
    "objective": "Objective",
    "decisions": "Decisions",
    "produced_changes": "Produced changes",
    "caveats": "Caveats",
}
EMPTY_MARKER = "_None._"
HEADER_PATTERN = re.compile(r"^# Handoff: (?P<task_id>\S+) \(revision (?P<revision>\d+)\)$")


class HandoffAlreadyExists(RuntimeError):
    """Raised when a second handoff is written for the same task revision."""


@dataclass(slots=True)
class SessionTrace:
    task_id: str
    title: str
    objective: str
    coding_reports: list[str] = field(default_factory=list)
    review_history: list[dict[str, Any]] = field(default_factory=list)
    known_caveats: list[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class HandoffArtifact:
    task_id: str
    revision: int
    objective: str
    decisions: tuple[str, ...] = ()
    produced_changes: tuple[str, ...] = ()
    caveats: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "revision": self.revision,
            "objective": self.objective,
            "decisions": list(self.decisions),
            "produced_changes": list(self.produced_changes),
            "caveats": list(self.caveats),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> HandoffArtifact:
        return cls(
            task_id=str(payload["task_id"]),
            revision=int(payload.get("revision", 1)),
            objective=str(payload.get("objective", "")),
            decisions=tuple(str(item) for item in payload.get("decisions", [])),
            produced_changes=tuple(str(item) for item in payload.get("produced_changes", [])),
            caveats=tuple(str(item) for item in payload.get("caveats", [])),
        )

    def to_markdown(self) -> str:
        lines = [f"# Handoff: {self.task_id} (revision {self.revision})", ""]
        lines.extend([f"## {SECTION_TITLES['objective']}", self.objective or EMPTY_MARKER, ""])
        for key in ("decisions", "produced_changes", "caveats"):
            lines.append(f"## {SECTION_TITLES[key]}")
            items = getattr(self, key)
            if items:
                lines.extend(f"- {item}" for item in items)
            else:
                lines.append(EMPTY_MARKER)
            lines.append("")
        return "\n".join(lines).rstrip() + "\n"

    @classmethod
    def from_markdown(cls, text: str) -> HandoffArtifact:
        lines = text.strip().splitlines()
        if not lines:
            raise ValueError("Handoff document is empty.")
        header = HEADER_PATTERN.match(lines[0].strip())
        if header is None:
            raise ValueError("Handoff document is missing its header line.")
        by_title = {title: key for key, title in SECTION_TITLES.items()}
        sections: dict[str, list[str]] = {key: [] for key in SECTION_TITLES}
        current: str | None = None
        for raw_line in lines[1:]:
            line = raw_line.rstrip()
            if line.startswith("## "):
                current = by_title.get(line[3:].strip())
                if current is None:
                    raise ValueError(f"Unknown handoff section: {line[3:].strip()}")
                continue
            if current is None or not line.strip() or line.strip() == EMPTY_MARKER:
                continue
            sections[current].append(line)

        def _items(key: str) -> tuple[str, ...]:
            return tuple(line[2:].strip() for line in sections[key] if line.startswith("- "))

        return cls(
            task_id=header.group("task_id"),
            revision=int(header.group("revision")),
            objective="\n".join(sections["objective"]).strip(),
            decisions=_items("decisions"),
            produced_changes=_items("produced_changes"),
            caveats=_items("caveats"),
        )


def _dedupe(items: list[str]) -> tuple[str, ...]:
    seen: set[str] = set()
    result: list[str] = []
    for item in items:
        cleaned = " ".join(item.split())
        if cleaned and cleaned not in seen:
            seen.add(cleaned)
            result.append(cleaned)
    return tuple(result)


def _handoff_sections(raw_text: str) -> dict[str, Any]:
    payload = extract_json_object(raw_text, required_key="objective")
    for key in ("decisions", "produced_changes", "caveats"):
        value = payload.get(key, [])
        if not isinstance(value, list):
            raise MalformedResponse(f"Handoff section '{key}' must be a list.")
    return payload


class HandoffGenerator:
    def __init__(self, capability: AgentCapability) -> None:
        self.capability = capability

    async def generate(self, trace: SessionTrace, *, revision: int = 1) -> HandoffArtifact:
        context = {
            "operation": "handoff",
            "task_id": trace.task_id,
            "task_title": trace.title,
            "objective": trace.objective,
            "coding_reports": list(trace.coding_reports),
            "review_history": list(trace.review_history),
            "known_caveats": list(trace.known_caveats),
        }
        payload = await self.capability.invoke_structured(
            Role.CODER,
            context,
            handoff_instructions(trace.task_id),
            _handoff_sections,
        )
        caveats = [str(item) for item in payload.get("caveats", [])]
        return HandoffArtifact(
            task_id=trace.task_id,
            revision=revision,
            objective=str(payload.get("objective") or trace.objective).strip(),
            decisions=_dedupe([str(item) for item in payload.get("decisions", [])]),
            produced_changes=_dedupe(
                [str(item) for item in payload.get("produced_changes", [])]
            ),
            caveats=_dedupe([*trace.known_caveats, *caveats]),
        )


class HandoffStore:
    """Write-once store of handoffs keyed by task id and revision."""

    def __init__(self, directory: Path | None = None) -> None:
        self.directory = directory
        self._artifacts: dict[tuple[str, int], HandoffArtifact] = {}

    def put(self, artifact: HandoffArtifact) -> Path | None:
        key = (artifact.task_id, artifact.revision)
        if key in self._artifacts:
            raise HandoffAlreadyExists(
                f"Handoff for {artifact.task_id} revision {artifact.revision} already exists."
            )
        self._artifacts[key] = artifact
        logger.info("Stored handoff %s r%d", artifact.task_id, artifact.revision)
        if self.directory is None:
            return None
        self.directory.mkdir(parents=True, exist_ok=True)
        stem = f"{artifact.task_id}.r{artifact.revision}"
        markdown_path = self.directory / f"{stem}.md"
        markdown_path.write_text(artifact.to_markdown(), encoding="utf-8")
        (self.directory / f"{stem}.json").write_text(
            json.dumps(artifact.to_dict(), ensure_ascii=False, indent=2) + "\n",
            encoding="utf-8",
        )
        return markdown_path

    def get(self, task_id: str, revision: int) -> HandoffArtifact | None:
        return self._artifacts.get((task_id, revision))

    def revisions(self, task_id: str) -> list[int]:
        return sorted(revision for owner, revision in self._artifacts if owner == task_id)

    def latest(self, task_id: str) -> HandoffArtifact | None:
        revisions = self.revisions(task_id)
        if not revisions:
            return None
        return self._artifacts[(task_id, revisions[-1])]

    def next_revision(self, task_id: str) -> int:
        revisions = self.revisions(task_id)
        return revisions[-1] + 1 if revisions else 1

    def context_for(self, graph: PlanGraph, node_id: str) -> list[str]:
        """Rendered handoffs of ``node_id``'s direct predecessors, in declaration order."""
        documents: list[str] = []
        for predecessor in graph.node(node_id).predecessors:
            artifact = self.latest(predecessor)
            if artifact is None:
                raise RuntimeError(
                    f"Predecessor {predecessor} of {node_id} has no handoff artifact."
                )
            documents.append(artifact.to_markdown())
        return documents
