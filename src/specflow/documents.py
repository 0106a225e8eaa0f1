"""Existing specification and plan documents a run can start from."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path

from specflow.capability import AgentCapability
from specflow.instructions import document_validation_instructions
from specflow.parsing import DocumentValidation, parse_document_validation
from specflow.specialists import Role

logger = logging.getLogger(__name__)


class DocumentKind(StrEnum):
    SPECIFICATION = "specification"
    PLAN = "development plan"


class DocumentRejected(ValueError):
    """Raised when an imported document is missing, empty, or judged unusable."""

    def __init__(self, message: str, *, kind: DocumentKind, source: str = "") -> None:
        super().__init__(message)
        self.kind = kind
        self.source = source


def read_document(path: Path, kind: DocumentKind) -> str:
    if not path.exists():
        raise DocumentRejected(f"File does not exist: {path}", kind=kind, source=str(path))
    if not path.is_file():
        raise DocumentRejected(f"Not a regular file: {path}", kind=kind, source=str(path))
    text = path.read_text(encoding="utf-8")
    if not text.strip():
        raise DocumentRejected(f"File is empty: {path}", kind=kind, source=str(path))
    return text


@dataclass(slots=True)
class ImportedDocuments:
    specification: str
    plan: str | None = None
    spec_source: str = ""
    plan_source: str = ""

    @classmethod
    def from_paths(cls, spec_path: Path, plan_path: Path | None = None) -> ImportedDocuments:
        return cls(
            specification=read_document(spec_path, DocumentKind.SPECIFICATION),
            plan=read_document(plan_path, DocumentKind.PLAN) if plan_path is not None else None,
            spec_source=str(spec_path),
            plan_source=str(plan_path) if plan_path is not None else "",
        )

    def items(self) -> list[tuple[DocumentKind, str, str]]:
        items = [(DocumentKind.SPECIFICATION, self.specification, self.spec_source)]
        if self.plan is not None:
            items.append((DocumentKind.PLAN, self.plan, self.plan_source))
        return items


async def validate_document(
    capability: AgentCapability, kind: DocumentKind, text: str, *, source: str = ""
) -> DocumentValidation:
    """Ask the capability whether ``text`` is usable as ``kind``; raise if it is not."""
    role = Role.SPEC_AUTHOR if kind is DocumentKind.SPECIFICATION else Role.PLANNER
    context = {"operation": "validate_document", "kind": str(kind), "document": text}
    if source:
        context["source"] = source
    verdict = await capability.invoke_structured(
        role, context, document_validation_instructions(str(kind)), parse_document_validation
    )
    if not verdict.valid:
        label = source or f"the imported {kind}"
        raise DocumentRejected(
            f"{label} is not a usable {kind}: {verdict.reason}", kind=kind, source=source
        )
    logger.info("Imported %s accepted%s", kind, f" ({source})" if source else "")
    return verdict
