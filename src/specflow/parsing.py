"""Parsing of the structured replies returned by the capability.

Every role is asked for a single JSON object. Models wrap that object in prose
or code fences often enough that the extraction here is lenient about where
the object sits, but strict about its shape: anything that does not match
raises :class:`MalformedResponse` so that the caller can retry.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Literal

from specflow.backends.base import MalformedResponse
from specflow.graph import PlannedTask

FENCED_BLOCK_PATTERN = re.compile(r"```(?:json)?\s*\n(.*?)```", re.DOTALL)
MAX_QUESTIONS = 5


def extract_json_objects(raw_text: str) -> list[dict[str, Any]]:
    payloads: list[dict[str, Any]] = []
    text = raw_text.strip()
    if not text:
        return payloads
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        parsed = None
    if isinstance(parsed, dict):
        return [parsed]

    for block in FENCED_BLOCK_PATTERN.findall(text):
        try:
            parsed = json.loads(block.strip())
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            payloads.append(parsed)
    if payloads:
        return payloads

    decoder = json.JSONDecoder()
    index = text.find("{")
    while index != -1:
        try:
            parsed, end = decoder.raw_decode(text, index)
        except json.JSONDecodeError:
            index = text.find("{", index + 1)
            continue
        if isinstance(parsed, dict):
            payloads.append(parsed)
        index = text.find("{", end)
    return payloads


def extract_json_object(raw_text: str, *, required_key: str | None = None) -> dict[str, Any]:
    if not raw_text.strip():
        raise MalformedResponse("Capability returned an empty response.")
    for payload in extract_json_objects(raw_text):
        if required_key is None or required_key in payload:
            return payload
    expected = f" with key '{required_key}'" if required_key else ""
    raise MalformedResponse(f"No JSON object{expected} found in capability response.")


def _string_list(value: Any, *, field_name: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise MalformedResponse(f"Field '{field_name}' must be a list of strings.")
    items: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise MalformedResponse(f"Field '{field_name}' must be a list of strings.")
        if item.strip():
            items.append(item.strip())
    return items


def parse_clarification_questions(raw_text: str) -> list[str]:
    payload = extract_json_object(raw_text, required_key="questions")
    return _string_list(payload["questions"], field_name="questions")[:MAX_QUESTIONS]


@dataclass(slots=True)
class DraftResponse:
    kind: Literal["draft", "questions"]
    draft: str = ""
    questions: list[str] = field(default_factory=list)


def parse_draft_response(raw_text: str, *, draft_field: str) -> DraftResponse:
    """Parse a ``{draft_field}`` or ``clarifying_questions`` reply."""
    payload = extract_json_object(raw_text, required_key="response_type")
    response_type = str(payload.get("response_type", "")).strip().lower()
    if response_type == "clarifying_questions":
        questions = _string_list(
            payload.get("clarifying_questions"), field_name="clarifying_questions"
        )
        if not questions:
            raise MalformedResponse("clarifying_questions response carried no questions.")
        return DraftResponse(kind="questions", questions=questions[:MAX_QUESTIONS])
    if response_type == draft_field:
        draft = payload.get(draft_field)
        if not isinstance(draft, str) or not draft.strip():
            raise MalformedResponse(f"{draft_field} response carried an empty draft.")
        return DraftResponse(kind="draft", draft=draft.strip())
    raise MalformedResponse(f"Unexpected response_type '{response_type}'.")


def parse_task_extraction(raw_text: str) -> list[PlannedTask]:
    payload = extract_json_object(raw_text, required_key="tasks")
    raw_tasks = payload["tasks"]
    if not isinstance(raw_tasks, list) or not raw_tasks:
        raise MalformedResponse("Task extraction must contain at least one task.")
    tasks: list[PlannedTask] = []
    for item in raw_tasks:
        if not isinstance(item, dict):
            raise MalformedResponse("Each extracted task must be a JSON object.")
        task_id = str(item.get("task_id", "")).strip()
        if not task_id:
            raise MalformedResponse("Extracted task is missing 'task_id'.")
        tasks.append(
            PlannedTask(
                task_id=task_id,
                title=str(item.get("title", "")).strip() or task_id,
                description=str(item.get("description", "")).strip(),
                dependencies=_string_list(item.get("dependencies"), field_name="dependencies"),
            )
        )
    return tasks


@dataclass(slots=True)
class CodingReport:
    success: bool
    report: str


def parse_coding_report(raw_text: str) -> CodingReport:
    try:
        payload = extract_json_object(raw_text, required_key="status")
    except MalformedResponse:
        # Free-form output is still a usable candidate for review.
        if not raw_text.strip():
            raise
        return CodingReport(success=True, report=raw_text.strip())
    status = str(payload.get("status", "")).strip().upper()
    if status not in {"IMPLEMENTATION_SUCCESS", "IMPLEMENTATION_BLOCKED"}:
        raise MalformedResponse(f"Unexpected coding status '{status}'.")
    report = payload.get("report")
    return CodingReport(
        success=status == "IMPLEMENTATION_SUCCESS",
        report=str(report).strip() if report is not None else "",
    )


def parse_affected_task_ids(raw_text: str) -> list[str]:
    payload = extract_json_object(raw_text, required_key="task_ids")
    return _string_list(payload["task_ids"], field_name="task_ids")


@dataclass(slots=True)
class DocumentValidation:
    valid: bool
    reason: str


def parse_document_validation(raw_text: str) -> DocumentValidation:
    payload = extract_json_object(raw_text, required_key="valid")
    valid = payload["valid"]
    if not isinstance(valid, bool):
        raise MalformedResponse("Document validation 'valid' must be true or false.")
    reason = str(payload.get("reason", "") or "").strip()
    if not valid and not reason:
        raise MalformedResponse("A rejected document needs a reason.")
    return DocumentValidation(valid=valid, reason=reason)
