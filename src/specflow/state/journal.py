from __future__ import annotations

import re
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path

BEGIN_MARKER = "<<<BEGIN"
END_MARKER = ">>>END"
ENTRY_PATTERN = re.compile(
    r"^<<<BEGIN\n<(?P<tag>[A-Z_]+)>\n(?P<content>.*?)\n</(?P=tag)>\n>>>END$",
    re.DOTALL | re.MULTILINE,
)


class JournalTag(StrEnum):
    REQUEST = "REQUEST"
    CLARIFYING_QUESTIONS = "CLARIFYING_QUESTIONS"
    USER_ANSWERS = "USER_ANSWERS"
    SPEC_DRAFT = "SPEC_DRAFT"
    APPROVED_SPEC = "APPROVED_SPEC"
    PLAN_DRAFT = "PLAN_DRAFT"
    APPROVED_PLAN = "APPROVED_PLAN"
    USER_FEEDBACK = "USER_FEEDBACK"
    FINAL_FEEDBACK = "FINAL_FEEDBACK"


@dataclass(frozen=True, slots=True)
class JournalEntry:
    tag: str
    content: str


class Journal:
    """Append-only log of drafts, questions, answers and feedback.

    Revisions read the whole journal rather than only the last draft, so
    nothing is ever rewritten in place.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def append(self, tag: JournalTag | str, content: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(f"{BEGIN_MARKER}\n<{tag}>\n{content.rstrip()}\n</{tag}>\n{END_MARKER}\n")

    def append_questions(self, questions: tuple[str, ...] | list[str]) -> None:
        numbered = "\n".join(f"{index}. {question}" for index, question in enumerate(questions, 1))
        self.append(JournalTag.CLARIFYING_QUESTIONS, numbered)

    def entries(self) -> list[JournalEntry]:
        if not self.path.exists():
            return []
        text = self.path.read_text(encoding="utf-8")
        return [
            JournalEntry(tag=match.group("tag"), content=match.group("content"))
            for match in ENTRY_PATTERN.finditer(text)
        ]

    def read(self) -> str:
        return self.path.read_text(encoding="utf-8") if self.path.exists() else ""
