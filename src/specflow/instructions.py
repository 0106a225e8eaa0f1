"""Instruction texts for each capability operation.

The variable material (request, drafts, handoffs, feedback) travels in the
context dictionary; instructions only say what to do with it and which JSON
shape to return.
"""

from __future__ import annotations

JSON_ONLY = "Return ONLY the JSON object, with no text before or after it."


def clarification_instructions() -> str:
    return (
        "Given the original request (context.request) and the clarification log so far "
        "(context.qa_log), list the questions that must be answered before a specification "
        "can be written. Ask at most 5. Return an empty list when nothing essential is "
        'unclear.\n\nShape: {"questions": ["..."]}\n' + JSON_ONLY
    )


def _draft_instructions(subject: str, draft_field: str, *, revising: bool) -> str:
    if revising:
        opening = (
            f"The user reviewed the previous {subject} draft (context.previous_draft) and "
            f"left feedback (context.feedback). Revise the {subject} accordingly, redoing the "
            "whole document rather than patching it."
        )
    else:
        opening = f"Write the {subject} from the material in the context."
    return (
        f"{opening}\n\n"
        f'If you can write it, answer {{"response_type": "{draft_field}", '
        f'"{draft_field}": "<markdown>"}}. If information is missing, answer '
        '{"response_type": "clarifying_questions", "clarifying_questions": ["..."]} '
        "with 1 to 5 questions.\n" + JSON_ONLY
    )


def spec_draft_instructions(*, revising: bool = False) -> str:
    return _draft_instructions("specification", "spec_draft", revising=revising)


def plan_draft_instructions(*, revising: bool = False) -> str:
    return _draft_instructions("development plan", "plan_draft", revising=revising)


def task_extraction_instructions() -> str:
    return (
        "Extract every implementation task from the approved development plan "
        "(context.plan). Give each task a unique id (TASK-00, TASK-01, ...), a title, a "
        "description carrying all implementation details from the plan, and the ids of the "
        "tasks it directly depends on. Dependencies must not form a cycle. If the plan has no "
        "task breakdown, return it as the single task TASK-00.\n\n"
        'Shape: {"tasks": [{"task_id": "TASK-00", "title": "...", "description": "...", '
        '"dependencies": []}]}\n' + JSON_ONLY
    )


def implement_instructions(task_id: str, title: str) -> str:
    return (
        f"Implement task {task_id}: {title}.\n"
        "The task description is in context.task. Read the specification (context.spec), "
        "the plan (context.plan), and the handoff reports of the tasks you depend on "
        "(context.handoffs) before making changes. Follow context.guidance when present. "
        "Build and test your change.\n\n"
        'Shape: {"status": "IMPLEMENTATION_SUCCESS" | "IMPLEMENTATION_BLOCKED", '
        '"report": "<markdown implementation report>"}\n' + JSON_ONLY
    )


def revision_instructions(task_id: str, title: str) -> str:
    return (
        f"The reviewer requested changes to task {task_id}: {title}.\n"
        "This is a revision, not a new implementation. Address every point of the review "
        "feedback (context.review_feedback), then build and test again.\n\n"
        'Shape: {"status": "IMPLEMENTATION_SUCCESS" | "IMPLEMENTATION_BLOCKED", '
        '"report": "<markdown revision report>"}\n' + JSON_ONLY
    )


def review_instructions(task_id: str, *, followup: bool) -> str:
    kind = "follow-up review" if followup else "review"
    extra = (
        " Check whether the issues from the previous review (context.previous_feedback) "
        "were resolved."
        if followup
        else ""
    )
    return (
        f"Perform a {kind} of task {task_id}. Compare the implementation report "
        "(context.candidate) and the workspace changes with the task (context.task) and the "
        f"specification (context.spec).{extra} Classify the outstanding findings as a whole as "
        "MINOR (may ship as known caveats) or MAJOR.\n\n"
        'Shape: {"review_result": "APPROVED" | "REQUEST_CHANGES" | "ESCALATE", '
        '"severity": "MINOR" | "MAJOR", "findings": ["..."], "review_comment": "<markdown>"}\n'
        + JSON_ONLY
    )


def handoff_instructions(task_id: str) -> str:
    return (
        f"Task {task_id} is approved. Summarize its session (context.coding_reports and "
        "context.review_history) into a handoff for the tasks that depend on it. Be concrete: "
        "name files, interfaces and behaviours. Put unresolved issues in caveats.\n\n"
        'Shape: {"objective": "...", "decisions": ["..."], "produced_changes": ["..."], '
        '"caveats": ["..."]}\n' + JSON_ONLY
    )


def affected_tasks_instructions() -> str:
    return (
        "The user requested changes to the final delivery (context.feedback). Given the task "
        "list (context.tasks), return the ids of the tasks that must be redone to address the "
        "feedback. Only list tasks that are really affected.\n\n"
        'Shape: {"task_ids": ["..."]}\n' + JSON_ONLY
    )


_DOCUMENT_CRITERIA = {
    "specification": (
        "an overview of the system, functional or non-functional requirements, goals, scope "
        "or acceptance criteria, and structured sections describing what the system must do"
    ),
    "development plan": (
        "a list of implementation tasks, the scope of each task, dependencies or an execution "
        "order between tasks, and structured sections describing how the work proceeds"
    ),
}


def document_validation_instructions(subject: str) -> str:
    return (
        f"Decide whether the document in context.document is a usable software {subject}. "
        f"A usable {subject} contains most of: {_DOCUMENT_CRITERIA[subject]}. It does not "
        "need to follow a template; accept any reasonable format that clearly serves the "
        "purpose.\n\n"
        'Shape: {"valid": true | false, "reason": "..."}\n' + JSON_ONLY
    )
