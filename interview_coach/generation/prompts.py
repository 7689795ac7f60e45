"""Prompt building for each generation job type.

Templates live in interview_coach/prompts/<job_type>.md and use
{placeholder} markers filled by plain string replacement, so the JSON
examples inside them need no escaping.
"""

from __future__ import annotations

from pathlib import Path

from interview_coach.models.qa import (
    CATEGORIES,
    CATEGORY_LABELS,
    OPENING_QUESTION,
    QUESTIONS_PER_CATEGORY,
    JobType,
    SlotRef,
    slot_text,
)

PROMPT_DIR = Path(__file__).parent.parent / "prompts"

_CONTEXT_LABELS = (
    ("candidate_name", "Candidate name"),
    ("company_name", "Company"),
    ("position", "Position"),
    ("job_posting", "Job posting"),
    ("company_info", "About the company"),
    ("resume", "Résumé"),
    ("cover_letter", "Cover letter"),
    ("expected_questions", "Questions the candidate expects"),
    ("company_evaluation", "Candidate's view of the company"),
    ("other", "Other notes"),
)

# Schemas for Gemini structured output
QUESTION_SET_SCHEMA = {
    "type": "object",
    "properties": {
        c: {
            "type": "array",
            "items": {"type": "string"},
            "minItems": QUESTIONS_PER_CATEGORY,
            "maxItems": QUESTIONS_PER_CATEGORY,
        }
        for c in CATEGORIES
    },
    "required": list(CATEGORIES),
}

ANSWERS_SCHEMA = {
    "type": "object",
    "properties": {
        "answers": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "category": {"type": "string", "enum": list(CATEGORIES)},
                    "index": {"type": "integer"},
                    "answer": {"type": "string"},
                },
                "required": ["category", "index", "answer"],
            },
        },
    },
    "required": ["answers"],
}

SINGLE_QUESTION_SCHEMA = {
    "type": "object",
    "properties": {"question": {"type": "string"}},
    "required": ["question"],
}

SINGLE_ANSWER_SCHEMA = {
    "type": "object",
    "properties": {"answer": {"type": "string"}},
    "required": ["answer"],
}

SCHEMAS = {
    JobType.QUESTIONS_GENERATED: QUESTION_SET_SCHEMA,
    JobType.ANSWERS_GENERATED: ANSWERS_SCHEMA,
    JobType.QUESTION_EDITED: SINGLE_QUESTION_SCHEMA,
    JobType.QUESTION_REGENERATED: SINGLE_QUESTION_SCHEMA,
    JobType.ANSWER_EDITED: SINGLE_ANSWER_SCHEMA,
    JobType.ANSWER_REGENERATED: SINGLE_ANSWER_SCHEMA,
}


def _load_prompt(job_type: JobType) -> str:
    return (PROMPT_DIR / f"{job_type.value}.md").read_text()


def _fill(template: str, **values: str) -> str:
    for key, value in values.items():
        template = template.replace("{" + key + "}", value)
    return template.strip() + "\n"


def build_interview_context(interview) -> str:
    """Render the interview's non-empty fields as markdown sections."""
    parts = []
    for name, label in _CONTEXT_LABELS:
        value = (getattr(interview, name, "") or "").strip()
        if value:
            parts.append(f"### {label}\n{value}")
    return "\n\n".join(parts)


def _comment_section(comment: str, heading: str = "Additional instructions from the candidate") -> str:
    comment = (comment or "").strip()
    return f"## {heading}\n{comment}" if comment else ""


def build_questions_prompt(interview, comment: str = "", previous: list[str] | None = None) -> str:
    avoid = ""
    if previous:
        listed = "\n".join(f"- {q}" for q in previous)
        avoid = f"## Questions already used (do not repeat or paraphrase these)\n{listed}"
    return _fill(
        _load_prompt(JobType.QUESTIONS_GENERATED),
        interview_context=build_interview_context(interview),
        questions_per_category=str(QUESTIONS_PER_CATEGORY),
        opening_question=OPENING_QUESTION,
        previous_questions=avoid,
        comment=_comment_section(comment),
    )


def build_answers_prompt(interview, questions_data: dict, slots: list[SlotRef], comment: str = "") -> str:
    lines = []
    for slot in slots:
        category = slot.category.value
        lines.append(
            f"- category: {category}, index: {slot.index}\n"
            f"  {slot_text(questions_data, category, slot.index)}"
        )
    return _fill(
        _load_prompt(JobType.ANSWERS_GENERATED),
        interview_context=build_interview_context(interview),
        questions_list="\n".join(lines),
        comment=_comment_section(comment),
    )


def build_slot_prompt(job_type: JobType, interview, qa, slot: SlotRef, comment: str = "") -> str:
    """Prompt for editing or regenerating one question or answer."""
    category = slot.category.value
    current_question = slot_text(qa.questions_data, category, slot.index)
    current_answer = slot_text(qa.answers_data, category, slot.index) or "(no answer yet)"
    others = [
        q for i, q in enumerate(qa.questions_data.get(category) or [])
        if i != slot.index and isinstance(q, str) and q.strip()
    ]
    return _fill(
        _load_prompt(job_type),
        interview_context=build_interview_context(interview),
        category_label=CATEGORY_LABELS[category],
        current_question=current_question,
        current_answer=current_answer,
        other_questions="\n".join(f"- {q}" for q in others) or "(none)",
        comment=(comment or "").strip(),
    )
