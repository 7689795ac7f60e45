"""Question/answer content models.

A QA version holds three categories of ten interview questions and a
parallel grid of answers (entries may be null until generated). These
models validate both what users ask for and what the model returns.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

QUESTIONS_PER_CATEGORY = 10
OPENING_QUESTION = "Please introduce yourself in one minute."


class Category(str, Enum):
    GENERAL_PERSONALITY = "general_personality"            # generic, never uses uploaded material
    COVER_LETTER_PERSONALITY = "cover_letter_personality"  # personality, grounded in résumé/cover letter
    COVER_LETTER_COMPETENCY = "cover_letter_competency"    # job competency, grounded in résumé/cover letter


CATEGORIES = tuple(c.value for c in Category)

CATEGORY_LABELS = {
    Category.GENERAL_PERSONALITY.value: "General personality",
    Category.COVER_LETTER_PERSONALITY.value: "Cover-letter based personality",
    Category.COVER_LETTER_COMPETENCY.value: "Cover-letter based competency",
}


class JobType(str, Enum):
    QUESTIONS_GENERATED = "questions_generated"
    ANSWERS_GENERATED = "answers_generated"
    QUESTION_EDITED = "question_edited"
    QUESTION_REGENERATED = "question_regenerated"
    ANSWER_EDITED = "answer_edited"
    ANSWER_REGENERATED = "answer_regenerated"

    @property
    def is_single_slot(self) -> bool:
        return self not in (JobType.QUESTIONS_GENERATED, JobType.ANSWERS_GENERATED)


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ReportStatus(str, Enum):
    PENDING = "pending"
    IN_REVIEW = "in_review"
    RESOLVED = "resolved"
    REJECTED = "rejected"


class SlotRef(BaseModel, frozen=True):
    """One (category, index) cell in the question or answer grid."""
    category: Category
    index: int = Field(ge=0, lt=QUESTIONS_PER_CATEGORY)


class TargetItems(BaseModel, frozen=True):
    """Which cells a generation job touched."""
    questions: list[SlotRef] = Field(default_factory=list)
    answers: list[SlotRef] = Field(default_factory=list)

    @classmethod
    def all_questions(cls) -> TargetItems:
        return cls(questions=[
            SlotRef(category=c, index=i)
            for c in Category
            for i in range(QUESTIONS_PER_CATEGORY)
        ])


def empty_grid() -> dict[str, list]:
    """Answer grid with every slot unset."""
    return {c: [None] * QUESTIONS_PER_CATEGORY for c in CATEGORIES}


def slot_text(grid: dict | None, category: str, index: int) -> str:
    """Return the stripped text at a slot, or '' when missing/null."""
    if not grid:
        return ""
    column = grid.get(category) or []
    if index < 0 or index >= len(column):
        return ""
    value = column[index]
    return value.strip() if isinstance(value, str) else ""


# ── Model output ────────────────────────────────────────────────

def _non_empty(value: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError("must be a non-empty string")
    return value.strip()


class QuestionSet(BaseModel, frozen=True):
    """A full set of 30 questions: exactly 10 non-empty strings per category."""
    general_personality: list[str]
    cover_letter_personality: list[str]
    cover_letter_competency: list[str]

    @field_validator("general_personality", "cover_letter_personality", "cover_letter_competency")
    @classmethod
    def _ten_non_empty(cls, items: list[str]) -> list[str]:
        if len(items) != QUESTIONS_PER_CATEGORY:
            raise ValueError(f"expected {QUESTIONS_PER_CATEGORY} questions, got {len(items)}")
        return [_non_empty(q) for q in items]


class EditedQuestion(BaseModel, frozen=True):
    question: str

    @field_validator("question")
    @classmethod
    def _question_text(cls, value: str) -> str:
        return _non_empty(value)


class EditedAnswer(BaseModel, frozen=True):
    answer: str

    @field_validator("answer")
    @classmethod
    def _answer_text(cls, value: str) -> str:
        return _non_empty(value)


class GeneratedAnswer(BaseModel, frozen=True):
    category: Category
    index: int = Field(ge=0, lt=QUESTIONS_PER_CATEGORY)
    answer: str

    @field_validator("answer")
    @classmethod
    def _answer_text(cls, value: str) -> str:
        return _non_empty(value)


class GeneratedAnswers(BaseModel, frozen=True):
    answers: list[GeneratedAnswer]


# ── Job payloads ────────────────────────────────────────────────

class QuestionsPayload(BaseModel, frozen=True):
    """Full question-set generation.

    With avoid_previous set, questions from recent versions are listed in
    the prompt as ones not to repeat.
    """
    model_config = ConfigDict(populate_by_name=True)

    comment: str = ""
    avoid_previous: bool = Field(default=False, alias="avoidPrevious")


class AnswersPayload(BaseModel, frozen=True):
    """Answer generation for selected question slots.

    An empty selection means "every question in the current version".
    """
    model_config = ConfigDict(populate_by_name=True)

    selected_questions: list[SlotRef] = Field(default_factory=list, alias="selectedQuestions")
    comment: str = ""

    @field_validator("selected_questions")
    @classmethod
    def _unique(cls, items: list[SlotRef]) -> list[SlotRef]:
        seen: set[tuple[str, int]] = set()
        out = []
        for item in items:
            key = (item.category.value, item.index)
            if key not in seen:
                seen.add(key)
                out.append(item)
        return out


class SlotPayload(BaseModel, frozen=True):
    """Edit or regenerate one question/answer cell."""
    category: Category
    index: int = Field(ge=0, lt=QUESTIONS_PER_CATEGORY)
    comment: str = ""


class EditPayload(SlotPayload, frozen=True):
    @model_validator(mode="after")
    def _comment_required(self) -> EditPayload:
        if not self.comment.strip():
            raise ValueError("comment is required for edits")
        return self


PAYLOAD_MODELS: dict[JobType, type[BaseModel]] = {
    JobType.QUESTIONS_GENERATED: QuestionsPayload,
    JobType.ANSWERS_GENERATED: AnswersPayload,
    JobType.QUESTION_EDITED: EditPayload,
    JobType.QUESTION_REGENERATED: SlotPayload,
    JobType.ANSWER_EDITED: EditPayload,
    JobType.ANSWER_REGENERATED: SlotPayload,
}


# ── Reports ─────────────────────────────────────────────────────

class ReportItem(BaseModel):
    category: Category
    index: int = Field(ge=0, lt=QUESTIONS_PER_CATEGORY)
    refunded: bool = False
    refund_amount: float | None = None
    refunded_at: str | None = None


class ReportItems(BaseModel):
    questions: list[ReportItem] = Field(default_factory=list)
    answers: list[ReportItem] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.questions and not self.answers

    def find(self, item_type: str, category: str, index: int) -> ReportItem | None:
        items = self.questions if item_type == "question" else self.answers
        for item in items:
            if item.category.value == category and item.index == index:
                return item
        return None
