from .qa import (
    CATEGORIES,
    QUESTIONS_PER_CATEGORY,
    AnswersPayload,
    Category,
    EditedAnswer,
    EditedQuestion,
    EditPayload,
    GeneratedAnswers,
    JobStatus,
    JobType,
    QuestionSet,
    QuestionsPayload,
    ReportItem,
    ReportItems,
    ReportStatus,
    SlotPayload,
    SlotRef,
    TargetItems,
)

__all__ = [
    "CATEGORIES",
    "QUESTIONS_PER_CATEGORY",
    "Category",
    "JobType",
    "JobStatus",
    "ReportStatus",
    "SlotRef",
    "TargetItems",
    "QuestionSet",
    "EditedQuestion",
    "EditedAnswer",
    "GeneratedAnswers",
    "QuestionsPayload",
    "AnswersPayload",
    "SlotPayload",
    "EditPayload",
    "ReportItem",
    "ReportItems",
]
