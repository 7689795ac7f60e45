"""Job dispatch: validate a generation request, price it, and enqueue it.

Dispatch never spends tokens and never waits on generation. It checks the
balance so an unaffordable request is refused up front, creates the queued
job row, and publishes it to the queue. The webhook worker spends.
"""

from __future__ import annotations

import logging
import sqlite3
from decimal import Decimal

from pydantic import BaseModel, ValidationError

from interview_coach.models.qa import (
    CATEGORIES,
    PAYLOAD_MODELS,
    AnswersPayload,
    JobType,
    SlotRef,
    slot_text,
)
from interview_coach.web.interviews import get_default_qa, get_interview
from interview_coach.web.jobs import (
    JOB_TYPE_ALIASES,
    Job,
    create_job,
    fail_job,
    get_active_job,
    set_message_id,
)
from interview_coach.web.queue import JobQueue, callback_url, get_queue
from interview_coach.web.tokens import get_balance

logger = logging.getLogger(__name__)

QUEUE_FAILED_MESSAGE = "Failed to queue job"

TARIFFS = {
    JobType.QUESTIONS_GENERATED: Decimal("3"),
    JobType.QUESTION_EDITED: Decimal("0.1"),
    JobType.QUESTION_REGENERATED: Decimal("0.1"),
    JobType.ANSWER_EDITED: Decimal("0.2"),
    JobType.ANSWER_REGENERATED: Decimal("0.2"),
}
ANSWER_TOKEN_COST = Decimal("0.2")  # per answer in a batch


class DispatchError(Exception):
    status_code = 500

    def __init__(self, message: str, **extra):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_dict(self) -> dict:
        return {"error": self.message, **self.extra}


class InvalidJobRequest(DispatchError):
    status_code = 400


class InterviewNotFound(DispatchError):
    status_code = 404


class ActiveJobExists(DispatchError):
    status_code = 409

    def __init__(self, job: Job):
        super().__init__(
            "A generation job is already in progress",
            activeJob={
                "id": job.id,
                "type": job.type,
                "status": job.status,
                "created_at": job.created_at,
            },
        )
        self.job = job


class InsufficientTokens(DispatchError):
    status_code = 402

    def __init__(self, required: Decimal, available: Decimal):
        super().__init__("INSUFFICIENT_TOKENS", required=float(required), available=float(available))
        self.required = required
        self.available = available


class QueueUnavailable(DispatchError):
    status_code = 500


def normalize_job_type(raw: str | None) -> JobType:
    """Map a request's type (including the short aliases) to a JobType."""
    name = (raw or "").strip().replace("-", "_")
    name = JOB_TYPE_ALIASES.get(name, name)
    try:
        return JobType(name)
    except ValueError:
        raise InvalidJobRequest(f"Unknown job type: {raw}") from None


def parse_payload(job_type: JobType, data: dict | None) -> BaseModel:
    try:
        return PAYLOAD_MODELS[job_type].model_validate(data or {})
    except ValidationError as e:
        first = e.errors()[0]
        where = ".".join(str(p) for p in first.get("loc", ()))
        raise InvalidJobRequest(f"Invalid {job_type.value} request: {where} {first['msg']}".strip()) from None


def resolve_answer_slots(payload: AnswersPayload, questions_data: dict) -> list[SlotRef]:
    """Slots to answer: the selection, or every non-empty question."""
    if payload.selected_questions:
        missing = [
            s for s in payload.selected_questions
            if not slot_text(questions_data, s.category.value, s.index)
        ]
        if missing:
            raise InvalidJobRequest(
                f"Selected question {missing[0].category.value}[{missing[0].index}] is empty"
            )
        return list(payload.selected_questions)
    slots = [
        SlotRef(category=c, index=i)
        for c in CATEGORIES
        for i, _ in enumerate(questions_data.get(c) or [])
        if slot_text(questions_data, c, i)
    ]
    if not slots:
        raise InvalidJobRequest("No questions to answer")
    return slots


def job_cost(job_type: JobType, input_data: dict) -> Decimal:
    """Token price of a job from its stored input.

    Answer batches are priced per selected question; everything else is a
    flat tariff.
    """
    if job_type is JobType.ANSWERS_GENERATED:
        return ANSWER_TOKEN_COST * len(input_data.get("selectedQuestions") or [])
    return TARIFFS[job_type]


def _build_input(job_type: JobType, payload: BaseModel, interview) -> dict:
    """Check preconditions against the interview and return the job's input_data."""
    if job_type is JobType.QUESTIONS_GENERATED:
        missing = interview.missing_required_fields()
        if missing:
            raise InvalidJobRequest(
                "Missing required interview fields: " + ", ".join(missing),
                missingFields=missing,
            )
        return payload.model_dump(mode="json", by_alias=True)

    qa = get_default_qa(interview.id)
    if not qa or not qa.has_questions():
        raise InvalidJobRequest("Generate questions before this operation")

    if job_type is JobType.ANSWERS_GENERATED:
        slots = resolve_answer_slots(payload, qa.questions_data)
        return {
            "selectedQuestions": [s.model_dump(mode="json") for s in slots],
            "comment": payload.comment,
            "qaId": qa.id,
        }

    category = payload.category.value
    if not slot_text(qa.questions_data, category, payload.index):
        raise InvalidJobRequest(f"Question {category}[{payload.index}] is empty")
    if job_type is JobType.ANSWER_EDITED and not slot_text(qa.answers_data, category, payload.index):
        raise InvalidJobRequest(f"Answer {category}[{payload.index}] has not been generated yet")
    data = payload.model_dump(mode="json")
    data["qaId"] = qa.id
    return data


def dispatch_job(
    user_id: str,
    interview_id: str,
    raw_type: str,
    data: dict | None,
    queue: JobQueue | None = None,
) -> Job:
    """Validate, price and enqueue a generation job. Returns the queued job.

    Raises a DispatchError subclass describing why the job was refused.
    """
    job_type = normalize_job_type(raw_type)
    payload = parse_payload(job_type, data)

    interview = get_interview(interview_id, user_id)
    if not interview:
        raise InterviewNotFound("Interview not found")

    active = get_active_job(user_id)
    if active:
        raise ActiveJobExists(active)

    input_data = _build_input(job_type, payload, interview)
    cost = job_cost(job_type, input_data)
    available = get_balance(user_id)
    if available < cost:
        logger.info("Dispatch refused for user %s: needs %s, has %s", user_id, cost, available)
        raise InsufficientTokens(cost, available)

    try:
        job = create_job(user_id, interview_id, job_type.value, input_data)
    except sqlite3.IntegrityError:
        # Lost a race with another dispatch for the same user
        active = get_active_job(user_id)
        if active:
            raise ActiveJobExists(active) from None
        raise

    body = {
        "jobId": job.id,
        "userId": user_id,
        "interviewId": interview_id,
        "type": job_type.value,
        "data": input_data,
    }
    queue = queue or get_queue()
    try:
        message_id = queue.publish(callback_url(job_type.value), body)
    except Exception:
        logger.exception("Failed to enqueue job %s", job.id)
        fail_job(job.id, QUEUE_FAILED_MESSAGE)
        raise QueueUnavailable(QUEUE_FAILED_MESSAGE) from None

    if message_id:
        set_message_id(job.id, message_id)
    logger.info("Queued %s job %s for user %s (cost %s)", job_type.value, job.id, user_id, cost)
    return job
