"""Generation worker, run once per queue delivery of a job.

The webhook claims the job (queued -> processing), spends its tokens,
calls Gemini, validates the output, and stores a new Q&A version. Every
failure after the spend refunds the job's tokens, keyed on the job ID, so
a refund can never be paid twice. Deliveries for jobs that are already
claimed or finished are acknowledged without side effects.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from decimal import Decimal

from pydantic import ValidationError

from interview_coach.generation.gemini import GenerationError, get_generator
from interview_coach.generation.prompts import (
    SCHEMAS,
    build_answers_prompt,
    build_questions_prompt,
    build_slot_prompt,
)
from interview_coach.models.qa import (
    CATEGORIES,
    PAYLOAD_MODELS,
    QUESTIONS_PER_CATEGORY,
    EditedAnswer,
    EditedQuestion,
    GeneratedAnswers,
    JobType,
    QuestionSet,
    SlotRef,
    TargetItems,
    empty_grid,
)
from interview_coach.utils.json_repair import parse_json_object
from interview_coach.web.dispatcher import job_cost
from interview_coach.web.email import send_job_complete_email, send_job_failed_email
from interview_coach.web.interviews import (
    QAVersion,
    create_qa_version,
    discard_qa_version,
    get_default_qa,
    get_interview,
    get_qa,
    previous_questions,
)
from interview_coach.web.jobs import (
    Job,
    claim_job,
    complete_job,
    fail_job,
    find_stale_jobs,
    get_job,
    mark_charged,
)
from interview_coach.web.notifications import notify
from interview_coach.web.tokens import check_balance, has_transaction, refund_tokens, spend_tokens
from interview_coach.web.users import get_user

logger = logging.getLogger(__name__)

STALE_JOB_MINUTES = int(os.environ.get("STALE_JOB_MINUTES", "15"))
STALE_JOB_MESSAGE = "Job timed out"
EMAIL_JOB_TYPES = tuple(t for t in JobType if not t.is_single_slot)


class JobFailure(Exception):
    """A job step failed; the message is shown to the user."""

    def __init__(self, message: str, refund: bool = True):
        super().__init__(message)
        self.message = message
        self.refund = refund


@dataclass
class WorkerResult:
    status_code: int
    body: dict = field(default_factory=dict)


def spend_reference(job_id: str) -> str:
    return f"job:{job_id}"


# ── Entry points ────────────────────────────────────────────────

def handle_delivery(body: dict, expected_type: str | None = None) -> WorkerResult:
    """Process one queue delivery. Safe to call more than once per job."""
    job_id = body.get("jobId") if isinstance(body, dict) else None
    if not job_id:
        return WorkerResult(400, {"error": "jobId is required"})

    job = get_job(job_id)
    if not job:
        logger.warning("Delivery for unknown job %s", job_id)
        return WorkerResult(404, {"error": "Job not found"})
    if expected_type and job.type != expected_type:
        return WorkerResult(400, {"error": f"Job {job_id} is not a {expected_type} job"})
    if body.get("userId") and body["userId"] != job.user_id:
        return WorkerResult(400, {"error": "Job does not belong to this user"})

    if job.is_terminal:
        logger.info("Job %s already %s, ignoring redelivery", job.id, job.status)
        return WorkerResult(200, {"ok": True, "jobId": job.id, "status": job.status, "duplicate": True})

    claimed = claim_job(job.id)
    if not claimed:
        current = get_job(job.id)
        status = current.status if current else "missing"
        logger.info("Job %s not claimable (%s), ignoring delivery", job.id, status)
        return WorkerResult(200, {"ok": True, "jobId": job.id, "status": status, "duplicate": True})

    logger.info("Claimed %s job %s", claimed.type, claimed.id)
    return process_job(claimed)


def process_job(job: Job) -> WorkerResult:
    """Run a claimed (processing) job to a terminal state."""
    job_type = JobType(job.type)
    cost = job_cost(job_type, job.input_data)
    spent = False
    try:
        if not check_balance(job.user_id, cost):
            raise JobFailure("Insufficient tokens", refund=False)
        if not spend_tokens(job.user_id, cost, spend_reference(job.id)):
            raise JobFailure("Token deduction failed", refund=False)
        spent = True
        mark_charged(job.id, cost)
        qa = HANDLERS[job_type](job, cost)
    except JobFailure as e:
        return _fail(job, e.message, refund=spent and e.refund, cost=cost)
    except Exception:
        logger.exception("Job %s crashed", job.id)
        return _fail(job, "Unexpected error during generation", refund=spent, cost=cost)

    if not complete_job(job.id, {"qa_id": qa.id}):
        logger.warning("Job %s was no longer processing when it finished", job.id)
        # Already failed and refunded elsewhere, so its output must not stay visible
        discard_qa_version(qa.id)
        current = get_job(job.id)
        return WorkerResult(200, {"ok": False, "jobId": job.id, "status": current.status if current else "missing"})

    logger.info("Completed %s job %s -> Q&A %s", job.type, job.id, qa.id)
    _announce_success(job, qa)
    return WorkerResult(200, {"ok": True, "jobId": job.id, "qaId": qa.id})


def _fail(job: Job, message: str, refund: bool, cost: Decimal) -> WorkerResult:
    fail_job(job.id, message)
    if refund:
        refund_tokens(job.user_id, cost, spend_reference(job.id))
    logger.warning("Job %s failed: %s (refunded: %s)", job.id, message, refund)
    _announce_failure(job, message)
    # 200 so the queue does not redeliver a failure that is already recorded
    return WorkerResult(200, {"ok": False, "jobId": job.id, "error": message})


def sweep_stale_jobs(older_than_minutes: int = STALE_JOB_MINUTES) -> int:
    """Fail jobs stuck in processing and refund whatever they spent.

    Returns the number of jobs failed.
    """
    swept = 0
    for job in find_stale_jobs(older_than_minutes):
        if not fail_job(job.id, STALE_JOB_MESSAGE):
            continue
        swept += 1
        reference = spend_reference(job.id)
        if has_transaction(job.user_id, "spend", reference):
            amount = job.tokens_charged or job_cost(JobType(job.type), job.input_data)
            refund_tokens(job.user_id, amount, reference)
        logger.warning("Swept stale job %s (started %s)", job.id, job.started_at)
        _announce_failure(job, STALE_JOB_MESSAGE)
    return swept


# ── Per-type steps ──────────────────────────────────────────────

def _load_interview(job: Job):
    interview = get_interview(job.interview_id, job.user_id)
    if not interview:
        raise JobFailure("Interview not found")
    return interview


def _load_source_qa(job: Job) -> QAVersion:
    """The version the job was dispatched against, even if the default moved since."""
    qa = get_qa(job.input_data.get("qaId") or "")
    if not qa or qa.interview_id != job.interview_id:
        raise JobFailure("The Q&A version for this job no longer exists")
    if not qa.has_questions():
        raise JobFailure("No questions found for this interview")
    return qa


def _generate(job_type: JobType, prompt: str) -> dict:
    try:
        text = get_generator().generate_json(prompt, SCHEMAS[job_type])
    except GenerationError as e:
        raise JobFailure(f"AI generation failed: {e}") from e
    try:
        return parse_json_object(text)
    except ValueError as e:
        raise JobFailure("AI response was not valid JSON") from e


def _validate(model, data: dict):
    try:
        return model.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0]
        where = ".".join(str(p) for p in first.get("loc", ()))
        raise JobFailure(f"AI response failed validation: {where} {first['msg']}".strip()) from e


def _save(interview_id: str, job: Job, cost: Decimal, questions: dict, answers: dict,
          parent: QAVersion | None, target: TargetItems) -> QAVersion:
    try:
        return create_qa_version(
            interview_id,
            job.type,
            questions,
            answers,
            parent_qa_id=parent.id if parent else "",
            target_items=target.model_dump(mode="json"),
            tokens_used=cost,
        )
    except Exception as e:
        logger.exception("Failed to save Q&A version for job %s", job.id)
        raise JobFailure("Failed to save generated content") from e


def _copy_grid(grid: dict, fill) -> dict:
    out = {}
    for c in CATEGORIES:
        column = list(grid.get(c) or [])[:QUESTIONS_PER_CATEGORY]
        out[c] = column + [fill] * (QUESTIONS_PER_CATEGORY - len(column))
    return out


def _generate_questions(job: Job, cost: Decimal) -> QAVersion:
    interview = _load_interview(job)
    payload = PAYLOAD_MODELS[JobType.QUESTIONS_GENERATED].model_validate(job.input_data)
    parent = get_default_qa(interview.id)
    previous = previous_questions(interview.id) if payload.avoid_previous else None

    prompt = build_questions_prompt(interview, payload.comment, previous)
    question_set = _validate(QuestionSet, _generate(JobType.QUESTIONS_GENERATED, prompt))

    # New questions invalidate old answers, so the answer grid starts empty
    return _save(
        interview.id, job, cost, question_set.model_dump(), empty_grid(),
        parent, TargetItems.all_questions(),
    )


def _generate_answers(job: Job, cost: Decimal) -> QAVersion:
    interview = _load_interview(job)
    qa = _load_source_qa(job)
    payload = PAYLOAD_MODELS[JobType.ANSWERS_GENERATED].model_validate(job.input_data)
    slots = list(payload.selected_questions)
    if not slots:
        raise JobFailure("No questions selected")

    prompt = build_answers_prompt(interview, qa.questions_data, slots, payload.comment)
    generated = _validate(GeneratedAnswers, _generate(JobType.ANSWERS_GENERATED, prompt))

    wanted = {(s.category.value, s.index) for s in slots}
    got = {}
    for item in generated.answers:
        got[(item.category.value, item.index)] = item.answer
    if set(got) != wanted or len(generated.answers) != len(wanted):
        raise JobFailure(
            f"AI response answered {len(generated.answers)} questions, expected {len(wanted)}"
        )

    answers = _copy_grid(qa.answers_data, None)
    for (category, index), text in got.items():
        answers[category][index] = text
    return _save(
        interview.id, job, cost, _copy_grid(qa.questions_data, ""), answers,
        qa, TargetItems(answers=slots),
    )


def _rewrite_question(job: Job, cost: Decimal) -> QAVersion:
    job_type = JobType(job.type)
    interview = _load_interview(job)
    qa = _load_source_qa(job)
    payload = PAYLOAD_MODELS[job_type].model_validate(job.input_data)
    slot = SlotRef(category=payload.category, index=payload.index)

    comment = payload.comment if job_type is JobType.QUESTION_EDITED else ""
    prompt = build_slot_prompt(job_type, interview, qa, slot, comment)
    edited = _validate(EditedQuestion, _generate(job_type, prompt))

    questions = _copy_grid(qa.questions_data, "")
    answers = _copy_grid(qa.answers_data, None)
    questions[slot.category.value][slot.index] = edited.question
    # The old answer belonged to the old question
    answers[slot.category.value][slot.index] = None
    return _save(interview.id, job, cost, questions, answers, qa, TargetItems(questions=[slot]))


def _rewrite_answer(job: Job, cost: Decimal) -> QAVersion:
    job_type = JobType(job.type)
    interview = _load_interview(job)
    qa = _load_source_qa(job)
    payload = PAYLOAD_MODELS[job_type].model_validate(job.input_data)
    slot = SlotRef(category=payload.category, index=payload.index)

    comment = payload.comment if job_type is JobType.ANSWER_EDITED else ""
    prompt = build_slot_prompt(job_type, interview, qa, slot, comment)
    edited = _validate(EditedAnswer, _generate(job_type, prompt))

    answers = _copy_grid(qa.answers_data, None)
    answers[slot.category.value][slot.index] = edited.answer
    return _save(
        interview.id, job, cost, _copy_grid(qa.questions_data, ""), answers,
        qa, TargetItems(answers=[slot]),
    )


HANDLERS = {
    JobType.QUESTIONS_GENERATED: _generate_questions,
    JobType.ANSWERS_GENERATED: _generate_answers,
    JobType.QUESTION_EDITED: _rewrite_question,
    JobType.QUESTION_REGENERATED: _rewrite_question,
    JobType.ANSWER_EDITED: _rewrite_answer,
    JobType.ANSWER_REGENERATED: _rewrite_answer,
}


# ── Notifications (best effort) ─────────────────────────────────

_SUCCESS_MESSAGES = {
    JobType.QUESTIONS_GENERATED: "Your interview questions are ready.",
    JobType.ANSWERS_GENERATED: "Your answers are ready.",
    JobType.QUESTION_EDITED: "Your edited question is ready.",
    JobType.QUESTION_REGENERATED: "Your new question is ready.",
    JobType.ANSWER_EDITED: "Your edited answer is ready.",
    JobType.ANSWER_REGENERATED: "Your new answer is ready.",
}


def _announce_success(job: Job, qa: QAVersion) -> None:
    job_type = JobType(job.type)
    notify(
        job.user_id, job.type, _SUCCESS_MESSAGES[job_type],
        interview_id=job.interview_id, interview_qas_id=qa.id,
        metadata={"job_id": job.id},
    )
    if job_type in EMAIL_JOB_TYPES:
        _email(job, success=True)


def _announce_failure(job: Job, message: str) -> None:
    notify(
        job.user_id, "job_failed", message,
        interview_id=job.interview_id,
        metadata={"job_id": job.id, "job_type": job.type},
    )
    if JobType(job.type) in EMAIL_JOB_TYPES:
        _email(job, success=False, error=message)


def _email(job: Job, success: bool, error: str = "") -> None:
    try:
        user = get_user(job.user_id)
        interview = get_interview(job.interview_id)
        if not user or not interview:
            return
        if success:
            send_job_complete_email(user.email, job, interview)
        else:
            send_job_failed_email(user.email, job, interview, error)
    except Exception:
        logger.exception("Failed to email user about job %s", job.id)
