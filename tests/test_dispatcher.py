"""Tests for job dispatch: validation, pricing, the active-job guard and enqueue."""

from decimal import Decimal

import pytest

from interview_coach.models.qa import JobType
from interview_coach.web.dispatcher import (
    ActiveJobExists,
    InsufficientTokens,
    InterviewNotFound,
    InvalidJobRequest,
    QueueUnavailable,
    dispatch_job,
    job_cost,
    normalize_job_type,
)
from interview_coach.web.interviews import create_qa_version
from interview_coach.web.jobs import _get_conn, get_job
from interview_coach.web.queue import QueueError
from interview_coach.web.tokens import get_balance


def _job_count() -> int:
    return _get_conn().execute("SELECT COUNT(*) FROM jobs").fetchone()[0]


@pytest.fixture
def interview_with_qa(make_user, make_interview, question_set):
    user = make_user(tokens="10")
    interview = make_interview(user.id)
    qa = create_qa_version(interview.id, "questions_generated", question_set)
    return user, interview, qa


class TestJobTypes:
    def test_hyphenated_name(self):
        assert normalize_job_type("question-edited") is JobType.QUESTION_EDITED

    def test_aliases(self):
        assert normalize_job_type("question") is JobType.QUESTIONS_GENERATED
        assert normalize_job_type("answer") is JobType.ANSWERS_GENERATED

    def test_unknown(self):
        with pytest.raises(InvalidJobRequest):
            normalize_job_type("poem")


class TestCost:
    def test_flat_tariffs(self):
        assert job_cost(JobType.QUESTIONS_GENERATED, {}) == Decimal("3")
        assert job_cost(JobType.QUESTION_EDITED, {}) == Decimal("0.1")
        assert job_cost(JobType.QUESTION_REGENERATED, {}) == Decimal("0.1")
        assert job_cost(JobType.ANSWER_EDITED, {}) == Decimal("0.2")
        assert job_cost(JobType.ANSWER_REGENERATED, {}) == Decimal("0.2")

    def test_answers_scale_with_selection(self):
        selected = [{"category": "general_personality", "index": i} for i in range(4)]
        assert job_cost(JobType.ANSWERS_GENERATED, {"selectedQuestions": selected}) == Decimal("0.8")


class TestDispatch:
    def test_happy_path_queues_and_publishes(self, make_user, make_interview, fake_queue):
        user = make_user(tokens="10")
        interview = make_interview(user.id)

        job = dispatch_job(user.id, interview.id, "questions_generated", {"comment": "be tough"})

        assert job.status == "queued"
        assert get_job(job.id).message_id == "msg-1"
        url, body = fake_queue.published[0]
        assert url.endswith("/api/process/questions-generated")
        assert body["jobId"] == job.id
        assert body["userId"] == user.id
        assert body["data"]["comment"] == "be tough"
        # Dispatch checks the balance but the worker spends
        assert get_balance(user.id) == Decimal("10")

    def test_insufficient_tokens_creates_no_job(self, make_user, make_interview):
        user = make_user(tokens="2")
        interview = make_interview(user.id)
        with pytest.raises(InsufficientTokens) as exc:
            dispatch_job(user.id, interview.id, "questions_generated", {})
        assert exc.value.status_code == 402
        assert exc.value.to_dict() == {"error": "INSUFFICIENT_TOKENS", "required": 3.0, "available": 2.0}
        assert _job_count() == 0

    def test_active_job_conflict(self, make_user, make_interview):
        user = make_user(tokens="10")
        interview = make_interview(user.id)
        first = dispatch_job(user.id, interview.id, "questions_generated", {})
        with pytest.raises(ActiveJobExists) as exc:
            dispatch_job(user.id, interview.id, "questions_generated", {})
        body = exc.value.to_dict()
        assert exc.value.status_code == 409
        assert body["activeJob"]["id"] == first.id
        assert body["activeJob"]["status"] == "queued"
        assert _job_count() == 1

    def test_other_users_interview_is_not_found(self, make_user, make_interview):
        owner, other = make_user(), make_user()
        interview = make_interview(owner.id)
        with pytest.raises(InterviewNotFound):
            dispatch_job(other.id, interview.id, "questions_generated", {})

    def test_missing_required_fields(self, make_user, make_interview):
        user = make_user()
        interview = make_interview(user.id, cover_letter="")
        with pytest.raises(InvalidJobRequest) as exc:
            dispatch_job(user.id, interview.id, "questions_generated", {})
        assert exc.value.extra["missingFields"] == ["cover_letter"]

    def test_answers_require_questions(self, make_user, make_interview):
        user = make_user()
        interview = make_interview(user.id)
        with pytest.raises(InvalidJobRequest):
            dispatch_job(user.id, interview.id, "answers_generated", {})

    def test_answers_default_to_all_questions(self, interview_with_qa):
        user, interview, _ = interview_with_qa
        job = dispatch_job(user.id, interview.id, "answers_generated", {})
        assert len(job.input_data["selectedQuestions"]) == 30
        assert job_cost(JobType.ANSWERS_GENERATED, job.input_data) == Decimal("6")

    def test_answers_for_selection(self, interview_with_qa):
        user, interview, qa = interview_with_qa
        job = dispatch_job(user.id, interview.id, "answers_generated", {
            "selectedQuestions": [
                {"category": "cover_letter_competency", "index": 2},
                {"category": "cover_letter_competency", "index": 2},
                {"category": "general_personality", "index": 0},
            ],
        })
        assert len(job.input_data["selectedQuestions"]) == 2
        assert job.input_data["qaId"] == qa.id

    def test_answer_batch_priced_against_balance(self, make_user, make_interview, question_set):
        user = make_user(tokens="1")
        interview = make_interview(user.id)
        create_qa_version(interview.id, "questions_generated", question_set)
        with pytest.raises(InsufficientTokens) as exc:
            dispatch_job(user.id, interview.id, "answers_generated", {})
        assert exc.value.required == Decimal("6")

    def test_edit_requires_comment(self, interview_with_qa):
        user, interview, _ = interview_with_qa
        with pytest.raises(InvalidJobRequest):
            dispatch_job(user.id, interview.id, "question_edited",
                         {"category": "general_personality", "index": 1})

    def test_edit_index_out_of_range(self, interview_with_qa):
        user, interview, _ = interview_with_qa
        with pytest.raises(InvalidJobRequest):
            dispatch_job(user.id, interview.id, "question_regenerated",
                         {"category": "general_personality", "index": 10})

    def test_answer_edit_requires_existing_answer(self, interview_with_qa):
        user, interview, _ = interview_with_qa
        with pytest.raises(InvalidJobRequest):
            dispatch_job(user.id, interview.id, "answer_edited",
                         {"category": "general_personality", "index": 1, "comment": "shorter"})

    def test_queue_failure_fails_job(self, make_user, make_interview, fake_queue):
        user = make_user(tokens="10")
        interview = make_interview(user.id)
        fake_queue.error = QueueError("QStash down")
        with pytest.raises(QueueUnavailable):
            dispatch_job(user.id, interview.id, "questions_generated", {})
        job = get_job(_get_conn().execute("SELECT id FROM jobs").fetchone()[0])
        assert job.status == "failed"
        assert job.error_message == "Failed to queue job"
        assert get_balance(user.id) == Decimal("10")
