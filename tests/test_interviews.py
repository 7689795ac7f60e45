"""Tests for interviews and Q&A version history."""

import sqlite3

import pytest

from interview_coach.models.qa import empty_grid
from interview_coach.web.interviews import (
    create_qa_version,
    delete_interview,
    get_default_qa,
    get_interview,
    list_interviews,
    list_qas,
    previous_questions,
    set_default_qa,
    update_interview,
)
from interview_coach.web.jobs import _get_conn, create_job, get_job
from interview_coach.web.reports import create_report, get_report


def _default_count(interview_id: str) -> int:
    return _get_conn().execute(
        "SELECT COUNT(*) FROM interview_qas WHERE interview_id = ? AND is_default = 1",
        (interview_id,),
    ).fetchone()[0]


class TestInterviews:
    def test_missing_required_fields(self, make_user, make_interview):
        user = make_user()
        interview = make_interview(user.id, resume="", cover_letter="  ")
        assert interview.missing_required_fields() == ["resume", "cover_letter"]

    def test_complete_interview(self, make_user, make_interview):
        user = make_user()
        assert make_interview(user.id).missing_required_fields() == []

    def test_owner_scoping(self, make_user, make_interview):
        owner, other = make_user(), make_user()
        interview = make_interview(owner.id)
        assert get_interview(interview.id, owner.id) is not None
        assert get_interview(interview.id, other.id) is None
        assert list_interviews(other.id) == []

    def test_update_ignores_unknown_fields(self, make_user, make_interview):
        user = make_user()
        interview = make_interview(user.id)
        updated = update_interview(interview.id, position="Staff Engineer", user_id="someone-else")
        assert updated.position == "Staff Engineer"
        assert updated.user_id == user.id

    def test_delete_cascades(self, make_user, make_interview, question_set):
        user = make_user()
        interview = make_interview(user.id)
        qa = create_qa_version(interview.id, "questions_generated", question_set)
        job = create_job(user.id, interview.id, "questions_generated")
        report = create_report(user.id, qa.id, [{"category": "general_personality", "index": 1}], [], "bad")

        assert delete_interview(interview.id) is True
        assert get_interview(interview.id) is None
        assert list_qas(interview.id) == []
        assert get_job(job.id) is None
        assert get_report(report.id) is None


class TestQAVersions:
    def test_new_version_becomes_default(self, make_user, make_interview, question_set):
        user = make_user()
        interview = make_interview(user.id)
        first = create_qa_version(interview.id, "questions_generated", question_set)
        second = create_qa_version(interview.id, "questions_generated", question_set, parent_qa_id=first.id)

        assert get_default_qa(interview.id).id == second.id
        assert second.parent_qa_id == first.id
        assert second.name == "Version 2"
        assert _default_count(interview.id) == 1
        assert len(list_qas(interview.id)) == 2

    def test_answers_default_to_empty_grid(self, make_user, make_interview, question_set):
        user = make_user()
        interview = make_interview(user.id)
        qa = create_qa_version(interview.id, "questions_generated", question_set)
        assert qa.answers_data == empty_grid()

    def test_set_default_flips_flag(self, make_user, make_interview, question_set):
        user = make_user()
        interview = make_interview(user.id)
        first = create_qa_version(interview.id, "questions_generated", question_set)
        create_qa_version(interview.id, "questions_generated", question_set)

        assert set_default_qa(interview.id, first.id) is True
        assert get_default_qa(interview.id).id == first.id
        assert _default_count(interview.id) == 1
        assert len(list_qas(interview.id)) == 2

    def test_set_default_other_interview_rejected(self, make_user, make_interview, question_set):
        user = make_user()
        a, b = make_interview(user.id), make_interview(user.id)
        qa = create_qa_version(a.id, "questions_generated", question_set)
        assert set_default_qa(b.id, qa.id) is False

    def test_index_forbids_two_defaults(self, make_user, make_interview, question_set):
        user = make_user()
        interview = make_interview(user.id)
        qa = create_qa_version(interview.id, "questions_generated", question_set)
        create_qa_version(interview.id, "questions_generated", question_set)
        conn = _get_conn()
        with pytest.raises(sqlite3.IntegrityError):
            conn.execute("UPDATE interview_qas SET is_default = 1 WHERE id = ?", (qa.id,))
        conn.rollback()

    def test_previous_questions_deduplicated(self, make_user, make_interview, question_set):
        user = make_user()
        interview = make_interview(user.id)
        create_qa_version(interview.id, "questions_generated", question_set)
        create_qa_version(interview.id, "questions_generated", question_set)
        previous = previous_questions(interview.id)
        assert len(previous) == 30
        assert len(set(previous)) == 30
