"""Tests for the HTTP client and poller against the real app."""

import pytest
from fastapi.testclient import TestClient

from interview_coach.client.api import ApiError, InterviewCoachClient
from interview_coach.client.poller import JobPoller
from interview_coach.web.app import app
from interview_coach.web.jobs import claim_job
from interview_coach.web.worker import handle_delivery


@pytest.fixture
def api():
    http = TestClient(app, raise_server_exceptions=False)
    http.post("/api/auth/register", json={"email": "client@example.com", "password": "password123"})
    res = http.post("/api/interviews", json={
        "company_name": "Acme",
        "position": "Backend Engineer",
        "resume": "Five years building payment APIs.",
        "cover_letter": "I want to bring my API experience to Acme.",
    })
    client = InterviewCoachClient(client=http)
    client.interview_id = res.json()["interview"]["id"]
    return client


class TestApiClient:
    def test_balance(self, api):
        assert str(api.get_balance()) == "10.0"

    def test_dispatch_and_fetch(self, api):
        job_id = api.dispatch(api.interview_id, "questions_generated")["jobId"]
        assert api.get_job(job_id)["status"] == "queued"
        assert [j["id"] for j in api.list_active_jobs()] == [job_id]

    def test_conflict_exposes_active_job(self, api):
        job_id = api.dispatch(api.interview_id, "questions_generated")["jobId"]
        with pytest.raises(ApiError) as exc:
            api.dispatch(api.interview_id, "questions_generated")
        assert exc.value.status_code == 409
        assert exc.value.active_job["id"] == job_id

    def test_unknown_job(self, api):
        assert api.get_job("missing") is None

    def test_cancel(self, api):
        job_id = api.dispatch(api.interview_id, "questions_generated")["jobId"]
        assert api.cancel_job(job_id) is True
        assert api.cancel_job(job_id) is False

    def test_cancel_processing(self, api):
        job_id = api.dispatch(api.interview_id, "questions_generated")["jobId"]
        claim_job(job_id)
        assert api.cancel_job(job_id) is False

    def test_login(self, api):
        assert api.login("client@example.com", "password123")["email"] == "client@example.com"
        with pytest.raises(ApiError) as exc:
            api.login("client@example.com", "wrong-password")
        assert exc.value.status_code == 401


class TestPollerOverHttp:
    def test_poller_sees_completion(self, api, fake_queue, fake_generator, question_set):
        poller = JobPoller(api, interval=60.0)
        finished = []
        poller.on_complete("test", finished.append)

        job_id = api.dispatch(api.interview_id, "questions_generated")["jobId"]
        poller.start()
        assert [j["id"] for j in poller.active_jobs] == [job_id]

        fake_generator.responses.append(question_set)
        handle_delivery(fake_queue.published[-1][1])

        poller.poll_once()
        poller.stop()
        assert finished[0]["id"] == job_id
        assert finished[0]["status"] == "completed"
        assert finished[0]["result"]["qa_id"]
        assert api.get_balance() == 7
