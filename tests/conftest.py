"""Shared fixtures: a fresh SQLite database per test, a fake queue, a fake
Gemini generator, and a signer that produces queue-style webhook signatures."""

from __future__ import annotations

import json
import time
import uuid

import jwt
import pytest

import interview_coach.web.jobs as jobs_mod
import interview_coach.web.queue as queue_mod
from interview_coach.models.qa import CATEGORIES, OPENING_QUESTION
from interview_coach.web.app import startup
from interview_coach.web.interviews import create_interview
from interview_coach.web.jobs import _local
from interview_coach.web.tokens import add_tokens
from interview_coach.web.users import create_user

CURRENT_KEY = "sig_current_test_key_0123456789abcdef"
NEXT_KEY = "sig_next_test_key_0123456789abcdefgh"


@pytest.fixture(autouse=True)
def fresh_db(tmp_path, monkeypatch):
    """Use a temp database for each test."""
    monkeypatch.setattr(jobs_mod, "DB_PATH", tmp_path / "test.db")
    if hasattr(_local, "conn"):
        _local.conn = None

    # Disable auto-promotion in tests so we control admin status explicitly
    monkeypatch.setenv("ADMIN_EMAILS", "")
    monkeypatch.setattr(queue_mod, "QSTASH_CURRENT_SIGNING_KEY", CURRENT_KEY)
    monkeypatch.setattr(queue_mod, "QSTASH_NEXT_SIGNING_KEY", NEXT_KEY)

    startup()
    yield


class FakeQueue:
    def __init__(self):
        self.published: list[tuple[str, dict]] = []
        self.deleted: list[str] = []
        self.error: Exception | None = None

    def publish(self, url: str, body: dict) -> str:
        if self.error:
            raise self.error
        self.published.append((url, body))
        return f"msg-{len(self.published)}"

    def delete(self, message_id: str) -> bool:
        self.deleted.append(message_id)
        return True


@pytest.fixture(autouse=True)
def fake_queue():
    queue = FakeQueue()
    queue_mod.set_queue(queue)
    yield queue
    queue_mod.set_queue(None)


class FakeGenerator:
    """Returns canned model output in order; an Exception entry is raised."""

    def __init__(self):
        self.responses: list = []
        self.prompts: list[str] = []

    def generate_json(self, prompt: str, schema: dict | None = None) -> str:
        self.prompts.append(prompt)
        if not self.responses:
            raise AssertionError("FakeGenerator has no response queued")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response if isinstance(response, str) else json.dumps(response)


@pytest.fixture
def fake_generator(monkeypatch):
    generator = FakeGenerator()
    monkeypatch.setattr("interview_coach.web.worker.get_generator", lambda: generator)
    return generator


def make_question_set(prefix: str = "Q") -> dict:
    data = {}
    for c in CATEGORIES:
        data[c] = [f"{prefix} {c} {i}?" for i in range(10)]
    data["general_personality"][0] = OPENING_QUESTION
    return data


@pytest.fixture
def question_set() -> dict:
    return make_question_set()


@pytest.fixture
def make_user():
    def _make(email: str | None = None, tokens="10"):
        user = create_user(email or f"{uuid.uuid4().hex[:8]}@example.com", display_name="Tester")
        if tokens and float(tokens) > 0:
            add_tokens(user.id, tokens)
        return user
    return _make


@pytest.fixture
def make_interview():
    def _make(user_id: str, **overrides):
        fields = {
            "candidate_name": "Sam Lee",
            "company_name": "Acme",
            "position": "Backend Engineer",
            "resume": "Five years building payment APIs in Python.",
            "cover_letter": "I want to bring my API experience to Acme.",
        }
        fields.update(overrides)
        return create_interview(user_id, **fields)
    return _make


def sign_body(body: bytes, key: str = CURRENT_KEY, url: str = "", **claims) -> str:
    """Build an Upstash-style signature JWT for a request body."""
    now = int(time.time())
    payload = {
        "iss": "Upstash",
        "sub": url,
        "iat": now,
        "nbf": now,
        "exp": now + 300,
        "jti": uuid.uuid4().hex,
        "body": queue_mod.body_hash(body),
    }
    payload.update(claims)
    return jwt.encode(payload, key, algorithm="HS256")


@pytest.fixture
def sign():
    return sign_body
