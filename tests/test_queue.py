"""Tests for queue publishing and webhook signature verification."""

import json
import threading
import time

import httpx
import pytest

from interview_coach.web.queue import (
    InlineQueue,
    QStashQueue,
    QueueError,
    SignatureError,
    body_hash,
    callback_url,
    verify_signature,
)

from conftest import NEXT_KEY, sign_body

BODY = json.dumps({"jobId": "abc123", "type": "questions_generated"}).encode()


class TestCallbackUrl:
    def test_hyphenated_path(self, monkeypatch):
        monkeypatch.setattr("interview_coach.web.queue.APP_BASE_URL", "https://coach.example.com/")
        assert callback_url("answer_edited") == "https://coach.example.com/api/process/answer-edited"


class TestSignature:
    def test_valid_current_key(self):
        claims = verify_signature(BODY, sign_body(BODY))
        assert claims["iss"] == "Upstash"

    def test_valid_next_key(self):
        assert verify_signature(BODY, sign_body(BODY, key=NEXT_KEY))

    def test_body_hash_is_unpadded(self):
        assert "=" not in body_hash(BODY)

    def test_tampered_body(self):
        with pytest.raises(SignatureError):
            verify_signature(BODY + b" ", sign_body(BODY))

    def test_wrong_key(self):
        with pytest.raises(SignatureError):
            verify_signature(BODY, sign_body(BODY, key="some_other_signing_key_0123456789ab"))

    def test_missing_signature(self):
        with pytest.raises(SignatureError):
            verify_signature(BODY, None)

    def test_wrong_issuer(self):
        with pytest.raises(SignatureError):
            verify_signature(BODY, sign_body(BODY, iss="someone"))

    def test_expired(self):
        past = int(time.time()) - 3600
        with pytest.raises(SignatureError):
            verify_signature(BODY, sign_body(BODY, iat=past, nbf=past, exp=past + 60))

    def test_small_clock_skew_tolerated(self):
        soon = int(time.time()) + 10
        assert verify_signature(BODY, sign_body(BODY, nbf=soon, iat=soon))

    def test_url_checked_when_given(self):
        token = sign_body(BODY, url="https://coach.example.com/api/process/questions-generated")
        assert verify_signature(BODY, token, url="https://coach.example.com/api/process/questions-generated")
        with pytest.raises(SignatureError):
            verify_signature(BODY, token, url="https://evil.example.com/api/process/questions-generated")

    def test_no_keys_configured(self, monkeypatch):
        monkeypatch.setattr("interview_coach.web.queue.QSTASH_CURRENT_SIGNING_KEY", "")
        monkeypatch.setattr("interview_coach.web.queue.QSTASH_NEXT_SIGNING_KEY", "")
        with pytest.raises(SignatureError):
            verify_signature(BODY, sign_body(BODY))


def _qstash(handler) -> QStashQueue:
    queue = QStashQueue("qstash-token", base_url="https://qstash.test")
    queue._client = httpx.Client(transport=httpx.MockTransport(handler))
    return queue


class TestQStashQueue:
    def test_publish(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["retries"] = request.headers["Upstash-Retries"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(201, json={"messageId": "msg_123"})

        queue = _qstash(handler)
        message_id = queue.publish("https://coach.example.com/api/process/questions-generated", {"jobId": "j1"})

        assert message_id == "msg_123"
        assert seen["url"] == "https://qstash.test/v2/publish/https://coach.example.com/api/process/questions-generated"
        assert seen["auth"] == "Bearer qstash-token"
        assert seen["retries"] == "3"
        assert seen["body"] == {"jobId": "j1"}

    def test_publish_error_status(self):
        queue = _qstash(lambda request: httpx.Response(500, text="boom"))
        with pytest.raises(QueueError, match="500"):
            queue.publish("https://coach.example.com/api/process/x", {})

    def test_publish_network_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(QueueError):
            _qstash(handler).publish("https://coach.example.com/api/process/x", {})

    def test_delete_best_effort(self):
        assert _qstash(lambda request: httpx.Response(200)).delete("msg_1") is True
        assert _qstash(lambda request: httpx.Response(404)).delete("msg_1") is False
        assert _qstash(lambda request: httpx.Response(200)).delete("") is False


class TestInlineQueue:
    def test_runs_handler_on_thread(self):
        done = threading.Event()
        received = []

        def handler(body):
            received.append(body)
            done.set()

        message_id = InlineQueue(handler).publish("ignored", {"jobId": "j9"})

        assert message_id == "inline-j9"
        assert done.wait(5)
        assert received == [{"jobId": "j9"}]
