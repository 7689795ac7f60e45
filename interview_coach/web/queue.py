"""Delivery of generation jobs to the webhook worker.

In production jobs go through QStash: the app publishes the job body with a
callback URL, and QStash later POSTs it to /api/process/<type> with an
``Upstash-Signature`` JWT. For local development the inline queue skips the
HTTP hop and runs the worker on a background thread.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import os
import threading
from typing import Callable, Protocol

import httpx
import jwt

logger = logging.getLogger(__name__)

QSTASH_URL = os.environ.get("QSTASH_URL", "https://qstash.upstash.io")
QSTASH_TOKEN = os.environ.get("QSTASH_TOKEN", "")
QSTASH_CURRENT_SIGNING_KEY = os.environ.get("QSTASH_CURRENT_SIGNING_KEY", "")
QSTASH_NEXT_SIGNING_KEY = os.environ.get("QSTASH_NEXT_SIGNING_KEY", "")
APP_BASE_URL = os.environ.get("APP_BASE_URL", "http://localhost:8000")
QUEUE_MODE = os.environ.get("QUEUE_MODE", "")

PUBLISH_RETRIES = 3
PUBLISH_TIMEOUT = 10.0
CLOCK_TOLERANCE_SECONDS = 30
SIGNATURE_HEADER = "Upstash-Signature"


class QueueError(Exception):
    """Publishing a job to the queue failed."""


class SignatureError(Exception):
    """A webhook request could not be verified as coming from the queue."""


class JobQueue(Protocol):
    def publish(self, url: str, body: dict) -> str: ...

    def delete(self, message_id: str) -> bool: ...


def callback_url(job_type: str) -> str:
    """Webhook URL for a job type: questions_generated -> /api/process/questions-generated."""
    return f"{APP_BASE_URL.rstrip('/')}/api/process/{job_type.replace('_', '-')}"


class QStashQueue:
    """Publishes job bodies to QStash, which calls our webhook with retries."""

    def __init__(
        self,
        token: str,
        base_url: str = QSTASH_URL,
        retries: int = PUBLISH_RETRIES,
        timeout: float = PUBLISH_TIMEOUT,
    ):
        self.token = token
        self.base_url = base_url.rstrip("/")
        self.retries = retries
        self._client = httpx.Client(timeout=timeout)

    def close(self):
        self._client.close()

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.token}"}

    def publish(self, url: str, body: dict) -> str:
        """Publish a JSON body for delivery to url. Returns the QStash message ID."""
        headers = self._headers()
        headers["Upstash-Retries"] = str(self.retries)
        try:
            response = self._client.post(f"{self.base_url}/v2/publish/{url}", json=body, headers=headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise QueueError(
                f"QStash publish failed with status {e.response.status_code}: {e.response.text[:200]}"
            ) from e
        except httpx.HTTPError as e:
            raise QueueError(f"QStash publish failed: {e}") from e
        message_id = response.json().get("messageId", "")
        logger.info("Published %s to %s", message_id, url)
        return message_id

    def delete(self, message_id: str) -> bool:
        """Best-effort removal of an undelivered message."""
        if not message_id:
            return False
        try:
            response = self._client.delete(
                f"{self.base_url}/v2/messages/{message_id}", headers=self._headers()
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Could not delete QStash message %s: %s", message_id, e)
            return False
        return True


class InlineQueue:
    """Development queue: hands the body straight to the worker on a thread."""

    def __init__(self, handler: Callable[[dict], object]):
        self.handler = handler

    def publish(self, url: str, body: dict) -> str:
        message_id = f"inline-{body.get('jobId', '')}"
        thread = threading.Thread(target=self._run, args=(body,), daemon=True, name=message_id)
        thread.start()
        return message_id

    def _run(self, body: dict) -> None:
        try:
            self.handler(body)
        except Exception:
            logger.exception("Inline job %s crashed", body.get("jobId"))

    def delete(self, message_id: str) -> bool:
        return False


_queue: JobQueue | None = None
_queue_lock = threading.Lock()


def get_queue() -> JobQueue:
    """Return the process-wide queue, building it from the environment once."""
    global _queue
    with _queue_lock:
        if _queue is None:
            mode = QUEUE_MODE or ("qstash" if QSTASH_TOKEN else "inline")
            if mode == "qstash":
                _queue = QStashQueue(QSTASH_TOKEN)
            else:
                from interview_coach.web.worker import handle_delivery
                logger.info("Using inline job queue")
                _queue = InlineQueue(handle_delivery)
        return _queue


def set_queue(queue: JobQueue | None) -> None:
    """Replace the process-wide queue (None rebuilds it from the environment)."""
    global _queue
    with _queue_lock:
        _queue = queue


def body_hash(body: bytes) -> str:
    """base64url SHA-256 of a request body without padding, as QStash signs it."""
    return base64.urlsafe_b64encode(hashlib.sha256(body).digest()).decode().rstrip("=")


def verify_signature(body: bytes, signature: str | None, url: str | None = None) -> dict:
    """Verify an ``Upstash-Signature`` JWT against the current and next keys.

    Returns the decoded claims. Raises SignatureError on any mismatch.
    """
    keys = [k for k in (QSTASH_CURRENT_SIGNING_KEY, QSTASH_NEXT_SIGNING_KEY) if k]
    if not keys:
        raise SignatureError("Signing keys are not configured")
    if not signature:
        raise SignatureError("Missing signature")

    last_error: Exception | None = None
    for key in keys:
        try:
            claims = jwt.decode(
                signature,
                key,
                algorithms=["HS256"],
                issuer="Upstash",
                leeway=CLOCK_TOLERANCE_SECONDS,
                options={"verify_aud": False},
            )
        except jwt.InvalidTokenError as e:
            last_error = e
            continue
        if url is not None and claims.get("sub") != url:
            raise SignatureError("Signature URL mismatch")
        if (claims.get("body") or "").rstrip("=") != body_hash(body):
            raise SignatureError("Body hash mismatch")
        return claims
    raise SignatureError(f"Invalid signature: {last_error}")
