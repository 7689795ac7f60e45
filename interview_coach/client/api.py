"""HTTP client for the interview coach API.

Keeps the session cookie between calls, so one client acts as one
logged-in user. Any httpx.Client works as the transport, including
FastAPI's TestClient.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


class ApiError(Exception):
    """Non-2xx API response."""

    def __init__(self, status_code: int, body: dict):
        self.status_code = status_code
        self.body = body
        message = body.get("error") or body.get("detail") or f"HTTP {status_code}"
        super().__init__(f"{status_code}: {message}")

    @property
    def active_job(self) -> dict | None:
        return self.body.get("activeJob")


class InterviewCoachClient:
    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        timeout: float = DEFAULT_TIMEOUT,
        client: httpx.Client | None = None,
    ):
        self._client = client or httpx.Client(base_url=base_url, timeout=timeout)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def close(self):
        self._client.close()

    def _request(self, method: str, url: str, **kwargs) -> dict[str, Any]:
        response = self._client.request(method, url, **kwargs)
        try:
            body = response.json()
        except ValueError:
            body = {"error": response.text[:200]}
        if response.status_code >= 400:
            raise ApiError(response.status_code, body if isinstance(body, dict) else {})
        return body

    def login(self, email: str, password: str) -> dict:
        return self._request("POST", "/api/auth/login", json={"email": email, "password": password})["user"]

    def get_balance(self) -> Decimal:
        return Decimal(str(self._request("GET", "/api/tokens")["tokens"]))

    def dispatch(self, interview_id: str, job_type: str, data: dict | None = None) -> dict:
        """Start a job. Returns {"jobId", "createdAt"}; raises ApiError on 4xx/5xx."""
        return self._request(
            "POST", f"/api/interviews/{interview_id}/qa", json={"type": job_type, "data": data or {}}
        )

    # JobStatusSource

    def list_active_jobs(self) -> list[dict]:
        return self._request("GET", "/api/jobs/active")["jobs"]

    def get_job(self, job_id: str) -> dict | None:
        try:
            return self._request("GET", f"/api/jobs/{job_id}")["job"]
        except ApiError as e:
            if e.status_code == 404:
                return None
            raise

    def cancel_job(self, job_id: str) -> bool:
        try:
            self._request("POST", "/api/jobs/cancel", json={"jobId": job_id})
        except ApiError as e:
            if e.status_code in (404, 409):
                logger.info("Could not cancel job %s: %s", job_id, e)
                return False
            raise
        return True
