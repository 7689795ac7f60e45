"""Generation job tracking with SQLite.

Stores the lifecycle of paid generation work so users can poll status
across page loads and the webhook worker can claim, finish, or fail a job
exactly once.

    queued --claim--> processing --complete--> completed
                                 --fail-----> failed
    queued --cancel / queue error-----------> failed
"""

from __future__ import annotations

import json
import sqlite3
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

from interview_coach.models.qa import JobStatus

DB_PATH = Path(__file__).parent.parent.parent / "data" / "interview_coach.db"

# Light-variant names accepted from older clients
JOB_TYPE_ALIASES = {
    "question": "questions_generated",
    "answer": "answers_generated",
}
ACTIVE_STATUSES = (JobStatus.QUEUED.value, JobStatus.PROCESSING.value)
TERMINAL_STATUSES = (JobStatus.COMPLETED.value, JobStatus.FAILED.value)
CANCELLED_MESSAGE = "Cancelled by user"

_local = threading.local()


def _get_conn() -> sqlite3.Connection:
    """Get a thread-local SQLite connection.

    Reconnects when DB_PATH changes so tests can point each case at a
    fresh file.
    """
    conn = getattr(_local, "conn", None)
    if conn is None or getattr(_local, "path", None) != str(DB_PATH):
        DB_PATH.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(DB_PATH), timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        _local.conn = conn
        _local.path = str(DB_PATH)
    return conn


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def init_db() -> None:
    """Create the jobs table if it doesn't exist."""
    conn = _get_conn()
    conn.execute("""
        CREATE TABLE IF NOT EXISTS jobs (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            interview_id TEXT NOT NULL,
            type TEXT NOT NULL,
            status TEXT DEFAULT 'queued',
            input_data TEXT DEFAULT '{}',
            result TEXT DEFAULT '',
            error_message TEXT DEFAULT '',
            created_at TEXT NOT NULL,
            started_at TEXT DEFAULT '',
            completed_at TEXT DEFAULT '',
            updated_at TEXT NOT NULL,
            message_id TEXT DEFAULT '',
            tokens_charged TEXT DEFAULT '0'
        )
    """)
    conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_user_status ON jobs(user_id, status)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_interview_id ON jobs(interview_id)")
    # At most one queued/processing job per user
    conn.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_jobs_one_active "
        "ON jobs(user_id) WHERE status IN ('queued', 'processing')"
    )
    conn.commit()


@dataclass
class Job:
    id: str
    user_id: str
    interview_id: str
    type: str
    status: str
    input_data: dict = field(default_factory=dict)
    result: dict | None = None
    error_message: str = ""
    created_at: str = ""
    started_at: str = ""
    completed_at: str = ""
    updated_at: str = ""
    message_id: str = ""
    tokens_charged: Decimal = Decimal("0")

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict:
        d = {
            "id": self.id,
            "user_id": self.user_id,
            "interview_id": self.interview_id,
            "type": self.type,
            "status": self.status,
            "input_data": self.input_data,
            "error_message": self.error_message or None,
            "created_at": self.created_at,
            "started_at": self.started_at or None,
            "completed_at": self.completed_at or None,
        }
        if self.result is not None:
            d["result"] = self.result
        return d


def _row_to_job(row: sqlite3.Row) -> Job:
    d = dict(row)
    d["input_data"] = json.loads(d.get("input_data") or "{}")
    d["result"] = json.loads(d["result"]) if d.get("result") else None
    d.setdefault("message_id", "")
    d["tokens_charged"] = Decimal(d.get("tokens_charged") or "0")
    return Job(**d)


def create_job(user_id: str, interview_id: str, job_type: str, input_data: dict | None = None) -> Job:
    """Create a new job record in the queued state.

    Raises sqlite3.IntegrityError if the user already has an active job.
    """
    conn = _get_conn()
    job_id = uuid.uuid4().hex[:12]
    now = _now()
    try:
        conn.execute(
            """INSERT INTO jobs (id, user_id, interview_id, type, status, input_data, created_at, updated_at)
               VALUES (?, ?, ?, ?, 'queued', ?, ?, ?)""",
            (job_id, user_id, interview_id, job_type, json.dumps(input_data or {}), now, now),
        )
        conn.commit()
    except sqlite3.IntegrityError:
        conn.rollback()
        raise
    return get_job(job_id)  # type: ignore[return-value]


def get_job(job_id: str) -> Job | None:
    """Get a job by ID."""
    conn = _get_conn()
    row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
    return _row_to_job(row) if row else None


def list_jobs(user_id: str, limit: int = 50) -> list[Job]:
    """List a user's recent jobs, newest first."""
    conn = _get_conn()
    rows = conn.execute(
        "SELECT * FROM jobs WHERE user_id = ? ORDER BY created_at DESC LIMIT ?",
        (user_id, limit),
    ).fetchall()
    return [_row_to_job(row) for row in rows]


def list_active_jobs(user_id: str) -> list[Job]:
    """List a user's queued/processing jobs, newest first."""
    conn = _get_conn()
    rows = conn.execute(
        "SELECT * FROM jobs WHERE user_id = ? AND status IN ('queued', 'processing') "
        "ORDER BY created_at DESC",
        (user_id,),
    ).fetchall()
    return [_row_to_job(row) for row in rows]


def get_active_job(user_id: str) -> Job | None:
    """Return the user's most recent queued/processing job, if any."""
    jobs = list_active_jobs(user_id)
    return jobs[0] if jobs else None


def claim_job(job_id: str) -> Job | None:
    """Atomically move a queued job to processing.

    Returns the claimed job, or None if it was not queued (already claimed,
    finished, or cancelled).
    """
    conn = _get_conn()
    now = _now()
    cursor = conn.execute(
        """UPDATE jobs SET status = 'processing', started_at = ?, updated_at = ?
           WHERE id = ? AND status = 'queued'""",
        (now, now, job_id),
    )
    conn.commit()
    if cursor.rowcount == 0:
        return None
    return get_job(job_id)


def mark_charged(job_id: str, amount: Decimal) -> None:
    """Record how many tokens were spent for a job."""
    conn = _get_conn()
    conn.execute(
        "UPDATE jobs SET tokens_charged = ?, updated_at = ? WHERE id = ?",
        (str(amount), _now(), job_id),
    )
    conn.commit()


def complete_job(job_id: str, result: dict) -> bool:
    """Finish a processing job successfully. Returns False if it was not processing."""
    conn = _get_conn()
    now = _now()
    cursor = conn.execute(
        """UPDATE jobs SET status = 'completed', result = ?, completed_at = ?, updated_at = ?
           WHERE id = ? AND status = 'processing'""",
        (json.dumps(result), now, now, job_id),
    )
    conn.commit()
    return cursor.rowcount > 0


def fail_job(job_id: str, error_message: str) -> bool:
    """Fail a queued or processing job. Terminal jobs are left untouched."""
    conn = _get_conn()
    now = _now()
    cursor = conn.execute(
        """UPDATE jobs SET status = 'failed', error_message = ?, completed_at = ?, updated_at = ?
           WHERE id = ? AND status IN ('queued', 'processing')""",
        (error_message, now, now, job_id),
    )
    conn.commit()
    return cursor.rowcount > 0


def cancel_job(job_id: str) -> bool:
    """Cancel a job that the worker has not claimed yet.

    Returns False when the job is already processing or finished; the
    worker's claim and this update race on the same conditional UPDATE, so
    exactly one of them wins.
    """
    conn = _get_conn()
    now = _now()
    cursor = conn.execute(
        """UPDATE jobs SET status = 'failed', error_message = ?, completed_at = ?, updated_at = ?
           WHERE id = ? AND status = 'queued'""",
        (CANCELLED_MESSAGE, now, now, job_id),
    )
    conn.commit()
    return cursor.rowcount > 0


def set_message_id(job_id: str, message_id: str) -> None:
    """Store the queue provider's message ID for later cancellation."""
    conn = _get_conn()
    conn.execute(
        "UPDATE jobs SET message_id = ?, updated_at = ? WHERE id = ?",
        (message_id, _now(), job_id),
    )
    conn.commit()


def find_stale_jobs(older_than_minutes: int) -> list[Job]:
    """Processing jobs whose worker started more than N minutes ago."""
    conn = _get_conn()
    cutoff = (datetime.now(timezone.utc) - timedelta(minutes=older_than_minutes)).isoformat()
    rows = conn.execute(
        "SELECT * FROM jobs WHERE status = 'processing' AND started_at != '' AND started_at < ?",
        (cutoff,),
    ).fetchall()
    return [_row_to_job(row) for row in rows]


def cleanup_old_jobs(older_than_days: int = 7) -> int:
    """Delete completed/failed jobs that finished more than N days ago. Returns count deleted."""
    conn = _get_conn()
    cutoff = (datetime.now(timezone.utc) - timedelta(days=older_than_days)).isoformat()
    cursor = conn.execute(
        "DELETE FROM jobs WHERE status IN ('completed', 'failed') AND completed_at != '' AND completed_at < ?",
        (cutoff,),
    )
    conn.commit()
    return cursor.rowcount


def delete_jobs_for_interview(interview_id: str) -> int:
    """Remove every job row referencing an interview."""
    conn = _get_conn()
    cursor = conn.execute("DELETE FROM jobs WHERE interview_id = ?", (interview_id,))
    conn.commit()
    return cursor.rowcount


def count_jobs_by_status() -> dict[str, int]:
    conn = _get_conn()
    rows = conn.execute("SELECT status, COUNT(*) FROM jobs GROUP BY status").fetchall()
    return {row[0]: row[1] for row in rows}
