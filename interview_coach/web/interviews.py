"""Interview records and their generated Q&A versions.

Each successful generation job writes a new row to interview_qas and makes
it the interview's default; older versions stay around as history. A partial
unique index keeps at most one default per interview.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal

from interview_coach.models.qa import CATEGORIES, empty_grid
from interview_coach.web.jobs import _get_conn, delete_jobs_for_interview

logger = logging.getLogger(__name__)

INTERVIEW_FIELDS = (
    "candidate_name",
    "company_name",
    "position",
    "job_posting",
    "cover_letter",
    "resume",
    "company_info",
    "expected_questions",
    "company_evaluation",
    "other",
)
REQUIRED_FIELDS = ("company_name", "position", "resume", "cover_letter")
PREVIOUS_VERSIONS_LIMIT = 20


def init_interviews_db() -> None:
    """Create the interviews and interview_qas tables."""
    conn = _get_conn()
    columns = ",\n".join(f"            {name} TEXT DEFAULT ''" for name in INTERVIEW_FIELDS)
    conn.execute(f"""
        CREATE TABLE IF NOT EXISTS interviews (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
{columns},
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """)
    conn.execute("CREATE INDEX IF NOT EXISTS idx_interviews_user ON interviews(user_id)")
    conn.execute("""
        CREATE TABLE IF NOT EXISTS interview_qas (
            id TEXT PRIMARY KEY,
            interview_id TEXT NOT NULL,
            name TEXT DEFAULT '',
            questions_data TEXT NOT NULL,
            answers_data TEXT NOT NULL,
            is_default BOOLEAN DEFAULT 0,
            type TEXT NOT NULL,
            parent_qa_id TEXT DEFAULT '',
            target_items TEXT DEFAULT '{}',
            tokens_used TEXT DEFAULT '0',
            created_at TEXT NOT NULL
        )
    """)
    conn.execute("CREATE INDEX IF NOT EXISTS idx_qas_interview ON interview_qas(interview_id)")
    conn.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_qas_one_default "
        "ON interview_qas(interview_id) WHERE is_default = 1"
    )
    conn.commit()


@dataclass
class Interview:
    id: str
    user_id: str
    created_at: str
    updated_at: str
    candidate_name: str = ""
    company_name: str = ""
    position: str = ""
    job_posting: str = ""
    cover_letter: str = ""
    resume: str = ""
    company_info: str = ""
    expected_questions: str = ""
    company_evaluation: str = ""
    other: str = ""

    def missing_required_fields(self) -> list[str]:
        return [name for name in REQUIRED_FIELDS if not (getattr(self, name) or "").strip()]

    def to_dict(self) -> dict:
        d = {"id": self.id, "user_id": self.user_id}
        for name in INTERVIEW_FIELDS:
            d[name] = getattr(self, name)
        d["created_at"] = self.created_at
        d["updated_at"] = self.updated_at
        return d


@dataclass
class QAVersion:
    id: str
    interview_id: str
    type: str
    questions_data: dict
    answers_data: dict
    created_at: str
    name: str = ""
    is_default: bool = False
    parent_qa_id: str = ""
    target_items: dict = field(default_factory=dict)
    tokens_used: Decimal = Decimal("0")

    def has_questions(self) -> bool:
        return any(
            isinstance(q, str) and q.strip()
            for c in CATEGORIES
            for q in (self.questions_data.get(c) or [])
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "interview_id": self.interview_id,
            "name": self.name,
            "type": self.type,
            "questions_data": self.questions_data,
            "answers_data": self.answers_data,
            "is_default": self.is_default,
            "parent_qa_id": self.parent_qa_id or None,
            "target_items": self.target_items,
            "tokens_used": float(self.tokens_used),
            "created_at": self.created_at,
        }


def _row_to_interview(row) -> Interview:
    d = dict(row)
    for name in INTERVIEW_FIELDS:
        d[name] = d.get(name) or ""
    return Interview(**d)


def _row_to_qa(row) -> QAVersion:
    d = dict(row)
    d["questions_data"] = json.loads(d["questions_data"])
    d["answers_data"] = json.loads(d["answers_data"])
    d["target_items"] = json.loads(d.get("target_items") or "{}")
    d["is_default"] = bool(d.get("is_default", 0))
    d["parent_qa_id"] = d.get("parent_qa_id") or ""
    d["tokens_used"] = Decimal(d.get("tokens_used") or "0")
    return QAVersion(**d)


# ── Interviews ──────────────────────────────────────────────────

def create_interview(user_id: str, **fields) -> Interview:
    """Create an interview. Unknown field names are ignored."""
    conn = _get_conn()
    interview_id = uuid.uuid4().hex[:12]
    now = datetime.now(timezone.utc).isoformat()
    values = {name: (fields.get(name) or "") for name in INTERVIEW_FIELDS}
    names = ", ".join(values)
    placeholders = ", ".join("?" for _ in values)
    conn.execute(
        f"INSERT INTO interviews (id, user_id, {names}, created_at, updated_at) "
        f"VALUES (?, ?, {placeholders}, ?, ?)",
        (interview_id, user_id, *values.values(), now, now),
    )
    conn.commit()
    return get_interview(interview_id)  # type: ignore[return-value]


def get_interview(interview_id: str, user_id: str | None = None) -> Interview | None:
    """Get an interview, optionally restricted to its owner."""
    conn = _get_conn()
    if user_id is None:
        row = conn.execute("SELECT * FROM interviews WHERE id = ?", (interview_id,)).fetchone()
    else:
        row = conn.execute(
            "SELECT * FROM interviews WHERE id = ? AND user_id = ?", (interview_id, user_id)
        ).fetchone()
    return _row_to_interview(row) if row else None


def list_interviews(user_id: str) -> list[Interview]:
    conn = _get_conn()
    rows = conn.execute(
        "SELECT * FROM interviews WHERE user_id = ? ORDER BY created_at DESC", (user_id,)
    ).fetchall()
    return [_row_to_interview(row) for row in rows]


def update_interview(interview_id: str, **fields) -> Interview | None:
    """Update text fields on an interview. Unknown names are ignored."""
    updates = {k: (v or "") for k, v in fields.items() if k in INTERVIEW_FIELDS}
    if updates:
        conn = _get_conn()
        updates["updated_at"] = datetime.now(timezone.utc).isoformat()
        sets = ", ".join(f"{k} = ?" for k in updates)
        conn.execute(
            f"UPDATE interviews SET {sets} WHERE id = ?", [*updates.values(), interview_id]
        )
        conn.commit()
    return get_interview(interview_id)


def delete_interview(interview_id: str) -> bool:
    """Delete an interview with its jobs, Q&A versions and reports."""
    delete_jobs_for_interview(interview_id)
    conn = _get_conn()
    conn.execute("DELETE FROM interview_qas WHERE interview_id = ?", (interview_id,))
    conn.execute("DELETE FROM reports WHERE interview_id = ?", (interview_id,))
    cursor = conn.execute("DELETE FROM interviews WHERE id = ?", (interview_id,))
    conn.commit()
    return cursor.rowcount > 0


# ── Q&A versions ────────────────────────────────────────────────

def create_qa_version(
    interview_id: str,
    qa_type: str,
    questions_data: dict,
    answers_data: dict | None = None,
    parent_qa_id: str = "",
    target_items: dict | None = None,
    tokens_used: Decimal = Decimal("0"),
) -> QAVersion:
    """Insert a new version and make it the interview's default.

    Clearing the old default and inserting the new one share a transaction,
    so readers never see zero or two defaults.
    """
    conn = _get_conn()
    qa_id = uuid.uuid4().hex[:12]
    now = datetime.now(timezone.utc).isoformat()
    try:
        count = conn.execute(
            "SELECT COUNT(*) FROM interview_qas WHERE interview_id = ?", (interview_id,)
        ).fetchone()[0]
        conn.execute(
            "UPDATE interview_qas SET is_default = 0 WHERE interview_id = ? AND is_default = 1",
            (interview_id,),
        )
        conn.execute(
            """INSERT INTO interview_qas
               (id, interview_id, name, questions_data, answers_data, is_default, type,
                parent_qa_id, target_items, tokens_used, created_at)
               VALUES (?, ?, ?, ?, ?, 1, ?, ?, ?, ?, ?)""",
            (
                qa_id, interview_id, f"Version {count + 1}",
                json.dumps(questions_data), json.dumps(answers_data or empty_grid()),
                qa_type, parent_qa_id, json.dumps(target_items or {}),
                str(tokens_used), now,
            ),
        )
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    logger.info("Created Q&A version %s for interview %s (%s)", qa_id, interview_id, qa_type)
    return get_qa(qa_id)  # type: ignore[return-value]


def get_qa(qa_id: str) -> QAVersion | None:
    conn = _get_conn()
    row = conn.execute("SELECT * FROM interview_qas WHERE id = ?", (qa_id,)).fetchone()
    return _row_to_qa(row) if row else None


def get_default_qa(interview_id: str) -> QAVersion | None:
    """The version currently presented for an interview."""
    conn = _get_conn()
    row = conn.execute(
        "SELECT * FROM interview_qas WHERE interview_id = ? AND is_default = 1", (interview_id,)
    ).fetchone()
    return _row_to_qa(row) if row else None


def list_qas(interview_id: str, limit: int | None = None) -> list[QAVersion]:
    """Version history, newest first."""
    conn = _get_conn()
    sql = "SELECT * FROM interview_qas WHERE interview_id = ? ORDER BY created_at DESC, rowid DESC"
    params: tuple = (interview_id,)
    if limit is not None:
        sql += " LIMIT ?"
        params = (interview_id, limit)
    return [_row_to_qa(row) for row in conn.execute(sql, params).fetchall()]


def set_default_qa(interview_id: str, qa_id: str) -> bool:
    """Flip the default flag to qa_id. History is untouched.

    Returns False if the version does not belong to the interview.
    """
    conn = _get_conn()
    row = conn.execute(
        "SELECT 1 FROM interview_qas WHERE id = ? AND interview_id = ?", (qa_id, interview_id)
    ).fetchone()
    if not row:
        return False
    try:
        conn.execute(
            "UPDATE interview_qas SET is_default = 0 WHERE interview_id = ? AND is_default = 1",
            (interview_id,),
        )
        conn.execute("UPDATE interview_qas SET is_default = 1 WHERE id = ?", (qa_id,))
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    return True


def discard_qa_version(qa_id: str) -> bool:
    """Delete a version nobody paid for. If it was the default, its parent takes over."""
    qa = get_qa(qa_id)
    if not qa:
        return False
    conn = _get_conn()
    try:
        conn.execute("DELETE FROM interview_qas WHERE id = ?", (qa_id,))
        if qa.is_default and qa.parent_qa_id:
            conn.execute(
                "UPDATE interview_qas SET is_default = 1 WHERE id = ? AND interview_id = ?",
                (qa.parent_qa_id, qa.interview_id),
            )
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    logger.info("Discarded Q&A version %s for interview %s", qa_id, qa.interview_id)
    return True


def previous_questions(interview_id: str, limit: int = PREVIOUS_VERSIONS_LIMIT) -> list[str]:
    """Distinct questions from recent versions, used to avoid repeats."""
    seen: set[str] = set()
    out = []
    for qa in list_qas(interview_id, limit=limit):
        for category in CATEGORIES:
            for question in qa.questions_data.get(category) or []:
                if isinstance(question, str) and question.strip() and question not in seen:
                    seen.add(question)
                    out.append(question)
    return out
