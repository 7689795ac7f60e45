"""User reports against generated questions/answers, and per-item refunds.

A report lists individual (category, index) cells of one Q&A version. An
admin refunds cells one at a time; flagging the cell and crediting the
owner happen in a single SQLite transaction, and the ledger reference for
each cell is unique, so repeated clicks cannot pay out twice.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

from pydantic import ValidationError

from interview_coach.models.qa import ReportItem, ReportItems, ReportStatus, SlotRef, slot_text
from interview_coach.web.interviews import get_interview, get_qa
from interview_coach.web.jobs import _get_conn
from interview_coach.web.notifications import notify
from interview_coach.web.tokens import credit_in_transaction, from_units, to_units

logger = logging.getLogger(__name__)

REFUND_AMOUNTS = {
    "question": Decimal("0.1"),
    "answer": Decimal("0.2"),
}
REPORT_STATUSES = tuple(s.value for s in ReportStatus)


class ReportError(Exception):
    status_code = 400


class ReportNotFound(ReportError):
    status_code = 404


class AlreadyRefunded(ReportError):
    status_code = 409


def init_reports_db() -> None:
    conn = _get_conn()
    conn.execute("""
        CREATE TABLE IF NOT EXISTS reports (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            interview_id TEXT NOT NULL,
            interview_qas_id TEXT NOT NULL,
            items TEXT NOT NULL,
            description TEXT NOT NULL,
            status TEXT DEFAULT 'pending',
            admin_response TEXT DEFAULT '',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """)
    conn.execute("CREATE INDEX IF NOT EXISTS idx_reports_user ON reports(user_id)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_reports_status ON reports(status)")
    conn.commit()


@dataclass
class Report:
    id: str
    user_id: str
    interview_id: str
    interview_qas_id: str
    items: ReportItems
    description: str
    status: str
    created_at: str
    updated_at: str
    admin_response: str = ""

    @property
    def refunded_total(self) -> Decimal:
        return sum(
            (Decimal(str(i.refund_amount)) for i in self.items.questions + self.items.answers
             if i.refunded and i.refund_amount),
            Decimal("0"),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "interview_id": self.interview_id,
            "interview_qas_id": self.interview_qas_id,
            "items": self.items.model_dump(mode="json"),
            "description": self.description,
            "status": self.status,
            "admin_response": self.admin_response or None,
            "refunded_total": float(self.refunded_total),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


def _row_to_report(row) -> Report:
    d = dict(row)
    d["items"] = ReportItems.model_validate(json.loads(d["items"]))
    d["admin_response"] = d.get("admin_response") or ""
    return Report(**d)


def _parse_slots(raw: list | None) -> list[SlotRef]:
    try:
        return [SlotRef.model_validate(item) for item in (raw or [])]
    except ValidationError as e:
        raise ReportError(f"Invalid report item: {e.errors()[0]['msg']}") from e


def create_report(
    user_id: str,
    qa_id: str,
    selected_questions: list | None,
    selected_answers: list | None,
    description: str,
) -> Report:
    """File a report against cells of a Q&A version the user owns.

    Cells without content are dropped; nothing left to report is an error.
    """
    if not (description or "").strip():
        raise ReportError("Description is required")
    qa = get_qa(qa_id)
    if not qa or not get_interview(qa.interview_id, user_id):
        raise ReportNotFound("Q&A version not found")

    questions, answers = [], []
    seen: set[tuple[str, str, int]] = set()
    for item_type, slots, grid, out in (
        ("question", _parse_slots(selected_questions), qa.questions_data, questions),
        ("answer", _parse_slots(selected_answers), qa.answers_data, answers),
    ):
        for slot in slots:
            key = (item_type, slot.category.value, slot.index)
            if key in seen or not slot_text(grid, slot.category.value, slot.index):
                continue
            seen.add(key)
            out.append(ReportItem(category=slot.category, index=slot.index))

    items = ReportItems(questions=questions, answers=answers)
    if items.is_empty:
        raise ReportError("No reportable items selected")

    conn = _get_conn()
    report_id = uuid.uuid4().hex[:12]
    now = datetime.now(timezone.utc).isoformat()
    conn.execute(
        """INSERT INTO reports
           (id, user_id, interview_id, interview_qas_id, items, description, status, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, 'pending', ?, ?)""",
        (report_id, user_id, qa.interview_id, qa.id, items.model_dump_json(),
         description.strip(), now, now),
    )
    conn.commit()
    logger.info(
        "Report %s filed by user %s: %d questions, %d answers",
        report_id, user_id, len(questions), len(answers),
    )
    return get_report(report_id)  # type: ignore[return-value]


def get_report(report_id: str) -> Report | None:
    conn = _get_conn()
    row = conn.execute("SELECT * FROM reports WHERE id = ?", (report_id,)).fetchone()
    return _row_to_report(row) if row else None


def list_reports(user_id: str) -> list[Report]:
    """A user's own reports, newest first."""
    conn = _get_conn()
    rows = conn.execute(
        "SELECT * FROM reports WHERE user_id = ? ORDER BY created_at DESC", (user_id,)
    ).fetchall()
    return [_row_to_report(row) for row in rows]


def list_all_reports(status: str | None = None, limit: int = 200) -> list[Report]:
    """Admin view across users, optionally filtered by status."""
    conn = _get_conn()
    if status:
        rows = conn.execute(
            "SELECT * FROM reports WHERE status = ? ORDER BY created_at DESC LIMIT ?", (status, limit)
        ).fetchall()
    else:
        rows = conn.execute(
            "SELECT * FROM reports ORDER BY created_at DESC LIMIT ?", (limit,)
        ).fetchall()
    return [_row_to_report(row) for row in rows]


def update_report(report_id: str, status: str | None = None, admin_response: str | None = None) -> Report:
    """Change review status and/or the admin's reply.

    Saving a non-empty reply notifies the reporting user.
    """
    report = get_report(report_id)
    if not report:
        raise ReportNotFound("Report not found")
    if status is not None and status not in REPORT_STATUSES:
        raise ReportError(f"Invalid status: {status}")

    updates: dict = {}
    if status is not None:
        updates["status"] = status
    if admin_response is not None:
        updates["admin_response"] = admin_response.strip()
    if not updates:
        return report

    conn = _get_conn()
    updates["updated_at"] = datetime.now(timezone.utc).isoformat()
    sets = ", ".join(f"{k} = ?" for k in updates)
    conn.execute(f"UPDATE reports SET {sets} WHERE id = ?", [*updates.values(), report_id])
    conn.commit()

    reply = updates.get("admin_response")
    if reply and reply != report.admin_response:
        notify(
            report.user_id, "report_comment", reply,
            interview_id=report.interview_id,
            interview_qas_id=report.interview_qas_id,
            report_id=report.id,
        )
    return get_report(report_id)  # type: ignore[return-value]


def refund_reference(report_id: str, item_type: str, category: str, index: int) -> str:
    return f"report:{report_id}:{item_type}:{category}:{index}"


def refund_report_item(report_id: str, item_type: str, category: str, index: int) -> tuple[Report, Decimal]:
    """Refund one reported cell to the report's owner, at most once.

    Returns the updated report and the amount credited. Raises
    AlreadyRefunded if the cell was refunded before.
    """
    if item_type not in REFUND_AMOUNTS:
        raise ReportError(f"Invalid item type: {item_type}")
    amount = REFUND_AMOUNTS[item_type]
    conn = _get_conn()

    conn.execute("BEGIN IMMEDIATE")
    try:
        row = conn.execute("SELECT * FROM reports WHERE id = ?", (report_id,)).fetchone()
        if not row:
            raise ReportNotFound("Report not found")
        report = _row_to_report(row)
        item = report.items.find(item_type, category, index)
        if item is None:
            raise ReportNotFound("Report item not found")
        if item.refunded:
            raise AlreadyRefunded("Item already refunded")

        now = datetime.now(timezone.utc).isoformat()
        item.refunded = True
        item.refund_amount = float(amount)
        item.refunded_at = now
        conn.execute(
            "UPDATE reports SET items = ?, updated_at = ? WHERE id = ?",
            (report.items.model_dump_json(), now, report_id),
        )
        credited = credit_in_transaction(
            conn, report.user_id, to_units(amount), "refund",
            refund_reference(report_id, item_type, category, index),
        )
        if not credited:
            raise ReportError("Report owner not found")
        conn.commit()
    except sqlite3.IntegrityError as e:
        conn.rollback()
        raise AlreadyRefunded("Item already refunded") from e
    except Exception:
        conn.rollback()
        raise

    logger.info(
        "Refunded %s tokens to user %s for report %s (%s %s[%d])",
        from_units(to_units(amount)), report.user_id, report_id, item_type, category, index,
    )
    notify(
        report.user_id, "report_refund",
        f"{amount} tokens were refunded for a reported {item_type}.",
        interview_id=report.interview_id,
        interview_qas_id=report.interview_qas_id,
        report_id=report.id,
        metadata={"item_type": item_type, "category": category, "index": index,
                  "refund_amount": float(amount)},
    )
    return get_report(report_id), amount  # type: ignore[return-value]
