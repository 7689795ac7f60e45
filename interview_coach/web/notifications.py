"""In-app notifications (job finished, report refunded, admin replied)."""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

from interview_coach.web.jobs import _get_conn

logger = logging.getLogger(__name__)


def init_notifications_db() -> None:
    conn = _get_conn()
    conn.execute("""
        CREATE TABLE IF NOT EXISTS notifications (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            type TEXT NOT NULL,
            message TEXT DEFAULT '',
            interview_id TEXT DEFAULT '',
            interview_qas_id TEXT DEFAULT '',
            report_id TEXT DEFAULT '',
            metadata TEXT DEFAULT '{}',
            is_read BOOLEAN DEFAULT 0,
            created_at TEXT NOT NULL
        )
    """)
    conn.execute("CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id, is_read)")
    conn.commit()


@dataclass
class Notification:
    id: str
    user_id: str
    type: str
    created_at: str
    message: str = ""
    interview_id: str = ""
    interview_qas_id: str = ""
    report_id: str = ""
    metadata: dict = field(default_factory=dict)
    is_read: bool = False

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "message": self.message,
            "interview_id": self.interview_id or None,
            "interview_qas_id": self.interview_qas_id or None,
            "report_id": self.report_id or None,
            "metadata": self.metadata,
            "is_read": self.is_read,
            "created_at": self.created_at,
        }


def _row_to_notification(row) -> Notification:
    d = dict(row)
    d["metadata"] = json.loads(d.get("metadata") or "{}")
    d["is_read"] = bool(d.get("is_read", 0))
    return Notification(**d)


def create_notification(
    user_id: str,
    type: str,
    message: str = "",
    interview_id: str = "",
    interview_qas_id: str = "",
    report_id: str = "",
    metadata: dict | None = None,
) -> Notification:
    conn = _get_conn()
    notification_id = uuid.uuid4().hex[:12]
    now = datetime.now(timezone.utc).isoformat()
    conn.execute(
        """INSERT INTO notifications
           (id, user_id, type, message, interview_id, interview_qas_id, report_id, metadata, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (notification_id, user_id, type, message, interview_id, interview_qas_id, report_id,
         json.dumps(metadata or {}), now),
    )
    conn.commit()
    return Notification(
        id=notification_id, user_id=user_id, type=type, message=message,
        interview_id=interview_id, interview_qas_id=interview_qas_id, report_id=report_id,
        metadata=metadata or {}, created_at=now,
    )


def notify(user_id: str, type: str, message: str = "", **kwargs) -> Notification | None:
    """Create a notification, logging instead of raising on failure."""
    try:
        return create_notification(user_id, type, message, **kwargs)
    except Exception:
        logger.exception("Failed to create %s notification for user %s", type, user_id)
        return None


def list_notifications(user_id: str, unread_only: bool = False, limit: int = 50) -> list[Notification]:
    conn = _get_conn()
    sql = "SELECT * FROM notifications WHERE user_id = ?"
    if unread_only:
        sql += " AND is_read = 0"
    sql += " ORDER BY created_at DESC LIMIT ?"
    rows = conn.execute(sql, (user_id, limit)).fetchall()
    return [_row_to_notification(row) for row in rows]


def count_unread(user_id: str) -> int:
    conn = _get_conn()
    row = conn.execute(
        "SELECT COUNT(*) FROM notifications WHERE user_id = ? AND is_read = 0", (user_id,)
    ).fetchone()
    return row[0]


def mark_read(user_id: str, notification_ids: list[str]) -> int:
    """Mark the given notifications read. Other users' rows are never touched."""
    if not notification_ids:
        return 0
    conn = _get_conn()
    placeholders = ",".join("?" for _ in notification_ids)
    cursor = conn.execute(
        f"UPDATE notifications SET is_read = 1 WHERE user_id = ? AND id IN ({placeholders})",
        [user_id, *notification_ids],
    )
    conn.commit()
    return cursor.rowcount


def mark_all_read(user_id: str) -> int:
    conn = _get_conn()
    cursor = conn.execute(
        "UPDATE notifications SET is_read = 1 WHERE user_id = ? AND is_read = 0", (user_id,)
    )
    conn.commit()
    return cursor.rowcount
