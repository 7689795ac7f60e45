"""Token ledger: per-user decimal credit balance.

Balances are stored as integer hundredths on the users row. Every change is
a single conditional UPDATE plus a row in token_transactions written in the
same SQLite transaction. A non-empty reference makes an operation
exactly-once per (user, kind, reference), which is how a job's spend and
its compensating refund are paired.
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

from interview_coach.web.jobs import _get_conn

logger = logging.getLogger(__name__)

UNITS_PER_TOKEN = 100


@dataclass
class TokenTransaction:
    id: str
    user_id: str
    kind: str  # 'spend', 'refund', 'grant'
    amount: int
    reference: str
    created_at: str

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind,
            "amount": float(from_units(self.amount)),
            "reference": self.reference,
            "created_at": self.created_at,
        }


def to_units(amount) -> int:
    """Convert a token amount (Decimal, int, float or str) to hundredths."""
    value = Decimal(str(amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return int(value * UNITS_PER_TOKEN)


def from_units(units: int) -> Decimal:
    return (Decimal(units) / UNITS_PER_TOKEN).quantize(Decimal("0.01"))


def init_tokens_db() -> None:
    """Create the token_transactions table. Requires the users table."""
    conn = _get_conn()
    conn.execute("""
        CREATE TABLE IF NOT EXISTS token_transactions (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            kind TEXT NOT NULL,
            amount INTEGER NOT NULL,
            reference TEXT DEFAULT '',
            created_at TEXT NOT NULL
        )
    """)
    conn.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_token_tx_reference "
        "ON token_transactions(user_id, kind, reference) WHERE reference != ''"
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_token_tx_user ON token_transactions(user_id)")
    conn.commit()


def _record(conn: sqlite3.Connection, user_id: str, kind: str, units: int, reference: str) -> None:
    conn.execute(
        """INSERT INTO token_transactions (id, user_id, kind, amount, reference, created_at)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (uuid.uuid4().hex[:12], user_id, kind, units, reference,
         datetime.now(timezone.utc).isoformat()),
    )


def credit_in_transaction(
    conn: sqlite3.Connection, user_id: str, units: int, kind: str, reference: str = "",
) -> bool:
    """Credit a balance inside the caller's open transaction. Does not commit.

    Returns False if the user does not exist. Raises sqlite3.IntegrityError
    when the reference was already used for this kind.
    """
    now = datetime.now(timezone.utc).isoformat()
    if kind == "refund":
        cursor = conn.execute(
            """UPDATE users
               SET token_balance = token_balance + ?,
                   tokens_used = MAX(tokens_used - ?, 0),
                   updated_at = ?
               WHERE id = ?""",
            (units, units, now, user_id),
        )
    else:
        cursor = conn.execute(
            "UPDATE users SET token_balance = token_balance + ?, updated_at = ? WHERE id = ?",
            (units, now, user_id),
        )
    if cursor.rowcount == 0:
        return False
    _record(conn, user_id, kind, units, reference)
    return True


def get_balance(user_id: str) -> Decimal:
    """Current balance. A missing user reads as zero."""
    conn = _get_conn()
    row = conn.execute("SELECT token_balance FROM users WHERE id = ?", (user_id,)).fetchone()
    if not row:
        return Decimal("0.00")
    return from_units(row[0] or 0)


def check_balance(user_id: str, required) -> bool:
    """True if the user can afford `required` tokens."""
    return get_balance(user_id) >= from_units(to_units(required))


def spend_tokens(user_id: str, amount, reference: str = "") -> bool:
    """Atomically deduct tokens from a user's balance.

    Returns True if deducted, False if the balance is insufficient or the
    reference was already spent. Never drives the balance below zero.
    """
    units = to_units(amount)
    if units <= 0:
        raise ValueError(f"Spend amount must be positive, got {amount}")
    conn = _get_conn()
    now = datetime.now(timezone.utc).isoformat()
    try:
        cursor = conn.execute(
            """UPDATE users
               SET token_balance = token_balance - ?,
                   tokens_used = tokens_used + ?,
                   updated_at = ?
               WHERE id = ? AND token_balance >= ?""",
            (units, units, now, user_id, units),
        )
        if cursor.rowcount == 0:
            conn.rollback()
            logger.info("Insufficient tokens for user %s: required %s", user_id, from_units(units))
            return False
        _record(conn, user_id, "spend", units, reference)
        conn.commit()
    except sqlite3.IntegrityError:
        conn.rollback()
        logger.warning("Tokens already spent for %s (user %s)", reference, user_id)
        return False
    logger.info("Spent %s tokens for user %s (%s)", from_units(units), user_id, reference or "-")
    return True


def refund_tokens(user_id: str, amount, reference: str = "") -> bool:
    """Return tokens to a user after failed paid work or an approved report.

    With a reference the refund happens at most once; repeated calls
    return False and leave the balance unchanged.
    """
    units = to_units(amount)
    if units <= 0:
        return False
    conn = _get_conn()
    try:
        credited = credit_in_transaction(conn, user_id, units, "refund", reference)
        if not credited:
            conn.rollback()
            logger.warning("Refund skipped: user %s not found", user_id)
            return False
        conn.commit()
    except sqlite3.IntegrityError:
        conn.rollback()
        logger.warning("Refund already issued for %s (user %s)", reference, user_id)
        return False
    logger.info("Refunded %s tokens to user %s (%s)", from_units(units), user_id, reference or "-")
    return True


def add_tokens(user_id: str, amount, reference: str = "") -> bool:
    """Grant tokens (signup bonus, admin top-up)."""
    units = to_units(amount)
    if units <= 0:
        raise ValueError(f"Grant amount must be positive, got {amount}")
    conn = _get_conn()
    try:
        credited = credit_in_transaction(conn, user_id, units, "grant", reference)
        if not credited:
            conn.rollback()
            return False
        conn.commit()
    except sqlite3.IntegrityError:
        conn.rollback()
        logger.warning("Grant already issued for %s (user %s)", reference, user_id)
        return False
    logger.info("Granted %s tokens to user %s", from_units(units), user_id)
    return True


def has_transaction(user_id: str, kind: str, reference: str) -> bool:
    conn = _get_conn()
    row = conn.execute(
        "SELECT 1 FROM token_transactions WHERE user_id = ? AND kind = ? AND reference = ?",
        (user_id, kind, reference),
    ).fetchone()
    return row is not None


def list_transactions(user_id: str, limit: int = 50) -> list[TokenTransaction]:
    """A user's ledger history, newest first."""
    conn = _get_conn()
    rows = conn.execute(
        "SELECT * FROM token_transactions WHERE user_id = ? ORDER BY created_at DESC LIMIT ?",
        (user_id, limit),
    ).fetchall()
    return [TokenTransaction(**dict(row)) for row in rows]
