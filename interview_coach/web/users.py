"""User management with SQLite.

Handles user accounts and admin flags. The token balance column lives on
the users row but is only ever changed through tokens.py.
Same thread-local connection pattern as jobs.py.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

from interview_coach.web.jobs import _get_conn


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    display_name: str
    created_at: str
    updated_at: str
    is_admin: bool = False
    token_balance: int = 0  # hundredths of a token
    tokens_used: int = 0

    @property
    def tokens(self) -> Decimal:
        return Decimal(self.token_balance) / 100

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "display_name": self.display_name,
            "created_at": self.created_at,
            "is_admin": self.is_admin,
            "tokens": float(self.tokens),
            "tokens_used": float(Decimal(self.tokens_used) / 100),
        }


def init_users_db() -> None:
    """Create the users table. Balances are non-negative by constraint."""
    conn = _get_conn()
    conn.execute("""
        CREATE TABLE IF NOT EXISTS users (
            id TEXT PRIMARY KEY,
            email TEXT NOT NULL UNIQUE,
            password_hash TEXT DEFAULT '',
            display_name TEXT DEFAULT '',
            is_admin BOOLEAN DEFAULT 0,
            token_balance INTEGER DEFAULT 0 CHECK (token_balance >= 0),
            tokens_used INTEGER DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """)
    conn.commit()


def _row_to_user(row) -> User:
    d = dict(row)
    d["is_admin"] = bool(d.get("is_admin", 0))
    d.setdefault("token_balance", 0)
    d.setdefault("tokens_used", 0)
    return User(**d)


def create_user(email: str, password_hash: str = "", display_name: str = "") -> User:
    """Create a new user with an empty balance. Returns the created User."""
    conn = _get_conn()
    user_id = uuid.uuid4().hex[:12]
    now = datetime.now(timezone.utc).isoformat()
    conn.execute(
        """INSERT INTO users (id, email, password_hash, display_name, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (user_id, email, password_hash, display_name, now, now),
    )
    conn.commit()
    return get_user(user_id)  # type: ignore[return-value]


def get_user(user_id: str) -> User | None:
    """Get a user by ID."""
    conn = _get_conn()
    row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
    return _row_to_user(row) if row else None


def get_user_by_email(email: str) -> User | None:
    """Get a user by email (case-insensitive)."""
    conn = _get_conn()
    row = conn.execute(
        "SELECT * FROM users WHERE LOWER(email) = LOWER(?)", (email,)
    ).fetchone()
    return _row_to_user(row) if row else None


def update_user(user_id: str, **kwargs) -> User | None:
    """Update profile fields. Balance columns are rejected."""
    if "token_balance" in kwargs or "tokens_used" in kwargs:
        raise ValueError("Token balance can only change through the token ledger")
    conn = _get_conn()
    kwargs["updated_at"] = datetime.now(timezone.utc).isoformat()

    sets = ", ".join(f"{k} = ?" for k in kwargs)
    values = list(kwargs.values()) + [user_id]
    conn.execute(f"UPDATE users SET {sets} WHERE id = ?", values)
    conn.commit()
    return get_user(user_id)


def list_users() -> list[User]:
    """Return all users, newest first."""
    conn = _get_conn()
    rows = conn.execute("SELECT * FROM users ORDER BY created_at DESC").fetchall()
    return [_row_to_user(row) for row in rows]
