"""Tests for users, session tokens and notifications."""

from datetime import datetime, timedelta, timezone

import jwt
import pytest

from interview_coach.web.auth import (
    JWT_ALGORITHM,
    JWT_SECRET,
    create_session_token,
    decode_session_token,
    hash_password,
    verify_password,
)
from interview_coach.web.notifications import (
    count_unread,
    create_notification,
    list_notifications,
    mark_all_read,
    mark_read,
    notify,
)
from interview_coach.web.users import create_user, get_user_by_email, list_users, update_user


class TestPasswordHashing:
    def test_hash_and_verify(self):
        hashed = hash_password("mysecretpassword")
        assert hashed != "mysecretpassword"
        assert verify_password("mysecretpassword", hashed)
        assert not verify_password("wrong", hashed)

    def test_different_hashes_for_same_password(self):
        assert hash_password("same") != hash_password("same")  # bcrypt auto-salts


class TestSessionToken:
    def test_round_trip(self):
        payload = decode_session_token(create_session_token("user123", "user@example.com"))
        assert payload["sub"] == "user123"
        assert payload["email"] == "user@example.com"

    def test_invalid(self):
        assert decode_session_token("not.a.valid.token") is None

    def test_expired(self):
        past = datetime.now(timezone.utc) - timedelta(hours=1)
        token = jwt.encode({"sub": "u", "exp": past}, JWT_SECRET, algorithm=JWT_ALGORITHM)
        assert decode_session_token(token) is None


class TestUsers:
    def test_new_user_has_empty_balance(self):
        user = create_user(email="test@example.com", password_hash="hash123")
        assert user.token_balance == 0
        assert user.is_admin is False
        assert len(user.id) == 12

    def test_email_lookup_case_insensitive(self):
        create_user(email="Test@Example.com")
        assert get_user_by_email("test@example.com") is not None

    def test_update_profile(self):
        user = create_user(email="test@example.com")
        assert update_user(user.id, display_name="Sam", is_admin=True).is_admin is True

    def test_balance_fields_rejected(self):
        user = create_user(email="test@example.com")
        with pytest.raises(ValueError):
            update_user(user.id, tokens_used=0)

    def test_list_users(self):
        create_user(email="a@example.com")
        create_user(email="b@example.com")
        assert len(list_users()) == 2


class TestNotifications:
    def test_unread_and_mark_read(self):
        a = create_notification("u1", "questions_generated", "ready", interview_id="i1")
        create_notification("u1", "job_failed", "boom")
        assert count_unread("u1") == 2
        assert mark_read("u1", [a.id]) == 1
        assert count_unread("u1") == 1
        assert [n.type for n in list_notifications("u1", unread_only=True)] == ["job_failed"]

    def test_mark_read_scoped_to_user(self):
        n = create_notification("u1", "job_failed", "boom")
        assert mark_read("u2", [n.id]) == 0
        assert count_unread("u1") == 1

    def test_mark_all_read(self):
        create_notification("u1", "job_failed", "a")
        create_notification("u1", "job_failed", "b")
        assert mark_all_read("u1") == 2
        assert count_unread("u1") == 0

    def test_metadata_round_trip(self):
        notify("u1", "report_refund", "refunded", metadata={"refund_amount": 0.1})
        assert list_notifications("u1")[0].metadata == {"refund_amount": 0.1}
