"""FastAPI dependencies: session users and verified queue deliveries."""

from __future__ import annotations

import json
import logging

from fastapi import Cookie, Depends, Header, HTTPException, Request

from interview_coach.web.auth import COOKIE_NAME, decode_session_token
from interview_coach.web.queue import SIGNATURE_HEADER, SignatureError, verify_signature
from interview_coach.web.users import User, get_user

logger = logging.getLogger(__name__)


async def get_current_user(session: str | None = Cookie(default=None, alias=COOKIE_NAME)) -> User | None:
    """User from the session cookie, or None."""
    if not session:
        return None
    payload = decode_session_token(session)
    if not payload:
        return None
    return get_user(payload["sub"])


async def require_user(user: User | None = Depends(get_current_user)) -> User:
    if not user:
        raise HTTPException(status_code=401, detail="Authentication required")
    return user


async def require_admin(user: User = Depends(require_user)) -> User:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return user


async def verified_delivery(
    request: Request,
    signature: str | None = Header(default=None, alias=SIGNATURE_HEADER),
) -> dict:
    """Verify the queue's signature over the raw body and return the parsed JSON.

    Raises 401 before anything touches the job when verification fails.
    """
    body = await request.body()
    try:
        verify_signature(body, signature)
    except SignatureError as e:
        logger.warning("Rejected webhook delivery: %s", e)
        raise HTTPException(status_code=401, detail="Invalid signature") from e
    try:
        payload = json.loads(body or b"{}")
    except json.JSONDecodeError as e:
        raise HTTPException(status_code=400, detail="Body must be JSON") from e
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Body must be a JSON object")
    return payload
