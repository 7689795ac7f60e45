"""FastAPI application for interview preparation.

Provides:
- User registration and authentication with a starting token balance
- Interview records and their generated Q&A versions
- Paid generation jobs: dispatch, status polling, cancellation
- The signed webhook the queue calls to run a job
- Reports on bad content, with per-item refunds by admins
"""

from __future__ import annotations

import logging
import os
import re
from decimal import Decimal, InvalidOperation

from fastapi import Depends, FastAPI
from fastapi.responses import JSONResponse

from interview_coach.web.auth import (
    clear_session_cookie,
    create_session_token,
    hash_password,
    set_session_cookie,
    verify_password,
)
from interview_coach.web.dispatcher import DispatchError, dispatch_job
from interview_coach.web.interviews import (
    INTERVIEW_FIELDS,
    create_interview,
    delete_interview,
    get_default_qa,
    get_interview,
    init_interviews_db,
    list_interviews,
    list_qas,
    set_default_qa,
    update_interview,
)
from interview_coach.web.jobs import (
    JOB_TYPE_ALIASES,
    cancel_job,
    count_jobs_by_status,
    get_active_job,
    get_job,
    init_db,
    list_active_jobs,
    list_jobs,
)
from interview_coach.web.middleware import get_current_user, require_admin, require_user, verified_delivery
from interview_coach.web.notifications import (
    count_unread,
    init_notifications_db,
    list_notifications,
    mark_all_read,
    mark_read,
)
from interview_coach.web.queue import get_queue
from interview_coach.web.reports import (
    ReportError,
    create_report,
    get_report,
    init_reports_db,
    list_all_reports,
    list_reports,
    refund_report_item,
    update_report,
)
from interview_coach.web.tokens import add_tokens, init_tokens_db, list_transactions
from interview_coach.web.users import (
    User,
    create_user,
    get_user,
    get_user_by_email,
    init_users_db,
    list_users,
    update_user,
)
from interview_coach.web.worker import handle_delivery, sweep_stale_jobs

logger = logging.getLogger(__name__)

SIGNUP_TOKENS = os.environ.get("SIGNUP_TOKENS", "10")

app = FastAPI(title="Interview Coach", version="0.1.0")


@app.on_event("startup")
def startup():
    init_db()
    init_users_db()
    init_tokens_db()
    init_interviews_db()
    init_reports_db()
    init_notifications_db()


def _check_admin_promotion(user: User) -> User:
    """Auto-promote user to admin if their email is in ADMIN_EMAILS."""
    admin_emails_raw = os.environ.get("ADMIN_EMAILS", "")
    admin_emails = {e.strip().lower() for e in admin_emails_raw.split(",") if e.strip()}
    if user.email.lower() in admin_emails and not user.is_admin:
        updated = update_user(user.id, is_admin=True)
        if updated:
            return updated
    return user


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def _parse_amount(value) -> Decimal | None:
    """Positive token amount from a request value, or None."""
    if isinstance(value, bool) or value is None:
        return None
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        return None
    return amount if amount.is_finite() and amount > 0 else None


@app.get("/api/health")
async def health():
    return {"status": "ok"}


# ── Auth endpoints ───────────────────────────────────────────────

@app.post("/api/auth/register")
async def register(data: dict):
    """Register a new user with email + password and grant the signup tokens."""
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    display_name = (data.get("display_name") or "").strip()

    if not email or not password:
        return _error(400, "Email and password are required")
    if not re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email):
        return _error(400, "Invalid email address")
    if len(password) < 8:
        return _error(400, "Password must be at least 8 characters")
    if get_user_by_email(email):
        return _error(409, "An account with this email already exists")

    user = create_user(email=email, password_hash=hash_password(password),
                       display_name=display_name or email.split("@")[0])
    signup_amount = _parse_amount(SIGNUP_TOKENS)
    if signup_amount:
        add_tokens(user.id, signup_amount, reference="signup")
    user = _check_admin_promotion(get_user(user.id))

    response = JSONResponse(content={"user": user.to_dict()})
    set_session_cookie(response, create_session_token(user.id, user.email))
    return response


@app.post("/api/auth/login")
async def login(data: dict):
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""

    if not email or not password:
        return _error(400, "Email and password are required")

    user = get_user_by_email(email)
    if not user or not user.password_hash or not verify_password(password, user.password_hash):
        return _error(401, "Invalid email or password")

    user = _check_admin_promotion(user)
    response = JSONResponse(content={"user": user.to_dict()})
    set_session_cookie(response, create_session_token(user.id, user.email))
    return response


@app.post("/api/auth/logout")
async def logout():
    response = JSONResponse(content={"ok": True})
    clear_session_cookie(response)
    return response


@app.get("/api/auth/me")
async def me(user: User | None = Depends(get_current_user)):
    if not user:
        return _error(401, "Not authenticated")
    return {"user": user.to_dict(), "unread_notifications": count_unread(user.id)}


# ── Interviews ───────────────────────────────────────────────────

@app.post("/api/interviews")
async def create_interview_endpoint(data: dict, user: User = Depends(require_user)):
    fields = {k: v for k, v in data.items() if k in INTERVIEW_FIELDS and isinstance(v, str)}
    interview = create_interview(user.id, **fields)
    return {"interview": interview.to_dict()}


@app.get("/api/interviews")
async def list_interviews_endpoint(user: User = Depends(require_user)):
    return {"interviews": [i.to_dict() for i in list_interviews(user.id)]}


@app.get("/api/interviews/{interview_id}")
async def get_interview_endpoint(interview_id: str, user: User = Depends(require_user)):
    interview = get_interview(interview_id, user.id)
    if not interview:
        return _error(404, "Interview not found")
    return {
        "interview": interview.to_dict(),
        "missing_fields": interview.missing_required_fields(),
    }


@app.patch("/api/interviews/{interview_id}")
async def update_interview_endpoint(interview_id: str, data: dict, user: User = Depends(require_user)):
    if not get_interview(interview_id, user.id):
        return _error(404, "Interview not found")
    fields = {k: v for k, v in data.items() if k in INTERVIEW_FIELDS and isinstance(v, str)}
    if not fields:
        return _error(400, "No valid fields to update")
    return {"interview": update_interview(interview_id, **fields).to_dict()}


@app.delete("/api/interviews/{interview_id}")
async def delete_interview_endpoint(interview_id: str, user: User = Depends(require_user)):
    if not get_interview(interview_id, user.id):
        return _error(404, "Interview not found")
    active = get_active_job(user.id)
    if active and active.interview_id == interview_id:
        return _error(409, "A generation job for this interview is still running")
    delete_interview(interview_id)
    return {"ok": True}


@app.get("/api/interviews/{interview_id}/qa")
async def get_default_qa_endpoint(interview_id: str, user: User = Depends(require_user)):
    if not get_interview(interview_id, user.id):
        return _error(404, "Interview not found")
    qa = get_default_qa(interview_id)
    return {"qa": qa.to_dict() if qa else None}


@app.get("/api/interviews/{interview_id}/qas")
async def list_qas_endpoint(interview_id: str, user: User = Depends(require_user)):
    if not get_interview(interview_id, user.id):
        return _error(404, "Interview not found")
    return {"qas": [qa.to_dict() for qa in list_qas(interview_id)]}


@app.post("/api/interviews/{interview_id}/qas/{qa_id}/default")
async def set_default_qa_endpoint(interview_id: str, qa_id: str, user: User = Depends(require_user)):
    if not get_interview(interview_id, user.id):
        return _error(404, "Interview not found")
    if not set_default_qa(interview_id, qa_id):
        return _error(404, "Q&A version not found")
    return {"qa": get_default_qa(interview_id).to_dict()}


# ── Generation jobs ──────────────────────────────────────────────

def _dispatch(user: User, interview_id: str, job_type, data) -> JSONResponse:
    if data is not None and not isinstance(data, dict):
        return _error(400, "data must be an object")
    try:
        job = dispatch_job(user.id, interview_id, job_type, data)
    except DispatchError as e:
        return JSONResponse(status_code=e.status_code, content=e.to_dict())
    return JSONResponse(content={"jobId": job.id, "createdAt": job.created_at})


@app.post("/api/interviews/{interview_id}/qa")
def dispatch_for_interview(interview_id: str, data: dict, user: User = Depends(require_user)):
    """Start a generation job for an interview. Returns immediately."""
    return _dispatch(user, interview_id, data.get("type"), data.get("data"))


@app.post("/api/jobs")
def dispatch_endpoint(data: dict, user: User = Depends(require_user)):
    interview_id = data.get("interviewId") or ""
    if not interview_id:
        return _error(400, "interviewId is required")
    return _dispatch(user, interview_id, data.get("type"), data.get("data"))


@app.get("/api/jobs")
async def list_jobs_endpoint(user: User = Depends(require_user)):
    return {"jobs": [j.to_dict() for j in list_jobs(user.id)]}


@app.get("/api/jobs/active")
async def list_active_jobs_endpoint(user: User = Depends(require_user)):
    return {"jobs": [j.to_dict() for j in list_active_jobs(user.id)]}


@app.post("/api/jobs/cancel")
def cancel_job_endpoint(data: dict, user: User = Depends(require_user)):
    """Cancel a queued job. Jobs the worker has claimed cannot be cancelled."""
    job_id = data.get("jobId") or ""
    job = get_job(job_id) if job_id else None
    if not job or job.user_id != user.id:
        return _error(404, "Job not found")
    if job.status == "processing":
        return _error(409, "Job is already being processed")
    if job.is_terminal:
        return _error(409, f"Job already {job.status}")

    if not cancel_job(job.id):
        # Claimed by the worker between the read and the update
        return _error(409, "Job is already being processed")

    if job.message_id:
        try:
            get_queue().delete(job.message_id)
        except Exception:
            logger.exception("Failed to remove queue message for cancelled job %s", job.id)
    logger.info("User %s cancelled job %s", user.id, job.id)
    return {"ok": True, "job": get_job(job.id).to_dict()}


@app.get("/api/jobs/{job_id}")
async def get_job_endpoint(job_id: str, user: User = Depends(require_user)):
    job = get_job(job_id)
    if not job or job.user_id != user.id:
        return _error(404, "Job not found")
    return {"job": job.to_dict()}


@app.post("/api/process/{job_type}")
def process_webhook(job_type: str, payload: dict = Depends(verified_delivery)):
    """Queue callback. Runs the job synchronously within this request."""
    name = job_type.replace("-", "_")
    name = JOB_TYPE_ALIASES.get(name, name)
    result = handle_delivery(payload, expected_type=name)
    return JSONResponse(status_code=result.status_code, content=result.body)


# ── Tokens and notifications ─────────────────────────────────────

@app.get("/api/tokens")
async def get_tokens(user: User = Depends(require_user)):
    return {
        "tokens": float(user.tokens),
        "transactions": [t.to_dict() for t in list_transactions(user.id)],
    }


@app.get("/api/notifications")
async def get_notifications(unread: bool = False, user: User = Depends(require_user)):
    items = list_notifications(user.id, unread_only=unread)
    return {"notifications": [n.to_dict() for n in items], "unread": count_unread(user.id)}


@app.post("/api/notifications/mark-read")
async def mark_notifications_read(data: dict, user: User = Depends(require_user)):
    ids = data.get("ids") or []
    if not isinstance(ids, list) or not all(isinstance(i, str) for i in ids):
        return _error(400, "ids must be a list of notification IDs")
    return {"updated": mark_read(user.id, ids)}


@app.post("/api/notifications/mark-all-read")
async def mark_all_notifications_read(user: User = Depends(require_user)):
    return {"updated": mark_all_read(user.id)}


# ── Reports ──────────────────────────────────────────────────────

@app.post("/api/reports")
async def create_report_endpoint(data: dict, user: User = Depends(require_user)):
    try:
        report = create_report(
            user.id,
            data.get("qaId") or "",
            data.get("selectedQuestions"),
            data.get("selectedAnswers"),
            data.get("description") or "",
        )
    except ReportError as e:
        return _error(e.status_code, str(e))
    return {"report": report.to_dict()}


@app.get("/api/reports")
async def list_reports_endpoint(user: User = Depends(require_user)):
    return {"reports": [r.to_dict() for r in list_reports(user.id)]}


@app.get("/api/reports/{report_id}")
async def get_report_endpoint(report_id: str, user: User = Depends(require_user)):
    report = get_report(report_id)
    if not report or report.user_id != user.id:
        return _error(404, "Report not found")
    return {"report": report.to_dict()}


# ── Admin endpoints ──────────────────────────────────────────────

@app.get("/api/admin/users")
async def admin_list_users(admin: User = Depends(require_admin)):
    return {"users": [u.to_dict() for u in list_users()]}


@app.post("/api/admin/users/{user_id}/tokens")
async def admin_grant_tokens(user_id: str, data: dict, admin: User = Depends(require_admin)):
    """Add tokens to a user's balance through the ledger."""
    if not get_user(user_id):
        return _error(404, "User not found")
    amount = _parse_amount(data.get("amount"))
    if amount is None:
        return _error(400, "amount must be a positive number")
    add_tokens(user_id, amount)
    logger.info("Admin %s granted %s tokens to %s", admin.id, amount, user_id)
    return {"user": get_user(user_id).to_dict()}


@app.get("/api/admin/reports")
async def admin_list_reports(status: str | None = None, admin: User = Depends(require_admin)):
    return {"reports": [r.to_dict() for r in list_all_reports(status)]}


@app.get("/api/admin/reports/{report_id}")
async def admin_get_report(report_id: str, admin: User = Depends(require_admin)):
    report = get_report(report_id)
    if not report:
        return _error(404, "Report not found")
    return {"report": report.to_dict()}


@app.patch("/api/admin/reports/{report_id}")
async def admin_update_report(report_id: str, data: dict, admin: User = Depends(require_admin)):
    try:
        report = update_report(report_id, status=data.get("status"), admin_response=data.get("admin_response"))
    except ReportError as e:
        return _error(e.status_code, str(e))
    return {"report": report.to_dict()}


@app.post("/api/admin/reports/{report_id}/refund")
async def admin_refund_report_item(report_id: str, data: dict, admin: User = Depends(require_admin)):
    """Refund one reported question/answer. A second refund of the same item is a 409."""
    index = data.get("index")
    if not isinstance(index, int) or isinstance(index, bool):
        return _error(400, "index must be an integer")
    try:
        report, amount = refund_report_item(
            report_id, data.get("itemType") or "", data.get("category") or "", index,
        )
    except ReportError as e:
        return _error(e.status_code, str(e))
    return {"report": report.to_dict(), "refunded": float(amount)}


@app.post("/api/admin/jobs/sweep")
async def admin_sweep_jobs(data: dict | None = None, admin: User = Depends(require_admin)):
    """Fail and refund jobs stuck in processing."""
    minutes = (data or {}).get("minutes")
    if minutes is not None and (not isinstance(minutes, int) or minutes < 1):
        return _error(400, "minutes must be a positive integer")
    swept = sweep_stale_jobs(minutes) if minutes else sweep_stale_jobs()
    return {"swept": swept}


@app.get("/api/admin/stats")
async def admin_stats(admin: User = Depends(require_admin)):
    users = list_users()
    return {
        "total_users": len(users),
        "tokens_outstanding": float(sum((u.tokens for u in users), Decimal("0"))),
        "jobs_by_status": count_jobs_by_status(),
        "pending_reports": len(list_all_reports("pending")),
    }
