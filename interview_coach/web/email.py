"""Email notifications for finished generation jobs.

Uses stdlib smtplib + email. Silently skips if SMTP is not configured.
"""

from __future__ import annotations

import html
import logging
import os
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

logger = logging.getLogger(__name__)

SMTP_HOST = os.environ.get("SMTP_HOST", "")
SMTP_PORT = int(os.environ.get("SMTP_PORT", "587"))
SMTP_USER = os.environ.get("SMTP_USER", "")
SMTP_PASSWORD = os.environ.get("SMTP_PASSWORD", "")
SMTP_FROM = os.environ.get("SMTP_FROM", "")
SITE_URL = os.environ.get("SITE_URL", "http://localhost:8000")

_JOB_LABELS = {
    "questions_generated": "Interview questions",
    "answers_generated": "Interview answers",
}
_WRAPPER = (
    '<div style="font-family:-apple-system,BlinkMacSystemFont,\'Segoe UI\',sans-serif;'
    'max-width:560px;margin:0 auto;color:#1a1d23">{body}</div>'
)


def _is_configured() -> bool:
    return bool(SMTP_HOST and SMTP_FROM)


def _send(to: str, subject: str, body_html: str) -> bool:
    """Send an email. Returns True on success, False on failure."""
    if not _is_configured():
        logger.debug("SMTP not configured, skipping email to %s", to)
        return False

    msg = MIMEMultipart("alternative")
    msg["From"] = SMTP_FROM
    msg["To"] = to
    msg["Subject"] = subject
    msg.attach(MIMEText(body_html, "html"))

    try:
        with smtplib.SMTP(SMTP_HOST, SMTP_PORT, timeout=10) as server:
            server.ehlo()
            server.starttls()
            server.ehlo()
            if SMTP_USER and SMTP_PASSWORD:
                server.login(SMTP_USER, SMTP_PASSWORD)
            server.sendmail(SMTP_FROM, [to], msg.as_string())
        logger.info("Email sent to %s: %s", to, subject)
        return True
    except Exception:
        logger.exception("Failed to send email to %s", to)
        return False


def _interview_title(interview) -> str:
    parts = [p for p in (interview.company_name, interview.position) if p]
    return " / ".join(parts) or "your interview"


def send_job_complete_email(email: str, job, interview) -> bool:
    label = _JOB_LABELS.get(job.type, "Generation")
    title = _interview_title(interview)
    subject = f"{label} ready: {title}"
    link = f"{SITE_URL}/interviews/{interview.id}"
    body = (
        f'<h2 style="color:#16a34a">{label} ready</h2>'
        f"<p>Your {label.lower()} for <strong>{html.escape(title)}</strong> have been generated.</p>"
        f'<p><a href="{link}" style="color:#2563eb">Open the interview</a> to review them.</p>'
    )
    return _send(email, subject, _WRAPPER.format(body=body))


def send_job_failed_email(email: str, job, interview, error: str = "") -> bool:
    label = _JOB_LABELS.get(job.type, "Generation")
    title = _interview_title(interview)
    subject = f"{label} failed: {title}"
    snippet = (error or job.error_message or "Unknown error")[:200]
    body = (
        f'<h2 style="color:#dc2626">{label} failed</h2>'
        f"<p>We could not generate {label.lower()} for <strong>{html.escape(title)}</strong>.</p>"
        '<p style="background:#fef2f2;border:1px solid #fecaca;border-radius:6px;padding:0.75rem;'
        f'font-size:0.85rem;color:#991b1b">{html.escape(snippet)}</p>'
        "<p>Any tokens spent on this request were returned to your balance.</p>"
    )
    return _send(email, subject, _WRAPPER.format(body=body))
