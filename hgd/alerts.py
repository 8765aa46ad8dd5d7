from __future__ import annotations

import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any

import httpx

from .settings import settings


def send_email(subject: str, body: str) -> bool:
    """Send an email if SMTP settings are configured.

    Environment variables:
      - HGD_ENABLE_EMAIL=true
      - HGD_SMTP_HOST / HGD_SMTP_PORT
      - HGD_SMTP_USER / HGD_SMTP_PASSWORD
      - HGD_EMAIL_FROM / HGD_EMAIL_TO
    """
    if not settings.enable_email:
        return False
    if not all(
        [
            settings.smtp_host,
            settings.smtp_port,
            settings.smtp_user,
            settings.smtp_password,
            settings.email_from,
            settings.email_to,
        ]
    ):
        return False

    try:
        msg = MIMEMultipart()
        msg["From"] = settings.email_from
        msg["To"] = settings.email_to
        msg["Subject"] = subject
        msg.attach(MIMEText(body, "plain"))

        server = smtplib.SMTP(settings.smtp_host, settings.smtp_port)
        server.starttls()
        server.login(settings.smtp_user, settings.smtp_password)
        server.sendmail(settings.email_from, [settings.email_to], msg.as_string())
        server.quit()
        return True
    except (smtplib.SMTPException, OSError):
        return False


def post_webhook(payload: dict[str, Any], transport: httpx.BaseTransport | None = None) -> bool:
    """POST a JSON payload to HGD_WEBHOOK_URL. Returns False when unset or on any HTTP error."""
    if not settings.webhook_url:
        return False
    try:
        with httpx.Client(timeout=settings.webhook_timeout_s, transport=transport) as client:
            resp = client.post(settings.webhook_url, json=payload)
        return resp.is_success
    except httpx.HTTPError:
        return False


def outcome_summary(attempt: Any) -> dict[str, Any]:
    release = attempt.release
    return {
        "message": f"Deployment to {release.environment} ended {attempt.state.value}",
        "attempt_id": attempt.id,
        "environment": release.environment,
        "image": release.artifact_ref,
        "strategy": release.strategy.value,
        "outcome": attempt.outcome.value if attempt.outcome else None,
        "cause": attempt.cause,
        "backup_ref": attempt.backup_ref,
    }


def notify_outcome(attempt: Any) -> bool:
    """Tell people a deployment finished. True if any channel accepted the message."""
    summary = outcome_summary(attempt)
    icon = {"success": "✅", "rolledBack": "↩️"}.get(summary["outcome"], "🚨")
    subject = f"{icon} {summary['environment']}: {summary['image']} {attempt.state.value}"
    lines = [f"{k}: {v}" for k, v in summary.items() if v is not None]
    if attempt.state.value == "FAILED" and attempt.backup_ref:
        lines.append(f"Manual recovery: restore backup {attempt.backup_ref}")
    sent_email = send_email(subject, "\n".join(lines))
    sent_hook = post_webhook(summary)
    return sent_email or sent_hook
