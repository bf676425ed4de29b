"""
Email Service.

Outbound email for `send_email` trigger actions. Every message is recorded
in EmailLog; with no MAIL_SERVER configured the service runs log-only.

Configuration:
    MAIL_SERVER          SMTP host (None → log-only)
    MAIL_PORT            default 587
    MAIL_USE_TLS         STARTTLS, default true
    MAIL_USERNAME / MAIL_PASSWORD
    MAIL_DEFAULT_SENDER
"""

from __future__ import annotations

import logging
import re
import smtplib
from datetime import datetime, timezone
from email.message import EmailMessage
from email.utils import formataddr
from typing import Any

from flask import current_app

from app.models import db
from app.models.scheduling import EmailLog

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Email Templates
# ═══════════════════════════════════════════════════════════════════════════

_LAYOUT = """
<div style="font-family: -apple-system, sans-serif; max-width: 600px; margin: 0 auto;">
    <div style="background: {color}; color: white; padding: 16px 24px; border-radius: 8px 8px 0 0;">
        <h2 style="margin: 0; font-size: 18px;">{heading}</h2>
    </div>
    <div style="padding: 24px; border: 1px solid #e2e8f0; border-top: none;">
        {content}
    </div>
</div>
"""

_TEMPLATES: dict[str, dict[str, str]] = {
    "trigger_notification": {
        "subject": "{subject}",
        "heading": "{subject}",
        "content": "<p>{body}</p>",
    },
    "invoice_reminder": {
        "subject": "Reminder: invoice {invoice_number} is due",
        "heading": "Invoice {invoice_number}",
        "content": (
            "<p>Invoice <strong>{invoice_number}</strong> for {invoice_amount} "
            "is due on {invoice_due_date}.</p>"
        ),
    },
    "approval_reminder": {
        "subject": "Approval pending: {approval_entity_type} #{approval_entity_id}",
        "heading": "Your approval is waiting",
        "content": (
            "<p>The {approval_entity_type} #{approval_entity_id} has been waiting "
            "{approval_days_idle} day(s) for a decision.</p>"
        ),
    },
    "approval_escalation": {
        "subject": "Escalation: {approval_entity_type} #{approval_entity_id} has no decision",
        "heading": "Approval escalated",
        "content": (
            "<p>The {approval_entity_type} #{approval_entity_id} is still pending after "
            "{approval_reminder_count} reminder(s) to {approval_approvers}.</p>"
        ),
    },
}

SEVERITY_COLORS = {
    "info": "#3b82f6",
    "warning": "#f59e0b",
    "error": "#ef4444",
    "success": "#22c55e",
}

_TAG_RE = re.compile(r"<[^>]+>")


class _SafeDict(dict):
    """format_map context that leaves unknown ``{keys}`` in place."""

    def __missing__(self, key):
        return f"{{{key}}}"


def _build_message(sender: str, to_email: str, to_name: str | None,
                   subject: str, html_body: str) -> EmailMessage:
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = sender
    msg["To"] = formataddr((to_name, to_email)) if to_name else to_email
    msg.set_content(_TAG_RE.sub("", html_body).strip() or subject)
    msg.add_alternative(html_body, subtype="html")
    return msg


class EmailService:
    """
    Templated email for trigger actions.

    Without MAIL_SERVER every message is recorded in EmailLog as ``sent``
    and nothing leaves the process.
    """

    @staticmethod
    def is_configured() -> bool:
        return bool(current_app.config.get("MAIL_SERVER"))

    @staticmethod
    def render(template_name: str, context: dict[str, Any],
               severity: str = "info") -> tuple[str, str] | None:
        """(subject, html_body) for a named template, or None if unknown."""
        template = _TEMPLATES.get(template_name)
        if not template:
            return None
        values = _SafeDict(context)
        html_body = _LAYOUT.format(
            color=SEVERITY_COLORS.get(severity, SEVERITY_COLORS["info"]),
            heading=template["heading"].format_map(values),
            content=template["content"].format_map(values),
        )
        return template["subject"].format_map(values), html_body

    @classmethod
    def send(
        cls,
        *,
        to_email: str,
        to_name: str | None = None,
        subject: str,
        html_body: str,
        template_name: str | None = None,
        category: str = "system",
        trigger_id: int | None = None,
    ) -> EmailLog:
        """
        Record an EmailLog row and send it, or just record it in log-only mode.

        SMTP failures mark the row ``failed`` rather than raising; the caller
        decides what a failure means and commits the session.
        """
        log = EmailLog(
            recipient_email=to_email,
            recipient_name=to_name,
            subject=subject[:500],
            template_name=template_name,
            category=category,
            status="queued",
            trigger_id=trigger_id,
        )
        db.session.add(log)
        db.session.flush()

        if cls.is_configured():
            cfg = current_app.config
            msg = _build_message(
                cfg.get("MAIL_DEFAULT_SENDER") or f"noreply@{cfg['MAIL_SERVER']}",
                to_email, to_name, subject, html_body,
            )
            try:
                cls._smtp_send(msg)
            except (smtplib.SMTPException, OSError) as exc:
                log.status = "failed"
                log.error_message = str(exc)[:1000]
                logger.error("Email to %s failed: %s", to_email, exc, extra={"trigger_id": trigger_id})
                return log
        else:
            logger.info("Email (log-only): to=%s subject=%r template=%s",
                        to_email, subject, template_name, extra={"trigger_id": trigger_id})

        log.status = "sent"
        log.sent_at = datetime.now(timezone.utc)
        return log

    @staticmethod
    def _smtp_send(msg: EmailMessage) -> None:
        cfg = current_app.config
        with smtplib.SMTP(cfg["MAIL_SERVER"], cfg.get("MAIL_PORT", 587), timeout=30) as smtp:
            if cfg.get("MAIL_USE_TLS", True):
                smtp.starttls()
            if cfg.get("MAIL_USERNAME") and cfg.get("MAIL_PASSWORD"):
                smtp.login(cfg["MAIL_USERNAME"], cfg["MAIL_PASSWORD"])
            smtp.send_message(msg)
