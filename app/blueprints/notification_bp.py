"""
Notification & Scheduling Blueprint.

Provides:
    - In-app notifications (list, read, read-all, stats)
    - Scheduled job management (list, status, trigger, toggle)
    - Email log viewing
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from app.models import db
from app.models.notification import Notification
from app.models.scheduling import EmailLog, ScheduledJob
from app.services.notification import NotificationService
from app.services.scheduler_service import SchedulerService
from app.utils.errors import E, api_error

logger = logging.getLogger(__name__)

notification_bp = Blueprint("notification_bp", __name__, url_prefix="/api/v1")


def _current_user():
    return request.headers.get("X-User", "") or "all"


# ═══════════════════════════════════════════════════════════════════════════
#  NOTIFICATIONS
# ═══════════════════════════════════════════════════════════════════════════

@notification_bp.route("/notifications", methods=["GET"])
def list_notifications():
    """List notifications for a recipient (query ``recipient`` or the X-User header)."""
    recipient = request.args.get("recipient") or _current_user()
    items, total = NotificationService.list_for_recipient(
        recipient=recipient,
        unread_only=request.args.get("unread_only") == "true",
        category=request.args.get("category"),
        limit=request.args.get("limit", 50, type=int),
        offset=request.args.get("offset", 0, type=int),
    )
    return jsonify({"items": [n.to_dict() for n in items], "total": total})


@notification_bp.route("/notifications/<int:nid>", methods=["GET"])
def get_notification(nid):
    """Get a single notification by ID."""
    notif = db.session.get(Notification, nid)
    if not notif:
        return api_error(E.NOT_FOUND, "Notification not found")
    return jsonify(notif.to_dict())


@notification_bp.route("/notifications/<int:nid>/read", methods=["POST"])
def mark_notification_read(nid):
    notif = NotificationService.mark_read(nid)
    if not notif:
        return api_error(E.NOT_FOUND, "Notification not found")
    return jsonify(notif.to_dict())


@notification_bp.route("/notifications/read-all", methods=["POST"])
def mark_all_read():
    data = request.get_json(silent=True) or {}
    count = NotificationService.mark_all_read(data.get("recipient") or _current_user())
    return jsonify({"marked_read": count})


@notification_bp.route("/notifications/stats", methods=["GET"])
def notification_stats():
    """Get notification statistics for a recipient."""
    recipient = request.args.get("recipient") or _current_user()
    return jsonify(NotificationService.stats_for_recipient(recipient))


# ═══════════════════════════════════════════════════════════════════════════
#  SCHEDULED JOBS MANAGEMENT
# ═══════════════════════════════════════════════════════════════════════════

@notification_bp.route("/scheduler/jobs", methods=["GET"])
def list_scheduled_jobs():
    """List registered jobs with their persisted status."""
    jobs = SchedulerService.list_jobs()
    return jsonify({
        "jobs": jobs,
        "total": len(jobs),
        "ticker_running": SchedulerService.is_running(),
    })


@notification_bp.route("/scheduler/jobs/<job_name>", methods=["GET"])
def get_job_status(job_name):
    """Get status of a specific scheduled job."""
    job = SchedulerService.get_job_status(job_name)
    if not job:
        return api_error(E.NOT_FOUND, f"Job '{job_name}' not found")
    return jsonify(job)


@notification_bp.route("/scheduler/jobs/<job_name>/trigger", methods=["POST"])
def trigger_job(job_name):
    """Manually trigger a scheduled job."""
    result = SchedulerService.run_job(job_name)
    if result.get("status") == "error" and "Unknown job" in result.get("error", ""):
        return jsonify(result), 404
    return jsonify(result)


@notification_bp.route("/scheduler/jobs/<job_name>/toggle", methods=["PATCH"])
def toggle_job_status(job_name):
    """Enable or disable a scheduled job."""
    data = request.get_json(silent=True) or {}
    enabled = data.get("enabled")
    if enabled is None:
        return api_error(E.VALIDATION_REQUIRED, "'enabled' field is required (true/false)")

    result = SchedulerService.toggle_job(job_name, bool(enabled))
    if not result:
        return api_error(E.NOT_FOUND, f"Job '{job_name}' not found")
    return jsonify(result)


# ═══════════════════════════════════════════════════════════════════════════
#  EMAIL LOG
# ═══════════════════════════════════════════════════════════════════════════

@notification_bp.route("/email-logs", methods=["GET"])
def list_email_logs():
    """List email send logs with pagination."""
    limit = request.args.get("limit", 50, type=int)
    offset = request.args.get("offset", 0, type=int)
    status = request.args.get("status")
    trigger_id = request.args.get("trigger_id", type=int)

    q = EmailLog.query
    if status:
        q = q.filter_by(status=status)
    if trigger_id:
        q = q.filter_by(trigger_id=trigger_id)

    total = q.count()
    items = q.order_by(EmailLog.created_at.desc(), EmailLog.id.desc()).offset(offset).limit(limit).all()

    return jsonify({
        "items": [e.to_dict() for e in items],
        "total": total,
        "limit": limit,
        "offset": offset,
    })
