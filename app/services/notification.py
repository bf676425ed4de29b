"""
Notification Service.

In-app notifications addressed to recipient descriptors (``user:<id>``,
``role:<name>``, ``client:<id>`` or ``all``). Written by `notify` trigger
actions, approval reminders/escalations and abandoned-delivery alerts;
read through the notification blueprint.
"""

from app.models import db
from app.models.notification import NOTIFICATION_CATEGORIES, NOTIFICATION_SEVERITIES, Notification
from app.utils.helpers import utcnow

TITLE_MAX = 300


def _visible_to(recipient):
    """Notifications addressed to ``recipient`` plus the ``all`` feed."""
    return Notification.query.filter(
        (Notification.recipient == recipient) | (Notification.recipient == "all")
    )


class NotificationService:
    """Stateless service class for notification operations."""

    @staticmethod
    def create(*, title, message="", category="system", severity="info",
               recipient="all", entity_type="", entity_id=None):
        """
        Create and commit one notification.

        Unknown categories and severities fall back to ``system`` / ``info``
        so an action config typo never loses the message.
        """
        notif = Notification(
            recipient=recipient or "all",
            title=(title or "")[:TITLE_MAX],
            message=message or "",
            category=category if category in NOTIFICATION_CATEGORIES else "system",
            severity=severity if severity in NOTIFICATION_SEVERITIES else "info",
            entity_type=entity_type or "",
            entity_id=entity_id,
        )
        db.session.add(notif)
        db.session.commit()
        return notif

    @staticmethod
    def list_for_recipient(recipient="all", unread_only=False, category=None,
                           limit=50, offset=0):
        """Newest first, as ``(items, total)``."""
        q = _visible_to(recipient)
        if unread_only:
            q = q.filter(Notification.is_read.is_(False))
        if category:
            q = q.filter_by(category=category)
        total = q.count()
        items = (
            q.order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset(offset).limit(limit).all()
        )
        return items, total

    @staticmethod
    def stats_for_recipient(recipient="all"):
        q = _visible_to(recipient)
        total = q.count()
        unread = q.filter(Notification.is_read.is_(False)).count()

        def _counts(column, values):
            counts = {}
            for value in sorted(values):
                n = q.filter(column == value).count()
                if n:
                    counts[value] = n
            return counts

        return {
            "total": total,
            "unread": unread,
            "read": total - unread,
            "by_category": _counts(Notification.category, NOTIFICATION_CATEGORIES),
            "by_severity": _counts(Notification.severity, NOTIFICATION_SEVERITIES),
        }

    @staticmethod
    def mark_read(notification_id):
        """Returns the notification, or None if it does not exist."""
        notif = db.session.get(Notification, notification_id)
        if notif:
            notif.mark_read()
            db.session.commit()
        return notif

    @staticmethod
    def mark_all_read(recipient="all"):
        count = (
            _visible_to(recipient)
            .filter(Notification.is_read.is_(False))
            .update({"is_read": True, "read_at": utcnow()}, synchronize_session="fetch")
        )
        db.session.commit()
        return count

    # ── Delivery alerts ───────────────────────────────────────────────────

    @staticmethod
    def alert_delivery_abandoned(record, recipient):
        """Persistent operator alert for a delivery that exhausted its attempts."""
        return NotificationService.create(
            title=f"Webhook delivery #{record.id} abandoned",
            message=(
                f"{record.event_type or 'payload'} to {record.url} failed "
                f"{record.attempt_count} times. Last error: {record.last_error or 'unknown'}"
            ),
            category="delivery",
            severity="error",
            recipient=recipient,
            entity_type="webhook_delivery",
            entity_id=record.id,
        )
