"""
In-app notification model.

Recipients are descriptors (``user:alice``, ``role:admin``, ``client:42``)
or ``all``, which every recipient's feed includes. Written by trigger
``notify`` actions, approval reminders/escalations and delivery alerts.
"""

from datetime import datetime, timezone

from app.models import db


NOTIFICATION_CATEGORIES = {"approval", "trigger", "delivery", "task", "system"}
NOTIFICATION_SEVERITIES = {"info", "warning", "error", "success"}


class Notification(db.Model):
    """One record per recipient descriptor per occurrence."""

    __tablename__ = "notifications"
    __table_args__ = (
        db.Index("ix_notifications_recipient_unread", "recipient", "is_read"),
    )

    id = db.Column(db.Integer, primary_key=True)
    recipient = db.Column(db.String(150), default="all", index=True,
                          comment="Recipient descriptor or 'all' for broadcast")
    title = db.Column(db.String(300), nullable=False)
    message = db.Column(db.Text, default="")
    category = db.Column(db.String(30), default="system")
    severity = db.Column(db.String(20), default="info")

    # Source: approval_request, webhook_delivery, or the event's entity type
    entity_type = db.Column(db.String(30), default="")
    entity_id = db.Column(db.Integer, nullable=True)

    is_read = db.Column(db.Boolean, default=False)
    read_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    @property
    def recipient_kind(self):
        """``user`` / ``role`` / ``client`` / ``all``."""
        if not self.recipient or self.recipient == "all":
            return "all"
        return self.recipient.split(":", 1)[0]

    def mark_read(self):
        self.is_read = True
        self.read_at = datetime.now(timezone.utc)

    def to_dict(self):
        return {
            "id": self.id,
            "recipient": self.recipient,
            "recipient_kind": self.recipient_kind,
            "title": self.title,
            "message": self.message,
            "category": self.category,
            "severity": self.severity,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "is_read": self.is_read,
            "read_at": self.read_at.isoformat() if self.read_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Notification {self.id}: {self.recipient} {self.title[:40]}>"
