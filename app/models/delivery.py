"""
Webhook delivery models.

Models:
    - WebhookDestination: outbound endpoint with its signing keyring
    - DeliveryRecord: one delivery of one payload to one destination (with retries)
    - DeliveryAttempt: one transport call made for a DeliveryRecord

Secrets are stored Fernet-encrypted (see app.utils.crypto); plaintext never
touches the database.
"""

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from app.models import db

DELIVERY_STATUSES = frozenset({"pending", "success", "failed", "abandoned"})
HTTP_METHODS = frozenset({"POST", "PUT", "PATCH"})


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


class WebhookDestination(db.Model):
    """External endpoint that receives signed event payloads."""

    __tablename__ = "webhook_destinations"

    id = Column(Integer, primary_key=True)
    name = Column(String(200), nullable=False)
    url = Column(String(1000), nullable=False, comment="May contain {{path}} tokens")
    method = Column(String(10), nullable=False, default="POST")
    headers = Column(JSON, default=dict)
    payload_template = Column(JSON, nullable=True, comment="Optional data template with {{path}} tokens")

    secret_encrypted = Column(Text, nullable=False)
    previous_secret_encrypted = Column(Text, nullable=True)
    previous_secret_expires_at = Column(DateTime(timezone=True), nullable=True)
    secret_rotated_at = Column(DateTime(timezone=True), nullable=True)

    max_attempts = Column(Integer, nullable=True, comment="NULL = WEBHOOK_MAX_ATTEMPTS")
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    deliveries = relationship(
        "DeliveryRecord", backref="destination", lazy="dynamic",
        cascade="all, delete-orphan",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "url": self.url,
            "method": self.method,
            "headers": self.headers or {},
            "payload_template": self.payload_template,
            "has_previous_secret": bool(self.previous_secret_encrypted),
            "previous_secret_expires_at": _iso(self.previous_secret_expires_at),
            "secret_rotated_at": _iso(self.secret_rotated_at),
            "max_attempts": self.max_attempts,
            "is_active": self.is_active,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class DeliveryRecord(db.Model):
    """
    Durable state of one payload delivery.

    ``payload_body`` is the exact byte sequence that was signed, so the stored
    signature can be re-verified without re-serializing ``payload``.
    """

    __tablename__ = "webhook_deliveries"

    id = Column(Integer, primary_key=True)
    destination_id = Column(
        Integer, ForeignKey("webhook_destinations.id", ondelete="CASCADE"), nullable=False,
    )
    event_key = Column(String(64), nullable=True, index=True)
    trigger_id = Column(Integer, nullable=True)
    event_type = Column(String(60), nullable=False, default="")
    url = Column(String(1000), nullable=False)

    payload = Column(JSON, nullable=False)
    payload_body = Column(Text, nullable=False)
    signature = Column(String(128), nullable=False)
    unresolved_tokens = Column(JSON, default=list)

    status = Column(String(20), nullable=False, default="pending",
                    comment="pending | success | failed | abandoned")
    attempt_count = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=5)
    last_error = Column(Text, nullable=True)
    response_status = Column(Integer, nullable=True)
    response_body = Column(Text, nullable=True)
    last_latency_ms = Column(Integer, nullable=True)
    next_retry_at = Column(DateTime(timezone=True), nullable=True)
    locked_until = Column(DateTime(timezone=True), nullable=True, comment="Attempt lease held by a worker")
    delivered_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    attempts = relationship(
        "DeliveryAttempt", backref="delivery", cascade="all, delete-orphan",
        order_by="DeliveryAttempt.attempt_no",
    )

    __table_args__ = (
        Index("ix_delivery_sweep", "destination_id", "status", "next_retry_at"),
        Index("ix_delivery_due", "status", "next_retry_at"),
        UniqueConstraint("destination_id", "event_key", name="uq_delivery_destination_event"),
    )

    def to_dict(self, include_attempts=False):
        d = {
            "id": self.id,
            "destination_id": self.destination_id,
            "event_key": self.event_key,
            "trigger_id": self.trigger_id,
            "event_type": self.event_type,
            "url": self.url,
            "payload": self.payload,
            "signature": self.signature,
            "unresolved_tokens": self.unresolved_tokens or [],
            "status": self.status,
            "attempt_count": self.attempt_count,
            "max_attempts": self.max_attempts,
            "last_error": self.last_error,
            "response_status": self.response_status,
            "last_latency_ms": self.last_latency_ms,
            "next_retry_at": _iso(self.next_retry_at),
            "delivered_at": _iso(self.delivered_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_attempts:
            d["attempts"] = [a.to_dict() for a in self.attempts]
        return d


class DeliveryAttempt(db.Model):
    """One transport call. ``attempt_no`` is unique per delivery."""

    __tablename__ = "webhook_delivery_attempts"

    id = Column(Integer, primary_key=True)
    delivery_id = Column(
        Integer, ForeignKey("webhook_deliveries.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    destination_id = Column(Integer, nullable=False)
    attempt_no = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, comment="success | failed")
    response_status = Column(Integer, nullable=True)
    error = Column(Text, nullable=True)
    latency_ms = Column(Integer, nullable=True)
    attempted_at = Column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint("delivery_id", "attempt_no", name="uq_delivery_attempt_no"),
        Index("ix_delivery_attempt_window", "destination_id", "attempted_at"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "delivery_id": self.delivery_id,
            "attempt_no": self.attempt_no,
            "status": self.status,
            "response_status": self.response_status,
            "error": self.error,
            "latency_ms": self.latency_ms,
            "attempted_at": _iso(self.attempted_at),
        }
