"""
Trigger rule engine models.

Models:
    - TriggerDefinition: standing rule mapping an event type + conditions to an action
    - TriggerDispatch: dispatch log, one row per (event key, trigger)
    - SystemEvent: each distinct event the engine has received
"""

from datetime import datetime, timezone

from app.models import db


# ── Constants ────────────────────────────────────────────────────────────────

EVENT_TYPES = frozenset({
    # invoices
    "invoice.created", "invoice.sent", "invoice.viewed", "invoice.paid", "invoice.overdue",
    "invoice.approved", "invoice.rejected", "invoice.revision_requested",
    # contracts
    "contract.created", "contract.sent", "contract.signed", "contract.expired",
    "contract.approved", "contract.rejected", "contract.revision_requested",
    # projects
    "project.created", "project.status_changed", "project.completed", "project.milestone_completed",
    "project.approved", "project.rejected", "project.revision_requested",
    # clients
    "client.created", "client.updated",
    # proposals
    "proposal.created", "proposal.sent", "proposal.viewed", "proposal.accepted",
    "proposal.rejected", "proposal.approved", "proposal.revision_requested",
    # leads
    "lead.created", "lead.converted", "lead.lost",
    # deliverables
    "deliverable.created", "deliverable.submitted", "deliverable.approved",
    "deliverable.rejected", "deliverable.revision_requested",
    # tasks
    "task.created", "task.completed", "task.overdue",
    # messaging / files
    "message.received", "file.uploaded",
    # approval engine
    "approval.reminder", "approval.escalated",
})

ACTION_TYPES = frozenset({"send_email", "create_task", "update_status", "webhook", "notify"})

DISPATCH_STATUSES = frozenset({"running", "success", "failed", "skipped"})


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


class TriggerDefinition(db.Model):
    """
    Automation rule.

    ``conditions`` holds the normalized condition tree produced by
    ``app.services.conditions.parse_conditions`` at save time.
    Lower ``priority`` runs first; ties break on creation time.
    """

    __tablename__ = "workflow_triggers"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    event_type = db.Column(db.String(60), nullable=False, index=True)
    conditions = db.Column(db.JSON, nullable=False, default=list)
    action_type = db.Column(db.String(30), nullable=False)
    action_config = db.Column(db.JSON, nullable=False, default=dict)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    priority = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        db.Index("ix_trigger_event_active", "event_type", "is_active", "priority"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "event_type": self.event_type,
            "conditions": self.conditions or [],
            "action_type": self.action_type,
            "action_config": self.action_config or {},
            "is_active": self.is_active,
            "priority": self.priority,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<TriggerDefinition {self.id}: {self.event_type} -> {self.action_type}>"


class TriggerDispatch(db.Model):
    """
    Dispatch log row.

    The unique (event_key, trigger_id) pair is the dedupe key: a second
    insert for the same pair fails, so a redelivered event never fires the
    same trigger twice.
    """

    __tablename__ = "trigger_dispatch_log"

    id = db.Column(db.Integer, primary_key=True)
    trigger_id = db.Column(
        db.Integer, db.ForeignKey("workflow_triggers.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    event_key = db.Column(db.String(64), nullable=False)
    event_type = db.Column(db.String(60), nullable=False)
    entity_id = db.Column(db.String(64), nullable=True)
    action_type = db.Column(db.String(30), nullable=True)
    status = db.Column(db.String(20), nullable=False, default="running",
                       comment="running | success | failed | skipped")
    result = db.Column(db.JSON, nullable=True)
    error_message = db.Column(db.Text, nullable=True)
    execution_time_ms = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow, index=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    __table_args__ = (
        db.UniqueConstraint("event_key", "trigger_id", name="uq_trigger_dispatch_event"),
        db.Index("ix_trigger_dispatch_status", "status", "created_at"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "trigger_id": self.trigger_id,
            "event_key": self.event_key,
            "event_type": self.event_type,
            "entity_id": self.entity_id,
            "action_type": self.action_type,
            "status": self.status,
            "result": self.result,
            "error_message": self.error_message,
            "execution_time_ms": self.execution_time_ms,
            "created_at": _iso(self.created_at),
            "completed_at": _iso(self.completed_at),
        }


class SystemEvent(db.Model):
    """Event received by the engine, stored once per idempotency key."""

    __tablename__ = "system_events"

    id = db.Column(db.Integer, primary_key=True)
    event_key = db.Column(db.String(64), nullable=False, unique=True)
    event_type = db.Column(db.String(60), nullable=False, index=True)
    entity_type = db.Column(db.String(30), nullable=False)
    entity_id = db.Column(db.String(64), nullable=True)
    payload = db.Column(db.JSON, nullable=False, default=dict)
    triggered_by = db.Column(db.String(150), default="system")
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        db.Index("ix_system_event_entity", "entity_type", "entity_id"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "event_key": self.event_key,
            "event_type": self.event_type,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "payload": self.payload or {},
            "triggered_by": self.triggered_by,
            "occurred_at": _iso(self.occurred_at),
            "created_at": _iso(self.created_at),
        }
