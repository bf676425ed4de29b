"""
Approval workflow models.

Models:
    - WorkflowDefinition: reusable approval workflow per entity type
    - WorkflowStep: ordered approver slot inside a definition
    - ApprovalRequest: one in-flight workflow instance bound to one entity
    - ApprovalRequestStep: step copy frozen into the request at creation
    - StepDecision: the single decision recorded for a request step
    - ApprovalHistory: append-only audit trail per request

Definitions are templates. A request copies the steps it was opened with so
that later edits to the definition never change in-flight requests.
"""

from datetime import datetime, timezone

from app.models import db


# ── Constants ────────────────────────────────────────────────────────────────

APPROVAL_ENTITY_TYPES = frozenset({"proposal", "invoice", "contract", "deliverable", "project"})
WORKFLOW_MODES = frozenset({"sequential", "parallel", "any_one"})
APPROVER_KINDS = frozenset({"user", "role", "client"})

REQUEST_STATUSES = frozenset({"pending", "approved", "rejected", "revision_requested", "cancelled"})
TERMINAL_STATUSES = frozenset({"approved", "rejected", "revision_requested", "cancelled"})

STEP_DECISIONS = frozenset({"approve", "reject", "revise", "skip"})

HISTORY_ACTIONS = frozenset({
    "initiated",
    "approved",
    "rejected",
    "revision_requested",
    "skipped",
    "auto_approved",
    "cancelled",
    "reminder_sent",
    "escalated",
})


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


class WorkflowDefinition(db.Model):
    """
    Approval workflow template for one entity type.

    Business rules:
    - At most one active definition is the default per entity type.
      The service clears the previous default; the partial unique index
      below guards against races.
    """

    __tablename__ = "approval_workflows"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    entity_type = db.Column(
        db.String(30), nullable=False, index=True,
        comment="proposal | invoice | contract | deliverable | project",
    )
    mode = db.Column(db.String(20), nullable=False, default="sequential",
                     comment="sequential | parallel | any_one")
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    is_default = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    steps = db.relationship(
        "WorkflowStep",
        backref="workflow",
        cascade="all, delete-orphan",
        order_by="WorkflowStep.sequence",
        lazy="selectin",
    )

    __table_args__ = (
        db.Index(
            "uq_approval_workflow_default",
            "entity_type",
            unique=True,
            sqlite_where=db.text("is_default = 1 AND is_active = 1"),
            postgresql_where=db.text("is_default AND is_active"),
        ),
    )

    def to_dict(self, include_steps=True):
        d = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "entity_type": self.entity_type,
            "mode": self.mode,
            "is_active": self.is_active,
            "is_default": self.is_default,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_steps:
            d["steps"] = [s.to_dict() for s in self.steps]
        return d

    def __repr__(self):
        return f"<WorkflowDefinition {self.id}: {self.entity_type}/{self.name}>"


class WorkflowStep(db.Model):
    """Approver slot inside a WorkflowDefinition, ordered by ``sequence``."""

    __tablename__ = "approval_workflow_steps"

    id = db.Column(db.Integer, primary_key=True)
    workflow_id = db.Column(
        db.Integer, db.ForeignKey("approval_workflows.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    sequence = db.Column(db.Integer, nullable=False)
    approver_kind = db.Column(db.String(20), nullable=False, comment="user | role | client")
    approver_value = db.Column(db.String(150), nullable=False)
    is_optional = db.Column(db.Boolean, nullable=False, default=False)
    auto_approve_after_hours = db.Column(
        db.Integer, nullable=True,
        comment="NULL = never auto-approves",
    )

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        db.UniqueConstraint("workflow_id", "sequence", name="uq_workflow_step_sequence"),
    )

    @property
    def approver(self):
        return f"{self.approver_kind}:{self.approver_value}"

    def to_dict(self):
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "sequence": self.sequence,
            "approver_kind": self.approver_kind,
            "approver_value": self.approver_value,
            "is_optional": self.is_optional,
            "auto_approve_after_hours": self.auto_approve_after_hours,
        }


class ApprovalRequest(db.Model):
    """
    One workflow instance applied to one entity.

    ``version`` is bumped on every state transition; writers compare-and-swap
    on it so two concurrent decisions cannot both land.
    ``last_activity_at`` drives reminder idleness and is only touched by
    decisions, never by reminder bookkeeping.
    """

    __tablename__ = "approval_requests"

    id = db.Column(db.Integer, primary_key=True)
    workflow_id = db.Column(
        db.Integer, db.ForeignKey("approval_workflows.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    workflow_name = db.Column(db.String(200), default="")
    mode = db.Column(db.String(20), nullable=False)
    entity_type = db.Column(db.String(30), nullable=False)
    entity_id = db.Column(db.Integer, nullable=False)

    status = db.Column(db.String(30), nullable=False, default="pending", index=True)
    current_step = db.Column(db.Integer, nullable=False, default=1,
                             comment="1-based position; meaningful for sequential only")
    version = db.Column(db.Integer, nullable=False, default=1)
    reminder_count = db.Column(db.Integer, nullable=False, default=0)

    initiated_by = db.Column(db.String(150), default="system")
    notes = db.Column(db.Text, default="")

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    last_activity_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    steps = db.relationship(
        "ApprovalRequestStep",
        backref="request",
        cascade="all, delete-orphan",
        order_by="ApprovalRequestStep.position",
        lazy="selectin",
    )
    decisions = db.relationship(
        "StepDecision",
        backref="request",
        cascade="all, delete-orphan",
        order_by="StepDecision.id",
        lazy="selectin",
    )
    history = db.relationship(
        "ApprovalHistory",
        backref="request",
        cascade="all, delete-orphan",
        order_by="ApprovalHistory.id",
        lazy="dynamic",
    )

    __table_args__ = (
        db.Index("ix_approval_request_entity", "entity_type", "entity_id"),
        db.Index(
            "uq_approval_request_open",
            "entity_type", "entity_id",
            unique=True,
            sqlite_where=db.text("status = 'pending'"),
            postgresql_where=db.text("status = 'pending'"),
        ),
    )

    @property
    def is_terminal(self):
        return self.status in TERMINAL_STATUSES

    def step_at(self, position):
        for step in self.steps:
            if step.position == position:
                return step
        return None

    def decision_for(self, step_id):
        for decision in self.decisions:
            if decision.step_id == step_id:
                return decision
        return None

    def to_dict(self, include_steps=True):
        d = {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "workflow_name": self.workflow_name,
            "mode": self.mode,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "status": self.status,
            "current_step": self.current_step,
            "version": self.version,
            "reminder_count": self.reminder_count,
            "initiated_by": self.initiated_by,
            "notes": self.notes,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "last_activity_at": _iso(self.last_activity_at),
            "completed_at": _iso(self.completed_at),
        }
        if include_steps:
            decided = {dec.step_id: dec for dec in self.decisions}
            steps = []
            for step in self.steps:
                sd = step.to_dict()
                dec = decided.get(step.id)
                sd["decision"] = dec.to_dict() if dec else None
                steps.append(sd)
            d["steps"] = steps
        return d

    def __repr__(self):
        return f"<ApprovalRequest {self.id}: {self.entity_type}/{self.entity_id} {self.status}>"


class ApprovalRequestStep(db.Model):
    """Step copied from the definition when the request was opened."""

    __tablename__ = "approval_request_steps"

    id = db.Column(db.Integer, primary_key=True)
    request_id = db.Column(
        db.Integer, db.ForeignKey("approval_requests.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    source_step_id = db.Column(db.Integer, nullable=True, comment="WorkflowStep.id at snapshot time")
    sequence = db.Column(db.Integer, nullable=False)
    position = db.Column(db.Integer, nullable=False, comment="1-based order within the request")
    approver_kind = db.Column(db.String(20), nullable=False)
    approver_value = db.Column(db.String(150), nullable=False)
    is_optional = db.Column(db.Boolean, nullable=False, default=False)
    auto_approve_after_hours = db.Column(db.Integer, nullable=True)
    activated_at = db.Column(db.DateTime(timezone=True), nullable=True,
                             comment="When the step became eligible for a decision")

    __table_args__ = (
        db.UniqueConstraint("request_id", "position", name="uq_request_step_position"),
    )

    @property
    def approver(self):
        return f"{self.approver_kind}:{self.approver_value}"

    def to_dict(self):
        return {
            "id": self.id,
            "request_id": self.request_id,
            "source_step_id": self.source_step_id,
            "sequence": self.sequence,
            "position": self.position,
            "approver_kind": self.approver_kind,
            "approver_value": self.approver_value,
            "is_optional": self.is_optional,
            "auto_approve_after_hours": self.auto_approve_after_hours,
            "activated_at": _iso(self.activated_at),
        }


class StepDecision(db.Model):
    """At most one decision per (request, step); re-decisions hit the unique key."""

    __tablename__ = "approval_step_decisions"

    id = db.Column(db.Integer, primary_key=True)
    request_id = db.Column(
        db.Integer, db.ForeignKey("approval_requests.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    step_id = db.Column(
        db.Integer, db.ForeignKey("approval_request_steps.id", ondelete="CASCADE"),
        nullable=False,
    )
    decision = db.Column(db.String(20), nullable=False, comment="approve | reject | revise | skip")
    actor = db.Column(db.String(150), nullable=False)
    comment = db.Column(db.Text, default="")
    decided_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        db.UniqueConstraint("request_id", "step_id", name="uq_step_decision"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "request_id": self.request_id,
            "step_id": self.step_id,
            "decision": self.decision,
            "actor": self.actor,
            "comment": self.comment,
            "decided_at": _iso(self.decided_at),
        }


class ApprovalHistory(db.Model):
    """Append-only audit row. Never updated."""

    __tablename__ = "approval_history"

    id = db.Column(db.Integer, primary_key=True)
    request_id = db.Column(
        db.Integer, db.ForeignKey("approval_requests.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    step_id = db.Column(db.Integer, nullable=True)
    action = db.Column(db.String(30), nullable=False)
    actor = db.Column(db.String(150), nullable=False, default="system")
    comment = db.Column(db.Text, default="")
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "request_id": self.request_id,
            "step_id": self.step_id,
            "action": self.action,
            "actor": self.actor,
            "comment": self.comment,
            "created_at": _iso(self.created_at),
        }
