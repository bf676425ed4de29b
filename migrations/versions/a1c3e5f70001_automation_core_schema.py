"""automation_core_schema

Creates the automation core tables:
  - approval_workflows / approval_workflow_steps   — workflow templates
  - approval_requests / approval_request_steps     — in-flight instances with frozen steps
  - approval_step_decisions / approval_history     — decisions + audit trail
  - workflow_triggers / trigger_dispatch_log       — trigger rules + dispatch log
  - system_events                                  — received events by idempotency key
  - webhook_destinations / webhook_deliveries / webhook_delivery_attempts
  - notifications / scheduled_jobs / email_logs

Tables created conditionally (IF NOT EXISTS semantics) so the revision can be
stamped onto development databases that already ran db.create_all().

Revision ID: a1c3e5f70001
Revises:
Create Date: 2026-10-17 09:12:40.118204
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = 'a1c3e5f70001'
down_revision = None
branch_labels = None
depends_on = None


def _ts(name, nullable=True):
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    # ── Approval workflows ────────────────────────────────────────────────
    if "approval_workflows" not in existing:
        op.create_table(
            "approval_workflows",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column(
                "entity_type", sa.String(length=30), nullable=False,
                comment="proposal | invoice | contract | deliverable | project",
            ),
            sa.Column("mode", sa.String(length=20), nullable=False,
                      comment="sequential | parallel | any_one"),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
            _ts("created_at"),
            _ts("updated_at"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_approval_workflows_entity_type", "approval_workflows", ["entity_type"])
        op.create_index(
            "uq_approval_workflow_default", "approval_workflows", ["entity_type"],
            unique=True,
            sqlite_where=sa.text("is_default = 1 AND is_active = 1"),
            postgresql_where=sa.text("is_default AND is_active"),
        )

    if "approval_workflow_steps" not in existing:
        op.create_table(
            "approval_workflow_steps",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("workflow_id", sa.Integer(), nullable=False),
            sa.Column("sequence", sa.Integer(), nullable=False),
            sa.Column("approver_kind", sa.String(length=20), nullable=False,
                      comment="user | role | client"),
            sa.Column("approver_value", sa.String(length=150), nullable=False),
            sa.Column("is_optional", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("auto_approve_after_hours", sa.Integer(), nullable=True,
                      comment="NULL = never auto-approves"),
            _ts("created_at"),
            sa.ForeignKeyConstraint(["workflow_id"], ["approval_workflows.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("workflow_id", "sequence", name="uq_workflow_step_sequence"),
        )
        op.create_index("ix_approval_workflow_steps_workflow_id", "approval_workflow_steps", ["workflow_id"])

    # ── Approval requests ─────────────────────────────────────────────────
    if "approval_requests" not in existing:
        op.create_table(
            "approval_requests",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("workflow_id", sa.Integer(), nullable=True),
            sa.Column("workflow_name", sa.String(length=200), nullable=True),
            sa.Column("mode", sa.String(length=20), nullable=False),
            sa.Column("entity_type", sa.String(length=30), nullable=False),
            sa.Column("entity_id", sa.Integer(), nullable=False),
            sa.Column("status", sa.String(length=30), nullable=False, server_default="pending"),
            sa.Column("current_step", sa.Integer(), nullable=False, server_default="1",
                      comment="1-based position; meaningful for sequential only"),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("reminder_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("initiated_by", sa.String(length=150), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            _ts("created_at"),
            _ts("updated_at"),
            _ts("last_activity_at"),
            _ts("completed_at"),
            sa.ForeignKeyConstraint(["workflow_id"], ["approval_workflows.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_approval_requests_workflow_id", "approval_requests", ["workflow_id"])
        op.create_index("ix_approval_requests_status", "approval_requests", ["status"])
        op.create_index("ix_approval_request_entity", "approval_requests", ["entity_type", "entity_id"])
        op.create_index(
            "uq_approval_request_open", "approval_requests", ["entity_type", "entity_id"],
            unique=True,
            sqlite_where=sa.text("status = 'pending'"),
            postgresql_where=sa.text("status = 'pending'"),
        )

    if "approval_request_steps" not in existing:
        op.create_table(
            "approval_request_steps",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("request_id", sa.Integer(), nullable=False),
            sa.Column("source_step_id", sa.Integer(), nullable=True,
                      comment="WorkflowStep.id at snapshot time"),
            sa.Column("sequence", sa.Integer(), nullable=False),
            sa.Column("position", sa.Integer(), nullable=False),
            sa.Column("approver_kind", sa.String(length=20), nullable=False),
            sa.Column("approver_value", sa.String(length=150), nullable=False),
            sa.Column("is_optional", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("auto_approve_after_hours", sa.Integer(), nullable=True),
            _ts("activated_at"),
            sa.ForeignKeyConstraint(["request_id"], ["approval_requests.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("request_id", "position", name="uq_request_step_position"),
        )
        op.create_index("ix_approval_request_steps_request_id", "approval_request_steps", ["request_id"])

    if "approval_step_decisions" not in existing:
        op.create_table(
            "approval_step_decisions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("request_id", sa.Integer(), nullable=False),
            sa.Column("step_id", sa.Integer(), nullable=False),
            sa.Column("decision", sa.String(length=20), nullable=False,
                      comment="approve | reject | revise | skip"),
            sa.Column("actor", sa.String(length=150), nullable=False),
            sa.Column("comment", sa.Text(), nullable=True),
            _ts("decided_at"),
            sa.ForeignKeyConstraint(["request_id"], ["approval_requests.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["step_id"], ["approval_request_steps.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("request_id", "step_id", name="uq_step_decision"),
        )
        op.create_index("ix_approval_step_decisions_request_id", "approval_step_decisions", ["request_id"])

    if "approval_history" not in existing:
        op.create_table(
            "approval_history",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("request_id", sa.Integer(), nullable=False),
            sa.Column("step_id", sa.Integer(), nullable=True),
            sa.Column("action", sa.String(length=30), nullable=False),
            sa.Column("actor", sa.String(length=150), nullable=False),
            sa.Column("comment", sa.Text(), nullable=True),
            _ts("created_at"),
            sa.ForeignKeyConstraint(["request_id"], ["approval_requests.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_approval_history_request_id", "approval_history", ["request_id"])

    # ── Triggers ──────────────────────────────────────────────────────────
    if "workflow_triggers" not in existing:
        op.create_table(
            "workflow_triggers",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("event_type", sa.String(length=60), nullable=False),
            sa.Column("conditions", sa.JSON(), nullable=False),
            sa.Column("action_type", sa.String(length=30), nullable=False),
            sa.Column("action_config", sa.JSON(), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
            _ts("created_at"),
            _ts("updated_at"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_workflow_triggers_event_type", "workflow_triggers", ["event_type"])
        op.create_index("ix_trigger_event_active", "workflow_triggers",
                        ["event_type", "is_active", "priority"])

    if "trigger_dispatch_log" not in existing:
        op.create_table(
            "trigger_dispatch_log",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("trigger_id", sa.Integer(), nullable=True),
            sa.Column("event_key", sa.String(length=64), nullable=False),
            sa.Column("event_type", sa.String(length=60), nullable=False),
            sa.Column("entity_id", sa.String(length=64), nullable=True),
            sa.Column("action_type", sa.String(length=30), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="running",
                      comment="running | success | failed | skipped"),
            sa.Column("result", sa.JSON(), nullable=True),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.Column("execution_time_ms", sa.Integer(), nullable=True),
            _ts("created_at"),
            _ts("completed_at"),
            sa.ForeignKeyConstraint(["trigger_id"], ["workflow_triggers.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("event_key", "trigger_id", name="uq_trigger_dispatch_event"),
        )
        op.create_index("ix_trigger_dispatch_log_trigger_id", "trigger_dispatch_log", ["trigger_id"])
        op.create_index("ix_trigger_dispatch_log_created_at", "trigger_dispatch_log", ["created_at"])
        op.create_index("ix_trigger_dispatch_status", "trigger_dispatch_log", ["status", "created_at"])

    if "system_events" not in existing:
        op.create_table(
            "system_events",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("event_key", sa.String(length=64), nullable=False),
            sa.Column("event_type", sa.String(length=60), nullable=False),
            sa.Column("entity_type", sa.String(length=30), nullable=False),
            sa.Column("entity_id", sa.String(length=64), nullable=True),
            sa.Column("payload", sa.JSON(), nullable=False),
            sa.Column("triggered_by", sa.String(length=150), nullable=True),
            _ts("occurred_at", nullable=False),
            _ts("created_at"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("event_key"),
        )
        op.create_index("ix_system_events_event_type", "system_events", ["event_type"])
        op.create_index("ix_system_event_entity", "system_events", ["entity_type", "entity_id"])

    # ── Webhook delivery ──────────────────────────────────────────────────
    if "webhook_destinations" not in existing:
        op.create_table(
            "webhook_destinations",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("url", sa.String(length=1000), nullable=False,
                      comment="May contain {{path}} tokens"),
            sa.Column("method", sa.String(length=10), nullable=False, server_default="POST"),
            sa.Column("headers", sa.JSON(), nullable=True),
            sa.Column("payload_template", sa.JSON(), nullable=True),
            sa.Column(
                "secret_encrypted", sa.Text(), nullable=False,
                comment="Fernet-encrypted signing secret. NEVER expose.",
            ),
            sa.Column("previous_secret_encrypted", sa.Text(), nullable=True),
            _ts("previous_secret_expires_at"),
            _ts("secret_rotated_at"),
            sa.Column("max_attempts", sa.Integer(), nullable=True,
                      comment="NULL = WEBHOOK_MAX_ATTEMPTS"),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            _ts("created_at"),
            _ts("updated_at"),
            sa.PrimaryKeyConstraint("id"),
        )

    if "webhook_deliveries" not in existing:
        op.create_table(
            "webhook_deliveries",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("destination_id", sa.Integer(), nullable=False),
            sa.Column("event_key", sa.String(length=64), nullable=True),
            sa.Column("trigger_id", sa.Integer(), nullable=True),
            sa.Column("event_type", sa.String(length=60), nullable=False, server_default=""),
            sa.Column("url", sa.String(length=1000), nullable=False),
            sa.Column("payload", sa.JSON(), nullable=False),
            sa.Column("payload_body", sa.Text(), nullable=False),
            sa.Column("signature", sa.String(length=128), nullable=False),
            sa.Column("unresolved_tokens", sa.JSON(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="pending",
                      comment="pending | success | failed | abandoned"),
            sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="5"),
            sa.Column("last_error", sa.Text(), nullable=True),
            sa.Column("response_status", sa.Integer(), nullable=True),
            sa.Column("response_body", sa.Text(), nullable=True),
            sa.Column("last_latency_ms", sa.Integer(), nullable=True),
            _ts("next_retry_at"),
            _ts("locked_until"),
            _ts("delivered_at"),
            _ts("created_at"),
            _ts("updated_at"),
            sa.ForeignKeyConstraint(["destination_id"], ["webhook_destinations.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("destination_id", "event_key", name="uq_delivery_destination_event"),
        )
        op.create_index("ix_webhook_deliveries_event_key", "webhook_deliveries", ["event_key"])
        op.create_index("ix_delivery_sweep", "webhook_deliveries",
                        ["destination_id", "status", "next_retry_at"])
        op.create_index("ix_delivery_due", "webhook_deliveries", ["status", "next_retry_at"])

    if "webhook_delivery_attempts" not in existing:
        op.create_table(
            "webhook_delivery_attempts",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("delivery_id", sa.Integer(), nullable=False),
            sa.Column("destination_id", sa.Integer(), nullable=False),
            sa.Column("attempt_no", sa.Integer(), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, comment="success | failed"),
            sa.Column("response_status", sa.Integer(), nullable=True),
            sa.Column("error", sa.Text(), nullable=True),
            sa.Column("latency_ms", sa.Integer(), nullable=True),
            _ts("attempted_at"),
            sa.ForeignKeyConstraint(["delivery_id"], ["webhook_deliveries.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("delivery_id", "attempt_no", name="uq_delivery_attempt_no"),
        )
        op.create_index("ix_webhook_delivery_attempts_delivery_id", "webhook_delivery_attempts",
                        ["delivery_id"])
        op.create_index("ix_delivery_attempt_window", "webhook_delivery_attempts",
                        ["destination_id", "attempted_at"])

    # ── Notifications, jobs, email log ────────────────────────────────────
    if "notifications" not in existing:
        op.create_table(
            "notifications",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("recipient", sa.String(length=150), nullable=True,
                      comment="Recipient descriptor or 'all' for broadcast"),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("message", sa.Text(), nullable=True),
            sa.Column("category", sa.String(length=30), nullable=True),
            sa.Column("severity", sa.String(length=20), nullable=True),
            sa.Column("entity_type", sa.String(length=30), nullable=True),
            sa.Column("entity_id", sa.Integer(), nullable=True),
            sa.Column("is_read", sa.Boolean(), nullable=True),
            _ts("read_at"),
            _ts("created_at"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_notifications_recipient", "notifications", ["recipient"])
        op.create_index("ix_notifications_recipient_unread", "notifications", ["recipient", "is_read"])

    if "scheduled_jobs" not in existing:
        op.create_table(
            "scheduled_jobs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("job_name", sa.String(length=100), nullable=False),
            sa.Column("description", sa.String(length=500), nullable=True),
            sa.Column("schedule_type", sa.String(length=30), nullable=True),
            sa.Column("schedule_config", sa.JSON(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=True),
            sa.Column("is_enabled", sa.Boolean(), nullable=True),
            _ts("last_run_at"),
            sa.Column("last_run_status", sa.String(length=20), nullable=True),
            sa.Column("last_run_duration_ms", sa.Integer(), nullable=True),
            sa.Column("last_run_result", sa.JSON(), nullable=True),
            sa.Column("run_count", sa.Integer(), nullable=True),
            sa.Column("error_count", sa.Integer(), nullable=True),
            sa.Column("last_error", sa.Text(), nullable=True),
            _ts("created_at"),
            _ts("updated_at"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("job_name"),
        )

    if "email_logs" not in existing:
        op.create_table(
            "email_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("recipient_email", sa.String(length=255), nullable=False),
            sa.Column("recipient_name", sa.String(length=150), nullable=True),
            sa.Column("subject", sa.String(length=500), nullable=False),
            sa.Column("template_name", sa.String(length=100), nullable=True),
            sa.Column("category", sa.String(length=30), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=True),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.Column("trigger_id", sa.Integer(), nullable=True),
            _ts("sent_at"),
            _ts("created_at"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_email_logs_recipient_email", "email_logs", ["recipient_email"])


def downgrade():
    for table in (
        "email_logs",
        "scheduled_jobs",
        "notifications",
        "webhook_delivery_attempts",
        "webhook_deliveries",
        "webhook_destinations",
        "system_events",
        "trigger_dispatch_log",
        "workflow_triggers",
        "approval_history",
        "approval_step_decisions",
        "approval_request_steps",
        "approval_requests",
        "approval_workflow_steps",
        "approval_workflows",
    ):
        op.drop_table(table)
