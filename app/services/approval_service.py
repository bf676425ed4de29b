"""
Approval workflow definitions, request queries and default seeding.

The state machine itself lives in approval_engine; this module owns the
templates it runs on and the read side.

Business rules enforced here (not in blueprints):
    - entity_type, mode and approver_kind come from closed sets.
    - sequence is unique within a definition.
    - At most one active default definition per entity type: making a
      definition default clears the flag on the previous one.
"""

from __future__ import annotations

import logging
from typing import Any

from app.core.exceptions import NotFoundError, ValidationError
from app.models import db
from app.models.approval import (
    APPROVAL_ENTITY_TYPES,
    APPROVER_KINDS,
    REQUEST_STATUSES,
    WORKFLOW_MODES,
    ApprovalHistory,
    ApprovalRequest,
    WorkflowDefinition,
    WorkflowStep,
)
from app.utils.helpers import paginate_query

logger = logging.getLogger(__name__)


# Installed by `flask seed-approval-workflows`.
DEFAULT_WORKFLOWS: list[dict[str, Any]] = [
    {
        "name": "Proposal approval",
        "entity_type": "proposal",
        "mode": "any_one",
        "steps": [{"approver_kind": "role", "approver_value": "admin"}],
    },
    {
        "name": "Invoice approval",
        "entity_type": "invoice",
        "mode": "any_one",
        "steps": [{"approver_kind": "role", "approver_value": "admin"}],
    },
    {
        "name": "Contract approval",
        "entity_type": "contract",
        "mode": "any_one",
        "steps": [{"approver_kind": "role", "approver_value": "admin"}],
    },
    {
        "name": "Deliverable review",
        "entity_type": "deliverable",
        "mode": "sequential",
        "steps": [
            {"approver_kind": "role", "approver_value": "admin"},
            {"approver_kind": "client", "approver_value": "client"},
        ],
    },
]


# ── Validation ───────────────────────────────────────────────────────────────


def _check_choice(field: str, value: Any, allowed: frozenset) -> None:
    if value not in allowed:
        raise ValidationError(
            f"Invalid {field} '{value}'. Must be one of: {', '.join(sorted(allowed))}",
            details={field: value},
        )


def _clean_step(data: dict[str, Any], *, partial: bool = False) -> dict[str, Any]:
    cleaned: dict[str, Any] = {}
    if not partial or "approver_kind" in data:
        _check_choice("approver_kind", data.get("approver_kind"), APPROVER_KINDS)
        cleaned["approver_kind"] = data["approver_kind"]
    if not partial or "approver_value" in data:
        value = str(data.get("approver_value") or "").strip()
        if not value:
            raise ValidationError("approver_value is required", details={"approver_value": "required"})
        cleaned["approver_value"] = value
    if "sequence" in data and data["sequence"] is not None:
        try:
            cleaned["sequence"] = int(data["sequence"])
        except (TypeError, ValueError):
            raise ValidationError("sequence must be an integer", details={"sequence": data["sequence"]})
        if cleaned["sequence"] < 1:
            raise ValidationError("sequence must be >= 1", details={"sequence": cleaned["sequence"]})
    if "is_optional" in data:
        cleaned["is_optional"] = bool(data["is_optional"])
    if "auto_approve_after_hours" in data:
        hours = data["auto_approve_after_hours"]
        if hours is not None:
            try:
                hours = int(hours)
            except (TypeError, ValueError):
                hours = -1
            if hours < 1:
                raise ValidationError(
                    "auto_approve_after_hours must be a positive integer or null",
                    details={"auto_approve_after_hours": data["auto_approve_after_hours"]},
                )
        cleaned["auto_approve_after_hours"] = hours
    return cleaned


def _clear_defaults(entity_type: str, exclude_id: int | None = None) -> None:
    # Runs before the new default is flushed so the partial unique index holds.
    q = WorkflowDefinition.query.filter(
        WorkflowDefinition.entity_type == entity_type,
        WorkflowDefinition.is_default.is_(True),
    )
    if exclude_id is not None:
        q = q.filter(WorkflowDefinition.id != exclude_id)
    q.update({"is_default": False}, synchronize_session="fetch")


# ══════════════════════════════════════════════════════════════════
# Definitions
# ══════════════════════════════════════════════════════════════════


def get_workflow(workflow_id: int) -> WorkflowDefinition:
    workflow = db.session.get(WorkflowDefinition, workflow_id)
    if not workflow:
        raise NotFoundError(resource="WorkflowDefinition", resource_id=workflow_id)
    return workflow


def list_workflows(*, entity_type: str | None = None, active_only: bool = False) -> list[WorkflowDefinition]:
    q = WorkflowDefinition.query
    if entity_type:
        q = q.filter_by(entity_type=entity_type)
    if active_only:
        q = q.filter_by(is_active=True)
    return q.order_by(WorkflowDefinition.entity_type, WorkflowDefinition.id).all()


def get_default_workflow(entity_type: str) -> WorkflowDefinition | None:
    return WorkflowDefinition.query.filter_by(
        entity_type=entity_type, is_default=True, is_active=True,
    ).first()


def create_workflow(data: dict[str, Any]) -> WorkflowDefinition:
    """Create a definition, optionally with inline ``steps``.

    Steps without an explicit sequence are numbered in list order.

    Raises:
        ValidationError: bad name, entity type, mode, approver or duplicate sequence.
    """
    name = str(data.get("name") or "").strip()
    if not name:
        raise ValidationError("name is required", details={"name": "required"})
    _check_choice("entity_type", data.get("entity_type"), APPROVAL_ENTITY_TYPES)
    mode = data.get("mode") or "sequential"
    _check_choice("mode", mode, WORKFLOW_MODES)

    steps = [_clean_step(s) for s in (data.get("steps") or [])]
    for index, step in enumerate(steps, start=1):
        step.setdefault("sequence", index)
    sequences = [s["sequence"] for s in steps]
    if len(set(sequences)) != len(sequences):
        raise ValidationError("Step sequences must be unique", details={"sequence": sequences})

    if data.get("is_default"):
        _clear_defaults(data["entity_type"])
    workflow = WorkflowDefinition(
        name=name,
        description=data.get("description") or "",
        entity_type=data["entity_type"],
        mode=mode,
        is_active=bool(data.get("is_active", True)),
        is_default=bool(data.get("is_default", False)),
    )
    workflow.steps = [WorkflowStep(**s) for s in steps]
    db.session.add(workflow)
    db.session.commit()
    logger.info("Approval workflow created id=%s entity_type=%s mode=%s",
                workflow.id, workflow.entity_type, workflow.mode)
    return workflow


def update_workflow(workflow_id: int, data: dict[str, Any]) -> WorkflowDefinition:
    """Update definition fields. In-flight requests keep their snapshot."""
    workflow = get_workflow(workflow_id)
    if "entity_type" in data:
        _check_choice("entity_type", data["entity_type"], APPROVAL_ENTITY_TYPES)
    if "mode" in data:
        _check_choice("mode", data["mode"], WORKFLOW_MODES)
    if data.get("is_default", workflow.is_default):
        _clear_defaults(data.get("entity_type", workflow.entity_type), exclude_id=workflow.id)

    if "name" in data:
        name = str(data.get("name") or "").strip()
        if not name:
            raise ValidationError("name is required", details={"name": "required"})
        workflow.name = name
    if "description" in data:
        workflow.description = data.get("description") or ""
    if "entity_type" in data:
        workflow.entity_type = data["entity_type"]
    if "mode" in data:
        workflow.mode = data["mode"]
    if "is_active" in data:
        workflow.is_active = bool(data["is_active"])
    if "is_default" in data:
        workflow.is_default = bool(data["is_default"])
    db.session.commit()
    return workflow


def delete_workflow(workflow_id: int) -> None:
    """Delete a definition. Requests opened from it keep their step snapshot."""
    workflow = get_workflow(workflow_id)
    db.session.delete(workflow)
    db.session.commit()
    logger.info("Approval workflow deleted id=%s", workflow_id)


# ── Steps ────────────────────────────────────────────────────────────────────


def get_step(step_id: int) -> WorkflowStep:
    step = db.session.get(WorkflowStep, step_id)
    if not step:
        raise NotFoundError(resource="WorkflowStep", resource_id=step_id)
    return step


def _ensure_sequence_free(workflow: WorkflowDefinition, sequence: int, exclude_id: int | None = None) -> None:
    for step in workflow.steps:
        if step.sequence == sequence and step.id != exclude_id:
            raise ValidationError(
                f"Sequence {sequence} is already used in this workflow",
                details={"sequence": sequence},
            )


def add_step(workflow_id: int, data: dict[str, Any]) -> WorkflowStep:
    workflow = get_workflow(workflow_id)
    cleaned = _clean_step(data)
    if "sequence" not in cleaned:
        cleaned["sequence"] = max((s.sequence for s in workflow.steps), default=0) + 1
    _ensure_sequence_free(workflow, cleaned["sequence"])
    step = WorkflowStep(workflow_id=workflow.id, **cleaned)
    db.session.add(step)
    db.session.commit()
    return step


def update_step(step_id: int, data: dict[str, Any]) -> WorkflowStep:
    step = get_step(step_id)
    cleaned = _clean_step(data, partial=True)
    if "sequence" in cleaned:
        _ensure_sequence_free(step.workflow, cleaned["sequence"], exclude_id=step.id)
    for key, value in cleaned.items():
        setattr(step, key, value)
    db.session.commit()
    return step


def delete_step(step_id: int) -> None:
    step = get_step(step_id)
    db.session.delete(step)
    db.session.commit()


# ══════════════════════════════════════════════════════════════════
# Requests (read side)
# ══════════════════════════════════════════════════════════════════


def get_request(request_id: int) -> ApprovalRequest:
    req = db.session.get(ApprovalRequest, request_id)
    if not req:
        raise NotFoundError(resource="ApprovalRequest", resource_id=request_id)
    return req


def list_requests(
    *,
    status: str | None = None,
    entity_type: str | None = None,
    entity_id: int | None = None,
    page: int = 1,
    per_page: int = 20,
) -> tuple[list[ApprovalRequest], int]:
    q = ApprovalRequest.query
    if status:
        _check_choice("status", status, REQUEST_STATUSES)
        q = q.filter_by(status=status)
    if entity_type:
        q = q.filter_by(entity_type=entity_type)
    if entity_id is not None:
        q = q.filter_by(entity_id=entity_id)
    return paginate_query(q.order_by(ApprovalRequest.created_at.desc(), ApprovalRequest.id.desc()),
                          page, per_page)


def get_history(request_id: int) -> list[ApprovalHistory]:
    return get_request(request_id).history.all()


def get_entity_status(entity_type: str, entity_id: int) -> dict[str, Any]:
    """Approval state of one entity: its latest request, or ``none``."""
    _check_choice("entity_type", entity_type, APPROVAL_ENTITY_TYPES)
    latest = (
        ApprovalRequest.query
        .filter_by(entity_type=entity_type, entity_id=entity_id)
        .order_by(ApprovalRequest.created_at.desc(), ApprovalRequest.id.desc())
        .first()
    )
    return {
        "entity_type": entity_type,
        "entity_id": entity_id,
        "status": latest.status if latest else "none",
        "request": latest.to_dict() if latest else None,
    }


# ══════════════════════════════════════════════════════════════════
# Seeding
# ══════════════════════════════════════════════════════════════════


def seed_default_workflows() -> list[WorkflowDefinition]:
    """Install the default definitions for entity types that have none.

    Idempotent: entity types with an existing default are left alone.

    Returns:
        The definitions created by this call.
    """
    created = []
    for template in DEFAULT_WORKFLOWS:
        if get_default_workflow(template["entity_type"]):
            continue
        created.append(create_workflow({**template, "is_default": True}))
    logger.info("Seeded %d default approval workflows", len(created))
    return created
