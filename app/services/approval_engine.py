"""
Approval Workflow Engine — request state machine, decisions and sweeps.

    pending ──▶ approved | rejected | revision_requested | cancelled   (terminal)

Step progression per workflow mode:

    sequential  approve/skip advances current_step; the last step approves.
    parallel    every required step approves; any reject rejects.
    any_one     first approve approves; rejected once every required step
                rejected, or every step decided without an approval.

``revise`` ends the request as ``revision_requested`` in every mode; the
entity is re-submitted as a new request. Required steps are the
non-optional ones, or all steps when none is marked required.

Concurrency:
    Every decision is applied with a compare-and-swap on
    ``approval_requests.version``; the unique (request_id, step_id) key on
    decisions backs it up. The loser of a race gets ConflictError.
    Reminder bookkeeping swaps on ``reminder_count`` instead, so a reminder
    never invalidates a decision in flight.

The transition is committed before the outcome event is handed to the
trigger engine. Dispatch failures are logged and never undo a decision.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import timedelta
from typing import Any

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from app.core.exceptions import ConflictError, InvalidStateError, NotFoundError, ValidationError
from app.models import db
from app.models.approval import (
    APPROVAL_ENTITY_TYPES,
    APPROVER_KINDS,
    STEP_DECISIONS,
    ApprovalHistory,
    ApprovalRequest,
    ApprovalRequestStep,
    StepDecision,
)
from app.services import trigger_engine
from app.services.approval_service import get_default_workflow, get_request, get_workflow
from app.services.events import Event
from app.utils.helpers import as_utc, utcnow

logger = logging.getLogger(__name__)

SYSTEM_AUTO_APPROVER = "system:auto-approve"
SYSTEM_REMINDER = "system:reminder"

_DECISION_HISTORY = {
    "approve": "approved",
    "reject": "rejected",
    "revise": "revision_requested",
    "skip": "skipped",
}


# ── Helpers ──────────────────────────────────────────────────────────────────


def _history(request_id: int, action: str, actor: str, *, step_id: int | None = None,
             comment: str = "", now=None) -> None:
    db.session.add(ApprovalHistory(
        request_id=request_id,
        step_id=step_id,
        action=action,
        actor=actor,
        comment=comment or "",
        created_at=now or utcnow(),
    ))


def _required_steps(req: ApprovalRequest) -> list[ApprovalRequestStep]:
    required = [s for s in req.steps if not s.is_optional]
    return required or list(req.steps)


def eligible_steps(req: ApprovalRequest) -> list[ApprovalRequestStep]:
    """Steps that may receive a decision right now, in position order."""
    if req.is_terminal:
        return []
    if req.mode == "sequential":
        step = req.step_at(req.current_step)
        return [step] if step and not req.decision_for(step.id) else []
    return [s for s in req.steps if not req.decision_for(s.id)]


def list_pending_for_approver(approver_kind: str, approver_value: str) -> list[dict[str, Any]]:
    """Approver inbox: pending requests with a step this approver can decide now.

    Only eligible steps count, so a sequential request shows up once its
    turn reaches the approver. Oldest request first.

    Returns:
        ``[{"request": {...}, "steps": [{...}, ...]}, ...]``
    """
    if approver_kind not in APPROVER_KINDS:
        raise ValidationError(
            f"Invalid approver_kind '{approver_kind}'. Must be one of: {', '.join(sorted(APPROVER_KINDS))}",
            details={"approver_kind": approver_kind},
        )
    candidates = (
        ApprovalRequest.query
        .filter(
            ApprovalRequest.status == "pending",
            ApprovalRequest.steps.any(
                (ApprovalRequestStep.approver_kind == approver_kind)
                & (ApprovalRequestStep.approver_value == approver_value)
            ),
        )
        .order_by(ApprovalRequest.created_at, ApprovalRequest.id)
        .all()
    )
    inbox = []
    for req in candidates:
        mine = [
            s.to_dict() for s in eligible_steps(req)
            if s.approver_kind == approver_kind and s.approver_value == approver_value
        ]
        if mine:
            inbox.append({"request": req.to_dict(include_steps=False), "steps": mine})
    return inbox


def _progress(req: ApprovalRequest, step: ApprovalRequestStep, decision: str) -> tuple[str | None, int | None]:
    """Outcome of adding *decision* on *step*.

    Returns:
        (new_terminal_status or None, next current_step or None)
    """
    if decision == "revise":
        return "revision_requested", None

    if req.mode == "sequential":
        if decision == "reject":
            return "rejected", None
        if step.position >= len(req.steps):
            return "approved", None
        return None, step.position + 1

    decided = {d.step_id: d.decision for d in req.decisions}
    decided[step.id] = decision
    required = _required_steps(req)

    if req.mode == "parallel":
        if decision == "reject":
            return "rejected", None
        done = all(
            decided.get(s.id) == "approve" or (s.is_optional and decided.get(s.id) == "skip")
            for s in required
        )
        return ("approved", None) if done else (None, None)

    # any_one
    if decision == "approve":
        return "approved", None
    if all(decided.get(s.id) == "reject" for s in required):
        return "rejected", None
    # nothing left to decide and no approval among the skips
    if all(s.id in decided for s in req.steps):
        return "rejected", None
    return None, None


def _outcome_event(req: ApprovalRequest, actor: str, comment: str) -> Event:
    return Event.create(
        f"{req.entity_type}.{req.status}",
        {
            req.entity_type: {"id": req.entity_id, "status": req.status},
            "approval": {
                "request_id": req.id,
                "status": req.status,
                "workflow_id": req.workflow_id,
                "workflow_name": req.workflow_name,
                "entity_type": req.entity_type,
                "entity_id": req.entity_id,
                "decided_by": actor,
                "comment": comment or "",
            },
        },
        entity_id=req.entity_id,
        updated_at=f"approval-{req.id}-{req.status}",
        occurred_at=req.completed_at,
        triggered_by=actor,
    )


def _dispatch(event: Event, request_id: int) -> None:
    try:
        trigger_engine.emit_event(event)
    except Exception:
        db.session.rollback()
        logger.exception(
            "Dispatch of %s failed", event.event_type,
            extra={"approval_request_id": request_id, "event_type": event.event_type},
        )


# ══════════════════════════════════════════════════════════════════
# Create
# ══════════════════════════════════════════════════════════════════


def create_request(
    entity_type: str,
    entity_id: int,
    *,
    workflow_id: int | None = None,
    initiated_by: str = "system",
    notes: str = "",
    now=None,
) -> ApprovalRequest:
    """Open an approval request for an entity.

    The workflow's steps are copied into the request, so later edits to the
    definition do not affect it.

    Raises:
        ValidationError: unknown entity type, inactive or empty workflow,
            workflow for another entity type.
        NotFoundError: unknown workflow id, or no default workflow.
        ConflictError: the entity already has a pending request.
    """
    if entity_type not in APPROVAL_ENTITY_TYPES:
        raise ValidationError(
            f"Invalid entity_type '{entity_type}'. "
            f"Must be one of: {', '.join(sorted(APPROVAL_ENTITY_TYPES))}",
            details={"entity_type": entity_type},
        )
    try:
        entity_id = int(entity_id)
    except (TypeError, ValueError):
        raise ValidationError("entity_id must be an integer", details={"entity_id": entity_id})
    now = now or utcnow()

    if workflow_id is not None:
        workflow = get_workflow(workflow_id)
        if workflow.entity_type != entity_type:
            raise ValidationError(
                f"Workflow {workflow.id} applies to {workflow.entity_type}, not {entity_type}",
                details={"workflow_id": workflow.id},
            )
    else:
        workflow = get_default_workflow(entity_type)
        if workflow is None:
            raise NotFoundError(resource="Default WorkflowDefinition", resource_id=entity_type)
    if not workflow.is_active:
        raise ValidationError(f"Workflow {workflow.id} is inactive", details={"workflow_id": workflow.id})
    if not workflow.steps:
        raise ValidationError(f"Workflow {workflow.id} has no steps", details={"workflow_id": workflow.id})

    if ApprovalRequest.query.filter_by(entity_type=entity_type, entity_id=entity_id, status="pending").first():
        raise ConflictError(
            "ApprovalRequest", "entity", f"{entity_type}:{entity_id}",
            message=f"{entity_type} {entity_id} already has a pending approval request",
        )

    req = ApprovalRequest(
        workflow_id=workflow.id,
        workflow_name=workflow.name,
        mode=workflow.mode,
        entity_type=entity_type,
        entity_id=entity_id,
        status="pending",
        current_step=1,
        version=1,
        reminder_count=0,
        initiated_by=initiated_by or "system",
        notes=notes or "",
        created_at=now,
        last_activity_at=now,
    )
    for position, step in enumerate(workflow.steps, start=1):
        active = workflow.mode != "sequential" or position == 1
        req.steps.append(ApprovalRequestStep(
            source_step_id=step.id,
            sequence=step.sequence,
            position=position,
            approver_kind=step.approver_kind,
            approver_value=step.approver_value,
            is_optional=step.is_optional,
            auto_approve_after_hours=step.auto_approve_after_hours,
            activated_at=now if active else None,
        ))
    db.session.add(req)
    try:
        db.session.flush()
        _history(req.id, "initiated", req.initiated_by, comment=req.notes, now=now)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError(
            "ApprovalRequest", "entity", f"{entity_type}:{entity_id}",
            message=f"{entity_type} {entity_id} already has a pending approval request",
        )

    logger.info(
        "Approval request opened for %s/%s via workflow %s (%s)",
        entity_type, entity_id, workflow.id, workflow.mode,
        extra={"approval_request_id": req.id},
    )
    return req


# ══════════════════════════════════════════════════════════════════
# Decide
# ══════════════════════════════════════════════════════════════════


def decide(
    request_id: int,
    step_id: int,
    decision: str,
    actor: str,
    comment: str = "",
    *,
    now=None,
) -> ApprovalRequest:
    """Record one step decision and advance the request.

    Raises:
        ValidationError: unknown decision, missing actor, skip on a required step.
        NotFoundError: unknown request or step.
        InvalidStateError: request already terminal, or step out of order
            under sequential mode.
        ConflictError: step already decided, or a concurrent writer won.
    """
    if decision not in STEP_DECISIONS:
        raise ValidationError(
            f"Invalid decision '{decision}'. Must be one of: {', '.join(sorted(STEP_DECISIONS))}",
            details={"decision": decision},
        )
    actor = (actor or "").strip()
    if not actor:
        raise ValidationError("actor is required", details={"actor": "required"})

    req = get_request(request_id)
    step = next((s for s in req.steps if s.id == step_id), None)
    if step is None:
        raise NotFoundError(resource="ApprovalRequestStep", resource_id=step_id)
    if decision == "skip" and not step.is_optional:
        raise ValidationError("Only optional steps can be skipped", details={"step_id": step_id})
    if req.is_terminal:
        raise InvalidStateError(f"Approval request is already {req.status}", current_state=req.status)
    if req.decision_for(step.id):
        raise ConflictError("StepDecision", "step_id", step.id, message=f"Step {step.id} already has a decision")
    if req.mode == "sequential" and step.position != req.current_step:
        raise InvalidStateError(
            f"Step {step.position} is not the current step ({req.current_step})",
            current_state=req.status,
        )

    now = now or utcnow()
    outcome, next_position = _progress(req, step, decision)
    expected = req.version

    values: dict[str, Any] = {"version": expected + 1, "last_activity_at": now, "updated_at": now}
    if outcome:
        values.update(status=outcome, completed_at=now)
    if next_position:
        values["current_step"] = next_position
    swapped = db.session.execute(
        update(ApprovalRequest)
        .where(
            ApprovalRequest.id == req.id,
            ApprovalRequest.version == expected,
            ApprovalRequest.status == "pending",
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    ).rowcount
    if swapped != 1:
        db.session.rollback()
        raise ConflictError(
            "ApprovalRequest", "version", expected,
            message="Approval request was changed by another decision; reload and retry",
        )

    db.session.add(StepDecision(
        request_id=req.id, step_id=step.id, decision=decision,
        actor=actor, comment=comment or "", decided_at=now,
    ))
    action = "auto_approved" if actor == SYSTEM_AUTO_APPROVER else _DECISION_HISTORY[decision]
    _history(req.id, action, actor, step_id=step.id, comment=comment, now=now)
    if next_position:
        following = req.step_at(next_position)
        if following is not None:
            following.activated_at = now
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError("StepDecision", "step_id", step.id, message=f"Step {step.id} already has a decision")

    log_extra = {"approval_request_id": req.id}
    logger.info("Step %s %s by %s", step.position, decision, actor, extra=log_extra)
    req = get_request(request_id)
    if outcome:
        logger.info("Approval request %s for %s/%s", outcome, req.entity_type, req.entity_id, extra=log_extra)
        _dispatch(_outcome_event(req, actor, comment), req.id)
    return req


def bulk_decide(
    request_ids: list[int],
    decision: str,
    actor: str,
    comment: str = "",
    *,
    now=None,
) -> list[dict[str, Any]]:
    """Apply one decision to many requests' current eligible step.

    Validation is all-or-nothing: every id must exist, all requests must
    share one status, that status must be ``pending`` and each must have an
    eligible step. Otherwise nothing is touched.

    Returns:
        Per-item outcome dicts in input order.
    """
    if decision not in STEP_DECISIONS or decision == "skip":
        raise ValidationError(
            f"Invalid bulk decision '{decision}'. Must be one of: approve, reject, revise",
            details={"decision": decision},
        )
    if not (actor or "").strip():
        raise ValidationError("actor is required", details={"actor": "required"})
    if not request_ids:
        raise ValidationError("request_ids must be a non-empty list", details={"request_ids": request_ids})
    try:
        ids = list(dict.fromkeys(int(i) for i in request_ids))
    except (TypeError, ValueError):
        raise ValidationError("request_ids must be integers", details={"request_ids": request_ids})

    found = {r.id: r for r in ApprovalRequest.query.filter(ApprovalRequest.id.in_(ids)).all()}
    errors: dict[str, str] = {}
    for rid in ids:
        if rid not in found:
            errors[str(rid)] = "not found"
    statuses = sorted({r.status for r in found.values()})
    if len(statuses) > 1:
        errors["status"] = f"requests must share one status, got {', '.join(statuses)}"
    for rid, req in found.items():
        if req.status != "pending":
            errors[str(rid)] = f"status is {req.status}"
        elif not eligible_steps(req):
            errors[str(rid)] = "no eligible step"
    if errors:
        raise ValidationError("Bulk decision rejected; no request was updated", details=errors)

    targets = [(rid, eligible_steps(found[rid])[0].id) for rid in ids]
    results = []
    for rid, step_id in targets:
        try:
            req = decide(rid, step_id, decision, actor, comment, now=now)
        except (ConflictError, InvalidStateError, NotFoundError, ValidationError) as exc:
            results.append({"request_id": rid, "ok": False, "error": str(exc)})
        else:
            results.append({"request_id": rid, "ok": True, "status": req.status, "step_id": step_id})
    logger.info("Bulk %s by %s on %d requests", decision, actor, len(ids))
    return results


def cancel_request(request_id: int, actor: str, reason: str = "", *, now=None) -> ApprovalRequest:
    """Withdraw a pending request.

    Raises:
        InvalidStateError: the request is already terminal.
        ConflictError: a concurrent decision changed it first.
    """
    req = get_request(request_id)
    if req.is_terminal:
        raise InvalidStateError(f"Approval request is already {req.status}", current_state=req.status)
    now = now or utcnow()
    expected = req.version
    swapped = db.session.execute(
        update(ApprovalRequest)
        .where(
            ApprovalRequest.id == req.id,
            ApprovalRequest.version == expected,
            ApprovalRequest.status == "pending",
        )
        .values(status="cancelled", version=expected + 1, completed_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    ).rowcount
    if swapped != 1:
        db.session.rollback()
        raise ConflictError("ApprovalRequest", "version", expected,
                            message="Approval request was changed concurrently; reload and retry")
    _history(req.id, "cancelled", actor or "system", comment=reason, now=now)
    db.session.commit()
    logger.info("Approval request cancelled by %s", actor, extra={"approval_request_id": req.id})
    return get_request(request_id)


# ══════════════════════════════════════════════════════════════════
# Sweeps
# ══════════════════════════════════════════════════════════════════


def _pending_ids() -> list[int]:
    return [
        row.id for row in
        db.session.query(ApprovalRequest.id)
        .filter(ApprovalRequest.status == "pending")
        .order_by(ApprovalRequest.id)
        .all()
    ]


def _auto_approve_due(req: ApprovalRequest, now) -> list[ApprovalRequestStep]:
    due = []
    for step in eligible_steps(req):
        if step.auto_approve_after_hours is None or step.activated_at is None:
            continue
        if as_utc(step.activated_at) + timedelta(hours=step.auto_approve_after_hours) <= now:
            due.append(step)
    return due


def auto_approve_sweep(now=None, *, should_stop: Callable[[], bool] | None = None) -> dict[str, int]:
    """Approve every eligible step whose auto-approve delay has elapsed.

    Eligibility is recomputed from the database for each request, so a
    sweep interrupted by ``should_stop`` can simply run again.
    """
    now = now or utcnow()
    summary = {"checked": 0, "auto_approved": 0, "conflicts": 0}
    for request_id in _pending_ids():
        if should_stop and should_stop():
            break
        req = db.session.get(ApprovalRequest, request_id)
        if req is None or req.status != "pending":
            continue
        summary["checked"] += 1
        for step_id, hours in [(s.id, s.auto_approve_after_hours) for s in _auto_approve_due(req, now)]:
            # an earlier auto-approval may already have closed the request
            if db.session.get(ApprovalRequest, request_id).status != "pending":
                break
            try:
                decide(request_id, step_id, "approve", SYSTEM_AUTO_APPROVER,
                       f"Auto-approved after {hours}h without a decision", now=now)
            except (ConflictError, InvalidStateError) as exc:
                summary["conflicts"] += 1
                logger.info("Auto-approve skipped: %s", exc, extra={"approval_request_id": request_id})
                break
            summary["auto_approved"] += 1
    if summary["auto_approved"]:
        logger.info("Auto-approve sweep: %s", summary)
    return summary


def _reminder_event(req: ApprovalRequest, event_type: str, approvers: list[str], days_idle: int) -> Event:
    return Event.create(
        event_type,
        {
            "approval": {
                "request_id": req.id,
                "status": req.status,
                "workflow_id": req.workflow_id,
                "workflow_name": req.workflow_name,
                "entity_type": req.entity_type,
                "entity_id": req.entity_id,
                "reminder_count": req.reminder_count,
                "approvers": approvers,
                "days_idle": days_idle,
            },
        },
        entity_id=req.id,
        updated_at=f"{event_type}-{req.reminder_count}",
        triggered_by=SYSTEM_REMINDER,
    )


def _notify(recipients: list[str], event: Event, title: str, message: str, severity: str) -> None:
    for recipient in recipients:
        try:
            trigger_engine.execute_action(
                "notify",
                {"recipient": recipient, "title": title, "message": message,
                 "severity": severity, "category": "approval"},
                event,
            )
        except Exception:
            db.session.rollback()
            logger.exception("Reminder notification to %s failed", recipient,
                             extra={"event_type": event.event_type})


def reminder_sweep(now=None, *, should_stop: Callable[[], bool] | None = None) -> dict[str, int]:
    """Remind idle approvers, escalating once the reminder budget is spent.

    Request idle for >= thresholds[reminder_count] days gets one reminder
    per threshold crossing. When reminder_count has reached
    APPROVAL_MAX_REMINDERS the next crossing notifies the escalation role.
    """
    cfg = current_app.config
    thresholds = list(cfg.get("APPROVAL_REMINDER_THRESHOLDS_DAYS", [1, 3, 7]))
    max_reminders = int(cfg.get("APPROVAL_MAX_REMINDERS", 2))
    escalation_role = cfg.get("APPROVAL_ESCALATION_ROLE", "admin")
    now = now or utcnow()
    summary = {"checked": 0, "reminded": 0, "escalated": 0}

    for request_id in _pending_ids():
        if should_stop and should_stop():
            break
        req = db.session.get(ApprovalRequest, request_id)
        if req is None or req.status != "pending":
            continue
        summary["checked"] += 1
        index = req.reminder_count
        if index >= len(thresholds):
            continue
        idle = now - as_utc(req.last_activity_at)
        if idle < timedelta(days=thresholds[index]):
            continue

        escalate = index >= max_reminders
        swapped = db.session.execute(
            update(ApprovalRequest)
            .where(
                ApprovalRequest.id == req.id,
                ApprovalRequest.status == "pending",
                ApprovalRequest.reminder_count == index,
            )
            .values(reminder_count=index + 1)
            .execution_options(synchronize_session=False)
        ).rowcount
        if swapped != 1:
            db.session.rollback()
            continue

        approvers = [s.approver for s in eligible_steps(req)]
        days_idle = idle.days
        _history(
            req.id, "escalated" if escalate else "reminder_sent", SYSTEM_REMINDER,
            comment=f"Idle {days_idle} day(s); approvers: {', '.join(approvers) or 'none'}", now=now,
        )
        db.session.commit()
        req = db.session.get(ApprovalRequest, request_id)
        label = f"{req.entity_type} #{req.entity_id}"

        if escalate:
            event = _reminder_event(req, "approval.escalated", approvers, days_idle)
            _notify(
                [f"role:{escalation_role}"], event,
                f"Approval escalated: {label}",
                f"{label} has waited {days_idle} day(s) after {index} reminder(s) to "
                f"{', '.join(approvers) or 'its approvers'}.",
                "error",
            )
            summary["escalated"] += 1
        else:
            event = _reminder_event(req, "approval.reminder", approvers, days_idle)
            _notify(
                approvers, event,
                f"Approval pending: {label}",
                f"{label} has been waiting {days_idle} day(s) for your decision.",
                "warning",
            )
            summary["reminded"] += 1
        _dispatch(event, req.id)

    if summary["reminded"] or summary["escalated"]:
        logger.info("Reminder sweep: %s", summary)
    return summary


def run_sweeps(now=None, *, should_stop: Callable[[], bool] | None = None) -> dict[str, Any]:
    """Auto-approve first, so a step approved by timer is never reminded."""
    now = now or utcnow()
    return {
        "auto_approve": auto_approve_sweep(now, should_stop=should_stop),
        "reminders": reminder_sweep(now, should_stop=should_stop),
    }
