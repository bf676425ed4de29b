"""
Trigger Rule Engine: match events against triggers and run their actions.

emit_event(event)
    1. record the SystemEvent (once per idempotency key)
    2. load active triggers for the event type, by (priority, created_at, id)
    3. per trigger, claim the (event_key, trigger_id) dispatch-log row;
       a unique-key collision means the pair already ran, so skip it
    4. evaluate conditions; no match -> ``skipped``
    5. build + execute the action -> ``success`` / ``failed``

Each trigger runs in isolation: one action failing is recorded on its
dispatch row and the loop continues with the next trigger.

Actions are split into a pure *build* step (resolve recipients, render
templates, sign webhook payloads) and an *execute* step with side effects.
``test_trigger`` runs only the build step.
"""

from __future__ import annotations

import logging
import time
from datetime import timedelta
from typing import Any

from flask import current_app
from sqlalchemy.exc import IntegrityError

from app.core.exceptions import NotFoundError, ValidationError
from app.models import db
from app.models.automation import SystemEvent, TriggerDefinition, TriggerDispatch
from app.services import delivery_service
from app.services.conditions import explain, from_json
from app.services.email_service import EmailService
from app.services.events import Event
from app.services.notification import NotificationService
from app.services.payload_codec import is_missing, lookup, substitute
from app.services.trigger_service import get_trigger
from app.services.webhook_service import get_destination
from app.integrations.domain_gateway import get_domain_gateway
from app.utils.helpers import utcnow

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════
# Action builders (no side effects)
# ══════════════════════════════════════════════════════════════════


def _render(text: str | None, event: Event, unresolved: list[str]) -> str:
    rendered, missing = substitute(text or "", event.snapshot)
    unresolved.extend(missing)
    return rendered


def _build_notify(config: dict, event: Event) -> dict[str, Any]:
    unresolved: list[str] = []
    return {
        "recipient": _render(config.get("recipient") or "all", event, unresolved),
        "title": _render(config.get("title"), event, unresolved),
        "message": _render(config.get("message"), event, unresolved),
        "severity": config.get("severity") or "info",
        "category": config.get("category") or "trigger",
        "entity_type": event.entity_type,
        "entity_id": event.entity_id if isinstance(event.entity_id, int) else None,
        "unresolved_tokens": sorted(set(unresolved)),
    }


def _resolve_email(to: str, event: Event) -> str:
    if to == "admin":
        return current_app.config.get("ADMIN_EMAIL", "")
    if to == "client":
        for path in ("client.email", f"{event.entity_type}.client_email", "client_email"):
            value = lookup(event.snapshot, path)
            if not is_missing(value) and value:
                return str(value)
        raise ValidationError("Event carries no client email", details={"to": "client"})
    address, missing = substitute(to, event.snapshot)
    if missing or "@" not in address:
        raise ValidationError(f"Cannot resolve email recipient: {to}", details={"to": to})
    return address


def _build_send_email(config: dict, event: Event) -> dict[str, Any]:
    unresolved: list[str] = []
    to_email = _resolve_email(str(config.get("to")), event)
    template = config.get("template") or "trigger_notification"
    context = {
        **{k.replace(".", "_"): v for k, v in event.snapshot.items()},
        "subject": _render(config.get("subject") or event.event_type, event, unresolved),
        "body": _render(config.get("body"), event, unresolved),
    }
    rendered = EmailService.render(template, context, severity=config.get("severity") or "info")
    if rendered is None:
        raise ValidationError(f"Unknown email template: {template}", details={"template": template})
    subject, html_body = rendered
    return {
        "to": to_email,
        "template": template,
        "subject": subject,
        "html_body": html_body,
        "unresolved_tokens": sorted(set(unresolved)),
    }


def _build_webhook(config: dict, event: Event) -> dict[str, Any]:
    dest = get_destination(int(config["destination_id"]))
    prepared = delivery_service.prepare_delivery(dest, event)
    return {"destination_id": dest.id, "is_active": dest.is_active, **prepared}


def _build_create_task(config: dict, event: Event) -> dict[str, Any]:
    unresolved: list[str] = []
    field = config.get("project_field") or (
        "project.id" if event.entity_type == "project" else f"{event.entity_type}.project_id"
    )
    project_id = lookup(event.snapshot, field, None)
    due_date = None
    if config.get("due_days") is not None:
        due_date = (event.occurred_at + timedelta(days=int(config["due_days"]))).date().isoformat()
    return {
        "project_id": project_id,
        "title": _render(config.get("title"), event, unresolved),
        "description": _render(config.get("description"), event, unresolved),
        "assignee": _render(config.get("assignee"), event, unresolved) or None,
        "due_date": due_date,
        "priority": config.get("priority") or "medium",
        "unresolved_tokens": sorted(set(unresolved)),
    }


def _build_update_status(config: dict, event: Event) -> dict[str, Any]:
    if event.entity_id is None:
        raise ValidationError("Event has no entity id to update")
    return {
        "entity_type": config.get("entity") or event.entity_type,
        "entity_id": event.entity_id,
        "field": config.get("field") or "status",
        "status": config["status"],
    }


_BUILDERS = {
    "notify": _build_notify,
    "send_email": _build_send_email,
    "webhook": _build_webhook,
    "create_task": _build_create_task,
    "update_status": _build_update_status,
}


def build_action(action_type: str, config: dict, event: Event) -> dict[str, Any]:
    """Resolve an action into a concrete plan without performing it."""
    builder = _BUILDERS.get(action_type)
    if builder is None:
        raise ValidationError(f"Unknown action type: {action_type}")
    return builder(config or {}, event)


# ══════════════════════════════════════════════════════════════════
# Action executors
# ══════════════════════════════════════════════════════════════════


def _execute_notify(plan: dict, event: Event, trigger_id: int | None) -> dict[str, Any]:
    notif = NotificationService.create(
        title=plan["title"],
        message=plan["message"],
        category=plan["category"],
        severity=plan["severity"],
        recipient=plan["recipient"],
        entity_type=plan["entity_type"],
        entity_id=plan["entity_id"],
    )
    return {"notification_id": notif.id, "recipient": notif.recipient}


def _execute_send_email(plan: dict, event: Event, trigger_id: int | None) -> dict[str, Any]:
    log = EmailService.send(
        to_email=plan["to"],
        subject=plan["subject"],
        html_body=plan["html_body"],
        template_name=plan["template"],
        category="trigger",
        trigger_id=trigger_id,
    )
    db.session.commit()
    if log.status == "failed":
        raise RuntimeError(f"Email to {plan['to']} failed: {log.error_message}")
    return {"email_log_id": log.id, "to": plan["to"], "status": log.status}


def _execute_webhook(plan: dict, event: Event, trigger_id: int | None) -> dict[str, Any]:
    record = delivery_service.deliver_event(plan["destination_id"], event, trigger_id=trigger_id)
    return {
        "delivery_id": record.id,
        "status": record.status,
        "attempt_count": record.attempt_count,
        "unresolved_tokens": record.unresolved_tokens or [],
    }


def _execute_create_task(plan: dict, event: Event, trigger_id: int | None) -> dict[str, Any]:
    return get_domain_gateway().create_task(
        project_id=plan["project_id"],
        title=plan["title"],
        description=plan["description"],
        assignee=plan["assignee"],
        due_date=plan["due_date"],
        priority=plan["priority"],
    )


def _execute_update_status(plan: dict, event: Event, trigger_id: int | None) -> dict[str, Any]:
    return get_domain_gateway().update_status(
        entity_type=plan["entity_type"],
        entity_id=plan["entity_id"],
        status=plan["status"],
        field=plan["field"],
    )


_EXECUTORS = {
    "notify": _execute_notify,
    "send_email": _execute_send_email,
    "webhook": _execute_webhook,
    "create_task": _execute_create_task,
    "update_status": _execute_update_status,
}


def execute_action(action_type: str, config: dict, event: Event,
                   *, trigger_id: int | None = None) -> dict[str, Any]:
    """Build and perform one action. Raises on failure; callers decide isolation."""
    plan = build_action(action_type, config, event)
    return _EXECUTORS[action_type](plan, event, trigger_id)


# ══════════════════════════════════════════════════════════════════
# Dispatch
# ══════════════════════════════════════════════════════════════════


def _record_event(event: Event) -> None:
    if SystemEvent.query.filter_by(event_key=event.idempotency_key).first():
        return
    db.session.add(SystemEvent(
        event_key=event.idempotency_key,
        event_type=event.event_type,
        entity_type=event.entity_type,
        entity_id=None if event.entity_id is None else str(event.entity_id),
        payload=event.snapshot,
        triggered_by=event.triggered_by,
        occurred_at=event.occurred_at,
    ))
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()


def _finish(dispatch_id: int, status: str, started: float, *,
            result: dict | None = None, error: str | None = None) -> TriggerDispatch:
    dispatch = db.session.get(TriggerDispatch, dispatch_id)
    dispatch.status = status
    dispatch.result = result
    dispatch.error_message = error
    dispatch.execution_time_ms = int((time.monotonic() - started) * 1000)
    dispatch.completed_at = utcnow()
    db.session.commit()
    return dispatch


def _dispatch(trigger: TriggerDefinition, event: Event) -> dict[str, Any]:
    trigger_id, action_type = trigger.id, trigger.action_type
    log_extra = {"trigger_id": trigger_id, "event_type": event.event_type}

    claim = TriggerDispatch(
        trigger_id=trigger_id,
        event_key=event.idempotency_key,
        event_type=event.event_type,
        entity_id=None if event.entity_id is None else str(event.entity_id),
        action_type=action_type,
        status="running",
    )
    db.session.add(claim)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        logger.info("Trigger already dispatched for event key %s", event.idempotency_key, extra=log_extra)
        return {"trigger_id": trigger_id, "status": "duplicate"}
    dispatch_id = claim.id
    started = time.monotonic()

    if not from_json(trigger.conditions).evaluate(event.snapshot):
        _finish(dispatch_id, "skipped", started, result={"reason": "conditions not met"})
        return {"trigger_id": trigger_id, "dispatch_id": dispatch_id, "status": "skipped"}

    try:
        result = execute_action(action_type, trigger.action_config or {}, event, trigger_id=trigger_id)
    except Exception as exc:
        db.session.rollback()
        logger.exception("Trigger action %s failed: %s", action_type, exc, extra=log_extra)
        _finish(dispatch_id, "failed", started, error=str(exc)[:2000])
        return {"trigger_id": trigger_id, "dispatch_id": dispatch_id, "status": "failed", "error": str(exc)}

    _finish(dispatch_id, "success", started, result=result)
    logger.info("Trigger fired %s -> %s", event.event_type, action_type, extra=log_extra)
    return {"trigger_id": trigger_id, "dispatch_id": dispatch_id, "status": "success", "result": result}


def emit_event(event: Event) -> list[dict[str, Any]]:
    """Run every active trigger for *event* once.

    Safe to call again with the same event: pairs already dispatched come
    back as ``duplicate`` and nothing re-executes.

    Returns:
        One outcome dict per active trigger, in execution order.
    """
    _record_event(event)
    triggers = (
        TriggerDefinition.query
        .filter_by(event_type=event.event_type, is_active=True)
        .order_by(TriggerDefinition.priority, TriggerDefinition.created_at, TriggerDefinition.id)
        .all()
    )
    if not triggers:
        logger.debug("No active triggers for %s", event.event_type)
        return []
    return [_dispatch(trigger, event) for trigger in triggers]


# ══════════════════════════════════════════════════════════════════
# Test mode
# ══════════════════════════════════════════════════════════════════


def _sample_to_event(trigger: TriggerDefinition, sample: Any) -> Event:
    if isinstance(sample, Event):
        return sample
    sample = dict(sample or {})
    entity = sample.pop("entity", None)
    if entity is None:
        entity = sample
        sample = {}
    return Event.create(
        sample.get("event_type") or trigger.event_type,
        entity,
        entity_id=sample.get("entity_id"),
        updated_at=sample.get("updated_at"),
        triggered_by=sample.get("triggered_by") or "test",
    )


def test_trigger(trigger_id: int, sample_event: Any) -> dict[str, Any]:
    """Dry-run a trigger against a sample event.

    Nothing is sent, stored or logged to the dispatch table.

    Args:
        sample_event: an Event, or a dict with an ``entity`` snapshot (plus
            optional entity_id / updated_at), or the entity snapshot itself.

    Returns:
        dict with matched, per-condition results and the action preview.
    """
    trigger = get_trigger(trigger_id)
    event = _sample_to_event(trigger, sample_event)
    condition = from_json(trigger.conditions)

    action: dict[str, Any] = {"action_type": trigger.action_type}
    try:
        action["preview"] = build_action(trigger.action_type, trigger.action_config or {}, event)
    except (ValidationError, NotFoundError) as exc:
        action["error"] = str(exc)
        action["details"] = getattr(exc, "details", {})

    return {
        "trigger_id": trigger.id,
        "event": event.to_dict(),
        "matched": condition.evaluate(event.snapshot),
        "conditions": explain(condition, event.snapshot),
        "action": action,
    }


# not a pytest test function
test_trigger.__test__ = False
