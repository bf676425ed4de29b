"""
Trigger management: CRUD, toggling, dispatch log and event log queries.

Conditions are validated and normalized here, when a trigger is saved, so
the engine only rebuilds them at evaluation time.
"""

from __future__ import annotations

import logging
from typing import Any

from app.core.exceptions import NotFoundError, ValidationError
from app.models import db
from app.models.automation import (
    ACTION_TYPES,
    EVENT_TYPES,
    SystemEvent,
    TriggerDefinition,
    TriggerDispatch,
)
from app.models.delivery import WebhookDestination
from app.services.conditions import OPERATORS, parse_conditions
from app.utils.helpers import paginate_query, parse_datetime

logger = logging.getLogger(__name__)

# Required keys per action type; everything else in action_config is optional.
ACTION_REQUIREMENTS: dict[str, tuple[str, ...]] = {
    "webhook": ("destination_id",),
    "send_email": ("to",),
    "notify": ("title",),
    "create_task": ("title",),
    "update_status": ("status",),
}


def _validate_action(action_type: str, config: Any) -> dict[str, Any]:
    if action_type not in ACTION_TYPES:
        raise ValidationError(
            f"Unknown action type: {action_type}",
            details={"action_type": f"must be one of {sorted(ACTION_TYPES)}"},
        )
    if config is None:
        config = {}
    if not isinstance(config, dict):
        raise ValidationError("action_config must be an object")
    missing = [k for k in ACTION_REQUIREMENTS[action_type] if config.get(k) in (None, "")]
    if missing:
        raise ValidationError(
            f"action_config for {action_type} is missing {', '.join(missing)}",
            details={k: "required" for k in missing},
        )
    if action_type == "webhook":
        try:
            dest_id = int(config["destination_id"])
        except (TypeError, ValueError):
            raise ValidationError("destination_id must be an integer",
                                  details={"destination_id": config["destination_id"]})
        if db.session.get(WebhookDestination, dest_id) is None:
            raise NotFoundError(resource="WebhookDestination", resource_id=dest_id)
        config = {**config, "destination_id": dest_id}
    if action_type == "create_task" and config.get("due_days") is not None:
        try:
            config = {**config, "due_days": int(config["due_days"])}
        except (TypeError, ValueError):
            raise ValidationError("due_days must be an integer", details={"due_days": config["due_days"]})
    return config


def _validate_event_type(event_type: Any) -> str:
    if event_type not in EVENT_TYPES:
        raise ValidationError(
            f"Unknown event type: {event_type}",
            details={"event_type": f"must be one of {sorted(EVENT_TYPES)}"},
        )
    return event_type


# ══════════════════════════════════════════════════════════════════
# CRUD
# ══════════════════════════════════════════════════════════════════


def get_trigger(trigger_id: int) -> TriggerDefinition:
    trigger = db.session.get(TriggerDefinition, trigger_id)
    if not trigger:
        raise NotFoundError(resource="TriggerDefinition", resource_id=trigger_id)
    return trigger


def list_triggers(*, event_type: str | None = None, is_active: bool | None = None,
                  action_type: str | None = None) -> list[TriggerDefinition]:
    q = TriggerDefinition.query
    if event_type:
        q = q.filter_by(event_type=event_type)
    if is_active is not None:
        q = q.filter_by(is_active=is_active)
    if action_type:
        q = q.filter_by(action_type=action_type)
    return q.order_by(TriggerDefinition.priority, TriggerDefinition.created_at, TriggerDefinition.id).all()


def create_trigger(data: dict[str, Any]) -> TriggerDefinition:
    """Create a trigger after validating event type, conditions and action.

    Raises:
        ValidationError: missing name, unknown event/action type, bad conditions.
        NotFoundError: webhook action referencing an unknown destination.
    """
    name = str(data.get("name") or "").strip()
    if not name:
        raise ValidationError("name is required", details={"name": "required"})
    event_type = _validate_event_type(data.get("event_type"))
    conditions = parse_conditions(data.get("conditions"), event_type)
    action_type = data.get("action_type")
    action_config = _validate_action(action_type, data.get("action_config"))

    trigger = TriggerDefinition(
        name=name,
        description=data.get("description") or "",
        event_type=event_type,
        conditions=conditions.to_json(),
        action_type=action_type,
        action_config=action_config,
        is_active=bool(data.get("is_active", True)),
        priority=int(data.get("priority") or 0),
    )
    db.session.add(trigger)
    db.session.commit()
    logger.info(
        "Trigger created id=%s %s -> %s", trigger.id, event_type, action_type,
        extra={"trigger_id": trigger.id, "event_type": event_type},
    )
    return trigger


def update_trigger(trigger_id: int, data: dict[str, Any]) -> TriggerDefinition:
    """Partial update. Conditions are re-validated against the resulting event type."""
    trigger = get_trigger(trigger_id)

    if "name" in data:
        name = str(data.get("name") or "").strip()
        if not name:
            raise ValidationError("name is required", details={"name": "required"})
        trigger.name = name
    if "description" in data:
        trigger.description = data.get("description") or ""

    event_type = _validate_event_type(data["event_type"]) if "event_type" in data else trigger.event_type
    if "conditions" in data or event_type != trigger.event_type:
        raw = data["conditions"] if "conditions" in data else trigger.conditions
        trigger.conditions = parse_conditions(raw, event_type).to_json()
    trigger.event_type = event_type

    if "action_type" in data or "action_config" in data:
        action_type = data.get("action_type", trigger.action_type)
        config = data.get("action_config", trigger.action_config)
        trigger.action_config = _validate_action(action_type, config)
        trigger.action_type = action_type

    if "is_active" in data:
        trigger.is_active = bool(data["is_active"])
    if "priority" in data:
        trigger.priority = int(data["priority"] or 0)

    db.session.commit()
    return trigger


def delete_trigger(trigger_id: int) -> None:
    """Delete a trigger. Its dispatch-log rows are kept with a null trigger id."""
    trigger = get_trigger(trigger_id)
    TriggerDispatch.query.filter_by(trigger_id=trigger.id).update(
        {"trigger_id": None}, synchronize_session=False,
    )
    db.session.delete(trigger)
    db.session.commit()
    logger.info("Trigger deleted id=%s", trigger_id, extra={"trigger_id": trigger_id})


def toggle_trigger(trigger_id: int) -> TriggerDefinition:
    trigger = get_trigger(trigger_id)
    trigger.is_active = not trigger.is_active
    db.session.commit()
    return trigger


# ══════════════════════════════════════════════════════════════════
# Logs & catalogs
# ══════════════════════════════════════════════════════════════════


def list_dispatch_log(
    *,
    trigger_id: int | None = None,
    status: str | None = None,
    event_type: str | None = None,
    since: Any = None,
    until: Any = None,
    page: int = 1,
    per_page: int = 20,
) -> tuple[list[TriggerDispatch], int]:
    q = TriggerDispatch.query
    if trigger_id:
        q = q.filter_by(trigger_id=trigger_id)
    if status:
        q = q.filter_by(status=status)
    if event_type:
        q = q.filter_by(event_type=event_type)
    since_dt, until_dt = parse_datetime(since), parse_datetime(until)
    if since_dt:
        q = q.filter(TriggerDispatch.created_at >= since_dt)
    if until_dt:
        q = q.filter(TriggerDispatch.created_at <= until_dt)
    return paginate_query(q.order_by(TriggerDispatch.created_at.desc(), TriggerDispatch.id.desc()),
                          page, per_page)


def list_events(
    *,
    event_type: str | None = None,
    entity_type: str | None = None,
    entity_id: Any = None,
    page: int = 1,
    per_page: int = 20,
) -> tuple[list[SystemEvent], int]:
    q = SystemEvent.query
    if event_type:
        q = q.filter_by(event_type=event_type)
    if entity_type:
        q = q.filter_by(entity_type=entity_type)
    if entity_id is not None:
        q = q.filter_by(entity_id=str(entity_id))
    return paginate_query(q.order_by(SystemEvent.occurred_at.desc(), SystemEvent.id.desc()),
                          page, per_page)


def event_type_catalog() -> list[dict[str, str]]:
    return [
        {"event_type": et, "entity_type": et.split(".", 1)[0]}
        for et in sorted(EVENT_TYPES)
    ]


def action_type_catalog() -> list[dict[str, Any]]:
    return [
        {"action_type": at, "required_config": list(ACTION_REQUIREMENTS[at])}
        for at in sorted(ACTION_TYPES)
    ]


def operator_catalog() -> list[str]:
    return list(OPERATORS)
