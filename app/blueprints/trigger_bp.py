"""
Trigger Rule Engine Blueprint.

Routes:
  GET    /triggers                     – list triggers (event_type, active, action_type)
  POST   /triggers                     – create trigger
  GET    /triggers/<tid>               – trigger detail
  PUT    /triggers/<tid>               – update trigger
  DELETE /triggers/<tid>               – delete trigger
  POST   /triggers/<tid>/toggle        – flip is_active
  POST   /triggers/<tid>/test          – dry-run against a sample event
  GET    /triggers/dispatch-log        – dispatch history
  GET    /triggers/event-types         – event type catalog
  GET    /triggers/action-types        – action type catalog
  POST   /events                       – emit a domain event
  GET    /events                       – received event log
"""

from flask import Blueprint, jsonify, request

from app.core.exceptions import ValidationError
from app.services import trigger_engine, trigger_service
from app.services.events import Event

trigger_bp = Blueprint("trigger_bp", __name__, url_prefix="/api/v1")

from app import limiter  # noqa: E402

_dispatch_limit = limiter.shared_limit("30/minute", scope="trigger_dispatch")


def _current_user():
    return request.headers.get("X-User", "") or "system"


def _int_arg(name, default):
    try:
        return int(request.args.get(name, default))
    except (TypeError, ValueError):
        return default


def _bool_arg(name):
    raw = request.args.get(name)
    if raw is None:
        return None
    return raw.lower() in ("1", "true", "yes")


# ═════════════════════════════════════════════════════════════════════════════
# CATALOGS & LOGS
# ═════════════════════════════════════════════════════════════════════════════

@trigger_bp.route("/triggers/event-types", methods=["GET"])
def event_types():
    return jsonify(trigger_service.event_type_catalog())


@trigger_bp.route("/triggers/action-types", methods=["GET"])
def action_types():
    return jsonify({
        "action_types": trigger_service.action_type_catalog(),
        "operators": trigger_service.operator_catalog(),
    })


@trigger_bp.route("/triggers/dispatch-log", methods=["GET"])
def dispatch_log():
    """Query: trigger_id, status, event_type, since, until, page, per_page."""
    items, total = trigger_service.list_dispatch_log(
        trigger_id=request.args.get("trigger_id", type=int),
        status=request.args.get("status"),
        event_type=request.args.get("event_type"),
        since=request.args.get("since"),
        until=request.args.get("until"),
        page=_int_arg("page", 1),
        per_page=_int_arg("per_page", 20),
    )
    return jsonify({"items": [d.to_dict() for d in items], "total": total})


# ═════════════════════════════════════════════════════════════════════════════
# TRIGGER CRUD
# ═════════════════════════════════════════════════════════════════════════════

@trigger_bp.route("/triggers", methods=["GET"])
def list_triggers():
    triggers = trigger_service.list_triggers(
        event_type=request.args.get("event_type"),
        is_active=_bool_arg("active"),
        action_type=request.args.get("action_type"),
    )
    return jsonify([t.to_dict() for t in triggers])


@trigger_bp.route("/triggers", methods=["POST"])
def create_trigger():
    """Body: { name, event_type, conditions, action_type, action_config, priority?, is_active? }"""
    data = request.get_json(silent=True) or {}
    return jsonify(trigger_service.create_trigger(data).to_dict()), 201


@trigger_bp.route("/triggers/<int:tid>", methods=["GET"])
def get_trigger(tid):
    return jsonify(trigger_service.get_trigger(tid).to_dict())


@trigger_bp.route("/triggers/<int:tid>", methods=["PUT"])
def update_trigger(tid):
    data = request.get_json(silent=True) or {}
    return jsonify(trigger_service.update_trigger(tid, data).to_dict())


@trigger_bp.route("/triggers/<int:tid>", methods=["DELETE"])
def delete_trigger(tid):
    trigger_service.delete_trigger(tid)
    return jsonify({"deleted": True})


@trigger_bp.route("/triggers/<int:tid>/toggle", methods=["POST"])
def toggle_trigger(tid):
    return jsonify(trigger_service.toggle_trigger(tid).to_dict())


@trigger_bp.route("/triggers/<int:tid>/test", methods=["POST"])
@_dispatch_limit
def test_trigger(tid):
    """Body: sample event — { entity: {...}, entity_id?, updated_at? } or the entity snapshot."""
    data = request.get_json(silent=True) or {}
    return jsonify(trigger_engine.test_trigger(tid, data))


# ═════════════════════════════════════════════════════════════════════════════
# EVENTS
# ═════════════════════════════════════════════════════════════════════════════

@trigger_bp.route("/events", methods=["POST"])
@_dispatch_limit
def emit_event():
    """Emit a domain event.

    Body: { event_type, entity: {...}, entity_id?, updated_at? }

    ``entity`` may be rooted (``{"invoice": {...}}``) or the bare entity fields.
    """
    data = request.get_json(silent=True) or {}
    if not data.get("event_type"):
        raise ValidationError("event_type is required", details={"event_type": "required"})
    entity = data.get("entity") or {}
    if not isinstance(entity, dict):
        raise ValidationError("entity must be an object", details={"entity": "object"})
    event = Event.create(
        data["event_type"],
        entity,
        entity_id=data.get("entity_id"),
        updated_at=data.get("updated_at"),
        triggered_by=_current_user(),
    )
    results = trigger_engine.emit_event(event)
    return jsonify({"event": event.to_dict(), "dispatches": results}), 202


@trigger_bp.route("/events", methods=["GET"])
def list_events():
    items, total = trigger_service.list_events(
        event_type=request.args.get("event_type"),
        entity_type=request.args.get("entity_type"),
        entity_id=request.args.get("entity_id"),
        page=_int_arg("page", 1),
        per_page=_int_arg("per_page", 20),
    )
    return jsonify({"items": [e.to_dict() for e in items], "total": total})
