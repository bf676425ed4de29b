"""
Webhook Delivery Blueprint.

Routes:
  GET    /webhook-destinations                       – list destinations
  POST   /webhook-destinations                       – create (secret returned once)
  GET    /webhook-destinations/<did>                 – destination detail
  PUT    /webhook-destinations/<did>                 – update
  DELETE /webhook-destinations/<did>                 – delete with history
  POST   /webhook-destinations/<did>/rotate-secret   – new secret + grace window
  POST   /webhook-destinations/<did>/test            – send a sample event
  GET    /webhook-destinations/<did>/stats           – delivery statistics
  GET    /deliveries                                 – delivery records
  GET    /deliveries/<id>                            – record with attempts
  POST   /deliveries/<id>/retry                      – retry immediately
"""

from flask import Blueprint, jsonify, request

from app.core.exceptions import ValidationError
from app.services import delivery_service, webhook_service

delivery_bp = Blueprint("delivery_bp", __name__, url_prefix="/api/v1")


def _int_arg(name, default):
    try:
        return int(request.args.get(name, default))
    except (TypeError, ValueError):
        return default


# ═════════════════════════════════════════════════════════════════════════════
# DESTINATIONS
# ═════════════════════════════════════════════════════════════════════════════

@delivery_bp.route("/webhook-destinations", methods=["GET"])
def list_destinations():
    active_only = request.args.get("active") == "true"
    return jsonify([d.to_dict() for d in webhook_service.list_destinations(active_only)])


@delivery_bp.route("/webhook-destinations", methods=["POST"])
def create_destination():
    """Body: { name, url, method?, headers?, payload_template?, max_attempts?, is_active? }"""
    data = request.get_json(silent=True) or {}
    dest, secret = webhook_service.create_destination(data)
    return jsonify({**dest.to_dict(), "secret": secret}), 201


@delivery_bp.route("/webhook-destinations/<int:did>", methods=["GET"])
def get_destination(did):
    return jsonify(webhook_service.get_destination(did).to_dict())


@delivery_bp.route("/webhook-destinations/<int:did>", methods=["PUT"])
def update_destination(did):
    data = request.get_json(silent=True) or {}
    return jsonify(webhook_service.update_destination(did, data).to_dict())


@delivery_bp.route("/webhook-destinations/<int:did>", methods=["DELETE"])
def delete_destination(did):
    webhook_service.delete_destination(did)
    return jsonify({"deleted": True})


@delivery_bp.route("/webhook-destinations/<int:did>/rotate-secret", methods=["POST"])
def rotate_secret(did):
    """Body: { grace_hours? }"""
    data = request.get_json(silent=True) or {}
    grace = data.get("grace_hours")
    dest, secret = webhook_service.rotate_secret(did, grace_hours=int(grace) if grace is not None else None)
    return jsonify({**dest.to_dict(), "secret": secret})


@delivery_bp.route("/webhook-destinations/<int:did>/test", methods=["POST"])
def test_destination(did):
    """Send a sample event. Body: { event_type, sample? }"""
    data = request.get_json(silent=True) or {}
    if not data.get("event_type"):
        raise ValidationError("event_type is required", details={"event_type": "required"})
    sample = data.get("sample")
    if sample is not None and not isinstance(sample, dict):
        raise ValidationError("sample must be an object", details={"sample": "object"})
    record = delivery_service.send_test(did, data["event_type"], sample)
    return jsonify(record.to_dict(include_attempts=True)), 201


@delivery_bp.route("/webhook-destinations/<int:did>/stats", methods=["GET"])
def destination_stats(did):
    window = _int_arg("window_hours", 24)
    return jsonify(delivery_service.get_delivery_stats(did, window_hours=max(window, 1)))


# ═════════════════════════════════════════════════════════════════════════════
# DELIVERIES
# ═════════════════════════════════════════════════════════════════════════════

@delivery_bp.route("/deliveries", methods=["GET"])
def list_deliveries():
    """Query: destination_id, status, event_key, page, per_page."""
    items, total = delivery_service.list_deliveries(
        destination_id=request.args.get("destination_id", type=int),
        status=request.args.get("status"),
        event_key=request.args.get("event_key"),
        page=_int_arg("page", 1),
        per_page=_int_arg("per_page", 20),
    )
    return jsonify({"items": [d.to_dict() for d in items], "total": total})


@delivery_bp.route("/deliveries/<int:delivery_id>", methods=["GET"])
def get_delivery(delivery_id):
    return jsonify(delivery_service.get_delivery(delivery_id).to_dict(include_attempts=True))


@delivery_bp.route("/deliveries/<int:delivery_id>/retry", methods=["POST"])
def retry_delivery(delivery_id):
    record = delivery_service.retry_now(delivery_id)
    return jsonify(record.to_dict(include_attempts=True))
