"""
Approval Workflow Blueprint.

Routes:
  GET    /approval-workflows                    – list workflows
  POST   /approval-workflows                    – create workflow (with steps)
  GET    /approval-workflows/<wid>              – workflow detail
  PUT    /approval-workflows/<wid>              – update workflow
  DELETE /approval-workflows/<wid>              – delete workflow
  POST   /approval-workflows/<wid>/steps        – add step
  PUT    /approval-workflow-steps/<sid>         – update step
  DELETE /approval-workflow-steps/<sid>         – delete step
  GET    /approvals                             – list requests
  POST   /approvals                             – submit entity for approval
  GET    /approvals/pending                     – approver inbox
  GET    /approvals/<rid>                       – request with steps + decisions
  POST   /approvals/<rid>/decide                – decide one step
  POST   /approvals/bulk-decide                 – decide many requests
  POST   /approvals/<rid>/cancel                – cancel a pending request
  GET    /approvals/<rid>/history               – audit trail
  GET    /approvals/entity/<type>/<eid>         – entity approval status
"""

from flask import Blueprint, jsonify, request

from app.core.exceptions import ValidationError
from app.services import approval_engine, approval_service

approval_bp = Blueprint("approval_bp", __name__, url_prefix="/api/v1")


# ── helpers ──────────────────────────────────────────────────────────────

def _current_user():
    """Best-effort current user extraction (no auth enforcement)."""
    return (
        request.headers.get("X-User", "")
        or request.headers.get("X-Forwarded-User", "")
        or "system"
    )


def _int_arg(name, default):
    try:
        return int(request.args.get(name, default))
    except (TypeError, ValueError):
        return default


# ═════════════════════════════════════════════════════════════════════════════
# WORKFLOW CRUD
# ═════════════════════════════════════════════════════════════════════════════

@approval_bp.route("/approval-workflows", methods=["GET"])
def list_workflows():
    """List workflows, optionally filtered by entity_type / active."""
    workflows = approval_service.list_workflows(
        entity_type=request.args.get("entity_type"),
        active_only=request.args.get("active") == "true",
    )
    return jsonify([w.to_dict() for w in workflows])


@approval_bp.route("/approval-workflows", methods=["POST"])
def create_workflow():
    """Create a workflow.

    Body: { name, entity_type, mode, is_default, steps: [{approver_kind, approver_value,
            sequence?, is_optional?, auto_approve_after_hours?}] }
    """
    data = request.get_json(silent=True) or {}
    workflow = approval_service.create_workflow(data)
    return jsonify(workflow.to_dict()), 201


@approval_bp.route("/approval-workflows/<int:wid>", methods=["GET"])
def get_workflow(wid):
    return jsonify(approval_service.get_workflow(wid).to_dict())


@approval_bp.route("/approval-workflows/<int:wid>", methods=["PUT"])
def update_workflow(wid):
    data = request.get_json(silent=True) or {}
    return jsonify(approval_service.update_workflow(wid, data).to_dict())


@approval_bp.route("/approval-workflows/<int:wid>", methods=["DELETE"])
def delete_workflow(wid):
    approval_service.delete_workflow(wid)
    return jsonify({"deleted": True})


@approval_bp.route("/approval-workflows/<int:wid>/steps", methods=["POST"])
def add_step(wid):
    data = request.get_json(silent=True) or {}
    return jsonify(approval_service.add_step(wid, data).to_dict()), 201


@approval_bp.route("/approval-workflow-steps/<int:sid>", methods=["PUT"])
def update_step(sid):
    data = request.get_json(silent=True) or {}
    return jsonify(approval_service.update_step(sid, data).to_dict())


@approval_bp.route("/approval-workflow-steps/<int:sid>", methods=["DELETE"])
def delete_step(sid):
    approval_service.delete_step(sid)
    return jsonify({"deleted": True})


# ═════════════════════════════════════════════════════════════════════════════
# REQUESTS
# ═════════════════════════════════════════════════════════════════════════════

@approval_bp.route("/approvals", methods=["GET"])
def list_requests():
    """List requests. Query: status, entity_type, entity_id, page, per_page."""
    entity_id = request.args.get("entity_id", type=int)
    items, total = approval_service.list_requests(
        status=request.args.get("status"),
        entity_type=request.args.get("entity_type"),
        entity_id=entity_id,
        page=_int_arg("page", 1),
        per_page=_int_arg("per_page", 20),
    )
    return jsonify({"items": [r.to_dict(include_steps=False) for r in items], "total": total})


@approval_bp.route("/approvals", methods=["POST"])
def submit_for_approval():
    """Open an approval request.

    Body: { entity_type, entity_id, workflow_id?, notes? }
    """
    data = request.get_json(silent=True) or {}
    if data.get("entity_id") is None:
        raise ValidationError("entity_id is required", details={"entity_id": "required"})
    req = approval_engine.create_request(
        data.get("entity_type"),
        data["entity_id"],
        workflow_id=data.get("workflow_id"),
        initiated_by=_current_user(),
        notes=data.get("notes") or "",
    )
    return jsonify(req.to_dict()), 201


@approval_bp.route("/approvals/pending", methods=["GET"])
def pending_for_approver():
    """Approver inbox. Query: approver=<kind>:<value> (defaults to the X-User header)."""
    approver = request.args.get("approver") or request.headers.get("X-User", "")
    kind, _, value = approver.partition(":")
    if not kind or not value:
        raise ValidationError("approver must look like 'role:admin'", details={"approver": approver or "required"})
    return jsonify({"approver": approver, "items": approval_engine.list_pending_for_approver(kind, value)})


@approval_bp.route("/approvals/<int:rid>", methods=["GET"])
def get_request(rid):
    return jsonify(approval_service.get_request(rid).to_dict())


@approval_bp.route("/approvals/<int:rid>/decide", methods=["POST"])
def decide(rid):
    """Decide one step.

    Body: { step_id, decision: approve|reject|revise|skip, comment? }
    """
    data = request.get_json(silent=True) or {}
    if data.get("step_id") is None:
        raise ValidationError("step_id is required", details={"step_id": "required"})
    req = approval_engine.decide(
        rid,
        int(data["step_id"]),
        data.get("decision"),
        _current_user(),
        data.get("comment") or "",
    )
    return jsonify(req.to_dict())


@approval_bp.route("/approvals/bulk-decide", methods=["POST"])
def bulk_decide():
    """Body: { request_ids: [...], decision, comment? }"""
    data = request.get_json(silent=True) or {}
    results = approval_engine.bulk_decide(
        data.get("request_ids") or [],
        data.get("decision"),
        _current_user(),
        data.get("comment") or "",
    )
    return jsonify({"results": results})


@approval_bp.route("/approvals/<int:rid>/cancel", methods=["POST"])
def cancel(rid):
    data = request.get_json(silent=True) or {}
    req = approval_engine.cancel_request(rid, _current_user(), data.get("reason") or "")
    return jsonify(req.to_dict())


@approval_bp.route("/approvals/<int:rid>/history", methods=["GET"])
def history(rid):
    return jsonify([h.to_dict() for h in approval_service.get_history(rid)])


@approval_bp.route("/approvals/entity/<entity_type>/<int:eid>", methods=["GET"])
def entity_status(entity_type, eid):
    return jsonify(approval_service.get_entity_status(entity_type, eid))
