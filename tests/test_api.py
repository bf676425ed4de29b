"""
HTTP API tests for the automation core blueprints.

Tests cover:
  - Approval workflows, requests, decisions, bulk, cancel, history
  - Triggers, event emission, dispatch log, dry-run
  - Webhook destinations, deliveries, stats
  - Notifications, scheduler jobs, health probes
  - Error envelope and status codes
"""

from unittest.mock import patch

from app.core.exceptions import TransportError
from app.integrations.webhook_gateway import TransportResult, webhook_gateway
from app.services.notification import NotificationService

API = "/api/v1"


def _open_invoice_request(client, entity_id=42, user="user:alice"):
    res = client.post(f"{API}/approvals", json={"entity_type": "invoice", "entity_id": entity_id},
                      headers={"X-User": user})
    assert res.status_code == 201
    return res.get_json()


# ═════════════════════════════════════════════════════════════════════════
# ERROR ENVELOPE
# ═════════════════════════════════════════════════════════════════════════

class TestErrorEnvelope:
    def test_unknown_route(self, client):
        res = client.get(f"{API}/nope")
        assert res.status_code == 404
        body = res.get_json()
        assert body["code"] == "ERR_NOT_FOUND"
        assert body["details"]["path"] == f"{API}/nope"

    def test_non_json_body_rejected(self, client):
        res = client.post(f"{API}/triggers", data="name=x", content_type="text/plain")
        assert res.status_code == 415

    def test_validation_error_shape(self, client):
        res = client.post(f"{API}/approval-workflows", json={"name": "X", "entity_type": "invoice",
                                                            "mode": "round_robin"})
        assert res.status_code == 422
        body = res.get_json()
        assert body["code"] == "ERR_VALIDATION_INVALID"
        assert body["details"] == {"mode": "round_robin"}


# ═════════════════════════════════════════════════════════════════════════
# APPROVALS
# ═════════════════════════════════════════════════════════════════════════

class TestApprovalWorkflowAPI:
    def test_create_and_get_workflow(self, client):
        res = client.post(f"{API}/approval-workflows", json={
            "name": "Contract review",
            "entity_type": "contract",
            "mode": "parallel",
            "is_default": True,
            "steps": [
                {"approver_kind": "role", "approver_value": "legal"},
                {"approver_kind": "role", "approver_value": "admin", "is_optional": True},
            ],
        })
        assert res.status_code == 201
        wf = res.get_json()
        assert [s["sequence"] for s in wf["steps"]] == [1, 2]

        res = client.get(f"{API}/approval-workflows/{wf['id']}")
        assert res.get_json()["mode"] == "parallel"

    def test_new_default_replaces_previous(self, client, invoice_workflow):
        res = client.post(f"{API}/approval-workflows", json={
            "name": "Invoice v2", "entity_type": "invoice", "mode": "sequential", "is_default": True,
            "steps": [{"approver_kind": "role", "approver_value": "finance"}],
        })
        assert res.status_code == 201
        old = client.get(f"{API}/approval-workflows/{invoice_workflow.id}").get_json()
        assert old["is_default"] is False

    def test_step_management(self, client, invoice_workflow):
        res = client.post(f"{API}/approval-workflows/{invoice_workflow.id}/steps",
                          json={"approver_kind": "user", "approver_value": "cfo@studio.test"})
        assert res.status_code == 201
        step = res.get_json()
        assert step["sequence"] == 2

        res = client.put(f"{API}/approval-workflow-steps/{step['id']}", json={"auto_approve_after_hours": 48})
        assert res.get_json()["auto_approve_after_hours"] == 48

        assert client.delete(f"{API}/approval-workflow-steps/{step['id']}").status_code == 200
        wf = client.get(f"{API}/approval-workflows/{invoice_workflow.id}").get_json()
        assert len(wf["steps"]) == 1

    def test_duplicate_sequence_rejected(self, client, invoice_workflow):
        res = client.post(f"{API}/approval-workflows/{invoice_workflow.id}/steps",
                          json={"approver_kind": "role", "approver_value": "x", "sequence": 1})
        assert res.status_code == 422


class TestApprovalRequestAPI:
    def test_submit_and_decide(self, client, invoice_workflow):
        req = _open_invoice_request(client)
        assert req["initiated_by"] == "user:alice"
        step_id = req["steps"][0]["id"]

        res = client.post(f"{API}/approvals/{req['id']}/decide",
                          json={"step_id": step_id, "decision": "approve", "comment": "OK"},
                          headers={"X-User": "user:boss"})
        assert res.status_code == 200
        body = res.get_json()
        assert body["status"] == "approved"
        assert body["steps"][0]["decision"]["actor"] == "user:boss"

        res = client.get(f"{API}/approvals/{req['id']}/history")
        assert [h["action"] for h in res.get_json()] == ["initiated", "approved"]

    def test_duplicate_submission_conflicts(self, client, invoice_workflow):
        _open_invoice_request(client)
        res = client.post(f"{API}/approvals", json={"entity_type": "invoice", "entity_id": 42})
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_CONFLICT_DUPLICATE"

    def test_entity_id_required(self, client, invoice_workflow):
        res = client.post(f"{API}/approvals", json={"entity_type": "invoice"})
        assert res.status_code == 422

    def test_no_default_workflow(self, client):
        res = client.post(f"{API}/approvals", json={"entity_type": "project", "entity_id": 1})
        assert res.status_code == 404

    def test_decision_on_terminal_request(self, client, invoice_workflow):
        req = _open_invoice_request(client)
        step_id = req["steps"][0]["id"]
        client.post(f"{API}/approvals/{req['id']}/decide", json={"step_id": step_id, "decision": "reject"})

        res = client.post(f"{API}/approvals/{req['id']}/decide", json={"step_id": step_id, "decision": "approve"})
        assert res.status_code == 409
        body = res.get_json()
        assert body["code"] == "ERR_INVALID_STATE"
        assert body["details"]["current_state"] == "rejected"

    def test_unknown_request(self, client):
        res = client.get(f"{API}/approvals/9999")
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"

    def test_bulk_decide(self, client, invoice_workflow):
        ids = [_open_invoice_request(client, n)["id"] for n in (1, 2)]
        res = client.post(f"{API}/approvals/bulk-decide", json={"request_ids": ids, "decision": "approve"})
        assert res.status_code == 200
        assert [r["status"] for r in res.get_json()["results"]] == ["approved", "approved"]

    def test_bulk_decide_rejects_mixed_batch(self, client, invoice_workflow):
        first = _open_invoice_request(client, 1)
        client.post(f"{API}/approvals/{first['id']}/cancel", json={"reason": "dup"})
        second = _open_invoice_request(client, 2)

        res = client.post(f"{API}/approvals/bulk-decide",
                          json={"request_ids": [first["id"], second["id"]], "decision": "approve"})
        assert res.status_code == 422
        assert str(first["id"]) in res.get_json()["details"]

    def test_cancel_and_entity_status(self, client, invoice_workflow):
        req = _open_invoice_request(client)
        res = client.post(f"{API}/approvals/{req['id']}/cancel", json={"reason": "Voided"})
        assert res.get_json()["status"] == "cancelled"

        status = client.get(f"{API}/approvals/entity/invoice/42").get_json()
        assert status["status"] == "cancelled"
        assert client.get(f"{API}/approvals/entity/invoice/77").get_json()["status"] == "none"

    def test_list_filters_by_status(self, client, invoice_workflow):
        _open_invoice_request(client, 1)
        other = _open_invoice_request(client, 2)
        client.post(f"{API}/approvals/{other['id']}/cancel")

        body = client.get(f"{API}/approvals?status=pending").get_json()
        assert body["total"] == 1
        assert body["items"][0]["entity_id"] == 1

    def test_approver_inbox(self, client, invoice_workflow):
        req = _open_invoice_request(client)
        res = client.get(f"{API}/approvals/pending?approver=role:admin")
        assert res.status_code == 200
        body = res.get_json()
        assert [item["request"]["id"] for item in body["items"]] == [req["id"]]

        mine = client.get(f"{API}/approvals/pending", headers={"X-User": "role:finance"}).get_json()
        assert mine["items"] == []

    def test_approver_inbox_needs_descriptor(self, client):
        res = client.get(f"{API}/approvals/pending?approver=admin")
        assert res.status_code == 422


# ═════════════════════════════════════════════════════════════════════════
# TRIGGERS & EVENTS
# ═════════════════════════════════════════════════════════════════════════

class TestTriggerAPI:
    def _create(self, client, **overrides):
        data = {
            "name": "Paid invoice alert",
            "event_type": "invoice.paid",
            "conditions": [{"field": "amount", "op": ">", "value": 1000}],
            "action_type": "notify",
            "action_config": {"recipient": "role:finance", "title": "Paid {{invoice.number}}"},
            **overrides,
        }
        return client.post(f"{API}/triggers", json=data)

    def test_create_and_list(self, client):
        res = self._create(client)
        assert res.status_code == 201
        assert res.get_json()["conditions"]["all"][0]["field"] == "invoice.amount"
        assert len(client.get(f"{API}/triggers?event_type=invoice.paid").get_json()) == 1

    def test_invalid_condition(self, client):
        res = self._create(client, conditions=[{"field": "amount", "op": "~", "value": 1}])
        assert res.status_code == 422

    def test_catalogs(self, client):
        events = client.get(f"{API}/triggers/event-types").get_json()
        assert {"event_type": "invoice.paid", "entity_type": "invoice"} in events
        actions = client.get(f"{API}/triggers/action-types").get_json()
        assert "greater_than" in actions["operators"]

    def test_emit_event_and_logs(self, client):
        trigger = self._create(client).get_json()
        payload = {"event_type": "invoice.paid",
                   "entity": {"invoice": {"id": 7, "number": "INV-7", "amount": 2500,
                                          "updated_at": "2026-03-02T08:00:00Z"}}}

        res = client.post(f"{API}/events", json=payload, headers={"X-User": "user:erp"})
        assert res.status_code == 202
        body = res.get_json()
        assert body["event"]["triggered_by"] == "user:erp"
        assert body["dispatches"][0]["status"] == "success"

        again = client.post(f"{API}/events", json=payload).get_json()
        assert again["dispatches"][0]["status"] == "duplicate"

        log = client.get(f"{API}/triggers/dispatch-log?trigger_id={trigger['id']}").get_json()
        assert log["total"] == 1
        assert client.get(f"{API}/events?entity_type=invoice").get_json()["total"] == 1

    def test_emit_requires_event_type(self, client):
        res = client.post(f"{API}/events", json={"entity": {}})
        assert res.status_code == 422

    def test_emit_bare_entity(self, client):
        self._create(client)
        res = client.post(f"{API}/events", json={"event_type": "invoice.paid",
                                                 "entity": {"id": 7, "number": "INV-7", "amount": 2500}})
        body = res.get_json()
        assert body["event"]["entity_id"] == 7
        assert body["dispatches"][0]["status"] == "success"

    def test_dry_run(self, client):
        trigger = self._create(client).get_json()
        res = client.post(f"{API}/triggers/{trigger['id']}/test",
                          json={"entity": {"invoice": {"id": 1, "number": "INV-1", "amount": 10}}})
        body = res.get_json()
        assert body["matched"] is False
        assert body["action"]["preview"]["title"] == "Paid INV-1"

    def test_toggle_update_delete(self, client):
        trigger = self._create(client).get_json()
        assert client.post(f"{API}/triggers/{trigger['id']}/toggle").get_json()["is_active"] is False
        res = client.put(f"{API}/triggers/{trigger['id']}", json={"name": "Renamed"})
        assert res.get_json()["name"] == "Renamed"
        assert client.delete(f"{API}/triggers/{trigger['id']}").status_code == 200
        assert client.get(f"{API}/triggers/{trigger['id']}").status_code == 404


# ═════════════════════════════════════════════════════════════════════════
# WEBHOOKS
# ═════════════════════════════════════════════════════════════════════════

class TestWebhookAPI:
    def test_secret_returned_only_on_create(self, client):
        res = client.post(f"{API}/webhook-destinations",
                          json={"name": "ERP", "url": "https://erp.example.test/hook"})
        assert res.status_code == 201
        created = res.get_json()
        assert created["secret"].startswith("whsec_")

        fetched = client.get(f"{API}/webhook-destinations/{created['id']}").get_json()
        assert "secret" not in fetched
        assert "secret_encrypted" not in fetched

    def test_rotate_secret(self, client, destination):
        dest, old_secret = destination
        res = client.post(f"{API}/webhook-destinations/{dest.id}/rotate-secret", json={"grace_hours": 12})
        body = res.get_json()
        assert body["secret"] != old_secret
        assert body["has_previous_secret"] is True

    def test_invalid_destination(self, client):
        res = client.post(f"{API}/webhook-destinations", json={"name": "x", "url": "not a url"})
        assert res.status_code == 422
        assert "url" in res.get_json()["details"]

    def test_send_test_event(self, client, destination):
        dest, _ = destination
        with patch.object(webhook_gateway, "send", return_value=TransportResult(200, "ok", 9)) as send:
            res = client.post(f"{API}/webhook-destinations/{dest.id}/test",
                              json={"event_type": "invoice.paid", "sample": {"id": 3, "amount": 40}})
        assert res.status_code == 201
        body = res.get_json()
        assert body["status"] == "success"
        assert len(body["attempts"]) == 1
        send.assert_called_once()

    def test_send_test_needs_event_type(self, client, destination):
        dest, _ = destination
        res = client.post(f"{API}/webhook-destinations/{dest.id}/test", json={})
        assert res.status_code == 422
        assert client.post(f"{API}/webhook-destinations/999/test",
                           json={"event_type": "invoice.paid"}).status_code == 404

    def test_deliveries_retry_and_stats(self, client, destination):
        dest, _ = destination
        client.post(f"{API}/triggers", json={
            "name": "Hook", "event_type": "invoice.paid",
            "action_type": "webhook", "action_config": {"destination_id": dest.id},
        })
        event = {"event_type": "invoice.paid", "entity": {"invoice": {"id": 7, "amount": 5}}}
        with patch.object(webhook_gateway, "send", side_effect=TransportError("HTTP 502", status_code=502)):
            client.post(f"{API}/events", json=event)

        listing = client.get(f"{API}/deliveries?destination_id={dest.id}").get_json()
        assert listing["total"] == 1
        delivery = listing["items"][0]
        assert delivery["status"] == "pending"

        with patch.object(webhook_gateway, "send", return_value=TransportResult(200, "ok", 9)):
            res = client.post(f"{API}/deliveries/{delivery['id']}/retry")
        assert res.get_json()["status"] == "success"
        assert len(res.get_json()["attempts"]) == 2

        res = client.post(f"{API}/deliveries/{delivery['id']}/retry")
        assert res.status_code == 409

        stats = client.get(f"{API}/webhook-destinations/{dest.id}/stats").get_json()
        assert stats["attempts"] == 2
        assert stats["success_rate"] == 50.0


# ═════════════════════════════════════════════════════════════════════════
# NOTIFICATIONS, SCHEDULER, HEALTH
# ═════════════════════════════════════════════════════════════════════════

class TestNotificationAPI:
    def test_list_read_and_stats(self, client):
        notif = NotificationService.create(title="Escalated", recipient="role:admin",
                                           category="approval", severity="error")
        NotificationService.create(title="Other", recipient="user:bob")

        body = client.get(f"{API}/notifications?recipient=role:admin").get_json()
        assert [n["title"] for n in body["items"]] == ["Escalated"]

        res = client.post(f"{API}/notifications/{notif.id}/read")
        assert res.get_json()["is_read"] is True

        stats = client.get(f"{API}/notifications/stats?recipient=role:admin").get_json()
        assert stats == {"total": 1, "unread": 0, "read": 1,
                         "by_category": {"approval": 1}, "by_severity": {"error": 1}}

    def test_unknown_notification(self, client):
        res = client.get(f"{API}/notifications/999")
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"


class TestSchedulerAPI:
    def test_list_jobs(self, client):
        body = client.get(f"{API}/scheduler/jobs").get_json()
        names = {j["job_name"] for j in body["jobs"]}
        assert {"webhook_retry_sweep", "approval_sweep"} <= names

    def test_trigger_job(self, client):
        res = client.post(f"{API}/scheduler/jobs/webhook_retry_sweep/trigger")
        body = res.get_json()
        assert body["status"] == "success"
        assert body["result"]["due"] == 0

    def test_unknown_job(self, client):
        assert client.post(f"{API}/scheduler/jobs/nope/trigger").status_code == 404

    def test_toggle_requires_enabled(self, client):
        res = client.patch(f"{API}/scheduler/jobs/approval_sweep/toggle", json={})
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_REQUIRED"


class TestHealthAPI:
    def test_ready(self, client):
        assert client.get(f"{API}/health/ready").get_json() == {"status": "ok"}

    def test_live(self, client):
        res = client.get(f"{API}/health/live")
        assert res.status_code == 200
        checks = res.get_json()["checks"]
        assert checks["database"]["status"] == "ok"
        assert checks["deliveries"] == {"status": "ok", "pending": 0, "abandoned": 0}
