"""
Approval Workflow Engine tests.

Tests cover:
  - Request creation, default workflow lookup and the one-pending rule
  - Step snapshot isolation from later definition edits
  - Sequential / parallel / any_one progression, skip and revise
  - Decision guards (terminal, duplicate, out of order, version race)
  - Approver inbox
  - Bulk decisions and cancellation
  - Auto-approve and reminder / escalation sweeps
  - Outcome events reaching the trigger engine
"""

from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import update

from app.core.exceptions import ConflictError, InvalidStateError, NotFoundError, ValidationError
from app.models import db
from app.models.approval import ApprovalRequest
from app.models.automation import TriggerDispatch
from app.models.notification import Notification
from app.services import approval_engine, approval_service, trigger_engine, trigger_service
from app.services.approval_engine import SYSTEM_AUTO_APPROVER


def _workflow(entity_type, mode, steps, **extra):
    return approval_service.create_workflow({
        "name": f"{entity_type} {mode}",
        "entity_type": entity_type,
        "mode": mode,
        "is_default": True,
        "steps": steps,
        **extra,
    })


def _role(value, **extra):
    return {"approver_kind": "role", "approver_value": value, **extra}


def _step_ids(req):
    return [s.id for s in req.steps]


def _actions(req):
    return [h.action for h in approval_service.get_history(req.id)]


# ═════════════════════════════════════════════════════════════════════════
# CREATE
# ═════════════════════════════════════════════════════════════════════════

class TestCreateRequest:
    def test_opens_pending_request_from_default_workflow(self, invoice_workflow, now):
        req = approval_engine.create_request("invoice", 42, initiated_by="user:alice", now=now)

        assert req.status == "pending"
        assert req.workflow_id == invoice_workflow.id
        assert req.mode == "any_one"
        assert req.current_step == 1
        assert req.version == 1
        assert [s.approver for s in req.steps] == ["role:admin"]
        assert _actions(req) == ["initiated"]

    def test_second_pending_request_for_entity_conflicts(self, invoice_workflow, now):
        approval_engine.create_request("invoice", 42, now=now)
        with pytest.raises(ConflictError):
            approval_engine.create_request("invoice", 42, now=now)

    def test_other_entity_is_independent(self, invoice_workflow, now):
        approval_engine.create_request("invoice", 42, now=now)
        other = approval_engine.create_request("invoice", 43, now=now)
        assert other.status == "pending"

    def test_new_request_allowed_once_previous_is_terminal(self, invoice_workflow, now):
        first = approval_engine.create_request("invoice", 42, now=now)
        approval_engine.decide(first.id, _step_ids(first)[0], "revise", "user:boss", "Fix VAT", now=now)

        second = approval_engine.create_request("invoice", 42, now=now)
        assert second.id != first.id
        assert second.status == "pending"

    def test_missing_default_workflow(self, now):
        with pytest.raises(NotFoundError):
            approval_engine.create_request("contract", 1, now=now)

    def test_unknown_entity_type(self, now):
        with pytest.raises(ValidationError):
            approval_engine.create_request("spaceship", 1, now=now)

    def test_inactive_workflow_rejected(self, now):
        wf = _workflow("contract", "any_one", [_role("admin")], is_active=False)
        with pytest.raises(ValidationError):
            approval_engine.create_request("contract", 1, workflow_id=wf.id, now=now)

    def test_workflow_for_other_entity_type_rejected(self, invoice_workflow, now):
        with pytest.raises(ValidationError):
            approval_engine.create_request("contract", 1, workflow_id=invoice_workflow.id, now=now)

    def test_definition_edits_do_not_reach_open_request(self, invoice_workflow, now):
        req = approval_engine.create_request("invoice", 42, now=now)
        approval_service.update_step(invoice_workflow.steps[0].id, {"approver_value": "finance"})
        approval_service.add_step(invoice_workflow.id, _role("cfo"))

        req = approval_service.get_request(req.id)
        assert [s.approver for s in req.steps] == ["role:admin"]


# ═════════════════════════════════════════════════════════════════════════
# SEQUENTIAL
# ═════════════════════════════════════════════════════════════════════════

class TestSequential:
    def test_steps_advance_in_order_then_approve(self, deliverable_workflow, now):
        req = approval_engine.create_request("deliverable", 5, now=now)
        first, second = _step_ids(req)

        req = approval_engine.decide(req.id, first, "approve", "user:manager@studio.test", now=now)
        assert req.status == "pending"
        assert req.current_step == 2
        assert req.step_at(2).activated_at is not None

        req = approval_engine.decide(req.id, second, "approve", "client:client", "Looks good", now=now)
        assert req.status == "approved"
        assert req.completed_at is not None
        assert _actions(req) == ["initiated", "approved", "approved"]

    def test_out_of_order_step_rejected(self, deliverable_workflow, now):
        req = approval_engine.create_request("deliverable", 5, now=now)
        with pytest.raises(InvalidStateError):
            approval_engine.decide(req.id, _step_ids(req)[1], "approve", "client:client", now=now)

    def test_reject_ends_request(self, deliverable_workflow, now):
        req = approval_engine.create_request("deliverable", 5, now=now)
        req = approval_engine.decide(req.id, _step_ids(req)[0], "reject", "user:manager@studio.test", now=now)
        assert req.status == "rejected"
        assert approval_engine.eligible_steps(req) == []

    def test_revise_ends_request(self, deliverable_workflow, now):
        req = approval_engine.create_request("deliverable", 5, now=now)
        req = approval_engine.decide(req.id, _step_ids(req)[0], "revise", "user:manager@studio.test",
                                     "New logo please", now=now)
        assert req.status == "revision_requested"
        assert _actions(req)[-1] == "revision_requested"

    def test_optional_step_can_be_skipped(self, now):
        _workflow("proposal", "sequential", [
            {"approver_kind": "user", "approver_value": "sales@studio.test", "is_optional": True},
            _role("admin"),
        ])
        req = approval_engine.create_request("proposal", 9, now=now)
        req = approval_engine.decide(req.id, _step_ids(req)[0], "skip", "user:sales@studio.test", now=now)
        assert req.status == "pending"
        assert req.current_step == 2
        assert _actions(req)[-1] == "skipped"

    def test_required_step_cannot_be_skipped(self, deliverable_workflow, now):
        req = approval_engine.create_request("deliverable", 5, now=now)
        with pytest.raises(ValidationError):
            approval_engine.decide(req.id, _step_ids(req)[0], "skip", "user:manager@studio.test", now=now)


# ═════════════════════════════════════════════════════════════════════════
# PARALLEL & ANY_ONE
# ═════════════════════════════════════════════════════════════════════════

class TestParallel:
    def test_every_required_step_must_approve(self, now):
        _workflow("project", "parallel", [_role("pm"), _role("finance"), _role("legal", is_optional=True)])
        req = approval_engine.create_request("project", 3, now=now)
        pm, finance, _legal = _step_ids(req)

        req = approval_engine.decide(req.id, finance, "approve", "role:finance", now=now)
        assert req.status == "pending"
        req = approval_engine.decide(req.id, pm, "approve", "role:pm", now=now)
        assert req.status == "approved"

    def test_any_reject_rejects(self, now):
        _workflow("project", "parallel", [_role("pm"), _role("finance")])
        req = approval_engine.create_request("project", 3, now=now)
        req = approval_engine.decide(req.id, _step_ids(req)[1], "reject", "role:finance", now=now)
        assert req.status == "rejected"

    def test_all_optional_steps_are_treated_as_required(self, now):
        _workflow("project", "parallel", [_role("pm", is_optional=True), _role("finance", is_optional=True)])
        req = approval_engine.create_request("project", 3, now=now)
        pm, finance = _step_ids(req)

        req = approval_engine.decide(req.id, pm, "approve", "role:pm", now=now)
        assert req.status == "pending"
        req = approval_engine.decide(req.id, finance, "skip", "role:finance", now=now)
        assert req.status == "approved"

    def test_step_decided_twice_conflicts(self, now):
        _workflow("project", "parallel", [_role("pm"), _role("finance")])
        req = approval_engine.create_request("project", 3, now=now)
        pm = _step_ids(req)[0]
        approval_engine.decide(req.id, pm, "approve", "role:pm", now=now)
        with pytest.raises(ConflictError):
            approval_engine.decide(req.id, pm, "reject", "role:pm", now=now)


class TestAnyOne:
    def test_first_approval_wins(self, now):
        _workflow("contract", "any_one", [_role("legal"), _role("admin")])
        req = approval_engine.create_request("contract", 8, now=now)
        req = approval_engine.decide(req.id, _step_ids(req)[1], "approve", "role:admin", now=now)
        assert req.status == "approved"

    def test_rejected_only_when_every_required_step_rejects(self, now):
        _workflow("contract", "any_one", [_role("legal"), _role("admin")])
        req = approval_engine.create_request("contract", 8, now=now)
        legal, admin = _step_ids(req)

        req = approval_engine.decide(req.id, legal, "reject", "role:legal", now=now)
        assert req.status == "pending"
        req = approval_engine.decide(req.id, admin, "reject", "role:admin", now=now)
        assert req.status == "rejected"

    def test_skips_and_rejects_without_approval_reject(self, now):
        _workflow("contract", "any_one", [_role("legal", is_optional=True), _role("admin", is_optional=True)])
        req = approval_engine.create_request("contract", 8, now=now)
        legal, admin = _step_ids(req)

        req = approval_engine.decide(req.id, legal, "skip", "role:legal", now=now)
        assert req.status == "pending"
        req = approval_engine.decide(req.id, admin, "reject", "role:admin", now=now)
        assert req.status == "rejected"
        assert approval_engine.eligible_steps(req) == []

    def test_every_step_skipped_rejects(self, now):
        _workflow("contract", "any_one", [_role("legal", is_optional=True), _role("admin", is_optional=True)])
        req = approval_engine.create_request("contract", 8, now=now)
        for step_id in _step_ids(req):
            req = approval_engine.decide(req.id, step_id, "skip", "role:ops", now=now)
        assert req.status == "rejected"


class TestApproverInbox:
    def test_lists_requests_waiting_on_the_approver(self, invoice_workflow, now):
        first = approval_engine.create_request("invoice", 42, now=now)
        second = approval_engine.create_request("invoice", 43, now=now + timedelta(minutes=5))

        inbox = approval_engine.list_pending_for_approver("role", "admin")

        assert [item["request"]["id"] for item in inbox] == [first.id, second.id]
        assert [s["approver_value"] for s in inbox[0]["steps"]] == ["admin"]

    def test_sequential_request_appears_when_its_turn_comes(self, deliverable_workflow, now):
        req = approval_engine.create_request("deliverable", 5, now=now)
        assert approval_engine.list_pending_for_approver("client", "client") == []

        approval_engine.decide(req.id, _step_ids(req)[0], "approve", "user:manager@studio.test", now=now)

        inbox = approval_engine.list_pending_for_approver("client", "client")
        assert [item["request"]["id"] for item in inbox] == [req.id]
        assert approval_engine.list_pending_for_approver("user", "manager@studio.test") == []

    def test_decided_and_terminal_requests_drop_out(self, invoice_workflow, now):
        req = approval_engine.create_request("invoice", 42, now=now)
        approval_engine.decide(req.id, _step_ids(req)[0], "approve", "role:admin", now=now)
        assert approval_engine.list_pending_for_approver("role", "admin") == []

    def test_unknown_approver_kind(self):
        with pytest.raises(ValidationError):
            approval_engine.list_pending_for_approver("team", "x")


# ═════════════════════════════════════════════════════════════════════════
# DECISION GUARDS
# ═════════════════════════════════════════════════════════════════════════

class TestDecisionGuards:
    def test_unknown_decision(self, invoice_workflow, now):
        req = approval_engine.create_request("invoice", 42, now=now)
        with pytest.raises(ValidationError):
            approval_engine.decide(req.id, _step_ids(req)[0], "maybe", "user:bob", now=now)

    def test_actor_required(self, invoice_workflow, now):
        req = approval_engine.create_request("invoice", 42, now=now)
        with pytest.raises(ValidationError):
            approval_engine.decide(req.id, _step_ids(req)[0], "approve", "  ", now=now)

    def test_unknown_request_and_step(self, invoice_workflow, now):
        req = approval_engine.create_request("invoice", 42, now=now)
        with pytest.raises(NotFoundError):
            approval_engine.decide(9999, _step_ids(req)[0], "approve", "user:bob", now=now)
        with pytest.raises(NotFoundError):
            approval_engine.decide(req.id, 9999, "approve", "user:bob", now=now)

    def test_terminal_request_refuses_decisions(self, now):
        _workflow("contract", "any_one", [_role("legal"), _role("admin")])
        req = approval_engine.create_request("contract", 8, now=now)
        legal, admin = _step_ids(req)
        approval_engine.decide(req.id, legal, "approve", "role:legal", now=now)
        with pytest.raises(InvalidStateError):
            approval_engine.decide(req.id, admin, "approve", "role:admin", now=now)

    def test_stale_version_loses_the_race(self, invoice_workflow, now):
        req = approval_engine.create_request("invoice", 42, now=now)
        step_id = _step_ids(req)[0]
        # Another writer bumps the version behind this session's back.
        db.session.execute(
            update(ApprovalRequest)
            .where(ApprovalRequest.id == req.id)
            .values(version=2)
            .execution_options(synchronize_session=False)
        )

        with pytest.raises(ConflictError):
            approval_engine.decide(req.id, step_id, "approve", "user:bob", now=now)

        req = approval_service.get_request(req.id)
        assert req.status == "pending"
        assert req.decisions == []
        assert approval_engine.decide(req.id, step_id, "approve", "user:bob", now=now).status == "approved"

    def test_version_bumps_on_every_decision(self, deliverable_workflow, now):
        req = approval_engine.create_request("deliverable", 5, now=now)
        req = approval_engine.decide(req.id, _step_ids(req)[0], "approve", "user:manager@studio.test", now=now)
        assert req.version == 2


# ═════════════════════════════════════════════════════════════════════════
# BULK & CANCEL
# ═════════════════════════════════════════════════════════════════════════

class TestBulkDecide:
    def test_applies_decision_to_each_request(self, invoice_workflow, now):
        ids = [approval_engine.create_request("invoice", n, now=now).id for n in (1, 2, 3)]
        results = approval_engine.bulk_decide(ids, "approve", "user:boss", "Batch OK", now=now)

        assert [r["request_id"] for r in results] == ids
        assert all(r["ok"] and r["status"] == "approved" for r in results)

    def test_mixed_status_rejects_whole_batch(self, invoice_workflow, now):
        done = approval_engine.create_request("invoice", 1, now=now)
        approval_engine.decide(done.id, _step_ids(done)[0], "approve", "user:boss", now=now)
        open_req = approval_engine.create_request("invoice", 2, now=now)

        with pytest.raises(ValidationError) as exc_info:
            approval_engine.bulk_decide([done.id, open_req.id], "reject", "user:boss", now=now)

        assert str(done.id) in exc_info.value.details
        assert "status" in exc_info.value.details
        assert approval_service.get_request(open_req.id).status == "pending"

    def test_unknown_id_rejects_whole_batch(self, invoice_workflow, now):
        req = approval_engine.create_request("invoice", 1, now=now)
        with pytest.raises(ValidationError) as exc_info:
            approval_engine.bulk_decide([req.id, 9999], "approve", "user:boss", now=now)
        assert exc_info.value.details["9999"] == "not found"
        assert approval_service.get_request(req.id).status == "pending"

    def test_skip_is_not_a_bulk_decision(self, invoice_workflow, now):
        req = approval_engine.create_request("invoice", 1, now=now)
        with pytest.raises(ValidationError):
            approval_engine.bulk_decide([req.id], "skip", "user:boss", now=now)


class TestCancel:
    def test_cancel_pending_request(self, invoice_workflow, now):
        req = approval_engine.create_request("invoice", 42, now=now)
        req = approval_engine.cancel_request(req.id, "user:alice", "Invoice voided", now=now)
        assert req.status == "cancelled"
        assert _actions(req) == ["initiated", "cancelled"]

    def test_cancel_terminal_request_fails(self, invoice_workflow, now):
        req = approval_engine.create_request("invoice", 42, now=now)
        approval_engine.cancel_request(req.id, "user:alice", now=now)
        with pytest.raises(InvalidStateError):
            approval_engine.cancel_request(req.id, "user:alice", now=now)


# ═════════════════════════════════════════════════════════════════════════
# SWEEPS
# ═════════════════════════════════════════════════════════════════════════

class TestAutoApprove:
    def test_step_auto_approves_after_delay(self, now):
        _workflow("invoice", "any_one", [_role("admin", auto_approve_after_hours=24)])
        req = approval_engine.create_request("invoice", 42, now=now)

        early = approval_engine.auto_approve_sweep(now + timedelta(hours=23))
        assert early["auto_approved"] == 0

        summary = approval_engine.auto_approve_sweep(now + timedelta(hours=24))
        assert summary == {"checked": 1, "auto_approved": 1, "conflicts": 0}
        req = approval_service.get_request(req.id)
        assert req.status == "approved"
        assert req.decisions[0].actor == SYSTEM_AUTO_APPROVER
        assert _actions(req)[-1] == "auto_approved"

    def test_sequential_delay_counts_from_step_activation(self, now):
        _workflow("deliverable", "sequential", [
            _role("admin"),
            {"approver_kind": "client", "approver_value": "client", "auto_approve_after_hours": 48},
        ])
        req = approval_engine.create_request("deliverable", 5, now=now)
        approval_engine.decide(req.id, _step_ids(req)[0], "approve", "role:admin",
                               now=now + timedelta(hours=24))

        assert approval_engine.auto_approve_sweep(now + timedelta(hours=48))["auto_approved"] == 0
        assert approval_engine.auto_approve_sweep(now + timedelta(hours=72))["auto_approved"] == 1

    def test_closed_request_stops_remaining_due_steps(self, now):
        _workflow("contract", "any_one", [
            _role("legal", auto_approve_after_hours=1),
            _role("admin", auto_approve_after_hours=1),
        ])
        req = approval_engine.create_request("contract", 8, now=now)

        summary = approval_engine.auto_approve_sweep(now + timedelta(hours=2))

        assert summary == {"checked": 1, "auto_approved": 1, "conflicts": 0}
        req = approval_service.get_request(req.id)
        assert req.status == "approved"
        assert len(req.decisions) == 1

    def test_should_stop_halts_before_work(self, now):
        _workflow("invoice", "any_one", [_role("admin", auto_approve_after_hours=1)])
        approval_engine.create_request("invoice", 42, now=now)
        summary = approval_engine.auto_approve_sweep(now + timedelta(hours=2), should_stop=lambda: True)
        assert summary["checked"] == 0


class TestReminders:
    def _notifications(self, recipient):
        return Notification.query.filter_by(recipient=recipient, category="approval").all()

    def test_reminders_follow_thresholds_then_escalate(self, deliverable_workflow, now):
        req = approval_engine.create_request("deliverable", 5, now=now)
        approver = "user:manager@studio.test"

        assert approval_engine.reminder_sweep(now + timedelta(hours=12))["reminded"] == 0

        assert approval_engine.reminder_sweep(now + timedelta(days=1))["reminded"] == 1
        assert approval_engine.reminder_sweep(now + timedelta(days=2))["reminded"] == 0
        assert approval_engine.reminder_sweep(now + timedelta(days=3))["reminded"] == 1
        assert len(self._notifications(approver)) == 2

        summary = approval_engine.reminder_sweep(now + timedelta(days=7))
        assert summary["escalated"] == 1
        alerts = self._notifications("role:admin")
        assert len(alerts) == 1
        assert alerts[0].severity == "error"

        after = approval_engine.reminder_sweep(now + timedelta(days=30))
        assert after["reminded"] == 0 and after["escalated"] == 0

        req = approval_service.get_request(req.id)
        assert req.reminder_count == 3
        assert _actions(req) == ["initiated", "reminder_sent", "reminder_sent", "escalated"]

    def test_reminder_does_not_touch_decision_version(self, deliverable_workflow, now):
        req = approval_engine.create_request("deliverable", 5, now=now)
        approval_engine.reminder_sweep(now + timedelta(days=1))
        req = approval_service.get_request(req.id)
        assert req.version == 1
        approval_engine.decide(req.id, _step_ids(req)[0], "approve", "user:manager@studio.test", now=now)

    def test_run_sweeps_auto_approves_before_reminding(self, now):
        _workflow("invoice", "any_one", [_role("admin", auto_approve_after_hours=24)])
        approval_engine.create_request("invoice", 42, now=now)

        result = approval_engine.run_sweeps(now + timedelta(days=1))

        assert result["auto_approve"]["auto_approved"] == 1
        assert result["reminders"]["reminded"] == 0
        assert Notification.query.filter_by(category="approval").count() == 0


# ═════════════════════════════════════════════════════════════════════════
# OUTCOME EVENTS
# ═════════════════════════════════════════════════════════════════════════

class TestOutcomeEvents:
    def test_terminal_transition_fires_matching_trigger(self, invoice_workflow, now):
        trigger = trigger_service.create_trigger({
            "name": "Tell finance",
            "event_type": "invoice.approved",
            "action_type": "notify",
            "action_config": {"recipient": "role:finance", "title": "Invoice {{invoice.id}} approved"},
        })
        req = approval_engine.create_request("invoice", 42, now=now)
        approval_engine.decide(req.id, _step_ids(req)[0], "approve", "user:boss", now=now)

        notif = Notification.query.filter_by(recipient="role:finance").one()
        assert notif.title == "Invoice 42 approved"
        dispatch = TriggerDispatch.query.filter_by(trigger_id=trigger.id).one()
        assert dispatch.status == "success"

    def test_non_terminal_decision_emits_nothing(self, deliverable_workflow, now):
        req = approval_engine.create_request("deliverable", 5, now=now)
        with patch.object(trigger_engine, "emit_event") as emit:
            approval_engine.decide(req.id, _step_ids(req)[0], "approve", "user:manager@studio.test", now=now)
        emit.assert_not_called()

    def test_dispatch_failure_keeps_the_decision(self, invoice_workflow, now):
        req = approval_engine.create_request("invoice", 42, now=now)
        with patch.object(trigger_engine, "emit_event", side_effect=RuntimeError("queue down")):
            result = approval_engine.decide(req.id, _step_ids(req)[0], "approve", "user:boss", now=now)

        assert result.status == "approved"
        assert approval_service.get_request(req.id).status == "approved"

    def test_event_type_follows_outcome(self, invoice_workflow, now):
        req = approval_engine.create_request("invoice", 42, now=now)
        with patch.object(trigger_engine, "emit_event") as emit:
            approval_engine.decide(req.id, _step_ids(req)[0], "reject", "user:boss", "Wrong PO", now=now)

        event = emit.call_args[0][0]
        assert event.event_type == "invoice.rejected"
        assert event.entity_id == 42
        assert event.snapshot["approval.comment"] == "Wrong PO"
        assert event.snapshot["approval.decided_by"] == "user:boss"
