"""
Webhook delivery tests.

Tests cover:
  - Backoff schedule and jitter bounds
  - First attempt, headers and signature
  - Destination test sends
  - Retry schedule up to abandonment + operator alert
  - Recovery on a later attempt, duplicate suppression
  - Manual retry rules and the attempt lease
  - Retry sweep (due selection, inactive destinations, should_stop)
  - Destination CRUD, secret rotation keyring, per-destination stats
  - WebhookGateway transport error mapping
"""

import random
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest
import requests

from app.core.exceptions import ConflictError, InvalidStateError, TransportError, ValidationError
from app.integrations.webhook_gateway import TransportResult, WebhookGateway, webhook_gateway
from app.models.delivery import DeliveryAttempt, DeliveryRecord
from app.models.notification import Notification
from app.services import delivery_service, webhook_service
from app.services.delivery_service import _claim, compute_backoff
from app.services.events import Event
from app.services.signature_service import compute_signature, verify_signature, verify_with_keyring
from app.utils.helpers import as_utc

OK = TransportResult(200, "ok", 15)


def _fail(code=503):
    return TransportError(f"HTTP {code}", status_code=code, response_body="unavailable", duration_ms=40)


def _event(invoice_id=7, updated_at="2026-03-02T08:00:00Z"):
    return Event.create(
        "invoice.paid",
        {"invoice": {"id": invoice_id, "number": f"INV-{invoice_id}", "amount": 1500,
                     "updated_at": updated_at}},
        occurred_at=datetime(2026, 3, 2, 8, 30, tzinfo=timezone.utc),
    )


def _deliver(dest, now, *, result=OK, event=None):
    side = {"side_effect": result} if isinstance(result, Exception) else {"return_value": result}
    with patch.object(webhook_gateway, "send", **side) as send:
        record = delivery_service.deliver_event(dest.id, event or _event(), now=now)
    return record, send


def _sweep(at, *, result=OK, **kwargs):
    side = {"side_effect": result} if isinstance(result, Exception) else {"return_value": result}
    with patch.object(webhook_gateway, "send", **side) as send:
        summary = delivery_service.process_due_retries(at, **kwargs)
    return summary, send


# ═════════════════════════════════════════════════════════════════════════
# BACKOFF
# ═════════════════════════════════════════════════════════════════════════

class TestBackoff:
    def test_doubles_per_attempt(self):
        assert [compute_backoff(n, 30) for n in range(1, 5)] == [30, 60, 120, 240]

    def test_jitter_stays_within_ratio(self):
        rng = random.Random(7)
        for attempt in range(1, 6):
            base = 30 * 2 ** (attempt - 1)
            delay = compute_backoff(attempt, 30, 0.1, rng)
            assert base <= delay <= base * 1.1

    def test_jittered_schedule_is_monotonic(self):
        rng = random.Random(1)
        for attempt in range(1, 6):
            highest = compute_backoff(attempt, 30, 5.0, rng)
            assert highest <= compute_backoff(attempt + 1, 30, 0.0)

    def test_attempt_is_one_based(self):
        with pytest.raises(ValueError):
            compute_backoff(0, 30)


# ═════════════════════════════════════════════════════════════════════════
# FIRST ATTEMPT
# ═════════════════════════════════════════════════════════════════════════

class TestDeliver:
    def test_success_on_first_attempt(self, destination, now):
        dest, secret = destination
        record, send = _deliver(dest, now)

        assert record.status == "success"
        assert record.attempt_count == 1
        assert record.response_status == 200
        assert as_utc(record.delivered_at) == now
        assert [a.status for a in record.attempts] == ["success"]
        send.assert_called_once()

    def test_request_is_signed_over_exact_body(self, destination, now):
        dest, secret = destination
        record, send = _deliver(dest, now)

        url, body, headers = send.call_args[0]
        assert body == record.payload_body.encode("utf-8")
        assert headers["X-Webhook-Signature"] == "sha256=" + compute_signature(secret, body)
        assert verify_signature(secret, body, headers["X-Webhook-Signature"])
        assert headers["Content-Type"] == "application/json"
        assert headers["X-Webhook-Id"] == record.payload["id"]
        assert headers["X-Webhook-Attempt"] == "1"
        assert headers["X-Webhook-Delivery"] == str(record.id)
        assert send.call_args[1]["method"] == "POST"

    def test_custom_headers_are_sent(self, now):
        dest, _ = webhook_service.create_destination({
            "name": "Custom", "url": "https://hooks.example.test/h",
            "headers": {"Authorization": "Bearer abc"},
        })
        _, send = _deliver(dest, now)
        assert send.call_args[0][2]["Authorization"] == "Bearer abc"

    def test_failed_first_attempt_schedules_retry(self, destination, now):
        dest, _ = destination
        record, _ = _deliver(dest, now, result=_fail())

        assert record.status == "pending"
        assert record.attempt_count == 1
        assert record.last_error == "HTTP 503"
        assert record.response_status == 503
        assert as_utc(record.next_retry_at) == now + timedelta(seconds=30)

    def test_same_event_is_delivered_once(self, destination, now):
        dest, _ = destination
        event = _event()
        first, _ = _deliver(dest, now, event=event)
        second, send = _deliver(dest, now, event=event)

        assert second.id == first.id
        send.assert_not_called()
        assert DeliveryRecord.query.count() == 1

    def test_inactive_destination_refuses_new_deliveries(self, destination, now):
        dest, _ = destination
        webhook_service.update_destination(dest.id, {"is_active": False})
        with pytest.raises(InvalidStateError):
            _deliver(dest, now)

    def test_url_and_payload_templates_are_rendered(self, now):
        dest, _ = webhook_service.create_destination({
            "name": "Templated",
            "url": "https://hooks.example.test/invoices/{{invoice.id}}?ref={{invoice.ref}}",
            "payload_template": {"number": "{{invoice.number}}", "amount": "{{invoice.amount}}"},
        })
        record, send = _deliver(dest, now)

        assert record.url == "https://hooks.example.test/invoices/7?ref={{invoice.ref}}"
        assert record.unresolved_tokens == ["invoice.ref"]
        assert record.payload["data"] == {"number": "INV-7", "amount": 1500}
        assert record.status == "success"


class TestSendTest:
    def test_sample_event_is_signed_and_recorded(self, destination, now):
        dest, secret = destination
        with patch.object(webhook_gateway, "send", return_value=OK) as send:
            record = delivery_service.send_test(dest.id, "invoice.paid", {"id": 99, "amount": 10}, now=now)

        assert record.status == "success"
        assert record.event_key is None
        assert record.payload["event_type"] == "invoice.paid"
        assert record.payload["data"]["invoice.amount"] == 10
        _, body, headers = send.call_args[0]
        assert verify_signature(secret, body, headers["X-Webhook-Signature"])

    def test_every_test_send_is_a_new_delivery(self, destination, now):
        dest, _ = destination
        with patch.object(webhook_gateway, "send", return_value=OK) as send:
            delivery_service.send_test(dest.id, "invoice.paid", now=now)
            delivery_service.send_test(dest.id, "invoice.paid", now=now)

        assert send.call_count == 2
        assert DeliveryRecord.query.count() == 2

    def test_failed_test_send_is_scheduled_for_retry(self, destination, now):
        dest, _ = destination
        with patch.object(webhook_gateway, "send", side_effect=_fail()):
            record = delivery_service.send_test(dest.id, "lead.created", now=now)
        assert record.status == "pending"
        assert record.attempt_count == 1

    def test_unknown_event_type_and_inactive_destination(self, destination, now):
        dest, _ = destination
        with pytest.raises(ValidationError):
            delivery_service.send_test(dest.id, "invoice.exploded", now=now)
        webhook_service.update_destination(dest.id, {"is_active": False})
        with pytest.raises(InvalidStateError):
            delivery_service.send_test(dest.id, "invoice.paid", now=now)


# ═════════════════════════════════════════════════════════════════════════
# RETRIES
# ═════════════════════════════════════════════════════════════════════════

class TestRetrySchedule:
    def test_five_failures_abandon_and_alert(self, destination, now):
        dest, _ = destination
        record, _ = _deliver(dest, now, result=_fail())
        record_id = record.id

        at = now
        for delay, attempt in ((30, 2), (60, 3), (120, 4)):
            at += timedelta(seconds=delay)
            early, _ = _sweep(at - timedelta(seconds=1), result=_fail())
            assert early["due"] == 0
            summary, _ = _sweep(at, result=_fail())
            assert summary["rescheduled"] == 1
            assert delivery_service.get_delivery(record_id).attempt_count == attempt

        at += timedelta(seconds=240)
        summary, _ = _sweep(at, result=_fail())
        assert summary["abandoned"] == 1

        record = delivery_service.get_delivery(record_id)
        assert record.status == "abandoned"
        assert record.attempt_count == 5
        assert record.next_retry_at is None
        assert [a.attempt_no for a in record.attempts] == [1, 2, 3, 4, 5]

        alert = Notification.query.filter_by(category="delivery").one()
        assert alert.recipient == "role:admin"
        assert alert.severity == "error"
        assert alert.entity_id == record_id

        after, send = _sweep(at + timedelta(days=1))
        assert after["due"] == 0
        send.assert_not_called()

    def test_recovers_on_later_attempt(self, destination, now):
        dest, _ = destination
        record, _ = _deliver(dest, now, result=_fail())
        summary, send = _sweep(now + timedelta(seconds=30))

        assert summary["succeeded"] == 1
        assert send.call_args[0][2]["X-Webhook-Attempt"] == "2"
        record = delivery_service.get_delivery(record.id)
        assert record.status == "success"
        assert [a.status for a in record.attempts] == ["failed", "success"]

    def test_retry_resends_identical_signed_body(self, destination, now):
        dest, _ = destination
        _, first_send = _deliver(dest, now, result=_fail())
        _, retry_send = _sweep(now + timedelta(seconds=30))
        assert retry_send.call_args[0][1] == first_send.call_args[0][1]

    def test_per_destination_attempt_limit(self, now):
        dest, _ = webhook_service.create_destination({
            "name": "Short", "url": "https://hooks.example.test/short", "max_attempts": 2,
        })
        record, _ = _deliver(dest, now, result=_fail())
        _sweep(now + timedelta(seconds=30), result=_fail())
        assert delivery_service.get_delivery(record.id).status == "abandoned"

    def test_inactive_destination_fails_at_retry_time(self, destination, now):
        dest, _ = destination
        record, _ = _deliver(dest, now, result=_fail())
        webhook_service.update_destination(dest.id, {"is_active": False})

        summary, send = _sweep(now + timedelta(seconds=30))

        assert summary["failed"] == 1
        send.assert_not_called()
        assert delivery_service.get_delivery(record.id).status == "failed"

    def test_should_stop_leaves_records_for_next_sweep(self, destination, now):
        dest, _ = destination
        _deliver(dest, now, result=_fail(), event=_event(1))
        _deliver(dest, now, result=_fail(), event=_event(2))
        at = now + timedelta(seconds=30)

        calls = iter([False, True])
        summary, _ = _sweep(at, should_stop=lambda: next(calls))
        assert summary["due"] == 2
        assert summary["attempted"] == 1

        resumed, _ = _sweep(at)
        assert resumed["due"] == 1
        assert resumed["succeeded"] == 1

    def test_held_lease_is_skipped_until_it_expires(self, destination, now):
        dest, _ = destination
        record, _ = _deliver(dest, now, result=_fail())
        at = now + timedelta(seconds=30)
        assert _claim(record.id, 1, at) is True

        held, send = _sweep(at)
        assert held["due"] == 0
        send.assert_not_called()

        expired, _ = _sweep(at + timedelta(minutes=5))
        assert expired["succeeded"] == 1


class TestRetryNow:
    def test_retries_ahead_of_schedule(self, destination, now):
        dest, _ = destination
        record, _ = _deliver(dest, now, result=_fail())
        with patch.object(webhook_gateway, "send", return_value=OK):
            record = delivery_service.retry_now(record.id, now=now + timedelta(seconds=1))
        assert record.status == "success"
        assert record.attempt_count == 2

    def test_successful_delivery_cannot_be_retried(self, destination, now):
        dest, _ = destination
        record, _ = _deliver(dest, now)
        with pytest.raises(InvalidStateError):
            delivery_service.retry_now(record.id, now=now)

    def test_abandoned_delivery_cannot_be_retried(self, now):
        dest, _ = webhook_service.create_destination({
            "name": "Once", "url": "https://hooks.example.test/once", "max_attempts": 1,
        })
        record, _ = _deliver(dest, now, result=_fail())
        assert record.status == "abandoned"
        with pytest.raises(InvalidStateError):
            delivery_service.retry_now(record.id, now=now)

    def test_failed_delivery_can_be_retried_after_reactivation(self, destination, now):
        dest, _ = destination
        record, _ = _deliver(dest, now, result=_fail())
        webhook_service.update_destination(dest.id, {"is_active": False})
        _sweep(now + timedelta(seconds=30))
        with pytest.raises(InvalidStateError):
            delivery_service.retry_now(record.id, now=now + timedelta(seconds=31))

        webhook_service.update_destination(dest.id, {"is_active": True})
        with patch.object(webhook_gateway, "send", return_value=OK):
            record = delivery_service.retry_now(record.id, now=now + timedelta(seconds=32))
        assert record.status == "success"

    def test_concurrent_attempt_conflicts(self, destination, now):
        dest, _ = destination
        record, _ = _deliver(dest, now, result=_fail())
        assert _claim(record.id, 1, now) is True
        with pytest.raises(ConflictError):
            delivery_service.retry_now(record.id, now=now)


# ═════════════════════════════════════════════════════════════════════════
# DESTINATIONS & SECRETS
# ═════════════════════════════════════════════════════════════════════════

class TestDestinations:
    @pytest.mark.parametrize("data", [
        {"name": "", "url": "https://hooks.example.test"},
        {"name": "x", "url": "ftp://hooks.example.test"},
        {"name": "x", "url": "https://hooks.example.test", "method": "DELETE"},
        {"name": "x", "url": "https://hooks.example.test", "max_attempts": 0},
    ])
    def test_invalid_destination_rejected(self, data):
        with pytest.raises(ValidationError):
            webhook_service.create_destination(data)

    def test_secret_is_encrypted_at_rest(self, destination):
        dest, secret = destination
        assert secret.startswith("whsec_")
        assert secret not in dest.secret_encrypted
        assert webhook_service.current_secret(dest) == secret

    def test_delete_removes_delivery_history(self, destination, now):
        dest, _ = destination
        _deliver(dest, now, result=_fail())
        webhook_service.delete_destination(dest.id)
        assert DeliveryRecord.query.count() == 0
        assert DeliveryAttempt.query.count() == 0


class TestSecretRotation:
    def test_old_secret_verifies_during_grace_window(self, destination, now):
        dest, old_secret = destination
        dest, new_secret = webhook_service.rotate_secret(dest.id, grace_hours=24, now=now)
        body = b'{"id":"x"}'
        old_signature = compute_signature(old_secret, body)

        assert new_secret != old_secret
        assert webhook_service.signing_secrets(dest, now + timedelta(hours=1)) == [new_secret, old_secret]
        assert verify_with_keyring(webhook_service.signing_secrets(dest, now + timedelta(hours=1)),
                                   body, old_signature)
        assert not verify_with_keyring(webhook_service.signing_secrets(dest, now + timedelta(hours=25)),
                                       body, old_signature)

    def test_zero_grace_revokes_immediately(self, destination, now):
        dest, _ = destination
        dest, new_secret = webhook_service.rotate_secret(dest.id, grace_hours=0, now=now)
        assert webhook_service.signing_secrets(dest, now) == [new_secret]

    def test_new_deliveries_use_new_secret(self, destination, now):
        dest, _ = destination
        _, new_secret = webhook_service.rotate_secret(dest.id, now=now)
        _, send = _deliver(dest, now)
        _, body, headers = send.call_args[0]
        assert verify_signature(new_secret, body, headers["X-Webhook-Signature"])


# ═════════════════════════════════════════════════════════════════════════
# STATS
# ═════════════════════════════════════════════════════════════════════════

class TestStats:
    def test_success_rate_latency_and_reasons(self, destination, now):
        dest, _ = destination
        _deliver(dest, now, event=_event(1))
        _deliver(dest, now, event=_event(2), result=_fail(503))
        _deliver(dest, now, event=_event(3), result=_fail(500))

        stats = delivery_service.get_delivery_stats(dest.id, window_hours=24, now=now)

        assert stats["attempts"] == 3
        assert stats["successful_attempts"] == 1
        assert stats["failed_attempts"] == 2
        assert stats["success_rate"] == 33.3
        assert stats["avg_latency_ms"] == round((15 + 40 + 40) / 3, 1)
        assert {r["reason"] for r in stats["failure_reasons"]} == {"HTTP 503", "HTTP 500"}
        assert stats["deliveries"]["success"] == 1
        assert stats["deliveries"]["pending"] == 2

    def test_attempts_outside_window_are_excluded(self, destination, now):
        dest, _ = destination
        _deliver(dest, now - timedelta(hours=30))
        stats = delivery_service.get_delivery_stats(dest.id, window_hours=24, now=now)
        assert stats["attempts"] == 0
        assert stats["success_rate"] is None


# ═════════════════════════════════════════════════════════════════════════
# TRANSPORT
# ═════════════════════════════════════════════════════════════════════════

class TestWebhookGateway:
    def _gateway(self, **request_kwargs):
        session = MagicMock()
        session.request.configure_mock(**request_kwargs)
        return WebhookGateway(session=session), session

    def test_2xx_returns_result(self):
        gateway, session = self._gateway(return_value=MagicMock(status_code=204, text=""))
        result = gateway.send("https://h.test", b"{}", {"X-A": "1"}, method="PUT", timeout=5)
        assert result.status_code == 204
        session.request.assert_called_once_with("PUT", "https://h.test", data=b"{}",
                                                headers={"X-A": "1"}, timeout=5)

    def test_non_2xx_raises_with_status(self):
        gateway, _ = self._gateway(return_value=MagicMock(status_code=410, text="gone"))
        with pytest.raises(TransportError) as exc_info:
            gateway.send("https://h.test", b"{}", {})
        assert exc_info.value.status_code == 410
        assert exc_info.value.response_body == "gone"

    def test_timeout_raises(self):
        gateway, _ = self._gateway(side_effect=requests.Timeout())
        with pytest.raises(TransportError, match="timed out after 3s"):
            gateway.send("https://h.test", b"{}", {}, timeout=3)

    def test_connection_error_raises(self):
        gateway, _ = self._gateway(side_effect=requests.ConnectionError("refused"))
        with pytest.raises(TransportError, match="ConnectionError"):
            gateway.send("https://h.test", b"{}", {})
