"""
Webhook delivery: send, record, retry with exponential backoff, report.

Life cycle of a DeliveryRecord::

    pending ──2xx──────────────────────────────▶ success
       │
       └─failure─▶ attempt_count < max ─▶ pending (next_retry_at = now + backoff)
                   attempt_count == max ─▶ abandoned (+ operator alert)

    destination inactive at retry time ───────▶ failed

Every attempt is claimed first with a compare-and-swap on
(status, attempt_count, locked_until), so several delivery workers can run
the retry sweep at once without sending the same attempt twice. A worker
that dies mid-attempt leaves a lease that expires; the record is then due
again because ``next_retry_at`` was never moved forward.

Transport failures never propagate: they become attempt rows and retries.
"""

from __future__ import annotations

import logging
import random
from collections import Counter
from collections.abc import Callable
from datetime import timedelta
from typing import Any

from flask import current_app
from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError

from app.core.exceptions import ConflictError, InvalidStateError, NotFoundError, TransportError
from app.integrations.webhook_gateway import webhook_gateway
from app.models import db
from app.models.delivery import DeliveryAttempt, DeliveryRecord, WebhookDestination
from app.services import payload_codec
from app.services.events import Event
from app.services.notification import NotificationService
from app.services.signature_service import SIGNATURE_HEADER, compute_signature, format_header
from app.services.webhook_service import current_secret, get_destination
from app.utils.helpers import paginate_query, utcnow

logger = logging.getLogger(__name__)

USER_AGENT = "BizOps-Automation-Webhook/1.0"


def _cfg(key: str, default: Any) -> Any:
    return current_app.config.get(key, default)


def _lease_seconds() -> int:
    return int(_cfg("WEBHOOK_TIMEOUT_SECONDS", 10)) * 3


# ══════════════════════════════════════════════════════════════════
# Backoff
# ══════════════════════════════════════════════════════════════════


def compute_backoff(
    attempt: int,
    base_delay: float,
    jitter_ratio: float = 0.0,
    rng: random.Random | None = None,
) -> float:
    """Delay in seconds before the retry that follows failed attempt *attempt*.

    ``base_delay * 2^(attempt-1)`` plus up to ``jitter_ratio`` of that delay.
    The ratio is capped at 1, which keeps the schedule monotonic: the
    largest delay for attempt n never exceeds the smallest for attempt n+1.
    """
    if attempt < 1:
        raise ValueError("attempt is 1-based")
    delay = float(base_delay) * (2 ** (attempt - 1))
    ratio = min(max(jitter_ratio, 0.0), 1.0)
    if ratio:
        delay += (rng or random).uniform(0, delay * ratio)
    return delay


# ══════════════════════════════════════════════════════════════════
# Payload construction
# ══════════════════════════════════════════════════════════════════


def prepare_delivery(dest: WebhookDestination, event) -> dict[str, Any]:
    """Build everything a delivery needs for *event*, without sending it.

    Used both by real dispatch and by trigger test mode.

    Returns:
        dict with url, method, payload, body (str), signature, headers,
        unresolved_tokens.
    """
    snapshot = event.snapshot
    url, unresolved = payload_codec.substitute(dest.url, snapshot)

    data = None
    if dest.payload_template:
        data, missing = payload_codec.render_template(dest.payload_template, snapshot)
        unresolved = unresolved + missing

    payload = payload_codec.build_payload(
        event,
        data=data,
        version=_cfg("WEBHOOK_PAYLOAD_VERSION", payload_codec.DEFAULT_VERSION),
        source=_cfg("WEBHOOK_PAYLOAD_SOURCE", payload_codec.DEFAULT_SOURCE),
    )
    body = payload_codec.serialize(payload)
    signature = compute_signature(current_secret(dest), body)
    unresolved = sorted(set(unresolved))
    if unresolved:
        logger.warning(
            "Unresolved template tokens for destination=%s: %s", dest.id, ", ".join(unresolved),
            extra={"event_type": event.event_type},
        )
    return {
        "url": url,
        "method": dest.method,
        "payload": payload,
        "body": body.decode("utf-8"),
        "signature": signature,
        "headers": _headers(dest, payload, signature, attempt_no=1),
        "unresolved_tokens": unresolved,
    }


def _headers(dest: WebhookDestination, payload: dict, signature: str,
             attempt_no: int, delivery_id: int | None = None) -> dict[str, str]:
    headers = {str(k): str(v) for k, v in (dest.headers or {}).items()}
    headers.update({
        "Content-Type": "application/json",
        "User-Agent": USER_AGENT,
        "X-Webhook-Id": str(payload.get("id", "")),
        "X-Webhook-Event": str(payload.get("event_type", "")),
        "X-Webhook-Timestamp": str(payload.get("timestamp", "")),
        "X-Webhook-Attempt": str(attempt_no),
        SIGNATURE_HEADER: format_header(signature),
    })
    if delivery_id is not None:
        headers["X-Webhook-Delivery"] = str(delivery_id)
    return headers


# ══════════════════════════════════════════════════════════════════
# Deliver
# ══════════════════════════════════════════════════════════════════


def deliver(
    destination: WebhookDestination | int,
    payload: dict[str, Any],
    *,
    event_key: str | None = None,
    trigger_id: int | None = None,
    url: str | None = None,
    unresolved_tokens: list[str] | None = None,
    now=None,
) -> DeliveryRecord:
    """Record and attempt one delivery of *payload* to *destination*.

    A second call with the same (destination, event_key) returns the existing
    record instead of sending again.

    Returns:
        The DeliveryRecord after its first attempt (success or pending retry).
    """
    dest = destination if isinstance(destination, WebhookDestination) else get_destination(destination)
    now = now or utcnow()

    if event_key:
        existing = DeliveryRecord.query.filter_by(destination_id=dest.id, event_key=event_key).first()
        if existing:
            logger.info(
                "Duplicate delivery suppressed destination=%s event_key=%s",
                dest.id, event_key, extra={"delivery_id": existing.id},
            )
            return existing

    body = payload_codec.serialize(payload)
    record = DeliveryRecord(
        destination_id=dest.id,
        event_key=event_key,
        trigger_id=trigger_id,
        event_type=str(payload.get("event_type", "")),
        url=url or dest.url,
        payload=payload,
        payload_body=body.decode("utf-8"),
        signature=compute_signature(current_secret(dest), body),
        unresolved_tokens=unresolved_tokens or [],
        status="pending",
        attempt_count=0,
        max_attempts=dest.max_attempts or int(_cfg("WEBHOOK_MAX_ATTEMPTS", 5)),
        next_retry_at=now,
    )
    db.session.add(record)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        existing = DeliveryRecord.query.filter_by(destination_id=dest.id, event_key=event_key).first()
        if existing is None:
            raise
        return existing

    if _claim(record.id, 0, now):
        _attempt(record, now)
    return record


def deliver_event(destination_id: int, event, *, trigger_id: int | None = None, now=None) -> DeliveryRecord:
    """Build the payload for *event* and deliver it (``webhook`` trigger action)."""
    dest = get_destination(destination_id)
    if not dest.is_active:
        raise InvalidStateError(f"Webhook destination {dest.id} is inactive", current_state="inactive")
    prepared = prepare_delivery(dest, event)
    return deliver(
        dest,
        prepared["payload"],
        event_key=event.idempotency_key,
        trigger_id=trigger_id,
        url=prepared["url"],
        unresolved_tokens=prepared["unresolved_tokens"],
        now=now,
    )


def send_test(destination_id: int, event_type: str, sample: dict[str, Any] | None = None,
              *, now=None) -> DeliveryRecord:
    """Deliver a sample event to one destination.

    Goes through the normal signed, recorded and retried path but without
    an event key, so every test send is a new delivery.
    """
    dest = get_destination(destination_id)
    if not dest.is_active:
        raise InvalidStateError(f"Webhook destination {dest.id} is inactive", current_state="inactive")
    now = now or utcnow()
    entity_type = (event_type or "").split(".", 1)[0]
    event = Event.create(
        event_type,
        sample or {entity_type: {"id": 0, "test": True}},
        updated_at=now,
        occurred_at=now,
        triggered_by="test",
    )
    prepared = prepare_delivery(dest, event)
    logger.info("Test delivery of %s to destination=%s", event_type, dest.id,
                extra={"event_type": event_type})
    return deliver(
        dest,
        prepared["payload"],
        url=prepared["url"],
        unresolved_tokens=prepared["unresolved_tokens"],
        now=now,
    )


# ══════════════════════════════════════════════════════════════════
# Attempts
# ══════════════════════════════════════════════════════════════════


def _claim(record_id: int, expected_attempts: int, now) -> bool:
    """Take the attempt lease; False if another worker already holds or finished it."""
    stmt = (
        update(DeliveryRecord)
        .where(
            DeliveryRecord.id == record_id,
            DeliveryRecord.status == "pending",
            DeliveryRecord.attempt_count == expected_attempts,
            or_(DeliveryRecord.locked_until.is_(None), DeliveryRecord.locked_until <= now),
        )
        .values(locked_until=now + timedelta(seconds=_lease_seconds()))
        .execution_options(synchronize_session=False)
    )
    claimed = db.session.execute(stmt).rowcount == 1
    db.session.commit()
    return claimed


def _attempt(record: DeliveryRecord, now) -> DeliveryRecord:
    """Perform one claimed transport attempt and persist its outcome."""
    dest = record.destination
    attempt_no = record.attempt_count + 1
    headers = _headers(dest, record.payload, record.signature, attempt_no, delivery_id=record.id)

    try:
        result = webhook_gateway.send(
            record.url,
            record.payload_body.encode("utf-8"),
            headers,
            method=dest.method,
            timeout=int(_cfg("WEBHOOK_TIMEOUT_SECONDS", 10)),
        )
    except TransportError as exc:
        _record_failure(record, attempt_no, exc, now)
    else:
        _record_success(record, attempt_no, result, now)
    return record


def _record_success(record: DeliveryRecord, attempt_no: int, result, now) -> None:
    record.attempt_count = attempt_no
    record.status = "success"
    record.response_status = result.status_code
    record.response_body = result.body
    record.last_latency_ms = result.duration_ms
    record.last_error = None
    record.next_retry_at = None
    record.locked_until = None
    record.delivered_at = now
    db.session.add(DeliveryAttempt(
        delivery_id=record.id,
        destination_id=record.destination_id,
        attempt_no=attempt_no,
        status="success",
        response_status=result.status_code,
        latency_ms=result.duration_ms,
        attempted_at=now,
    ))
    db.session.commit()
    logger.info(
        "Webhook delivered status=%s attempt=%d/%d url=%s",
        result.status_code, attempt_no, record.max_attempts, record.url,
        extra={"delivery_id": record.id, "event_type": record.event_type},
    )


def _record_failure(record: DeliveryRecord, attempt_no: int, exc: TransportError, now) -> None:
    record.attempt_count = attempt_no
    record.last_error = str(exc)
    record.response_status = exc.status_code
    record.response_body = exc.response_body
    record.last_latency_ms = exc.duration_ms
    record.locked_until = None
    db.session.add(DeliveryAttempt(
        delivery_id=record.id,
        destination_id=record.destination_id,
        attempt_no=attempt_no,
        status="failed",
        response_status=exc.status_code,
        error=str(exc),
        latency_ms=exc.duration_ms,
        attempted_at=now,
    ))

    abandoned = attempt_no >= record.max_attempts
    if abandoned:
        record.status = "abandoned"
        record.next_retry_at = None
    else:
        delay = compute_backoff(
            attempt_no,
            _cfg("WEBHOOK_BASE_DELAY_SECONDS", 30),
            _cfg("WEBHOOK_JITTER_RATIO", 0.1),
        )
        record.status = "pending"
        record.next_retry_at = now + timedelta(seconds=delay)
    db.session.commit()

    if abandoned:
        logger.error(
            "Webhook abandoned after %d attempts url=%s error=%s",
            attempt_no, record.url, exc,
            extra={"delivery_id": record.id, "event_type": record.event_type},
        )
        NotificationService.alert_delivery_abandoned(
            record, recipient=_cfg("OPERATOR_ALERT_RECIPIENT", "role:admin"),
        )
    else:
        logger.warning(
            "Webhook attempt %d/%d failed url=%s error=%s next_retry_at=%s",
            attempt_no, record.max_attempts, record.url, exc, record.next_retry_at.isoformat(),
            extra={"delivery_id": record.id, "event_type": record.event_type},
        )


# ══════════════════════════════════════════════════════════════════
# Retries
# ══════════════════════════════════════════════════════════════════


def get_delivery(delivery_id: int) -> DeliveryRecord:
    record = db.session.get(DeliveryRecord, delivery_id)
    if not record:
        raise NotFoundError(resource="DeliveryRecord", resource_id=delivery_id)
    return record


def retry_now(delivery_id: int, now=None) -> DeliveryRecord:
    """Attempt a delivery immediately, ignoring its backoff schedule.

    Raises:
        InvalidStateError: already delivered, abandoned, attempt limit reached,
            or destination inactive.
        ConflictError: another worker is attempting it right now.
    """
    now = now or utcnow()
    record = get_delivery(delivery_id)
    if record.status == "success":
        raise InvalidStateError("Delivery already succeeded", current_state="success")
    if record.status == "abandoned" or record.attempt_count >= record.max_attempts:
        raise InvalidStateError(
            f"Delivery reached its limit of {record.max_attempts} attempts",
            current_state=record.status,
        )
    if not record.destination.is_active:
        raise InvalidStateError("Webhook destination is inactive", current_state="inactive")

    if record.status == "failed":
        record.status = "pending"
        db.session.commit()

    if not _claim(record.id, record.attempt_count, now):
        raise ConflictError(
            "DeliveryRecord", "locked_until", delivery_id,
            message="Delivery is being attempted by another worker",
        )
    logger.info("Manual retry delivery=%s", record.id, extra={"delivery_id": record.id})
    return _attempt(record, now)


def process_due_retries(
    now=None,
    *,
    limit: int | None = None,
    should_stop: Callable[[], bool] | None = None,
) -> dict[str, int]:
    """Retry sweep: attempt every pending delivery whose retry time has come.

    Eligibility is re-checked per record by the claim, so a partially
    processed batch is safe to resume. ``should_stop`` is polled between
    records; the record in flight always completes.
    """
    now = now or utcnow()
    limit = limit or int(_cfg("WEBHOOK_RETRY_BATCH_SIZE", 100))
    due_ids = [
        row.id
        for row in db.session.query(DeliveryRecord.id)
        .filter(
            DeliveryRecord.status == "pending",
            DeliveryRecord.next_retry_at <= now,
            or_(DeliveryRecord.locked_until.is_(None), DeliveryRecord.locked_until <= now),
        )
        .order_by(DeliveryRecord.next_retry_at, DeliveryRecord.id)
        .limit(limit)
        .all()
    ]

    summary = {"due": len(due_ids), "attempted": 0, "succeeded": 0,
               "rescheduled": 0, "abandoned": 0, "failed": 0, "skipped": 0}
    for record_id in due_ids:
        if should_stop and should_stop():
            logger.info("Retry sweep stopping early after %d records", summary["attempted"])
            break
        record = db.session.get(DeliveryRecord, record_id)
        if record is None or record.status != "pending":
            summary["skipped"] += 1
            continue
        if not record.destination.is_active:
            record.status = "failed"
            record.next_retry_at = None
            record.last_error = "Destination inactive"
            db.session.commit()
            summary["failed"] += 1
            continue
        if not _claim(record.id, record.attempt_count, now):
            summary["skipped"] += 1
            continue

        _attempt(record, now)
        summary["attempted"] += 1
        if record.status == "success":
            summary["succeeded"] += 1
        elif record.status == "abandoned":
            summary["abandoned"] += 1
        else:
            summary["rescheduled"] += 1

    if summary["due"]:
        logger.info("Retry sweep finished: %s", summary)
    return summary


# ══════════════════════════════════════════════════════════════════
# Queries
# ══════════════════════════════════════════════════════════════════


def list_deliveries(
    *,
    destination_id: int | None = None,
    status: str | None = None,
    event_key: str | None = None,
    page: int = 1,
    per_page: int = 20,
) -> tuple[list[DeliveryRecord], int]:
    q = DeliveryRecord.query
    if destination_id:
        q = q.filter_by(destination_id=destination_id)
    if status:
        q = q.filter_by(status=status)
    if event_key:
        q = q.filter_by(event_key=event_key)
    return paginate_query(q.order_by(DeliveryRecord.created_at.desc(), DeliveryRecord.id.desc()),
                          page, per_page)


def get_delivery_stats(destination_id: int, window_hours: int = 24, now=None) -> dict[str, Any]:
    """Success rate, latency and failure reasons for one destination.

    Attempt-level figures cover attempts made inside the window; record
    counts cover deliveries created inside it.
    """
    dest = get_destination(destination_id)
    now = now or utcnow()
    since = now - timedelta(hours=window_hours)

    attempts = (
        DeliveryAttempt.query
        .filter(DeliveryAttempt.destination_id == dest.id, DeliveryAttempt.attempted_at >= since)
        .all()
    )
    total = len(attempts)
    succeeded = sum(1 for a in attempts if a.status == "success")
    failed = total - succeeded
    latencies = [a.latency_ms for a in attempts if a.latency_ms is not None]
    reasons = Counter(a.error or f"HTTP {a.response_status}" for a in attempts if a.status != "success")

    by_status = dict(
        db.session.query(DeliveryRecord.status, func.count(DeliveryRecord.id))
        .filter(DeliveryRecord.destination_id == dest.id, DeliveryRecord.created_at >= since)
        .group_by(DeliveryRecord.status)
        .all()
    )

    return {
        "destination_id": dest.id,
        "window_hours": window_hours,
        "since": since.isoformat(),
        "attempts": total,
        "successful_attempts": succeeded,
        "failed_attempts": failed,
        "success_rate": round(succeeded / total * 100, 1) if total else None,
        "avg_latency_ms": round(sum(latencies) / len(latencies), 1) if latencies else None,
        "failure_reasons": [{"reason": r, "count": c} for r, c in reasons.most_common()],
        "deliveries": {s: by_status.get(s, 0) for s in ("pending", "success", "failed", "abandoned")},
    }
