"""
Domain event fact handed to the trigger engine.

An Event is immutable. Its idempotency key is derived from
(event_type, entity_id, entity updated_at): the same change redelivered
yields the same key, a later change of the same entity yields a new one.
Without an updated_at the snapshot content stands in for it.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from app.core.exceptions import ValidationError
from app.models.automation import EVENT_TYPES
from app.services.conditions import EVENT_FIELDS
from app.services.payload_codec import CONTEXT_ROOTS, flatten, lookup, is_missing, serialize
from app.utils.helpers import as_utc


def _stamp(value: Any) -> str:
    if isinstance(value, datetime):
        return as_utc(value).isoformat()
    return str(value)


def _content_stamp(snapshot: dict[str, Any]) -> str:
    return "content:" + hashlib.sha256(serialize(snapshot)).hexdigest()


def root_entity(entity_type: str, entity: dict[str, Any]) -> dict[str, Any]:
    """Nest a bare entity snapshot under its entity type.

    ``{"amount": 1500}`` for an invoice becomes ``{"invoice": {"amount": 1500}}``.
    Objects keyed by a known root (``client``, ``project``...) stay where
    they are; a snapshot already holding its own root is returned as is.
    """
    if entity_type in entity:
        return entity
    rooted, own = {}, {}
    for key, value in entity.items():
        if key in CONTEXT_ROOTS or (isinstance(value, dict) and key in EVENT_FIELDS):
            rooted[key] = value
        else:
            own[key] = value
    if own:
        rooted[entity_type] = own
    return rooted


def idempotency_key(event_type: str, entity_id: Any, updated_at: Any) -> str:
    raw = f"{event_type}|{entity_id}|{_stamp(updated_at)}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:40]


@dataclass(frozen=True)
class Event:
    event_type: str
    entity_type: str
    entity_id: int | str | None
    snapshot: dict[str, Any]
    occurred_at: datetime
    idempotency_key: str
    triggered_by: str = "system"

    @classmethod
    def create(
        cls,
        event_type: str,
        entity: dict[str, Any] | None = None,
        *,
        entity_id: int | str | None = None,
        updated_at: datetime | str | None = None,
        occurred_at: datetime | None = None,
        triggered_by: str = "system",
    ) -> "Event":
        """Build an Event from a (possibly nested) entity snapshot.

        A bare snapshot is nested under the entity type first (see
        ``root_entity``). ``entity_id`` and ``updated_at`` fall back to
        ``<entity>.id`` and ``<entity>.updated_at`` in the snapshot; with no
        updated_at at all the key hashes the snapshot content, so an
        identical redelivery still yields the same key.

        Raises:
            ValidationError: unknown event type.
        """
        if event_type not in EVENT_TYPES:
            raise ValidationError(
                f"Unknown event type: {event_type}",
                details={"event_type": f"must be one of {sorted(EVENT_TYPES)}"},
            )
        entity_type = event_type.split(".", 1)[0]
        snapshot = flatten(root_entity(entity_type, entity or {}))

        if entity_id is None:
            found = lookup(snapshot, f"{entity_type}.id")
            entity_id = None if is_missing(found) else found

        occurred = as_utc(occurred_at) if occurred_at else datetime.now(timezone.utc)
        if updated_at is None:
            found = lookup(snapshot, f"{entity_type}.updated_at")
            updated_at = _content_stamp(snapshot) if is_missing(found) else found

        snapshot.setdefault("entity_type", entity_type)
        if entity_id is not None:
            snapshot.setdefault("entity_id", entity_id)
        snapshot.setdefault("triggered_by", triggered_by)

        return cls(
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            snapshot=snapshot,
            occurred_at=occurred,
            idempotency_key=idempotency_key(event_type, entity_id, updated_at),
            triggered_by=triggered_by,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "snapshot": dict(self.snapshot),
            "occurred_at": self.occurred_at.isoformat(),
            "idempotency_key": self.idempotency_key,
            "triggered_by": self.triggered_by,
        }
