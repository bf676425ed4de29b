"""
Payload codec for outbound event deliveries.

Three jobs:
  * flatten an entity snapshot into a dotted key -> scalar map,
  * substitute ``{{a.b.c}}`` tokens from that snapshot,
  * build and serialize the canonical envelope sent to destinations.

Envelope shape::

    {
        "id": "<event_type>_<entity_id>_<short_hash>",
        "event_type": "invoice.paid",
        "timestamp": "2026-03-01T12:00:00Z",
        "data": {...flattened fields...},
        "meta": {"version": "1.0", "source": "bizops-automation"},
    }

Unresolved tokens are left in place and reported; they are a content
problem for the operator, never a transport failure.
"""

from __future__ import annotations

import hashlib
import json
import re
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

DEFAULT_VERSION = "1.0"
DEFAULT_SOURCE = "bizops-automation"

# Top-level context keys that travel with every event regardless of entity.
CONTEXT_ROOTS = frozenset({"entity_id", "entity_type", "triggered_by", "event_type"})

_TOKEN_RE = re.compile(r"\{\{\s*([A-Za-z0-9_]+(?:\.[A-Za-z0-9_]+)*)\s*\}\}")

_MISSING = object()


# ── Flattening ───────────────────────────────────────────────────────────────


def _scalar(value: Any) -> Any:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return to_iso_utc(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    return value


def flatten(obj: dict[str, Any], prefix: str = "") -> dict[str, Any]:
    """Flatten nested dicts into dotted keys.

    Lists of scalars become a comma-joined string plus a ``<key>_count``
    entry; lists containing objects are JSON-encoded instead.

    >>> flatten({"invoice": {"amount": 10, "tags": ["a", "b"]}})
    {'invoice.amount': 10, 'invoice.tags': 'a, b', 'invoice.tags_count': 2}
    """
    result: dict[str, Any] = {}
    for key, value in (obj or {}).items():
        full_key = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, dict):
            result.update(flatten(value, full_key))
        elif isinstance(value, (list, tuple)):
            if any(isinstance(v, (dict, list, tuple)) for v in value):
                result[full_key] = json.dumps(value, default=str, sort_keys=True)
            else:
                result[full_key] = ", ".join(str(_scalar(v)) for v in value)
            result[f"{full_key}_count"] = len(value)
        else:
            result[full_key] = _scalar(value)
    return result


def lookup(snapshot: dict[str, Any], path: str, default: Any = _MISSING) -> Any:
    """Resolve a dotted path against a flattened or nested snapshot.

    Returns ``default`` (a private sentinel unless given) when absent.
    """
    if path in snapshot:
        return snapshot[path]
    node: Any = snapshot
    for part in path.split("."):
        if isinstance(node, dict) and part in node:
            node = node[part]
        else:
            return default
    return node


def is_missing(value: Any) -> bool:
    return value is _MISSING


# ── Substitution ─────────────────────────────────────────────────────────────


def find_tokens(text: str) -> list[str]:
    return _TOKEN_RE.findall(text or "")


def substitute(text: str, snapshot: dict[str, Any]) -> tuple[str, list[str]]:
    """Replace every resolvable ``{{path}}`` token in *text*.

    Returns:
        (rendered_text, unresolved_paths). Unresolved tokens stay verbatim.
    """
    unresolved: list[str] = []

    def _replace(match: re.Match) -> str:
        path = match.group(1)
        value = lookup(snapshot, path)
        if is_missing(value):
            unresolved.append(path)
            return match.group(0)
        return "" if value is None else str(value)

    return _TOKEN_RE.sub(_replace, text or ""), unresolved


def render_template(template: Any, snapshot: dict[str, Any]) -> tuple[Any, list[str]]:
    """Render a JSON-like template, substituting tokens in every string leaf.

    A string that is exactly one resolved token keeps the value's native type,
    so ``{"amount": "{{invoice.amount}}"}`` renders a number, not a string.
    """
    unresolved: list[str] = []

    def _render(node: Any) -> Any:
        if isinstance(node, dict):
            return {k: _render(v) for k, v in node.items()}
        if isinstance(node, list):
            return [_render(v) for v in node]
        if isinstance(node, str):
            whole = _TOKEN_RE.fullmatch(node.strip())
            if whole:
                value = lookup(snapshot, whole.group(1))
                if not is_missing(value):
                    return value
            rendered, missing = substitute(node, snapshot)
            unresolved.extend(missing)
            return rendered
        return node

    rendered = _render(template)
    return rendered, sorted(set(unresolved))


# ── Envelope ─────────────────────────────────────────────────────────────────


def to_iso_utc(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def short_hash(seed: str, length: int = 9) -> str:
    return hashlib.sha256(seed.encode("utf-8")).hexdigest()[:length]


def relevant_fields(event_type: str, snapshot: dict[str, Any]) -> dict[str, Any]:
    """Fields of the event's own entity plus the shared context keys."""
    entity = event_type.split(".", 1)[0]
    return {
        key: value
        for key, value in snapshot.items()
        if key.split(".", 1)[0] == entity or key in CONTEXT_ROOTS
    }


def build_payload(
    event,
    *,
    data: dict[str, Any] | None = None,
    version: str = DEFAULT_VERSION,
    source: str = DEFAULT_SOURCE,
) -> dict[str, Any]:
    """Build the canonical envelope for an Event.

    The id's hash part derives from the event's idempotency key, so a
    redelivered event produces the same payload id for receiver-side dedupe.

    Args:
        event: app.services.events.Event
        data: Pre-rendered data (from a destination template). Defaults to
            the event's relevant flattened fields.
    """
    if data is None:
        data = relevant_fields(event.event_type, event.snapshot)
    return {
        "id": f"{event.event_type}_{event.entity_id}_{short_hash(event.idempotency_key)}",
        "event_type": event.event_type,
        "timestamp": to_iso_utc(event.occurred_at),
        "data": data,
        "meta": {"version": version, "source": source},
    }


def serialize(payload: dict[str, Any]) -> bytes:
    """Canonical JSON bytes: sorted keys, compact separators, UTF-8."""
    return json.dumps(
        payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str,
    ).encode("utf-8")
