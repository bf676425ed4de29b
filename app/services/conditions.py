"""
Trigger condition grammar.

A condition is a small tagged tree::

    Condition = Compare(field, op, value) | All([Condition, ...])

Conditions are parsed and validated once, when a trigger is saved, and
stored in the normalized JSON form produced by ``to_json``. Evaluation
rebuilds the tree with ``from_json`` without re-validating.

Accepted input forms:
    [{"field": "invoice.amount", "op": ">", "value": 1000}, ...]
    {"all": [...]}                                   (nestable)
    {"invoice.amount_gt": 1000, "status": "paid"}    (legacy mapping)

Only conjunction exists. A field missing from the event fails every
operator, ``not_equals`` included.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Union

from app.core.exceptions import ValidationError
from app.services.payload_codec import CONTEXT_ROOTS, is_missing, lookup


# ── Operators ────────────────────────────────────────────────────────────────

OPERATORS = ("equals", "not_equals", "greater_than", "less_than", "contains", "in")

_OP_ALIASES = {
    "equals": "equals", "eq": "equals", "==": "equals", "=": "equals",
    "not_equals": "not_equals", "ne": "not_equals", "!=": "not_equals",
    "greater_than": "greater_than", "gt": "greater_than", ">": "greater_than",
    "less_than": "less_than", "lt": "less_than", "<": "less_than",
    "contains": "contains",
    "in": "in",
}

_LEGACY_SUFFIXES = {
    "_gt": "greater_than",
    "_lt": "less_than",
    "_ne": "not_equals",
    "_contains": "contains",
    "_in": "in",
}

# Known payload fields per entity root. Conditions may only reference these.
EVENT_FIELDS: dict[str, frozenset[str]] = {
    "invoice": frozenset({
        "id", "number", "amount", "total", "currency", "status", "due_date", "paid_at",
        "days_overdue", "client_id", "project_id", "created_at", "updated_at",
    }),
    "contract": frozenset({
        "id", "title", "status", "value", "signed_at", "expires_at",
        "client_id", "project_id", "created_at", "updated_at",
    }),
    "project": frozenset({
        "id", "name", "status", "previous_status", "budget", "progress", "milestone",
        "due_date", "client_id", "created_at", "updated_at",
    }),
    "client": frozenset({
        "id", "name", "email", "company", "status", "type", "created_at", "updated_at",
    }),
    "proposal": frozenset({
        "id", "title", "status", "amount", "total", "tier", "valid_until",
        "client_id", "project_id", "created_at", "updated_at",
    }),
    "lead": frozenset({
        "id", "name", "email", "source", "status", "value", "score", "reason",
        "created_at", "updated_at",
    }),
    "deliverable": frozenset({
        "id", "title", "status", "version", "round", "project_id", "client_id",
        "created_at", "updated_at",
    }),
    "task": frozenset({
        "id", "title", "status", "priority", "assignee", "due_date", "project_id",
        "created_at", "updated_at",
    }),
    "message": frozenset({
        "id", "thread_id", "sender", "subject", "body", "client_id", "project_id", "created_at",
    }),
    "file": frozenset({
        "id", "name", "size", "mime_type", "client_id", "project_id", "created_at",
    }),
    "approval": frozenset({
        "request_id", "status", "workflow_id", "workflow_name", "entity_type", "entity_id",
        "decided_by", "comment", "reminder_count", "approvers", "days_idle",
    }),
}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _to_number(value: Any) -> float | None:
    if _is_number(value):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _same(actual: Any, expected: Any) -> bool:
    if _is_number(actual) and _is_number(expected):
        return float(actual) == float(expected)
    return actual == expected


# ── Tree ─────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Compare:
    field: str
    op: str
    value: Any

    def evaluate(self, snapshot: dict[str, Any]) -> bool:
        actual = lookup(snapshot, self.field)
        if is_missing(actual):
            return False
        if self.op == "equals":
            return _same(actual, self.value)
        if self.op == "not_equals":
            return not _same(actual, self.value)
        if self.op in ("greater_than", "less_than"):
            left = _to_number(actual)
            right = _to_number(self.value)
            if left is None or right is None:
                return False
            return left > right if self.op == "greater_than" else left < right
        if self.op == "contains":
            if isinstance(actual, str):
                return str(self.value) in actual
            if isinstance(actual, (list, tuple)):
                return any(_same(item, self.value) for item in actual)
            return False
        if self.op == "in":
            return any(_same(actual, item) for item in self.value)
        return False

    def to_json(self) -> dict[str, Any]:
        return {"field": self.field, "op": self.op, "value": self.value}


@dataclass(frozen=True)
class All:
    conditions: tuple["Condition", ...]

    def evaluate(self, snapshot: dict[str, Any]) -> bool:
        return all(c.evaluate(snapshot) for c in self.conditions)

    def to_json(self) -> dict[str, Any]:
        return {"all": [c.to_json() for c in self.conditions]}


Condition = Union[Compare, All]

ALWAYS = All(())


def explain(condition: Condition, snapshot: dict[str, Any]) -> list[dict[str, Any]]:
    """Per-comparison outcome, for trigger test previews."""
    if isinstance(condition, Compare):
        actual = lookup(snapshot, condition.field, None)
        return [{**condition.to_json(), "actual": actual, "passed": condition.evaluate(snapshot)}]
    rows: list[dict[str, Any]] = []
    for child in condition.conditions:
        rows.extend(explain(child, snapshot))
    return rows


# ── Parsing ──────────────────────────────────────────────────────────────────


def _check_field(field: str, entity_type: str | None) -> str:
    if not isinstance(field, str) or not field.strip():
        raise ValidationError("Condition field is required", details={"field": "must be a non-empty string"})
    field = field.strip()
    parts = field.split(".")
    if len(parts) == 1:
        if field in CONTEXT_ROOTS:
            return field
        if entity_type and field in EVENT_FIELDS.get(entity_type, ()):
            return f"{entity_type}.{field}"
        raise ValidationError(f"Unknown condition field: {field}", details={"field": field})
    root, leaf = parts[0], parts[1]
    known = EVENT_FIELDS.get(root)
    if known is None or leaf not in known:
        raise ValidationError(f"Unknown condition field: {field}", details={"field": field})
    return field


def _compare(field: str, op: str, value: Any, entity_type: str | None) -> Compare:
    canonical = _OP_ALIASES.get(str(op).strip().lower()) if op is not None else None
    if canonical is None:
        raise ValidationError(
            f"Unknown condition operator: {op}",
            details={"op": f"must be one of {list(OPERATORS)}"},
        )
    field = _check_field(field, entity_type)
    if canonical in ("greater_than", "less_than") and _to_number(value) is None:
        raise ValidationError(f"Operator {canonical} needs a numeric value", details={field: value})
    if canonical == "in":
        if not isinstance(value, (list, tuple)) or not value:
            raise ValidationError("Operator in needs a non-empty list", details={field: value})
        value = list(value)
    if canonical == "contains" and not isinstance(value, (str, int, float)):
        raise ValidationError("Operator contains needs a string or number", details={field: value})
    return Compare(field=field, op=canonical, value=value)


def _parse_legacy(mapping: dict[str, Any], entity_type: str | None) -> All:
    parts: list[Condition] = []
    for key, value in mapping.items():
        op = "equals"
        field = key
        for suffix, suffix_op in _LEGACY_SUFFIXES.items():
            if key.endswith(suffix):
                field, op = key[: -len(suffix)], suffix_op
                break
        parts.append(_compare(field, op, value, entity_type))
    return All(tuple(parts))


def _parse_node(node: Any, entity_type: str | None) -> Condition:
    if isinstance(node, list):
        return All(tuple(_parse_node(child, entity_type) for child in node))
    if isinstance(node, dict):
        if "all" in node:
            if len(node) != 1 or not isinstance(node["all"], list):
                raise ValidationError("'all' must be the only key and hold a list")
            return All(tuple(_parse_node(child, entity_type) for child in node["all"]))
        if "field" in node:
            if "op" not in node or "value" not in node:
                raise ValidationError(
                    "Condition needs field, op and value",
                    details={"condition": node},
                )
            return _compare(node["field"], node["op"], node["value"], entity_type)
        return _parse_legacy(node, entity_type)
    raise ValidationError("Conditions must be a list or an object", details={"conditions": repr(node)})


def parse_conditions(raw: Any, event_type: str | None = None) -> All:
    """Parse and validate raw conditions into a normalized tree.

    Args:
        raw: None, a list, an ``{"all": [...]}`` object or a legacy mapping.
        event_type: Trigger event type; bare field names resolve against its entity.

    Raises:
        ValidationError: on unknown fields, operators or ill-typed values.
    """
    if raw in (None, [], {}):
        return ALWAYS
    entity_type = event_type.split(".", 1)[0] if event_type else None
    node = _parse_node(raw, entity_type)
    return node if isinstance(node, All) else All((node,))


def from_json(data: Any) -> Condition:
    """Rebuild a tree from its stored normalized form (no validation)."""
    if not data:
        return ALWAYS
    if isinstance(data, list):
        return All(tuple(from_json(child) for child in data))
    if "all" in data:
        return All(tuple(from_json(child) for child in data["all"]))
    return Compare(field=data["field"], op=data["op"], value=data["value"])
