"""
Tests for the payload codec: flattening, token substitution, envelope.
"""

import json
from datetime import datetime, timezone
from decimal import Decimal

from app.services import payload_codec
from app.services.events import Event


def _event(**invoice):
    entity = {"invoice": {"id": 7, "number": "INV-007", "amount": 1500,
                          "updated_at": "2026-03-01T10:00:00Z", **invoice},
              "client": {"name": "Acme", "email": "billing@acme.test"}}
    return Event.create(
        "invoice.paid", entity,
        occurred_at=datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc),
    )


class TestFlatten:
    def test_nested_dicts_become_dotted_keys(self):
        flat = payload_codec.flatten({"invoice": {"amount": 10, "client": {"name": "Acme"}}})
        assert flat == {"invoice.amount": 10, "invoice.client.name": "Acme"}

    def test_scalar_lists_are_joined_with_count(self):
        flat = payload_codec.flatten({"lead": {"tags": ["vip", "urgent"]}})
        assert flat["lead.tags"] == "vip, urgent"
        assert flat["lead.tags_count"] == 2

    def test_lists_of_objects_are_json_encoded(self):
        flat = payload_codec.flatten({"invoice": {"lines": [{"sku": "A", "qty": 2}]}})
        assert json.loads(flat["invoice.lines"]) == [{"qty": 2, "sku": "A"}]
        assert flat["invoice.lines_count"] == 1

    def test_datetimes_and_decimals_are_normalised(self):
        flat = payload_codec.flatten({
            "invoice": {"paid_at": datetime(2026, 3, 1, 12, 0), "total": Decimal("10.50")},
        })
        assert flat["invoice.paid_at"] == "2026-03-01T12:00:00Z"
        assert flat["invoice.total"] == 10.5

    def test_lookup_reports_missing_with_sentinel(self):
        flat = payload_codec.flatten({"invoice": {"amount": None}})
        assert payload_codec.lookup(flat, "invoice.amount") is None
        assert payload_codec.is_missing(payload_codec.lookup(flat, "invoice.nope"))
        assert payload_codec.lookup(flat, "invoice.nope", "fallback") == "fallback"


class TestSubstitution:
    def test_tokens_are_replaced(self):
        snapshot = payload_codec.flatten({"invoice": {"number": "INV-1"}, "client": {"name": "Acme"}})
        text, unresolved = payload_codec.substitute(
            "Invoice {{invoice.number}} for {{ client.name }}", snapshot,
        )
        assert text == "Invoice INV-1 for Acme"
        assert unresolved == []

    def test_unresolved_tokens_stay_verbatim_and_are_reported(self):
        text, unresolved = payload_codec.substitute("Hi {{client.name}}", {})
        assert text == "Hi {{client.name}}"
        assert unresolved == ["client.name"]

    def test_none_renders_as_empty_string(self):
        text, _ = payload_codec.substitute("[{{invoice.note}}]", {"invoice.note": None})
        assert text == "[]"

    def test_find_tokens(self):
        assert payload_codec.find_tokens("{{a.b}} and {{c}}") == ["a.b", "c"]

    def test_template_keeps_native_type_for_whole_token(self):
        snapshot = {"invoice.amount": 1500, "invoice.number": "INV-9"}
        rendered, unresolved = payload_codec.render_template(
            {"amount": "{{invoice.amount}}", "label": "No. {{invoice.number}}",
             "nested": [{"missing": "{{invoice.ghost}}"}], "fixed": 3},
            snapshot,
        )
        assert rendered["amount"] == 1500
        assert rendered["label"] == "No. INV-9"
        assert rendered["nested"][0]["missing"] == "{{invoice.ghost}}"
        assert rendered["fixed"] == 3
        assert unresolved == ["invoice.ghost"]


class TestEnvelope:
    def test_build_payload_shape(self):
        event = _event()
        payload = payload_codec.build_payload(event)

        assert payload["event_type"] == "invoice.paid"
        assert payload["timestamp"] == "2026-03-01T12:00:00Z"
        assert payload["meta"] == {"version": "1.0", "source": "bizops-automation"}
        prefix, _, digest = payload["id"].rpartition("_")
        assert prefix == "invoice.paid_7"
        assert len(digest) == 9

    def test_data_holds_only_the_event_entity_and_context(self):
        payload = payload_codec.build_payload(_event())
        assert payload["data"]["invoice.amount"] == 1500
        assert payload["data"]["entity_id"] == 7
        assert payload["data"]["entity_type"] == "invoice"
        assert "client.name" not in payload["data"]

    def test_same_change_gives_same_payload_id(self):
        assert payload_codec.build_payload(_event())["id"] == payload_codec.build_payload(_event())["id"]

    def test_new_change_gives_new_payload_id(self):
        first = payload_codec.build_payload(_event())
        later = payload_codec.build_payload(_event(updated_at="2026-03-01T11:00:00Z"))
        assert first["id"] != later["id"]

    def test_serialize_is_canonical(self):
        body = payload_codec.serialize({"b": 1, "a": "é", "c": {"z": 1, "y": 2}})
        assert body == '{"a":"é","b":1,"c":{"y":2,"z":1}}'.encode("utf-8")


class TestEventSnapshot:
    def test_bare_snapshot_is_nested_under_entity_type(self):
        event = Event.create("invoice.paid", {"id": 7, "amount": 5, "client": {"name": "Acme"}})
        assert event.snapshot["invoice.amount"] == 5
        assert event.snapshot["client.name"] == "Acme"
        assert event.entity_id == 7

    def test_rooted_snapshot_is_kept(self):
        event = _event()
        assert event.snapshot["invoice.number"] == "INV-007"
        assert "invoice.invoice.number" not in event.snapshot

    def test_key_without_updated_at_follows_content(self):
        entity = {"invoice": {"id": 7, "amount": 5}}
        assert Event.create("invoice.paid", entity).idempotency_key == \
            Event.create("invoice.paid", entity).idempotency_key
        assert Event.create("invoice.paid", entity).idempotency_key != \
            Event.create("invoice.paid", {"invoice": {"id": 7, "amount": 6}}).idempotency_key
