"""Tests for provider adapters (payload -> CanonicalEvent)."""

from __future__ import annotations

import json
from datetime import datetime, timezone

import pytest

from subsync.exceptions import MalformedPayloadError
from subsync.models import EventKind, Provider
from subsync.webhooks.adapters import (
    LemonSqueezyAdapter,
    ProviderAdapter,
    RazorpayAdapter,
    as_ref,
    build_adapters,
    dig,
    parse_envelope,
    resolve_plan,
)

KNOWN = {"free", "maker", "pro", "agency"}


@pytest.fixture()
def ls() -> LemonSqueezyAdapter:
    return LemonSqueezyAdapter({"Maker": "maker", "Pro": "pro", "Agency": "agency"}, KNOWN)


@pytest.fixture()
def rzp() -> RazorpayAdapter:
    return RazorpayAdapter({"plan_PRO123": "pro"}, KNOWN)


class TestParseEnvelope:
    def test_bytes(self):
        assert parse_envelope(b'{"a": 1}') == {"a": 1}

    def test_str(self):
        assert parse_envelope('{"a": 1}') == {"a": 1}

    def test_mapping_passthrough(self):
        assert parse_envelope({"a": 1}) == {"a": 1}

    @pytest.mark.parametrize("body", [b"not json", b"", b"{", b"\xff\xfe\x00"])
    def test_invalid_raises(self, body):
        with pytest.raises(MalformedPayloadError):
            parse_envelope(body)

    @pytest.mark.parametrize("body", [b"[]", b"42", b'"text"', b"null"])
    def test_non_object_raises(self, body):
        with pytest.raises(MalformedPayloadError):
            parse_envelope(body)


class TestHelpers:
    def test_dig_nested(self):
        assert dig({"a": {"b": {"c": 1}}}, "a", "b", "c") == 1

    def test_dig_missing_level(self):
        assert dig({"a": {}}, "a", "b", "c") is None

    def test_dig_non_dict_level(self):
        assert dig({"a": ["b"]}, "a", "b") is None

    def test_as_ref_int(self):
        assert as_ref(42) == "42"

    def test_as_ref_blank(self):
        assert as_ref("  ") is None

    def test_as_ref_rejects_containers_and_bools(self):
        assert as_ref({"id": 1}) is None
        assert as_ref(True) is None


class TestResolvePlan:
    def test_name_table_wins(self):
        assert resolve_plan("Pro", "maker", {"Pro": "pro"}, KNOWN) == "pro"

    def test_falls_back_to_metadata(self):
        assert resolve_plan("Unknown Variant", "agency", {"Pro": "pro"}, KNOWN) == "agency"

    def test_nothing_resolves(self):
        assert resolve_plan(None, None, {"Pro": "pro"}, KNOWN) is None

    def test_unknown_plan_id_is_rejected(self):
        assert resolve_plan(None, "platinum", {}, KNOWN) is None

    def test_misconfigured_table_falls_back_to_metadata(self):
        assert resolve_plan("Pro", "maker", {"Pro": "gold"}, KNOWN) == "maker"

    def test_each_name_is_tried_in_order(self):
        table = {"Pro": "pro", "Maker": "maker"}
        assert resolve_plan(["Monthly", "Pro", "Maker"], None, table, KNOWN) == "pro"

    def test_missing_names_are_skipped(self):
        assert resolve_plan([None, "Maker"], None, {"Maker": "maker"}, KNOWN) == "maker"


class TestLemonSqueezyAdapter:
    def test_full_subscription_created(self, ls):
        body = json.dumps({
            "meta": {"event_name": "subscription_created", "custom_data": {"user_id": "u1"}},
            "data": {
                "id": "sub_7",
                "attributes": {"status": "active", "variant_name": "Pro", "customer_id": 42},
            },
        }).encode()
        event = ls.normalize(body)
        assert event.provider is Provider.LEMONSQUEEZY
        assert event.event_kind is EventKind.SUBSCRIPTION_ACTIVATED
        assert event.provider_event_tag == "subscription_created"
        assert event.user_id == "u1"
        assert event.plan_id == "pro"
        assert event.status == "active"
        assert event.provider_customer_ref == "42"
        assert event.provider_subscription_ref == "sub_7"

    def test_plan_from_custom_data(self, ls):
        event = ls.normalize({
            "meta": {
                "event_name": "subscription_updated",
                "custom_data": {"user_id": "u1", "plan_id": "agency"},
            },
            "data": {"attributes": {"status": "active", "variant_name": "Yearly"}},
        })
        assert event.plan_id == "agency"

    def test_product_name_fallback(self, ls):
        event = ls.normalize({
            "meta": {"event_name": "subscription_created"},
            "data": {"attributes": {"product_name": "Maker"}},
        })
        assert event.plan_id == "maker"

    def test_product_name_tried_when_variant_is_unmapped(self, ls):
        event = ls.normalize({
            "meta": {"event_name": "subscription_created"},
            "data": {"attributes": {"variant_name": "Monthly", "product_name": "Pro"}},
        })
        assert event.plan_id == "pro"

    def test_variant_takes_precedence_over_product(self, ls):
        event = ls.normalize({
            "meta": {"event_name": "subscription_created"},
            "data": {"attributes": {"variant_name": "Agency", "product_name": "Pro"}},
        })
        assert event.plan_id == "agency"

    def test_empty_object_is_not_an_error(self, ls):
        event = ls.normalize(b"{}")
        assert event.event_kind is EventKind.UNRECOGNIZED
        assert event.provider_event_tag == ""
        assert event.user_id is None
        assert event.plan_id is None
        assert event.provider_subscription_ref is None

    def test_wrongly_typed_sections_are_absent(self, ls):
        event = ls.normalize({
            "meta": {"event_name": "subscription_cancelled", "custom_data": "u1"},
            "data": ["not", "an", "object"],
        })
        assert event.event_kind is EventKind.SUBSCRIPTION_CANCELLED
        assert event.user_id is None
        assert event.status is None

    def test_occurred_at_assigned_at_processing(self, ls):
        at = datetime(2026, 1, 1, tzinfo=timezone.utc)
        event = ls.normalize(b"{}", received_at=at)
        assert event.occurred_at == at

    def test_invalid_json_raises(self, ls):
        with pytest.raises(MalformedPayloadError):
            ls.normalize(b"not json")


class TestRazorpayAdapter:
    def test_subscription_cancelled_notes(self, rzp):
        event = rzp.normalize({
            "event": "subscription.cancelled",
            "payload": {"subscription": {"entity": {"notes": {"user_id": "u1"}}}},
        })
        assert event.provider is Provider.RAZORPAY
        assert event.event_kind is EventKind.SUBSCRIPTION_CANCELLED
        assert event.user_id == "u1"
        assert event.plan_id is None

    def test_subscription_activated_plan_table(self, rzp):
        event = rzp.normalize({
            "event": "subscription.activated",
            "payload": {"subscription": {"entity": {
                "id": "sub_R1",
                "plan_id": "plan_PRO123",
                "customer_id": "cust_9",
                "status": "active",
                "notes": {"user_id": "u2"},
            }}},
        })
        assert event.event_kind is EventKind.SUBSCRIPTION_ACTIVATED
        assert event.plan_id == "pro"
        assert event.status == "active"
        assert event.provider_customer_ref == "cust_9"
        assert event.provider_subscription_ref == "sub_R1"

    def test_plan_from_notes(self, rzp):
        event = rzp.normalize({
            "event": "subscription.activated",
            "payload": {"subscription": {"entity": {
                "plan_id": "plan_unmapped", "notes": {"user_id": "u2", "plan_id": "maker"},
            }}},
        })
        assert event.plan_id == "maker"

    def test_payment_event_prefers_payment_entity(self, rzp):
        event = rzp.normalize({
            "event": "payment.captured",
            "payload": {
                "payment": {"entity": {"id": "pay_1", "notes": {"user_id": "payer"}}},
                "subscription": {"entity": {"id": "sub_1", "notes": {"user_id": "subscriber"}}},
            },
        })
        assert event.event_kind is EventKind.PAYMENT_SUCCEEDED
        assert event.user_id == "payer"
        assert event.provider_subscription_ref == "pay_1"

    def test_empty_notes_list(self, rzp):
        event = rzp.normalize({
            "event": "subscription.cancelled",
            "payload": {"subscription": {"entity": {"notes": []}}},
        })
        assert event.user_id is None

    def test_missing_payload(self, rzp):
        event = rzp.normalize({"event": "subscription.activated"})
        assert event.event_kind is EventKind.SUBSCRIPTION_ACTIVATED
        assert event.user_id is None
        assert event.status is None


class TestBuildAdapters:
    def test_one_adapter_per_provider(self, settings):
        adapters = build_adapters(settings)
        assert set(adapters) == set(Provider)
        for provider, adapter in adapters.items():
            assert isinstance(adapter, ProviderAdapter)
            assert adapter.provider is provider
