"""Tests for provider payload normalization."""
from decimal import Decimal

import pytest
from pydantic import ValidationError

from marketplace.services.webhooks.events import (
    PaymentRefunded,
    PaymentStatusChanged,
    PaymentSucceeded,
    UnhandledEvent,
    parse_event,
)


def _stripe(event_type, **obj):
    base = {"id": "pi_123", "object": "payment_intent", "currency": "usd", "metadata": {}}
    base.update(obj)
    return {"id": "evt_1", "type": event_type, "data": {"object": base}}


class TestStripeEvents:
    def test_succeeded_carries_purchase_metadata(self):
        raw = _stripe(
            "payment_intent.succeeded",
            amount_received=25000,
            metadata={
                "purchase_id": "purchase-1",
                "user_id": "buyer-1",
                "product_id": "product-1",
                "referral_code": "REF1",
            },
        )
        event = parse_event("stripe", raw)
        assert isinstance(event, PaymentSucceeded)
        assert event.payment_ref == "pi_123"
        assert event.amount == Decimal("250.00")
        assert event.currency == "USD"
        assert event.referral_code == "REF1"
        assert event.provider_metadata["stripe_event_id"] == "evt_1"

    def test_purchase_id_defaults_to_intent_id(self):
        event = parse_event("stripe", _stripe("payment_intent.succeeded", amount=1000))
        assert event.purchase_id == "pi_123"

    def test_payment_failed(self):
        raw = _stripe("payment_intent.payment_failed", last_payment_error={"message": "declined", "code": "card_declined"})
        event = parse_event("stripe", raw)
        assert isinstance(event, PaymentStatusChanged)
        assert event.new_status == "failed"
        assert event.provider_metadata["failure_code"] == "card_declined"

    def test_requires_action_maps_to_processing(self):
        event = parse_event("stripe", _stripe("payment_intent.requires_action", next_action={"type": "redirect"}))
        assert event.new_status == "processing"

    def test_charge_refunded_references_intent(self):
        raw = _stripe("charge.refunded", id="ch_1", object="charge", payment_intent="pi_123", amount_refunded=500)
        event = parse_event("stripe", raw)
        assert isinstance(event, PaymentRefunded)
        assert event.payment_ref == "pi_123"
        assert event.amount == Decimal("5.00")

    def test_unknown_type_is_unhandled(self):
        event = parse_event("stripe", _stripe("invoice.payment_succeeded"))
        assert isinstance(event, UnhandledEvent)


class TestYooKassaEvents:
    def test_succeeded(self):
        raw = {
            "event": "payment.succeeded",
            "object": {
                "id": "yk-1",
                "status": "succeeded",
                "amount": {"value": "1500.50", "currency": "RUB"},
                "metadata": {"user_id": "u1", "product_id": "p1"},
            },
        }
        event = parse_event("yookassa", raw)
        assert isinstance(event, PaymentSucceeded)
        assert event.amount == Decimal("1500.50")
        assert event.user_id == "u1"

    def test_refund_points_at_payment(self):
        raw = {
            "event": "refund.succeeded",
            "object": {"id": "rf-1", "payment_id": "yk-1", "amount": {"value": "10.00", "currency": "RUB"}},
        }
        event = parse_event("yookassa", raw)
        assert isinstance(event, PaymentRefunded)
        assert event.payment_ref == "yk-1"


class TestCoinGateEvents:
    def _order(self, status, **extra):
        order = {
            "id": 42,
            "order_id": "buyer-7_product-9",
            "status": status,
            "price_amount": "99.99",
            "price_currency": "usd",
        }
        order.update(extra)
        return order

    def test_paid_splits_order_id_and_reads_token(self):
        event = parse_event("coingate", self._order("paid", token="REFX"))
        assert isinstance(event, PaymentSucceeded)
        assert event.user_id == "buyer-7"
        assert event.product_id == "product-9"
        assert event.referral_code == "REFX"
        assert event.purchase_id == "buyer-7_product-9"
        assert event.amount == Decimal("99.99")

    @pytest.mark.parametrize("status, expected", [("canceled", "cancelled"), ("expired", "expired"), ("confirming", "processing")])
    def test_status_mapping(self, status, expected):
        event = parse_event("coingate", self._order(status))
        assert event.new_status == expected

    def test_unknown_status_is_unhandled(self):
        assert isinstance(parse_event("coingate", self._order("new")), UnhandledEvent)


class TestParseErrors:
    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            parse_event("paypal", {})

    def test_malformed_body(self):
        with pytest.raises(ValidationError):
            parse_event("coingate", {"status": "paid"})
