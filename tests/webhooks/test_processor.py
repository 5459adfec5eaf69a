"""Tests for WebhookProcessor: idempotent side effects, refunds, failures."""
from decimal import Decimal
from unittest.mock import patch

import pytest

from marketplace.core.errors import PaymentNotFoundError, ProductAccessError
from marketplace.models.notification import Notification
from marketplace.models.product_access import ProductAccessGrant
from marketplace.models.referral_conversion import ReferralConversion
from marketplace.services.webhooks.events import parse_event
from marketplace.services.webhooks.service import WebhookProcessor


def _succeeded(ref="pi_100", code="REFCODE1"):
    return parse_event(
        "stripe",
        {
            "id": "evt_ok",
            "type": "payment_intent.succeeded",
            "data": {
                "object": {
                    "id": ref,
                    "amount_received": 25000,
                    "currency": "usd",
                    "metadata": {
                        "purchase_id": "purchase-100",
                        "user_id": "buyer-1",
                        "product_id": "product-1",
                        "referral_code": code,
                    },
                }
            },
        },
    )


def _refunded(ref="pi_100"):
    return parse_event(
        "stripe",
        {
            "id": "evt_rf",
            "type": "charge.refunded",
            "data": {"object": {"id": "ch_1", "payment_intent": ref, "amount_refunded": 25000, "currency": "usd"}},
        },
    )


@pytest.fixture
def purchase(make_user, make_payment, make_referral):
    referrer = make_user(role="partner")
    make_referral(referrer.id, code="REFCODE1", percent=Decimal("10"))
    payment = make_payment(provider_payment_id="pi_100")
    return referrer, payment


class TestSucceeded:
    def test_double_delivery_has_single_side_effects(self, db, purchase):
        referrer, payment = purchase

        first = WebhookProcessor(db).process(_succeeded())
        db.commit()
        second = WebhookProcessor(db).process(_succeeded())
        db.commit()

        assert first.changed is True
        assert second.changed is False
        db.refresh(payment)
        assert payment.status == "succeeded"
        assert db.query(ProductAccessGrant).count() == 1
        conversions = db.query(ReferralConversion).all()
        assert len(conversions) == 1
        assert conversions[0].commission_amount == Decimal("25.00")
        assert conversions[0].referrer_id == referrer.id
        assert conversions[0].is_verified is True

    def test_notifications_sent_once(self, db, purchase):
        referrer, _ = purchase
        for _ in range(3):
            WebhookProcessor(db).process(_succeeded())
            db.commit()

        types = sorted(n.type for n in db.query(Notification).all())
        assert types == ["payment_success", "referral_commission"]
        commission = db.query(Notification).filter(Notification.type == "referral_commission").one()
        assert commission.user_id == referrer.id

    def test_no_referral_code_grants_access_only(self, db, purchase):
        WebhookProcessor(db).process(_succeeded(code=""))
        db.commit()
        assert db.query(ProductAccessGrant).count() == 1
        assert db.query(ReferralConversion).count() == 0

    def test_unknown_payment_raises_before_side_effects(self, db):
        with pytest.raises(PaymentNotFoundError):
            WebhookProcessor(db).process(_succeeded(ref="pi_unknown"))
        db.rollback()
        assert db.query(ProductAccessGrant).count() == 0

    def test_grant_failure_aborts_whole_event(self, db, purchase):
        _, payment = purchase
        with patch(
            "marketplace.services.webhooks.service.ProductAccessService.grant",
            side_effect=ProductAccessError("boom"),
        ):
            with pytest.raises(ProductAccessError):
                WebhookProcessor(db).process(_succeeded())
        db.rollback()
        db.refresh(payment)
        assert payment.status == "pending"
        assert db.query(ReferralConversion).count() == 0


class TestRefund:
    def test_refund_revokes_grant_and_conversion(self, db, purchase):
        _, payment = purchase
        WebhookProcessor(db).process(_succeeded())
        db.commit()

        result = WebhookProcessor(db).process(_refunded())
        db.commit()

        assert result.changed is True
        db.refresh(payment)
        assert payment.status == "refunded"
        grant = db.query(ProductAccessGrant).one()
        assert grant.is_active is False
        assert grant.revoked_at is not None
        conversion = db.query(ReferralConversion).one()
        assert conversion.is_verified is False
        assert conversion.revoked_at is not None

    def test_success_after_refund_is_ignored(self, db, purchase):
        WebhookProcessor(db).process(_succeeded())
        db.commit()
        WebhookProcessor(db).process(_refunded())
        db.commit()

        result = WebhookProcessor(db).process(_succeeded())
        db.commit()

        assert result.processed is False
        assert db.query(ProductAccessGrant).one().is_active is False


class TestUnhandled:
    def test_unhandled_event_is_acknowledged(self, db):
        event = parse_event(
            "stripe",
            {"id": "evt_x", "type": "invoice.paid", "data": {"object": {"id": "in_1"}}},
        )
        result = WebhookProcessor(db).process(event)
        assert result.success is True
        assert result.processed is False
