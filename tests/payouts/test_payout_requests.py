"""Tests for partner payout requests."""
from decimal import Decimal
from unittest.mock import patch

from marketplace.models.partner_payout_request import PartnerPayoutRequest
from marketplace.services.payouts.requests import PartnerPayoutRequestService
from marketplace.services.payouts.results import PayoutOutcome


class TestCreateRequest:
    def test_created_with_fee(self, db, make_user, make_conversion):
        partner = make_user()
        make_conversion(partner.id, "200.00")

        result = PartnerPayoutRequestService(db).create_request(
            partner.id, Decimal("100"), "PayPal", {"paypal_email": "p@example.com"}, "monthly"
        )
        db.commit()

        assert result.outcome == PayoutOutcome.CREATED
        request = db.query(PartnerPayoutRequest).one()
        assert request.fee_amount == Decimal("3.00")
        assert request.net_amount == Decimal("97.00")
        assert request.payment_method == "paypal"
        assert request.status == "pending"
        assert result.available_balance == Decimal("100.00")

    def test_below_minimum(self, db, make_user, make_conversion):
        partner = make_user()
        make_conversion(partner.id, "200.00")
        result = PartnerPayoutRequestService(db).create_request(partner.id, Decimal("49.99"), "paypal")
        assert result.outcome == PayoutOutcome.BELOW_MINIMUM
        assert "Minimum payout amount" in result.message

    def test_insufficient_balance(self, db, make_user, make_conversion):
        partner = make_user()
        make_conversion(partner.id, "80.00")
        result = PartnerPayoutRequestService(db).create_request(partner.id, Decimal("100"), "paypal")
        assert result.outcome == PayoutOutcome.INSUFFICIENT_BALANCE
        assert result.available_balance == Decimal("80.00")

    def test_open_request_blocks_new_one(self, db, make_user, make_conversion):
        partner = make_user()
        make_conversion(partner.id, "500.00")
        svc = PartnerPayoutRequestService(db)
        svc.create_request(partner.id, Decimal("100"), "paypal")
        db.commit()

        result = svc.create_request(partner.id, Decimal("100"), "paypal")
        assert result.outcome == PayoutOutcome.PENDING_REQUEST_EXISTS
        assert db.query(PartnerPayoutRequest).count() == 1

    def test_concurrent_submission_reports_open_request(self, db, make_user, make_conversion):
        partner = make_user()
        make_conversion(partner.id, "500.00")
        svc = PartnerPayoutRequestService(db)
        svc.create_request(partner.id, Decimal("100"), "paypal")
        db.commit()
        existing = db.query(PartnerPayoutRequest).one()

        # the losing submission passed the open-request check before the winner inserted
        with patch.object(svc, "open_request", side_effect=[None, existing]):
            result = svc.create_request(partner.id, Decimal("100"), "paypal")
        db.commit()

        assert result.outcome == PayoutOutcome.PENDING_REQUEST_EXISTS
        assert db.query(PartnerPayoutRequest).count() == 1

    def test_closed_request_allows_new_one(self, db, make_user, make_conversion):
        partner = make_user()
        make_conversion(partner.id, "500.00")
        svc = PartnerPayoutRequestService(db)
        svc.create_request(partner.id, Decimal("100"), "paypal")
        db.query(PartnerPayoutRequest).update({"status": "rejected"})
        db.commit()

        result = svc.create_request(partner.id, Decimal("100"), "paypal")
        db.commit()

        assert result.outcome == PayoutOutcome.CREATED
        assert db.query(PartnerPayoutRequest).count() == 2

    def test_requested_amounts_reduce_balance(self, db, make_user, make_conversion):
        partner = make_user()
        make_conversion(partner.id, "150.00")
        svc = PartnerPayoutRequestService(db)
        svc.create_request(partner.id, Decimal("100"), "paypal")
        db.query(PartnerPayoutRequest).update({"status": "paid"})
        db.commit()

        result = svc.create_request(partner.id, Decimal("60"), "paypal")
        assert result.outcome == PayoutOutcome.INSUFFICIENT_BALANCE
        assert result.available_balance == Decimal("50.00")
