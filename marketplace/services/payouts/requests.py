"""
Partner-initiated payout requests.
Available balance = verified, unrevoked earnings minus amounts already requested.
"""
from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marketplace.core.config import settings
from marketplace.models.partner_payout_request import REQUEST_OPEN_STATUSES, PartnerPayoutRequest
from marketplace.services.audit.service import AuditService
from marketplace.services.payouts.fees import calculate_processing_fee
from marketplace.services.payouts.results import PayoutOutcome, PayoutRequestResult
from marketplace.services.referrals.service import ReferralService
from marketplace.utils.money import quantize

logger = logging.getLogger(__name__)


def _pending_exists() -> PayoutRequestResult:
    return PayoutRequestResult(
        PayoutOutcome.PENDING_REQUEST_EXISTS,
        message="You already have a pending payout request",
    )


class PartnerPayoutRequestService:
    def __init__(self, db: Session):
        self.db = db

    def open_request(self, partner_id: str) -> PartnerPayoutRequest | None:
        return (
            self.db.query(PartnerPayoutRequest)
            .filter(
                PartnerPayoutRequest.partner_id == partner_id,
                PartnerPayoutRequest.status.in_(REQUEST_OPEN_STATUSES),
            )
            .with_for_update()
            .first()
        )

    def list_requests(self, partner_id: str, limit: int = 50) -> list[PartnerPayoutRequest]:
        return (
            self.db.query(PartnerPayoutRequest)
            .filter(PartnerPayoutRequest.partner_id == partner_id)
            .order_by(PartnerPayoutRequest.created_at.desc())
            .limit(limit)
            .all()
        )

    def create_request(
        self,
        partner_id: str,
        amount,
        payment_method: str,
        payment_details: dict[str, Any] | None = None,
        notes: str | None = None,
    ) -> PayoutRequestResult:
        currency = settings.payout_currency
        amount = quantize(amount, currency)
        minimum = quantize(settings.payout_minimum_amount, currency)

        if amount < minimum:
            return PayoutRequestResult(
                PayoutOutcome.BELOW_MINIMUM,
                message=f"Minimum payout amount is ${minimum}",
            )

        if self.open_request(partner_id):
            return _pending_exists()

        referrals = ReferralService(self.db)
        available = referrals.verified_total(partner_id) - referrals.requested_total(partner_id)
        if amount > available:
            return PayoutRequestResult(
                PayoutOutcome.INSUFFICIENT_BALANCE,
                message=f"Insufficient balance. Available: ${max(available, quantize(0))}",
                available_balance=available,
            )

        method = payment_method.strip().lower()
        fee, net = calculate_processing_fee(amount, method, currency)
        request = PartnerPayoutRequest(
            partner_id=partner_id,
            amount=amount,
            fee_amount=fee,
            net_amount=net,
            payment_method=method,
            payment_details=payment_details or {},
            notes=notes,
            status="pending",
        )
        try:
            with self.db.begin_nested():
                self.db.add(request)
        except IntegrityError:
            # a concurrent submission inserted first
            if self.open_request(partner_id) is None:
                raise
            return _pending_exists()

        AuditService(self.db).log(
            "partner",
            partner_id,
            "payout_requested",
            "partner_payout_request",
            request.id,
            {"amount": str(amount), "payment_method": method},
        )
        logger.info(
            "payout_request_created",
            extra={
                "request_payout_id": request.id,
                "referrer_id": partner_id,
                "amount": amount,
                "fee_amount": fee,
                "net_amount": net,
            },
        )
        return PayoutRequestResult(
            PayoutOutcome.CREATED,
            request=request,
            message="Payout request submitted successfully",
            available_balance=available - amount,
        )
