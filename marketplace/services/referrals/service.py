"""
ReferralService: referral codes, commission recording, refund revocation, earnings.
"""
from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marketplace.models.commission_payout import CommissionPayout
from marketplace.models.partner_payout_request import PartnerPayoutRequest
from marketplace.models.referral import Referral
from marketplace.models.referral_conversion import ReferralConversion
from marketplace.utils.metrics import commissions_recorded_total
from marketplace.utils.money import percent_of, quantize, to_decimal

logger = logging.getLogger(__name__)


@dataclass
class EarningsStats:
    verified_total: Decimal
    paid_out: Decimal
    pending_payouts: Decimal
    requested: Decimal
    available_balance: Decimal
    conversions: int

    def as_dict(self) -> dict:
        return {
            "verifiedTotal": str(self.verified_total),
            "paidOut": str(self.paid_out),
            "pendingPayouts": str(self.pending_payouts),
            "requested": str(self.requested),
            "availableBalance": str(self.available_balance),
            "conversions": self.conversions,
        }


class ReferralService:
    def __init__(self, db: Session):
        self.db = db

    # ------------------------------------------------------------------
    # Referral code
    # ------------------------------------------------------------------

    def generate_referral_code(self) -> str:
        for _ in range(10):
            code = secrets.token_urlsafe(6)[:8]
            exists = self.db.query(Referral.id).filter(Referral.referral_code == code).first()
            if not exists:
                return code
        return secrets.token_urlsafe(8)[:10]

    def create_referral(
        self,
        referrer_id: str,
        commission_percent,
        product_id: str | None = None,
        shop_id: str | None = None,
    ) -> Referral:
        percent = to_decimal(commission_percent)
        if percent <= 0 or percent > 100:
            raise ValueError("commission_percent must be in (0, 100]")
        if not product_id and not shop_id:
            raise ValueError("referral must target a product or a shop")

        referral = Referral(
            referrer_id=referrer_id,
            product_id=product_id,
            shop_id=shop_id,
            referral_code=self.generate_referral_code(),
            commission_percent=percent,
            is_active=True,
        )
        self.db.add(referral)
        self.db.flush()
        logger.info(
            "referral_created",
            extra={"referral_id": referral.id, "referrer_id": referrer_id, "product_id": product_id},
        )
        return referral

    def deactivate(self, referral_id: str) -> bool:
        referral = self.db.query(Referral).filter(Referral.id == referral_id).one_or_none()
        if not referral or not referral.is_active:
            return False
        referral.is_active = False
        referral.deactivated_at = datetime.now(timezone.utc)
        self.db.add(referral)
        self.db.flush()
        logger.info("referral_deactivated", extra={"referral_id": referral_id})
        return True

    def find_active_referral(self, code: str, product_id: str | None) -> Referral | None:
        """Product-specific referral wins over a shop-wide one with the same code."""
        q = self.db.query(Referral).filter(
            Referral.referral_code == code,
            Referral.is_active.is_(True),
        )
        if product_id:
            q = q.filter(or_(Referral.product_id == product_id, Referral.product_id.is_(None)))
        else:
            q = q.filter(Referral.product_id.is_(None))
        candidates = q.all()
        for referral in candidates:
            if referral.product_id == product_id:
                return referral
        return candidates[0] if candidates else None

    # ------------------------------------------------------------------
    # Commission
    # ------------------------------------------------------------------

    @staticmethod
    def compute_commission(purchase_amount, commission_percent, currency: str = "USD") -> Decimal:
        return percent_of(purchase_amount, commission_percent, currency)

    def compute_and_record(
        self,
        referral_code: str | None,
        product_id: str | None,
        purchase_id: str,
        purchase_amount,
        currency: str = "USD",
        payment_confirmed: bool = True,
    ) -> ReferralConversion | None:
        """
        Record a verified conversion for a confirmed purchase.

        No referral code or no active referral is a no-op. Idempotent on
        (referral, purchase): a retried webhook gets the existing row back and
        the commission is never recomputed.
        """
        if not referral_code:
            return None
        if not payment_confirmed:
            logger.info(
                "referral_commission_skipped_unconfirmed",
                extra={"purchase_id": purchase_id, "product_id": product_id},
            )
            return None

        referral = self.find_active_referral(referral_code, product_id)
        if referral is None:
            logger.info(
                "referral_code_not_found",
                extra={"purchase_id": purchase_id, "product_id": product_id},
            )
            return None

        existing = self._find_conversion(referral.id, purchase_id)
        if existing:
            return existing

        amount = quantize(purchase_amount, currency)
        now = datetime.now(timezone.utc)
        conversion = ReferralConversion(
            referral_id=referral.id,
            referrer_id=referral.referrer_id,
            purchase_id=purchase_id,
            product_id=product_id,
            purchase_amount=amount,
            commission_percent=referral.commission_percent,
            commission_amount=self.compute_commission(amount, referral.commission_percent, currency),
            currency=currency,
            is_verified=True,
            created_at=now,
            verified_at=now,
        )
        try:
            with self.db.begin_nested():
                self.db.add(conversion)
        except IntegrityError:
            winner = self._find_conversion(referral.id, purchase_id)
            if winner is None:
                raise
            return winner

        commissions_recorded_total.inc()
        logger.info(
            "referral_commission_recorded",
            extra={
                "conversion_id": conversion.id,
                "referral_id": referral.id,
                "referrer_id": referral.referrer_id,
                "purchase_id": purchase_id,
                "amount": conversion.commission_amount,
            },
        )
        return conversion

    def _find_conversion(self, referral_id: str, purchase_id: str) -> ReferralConversion | None:
        return (
            self.db.query(ReferralConversion)
            .filter(
                ReferralConversion.referral_id == referral_id,
                ReferralConversion.purchase_id == purchase_id,
            )
            .one_or_none()
        )

    # ------------------------------------------------------------------
    # Revoke conversion (on refund)
    # ------------------------------------------------------------------

    def revoke_conversion_by_purchase(self, purchase_id: str) -> int:
        """Unverify conversions for a refunded purchase. Paid commissions are not clawed back."""
        conversions = (
            self.db.query(ReferralConversion)
            .filter(
                ReferralConversion.purchase_id == purchase_id,
                ReferralConversion.revoked_at.is_(None),
            )
            .all()
        )
        now = datetime.now(timezone.utc)
        for conversion in conversions:
            conversion.is_verified = False
            conversion.revoked_at = now
            self.db.add(conversion)
            logger.info(
                "referral_conversion_revoked",
                extra={
                    "conversion_id": conversion.id,
                    "referrer_id": conversion.referrer_id,
                    "purchase_id": purchase_id,
                },
            )
        self.db.flush()
        return len(conversions)

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def verified_total(self, referrer_id: str) -> Decimal:
        total = (
            self.db.query(func.coalesce(func.sum(ReferralConversion.commission_amount), 0))
            .filter(
                ReferralConversion.referrer_id == referrer_id,
                ReferralConversion.is_verified.is_(True),
                ReferralConversion.revoked_at.is_(None),
            )
            .scalar()
        )
        return quantize(total)

    def requested_total(self, partner_id: str) -> Decimal:
        total = (
            self.db.query(func.coalesce(func.sum(PartnerPayoutRequest.amount), 0))
            .filter(
                PartnerPayoutRequest.partner_id == partner_id,
                PartnerPayoutRequest.status.in_(("pending", "processing", "paid")),
            )
            .scalar()
        )
        return quantize(total)

    def get_earnings_stats(self, referrer_id: str) -> EarningsStats:
        verified = self.verified_total(referrer_id)
        requested = self.requested_total(referrer_id)

        def _payout_sum(*statuses: str) -> Decimal:
            total = (
                self.db.query(func.coalesce(func.sum(CommissionPayout.amount), 0))
                .filter(
                    CommissionPayout.referrer_id == referrer_id,
                    CommissionPayout.status.in_(statuses),
                )
                .scalar()
            )
            return quantize(total)

        conversions = (
            self.db.query(func.count(ReferralConversion.id))
            .filter(
                ReferralConversion.referrer_id == referrer_id,
                ReferralConversion.is_verified.is_(True),
            )
            .scalar()
            or 0
        )
        return EarningsStats(
            verified_total=verified,
            paid_out=_payout_sum("paid"),
            pending_payouts=_payout_sum("pending", "processing"),
            requested=requested,
            available_balance=max(Decimal("0.00"), verified - requested),
            conversions=conversions,
        )
