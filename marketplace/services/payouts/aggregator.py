"""
CommissionPayoutAggregator: one payable unit per referrer per period.

Duplicate suppression has two layers: an existence check for the friendly
path, and the partial unique index on (referrer_id, period_start, period_end)
for the race where two runs pass the check together. The loser's
IntegrityError becomes an ALREADY_EXISTS result pointing at the winner.
"""
from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marketplace.core.config import settings
from marketplace.models.commission_payout import PAYOUT_ACTIVE_STATUSES, CommissionPayout
from marketplace.models.referral_conversion import ReferralConversion
from marketplace.models.user import User
from marketplace.services.audit.service import AuditService
from marketplace.services.notifications.service import NotificationService
from marketplace.services.payouts.fees import calculate_processing_fee
from marketplace.services.payouts.results import AggregationResult, PayoutOutcome
from marketplace.utils.metrics import payouts_created_total
from marketplace.utils.money import quantize, to_decimal

logger = logging.getLogger(__name__)


class CommissionPayoutAggregator:
    def __init__(self, db: Session, currency: str | None = None):
        self.db = db
        self.currency = currency or settings.payout_currency

    def _verified_conversions(self, period_start: datetime, period_end: datetime):
        return self.db.query(ReferralConversion).filter(
            ReferralConversion.is_verified.is_(True),
            ReferralConversion.revoked_at.is_(None),
            ReferralConversion.created_at >= period_start,
            ReferralConversion.created_at <= period_end,
        )

    def period_total(self, referrer_id: str, period_start: datetime, period_end: datetime) -> Decimal:
        total = (
            self._verified_conversions(period_start, period_end)
            .filter(ReferralConversion.referrer_id == referrer_id)
            .with_entities(func.coalesce(func.sum(ReferralConversion.commission_amount), 0))
            .scalar()
        )
        return quantize(total, self.currency)

    def find_active_payout(
        self, referrer_id: str, period_start: datetime, period_end: datetime
    ) -> CommissionPayout | None:
        return (
            self.db.query(CommissionPayout)
            .filter(
                CommissionPayout.referrer_id == referrer_id,
                CommissionPayout.period_start == period_start,
                CommissionPayout.period_end == period_end,
                CommissionPayout.status.in_(PAYOUT_ACTIVE_STATUSES),
            )
            .first()
        )

    def eligible_referrers(self, period_start: datetime, period_end: datetime) -> list[str]:
        """Active partners with at least one verified conversion in the period."""
        rows = (
            self._verified_conversions(period_start, period_end)
            .join(User, User.id == ReferralConversion.referrer_id)
            .filter(User.role == "partner", User.is_active.is_(True))
            .with_entities(ReferralConversion.referrer_id)
            .distinct()
            .order_by(ReferralConversion.referrer_id)
            .all()
        )
        return [r[0] for r in rows]

    def aggregate(
        self,
        referrer_id: str,
        period_start: datetime,
        period_end: datetime,
        minimum_payout=None,
        payment_method: str | None = None,
    ) -> AggregationResult:
        minimum = to_decimal(settings.payout_minimum_amount if minimum_payout is None else minimum_payout)
        method = (payment_method or settings.payout_default_method).strip().lower()
        total = self.period_total(referrer_id, period_start, period_end)

        if total < minimum:
            payouts_created_total.labels(outcome=PayoutOutcome.BELOW_MINIMUM.value).inc()
            logger.info(
                "payout_below_minimum",
                extra={"referrer_id": referrer_id, "amount": total, "outcome": "below_minimum"},
            )
            return AggregationResult(referrer_id, PayoutOutcome.BELOW_MINIMUM, total)

        existing = self.find_active_payout(referrer_id, period_start, period_end)
        if existing:
            return self._already_exists(existing)

        fee, net = calculate_processing_fee(total, method, self.currency)
        referrer = self.db.query(User).filter(User.id == referrer_id).one_or_none()
        payout = CommissionPayout(
            referrer_id=referrer_id,
            period_start=period_start,
            period_end=period_end,
            amount=total,
            fee_amount=fee,
            net_amount=net,
            currency=self.currency,
            payment_method=method,
            payment_details=dict(referrer.payout_details or {}) if referrer else {},
            status="pending",
        )
        try:
            with self.db.begin_nested():
                self.db.add(payout)
        except IntegrityError:
            winner = self.find_active_payout(referrer_id, period_start, period_end)
            if winner is None:
                raise
            return self._already_exists(winner)

        AuditService(self.db).log(
            "system",
            None,
            "payout_created",
            "commission_payout",
            payout.id,
            {"referrer_id": referrer_id, "amount": str(total), "payment_method": method},
        )
        NotificationService(self.db).payout_processed(payout)
        payouts_created_total.labels(outcome=PayoutOutcome.CREATED.value).inc()
        logger.info(
            "payout_created",
            extra={
                "payout_id": payout.id,
                "referrer_id": referrer_id,
                "amount": total,
                "fee_amount": fee,
                "net_amount": net,
                "outcome": "created",
            },
        )
        return AggregationResult(
            referrer_id,
            PayoutOutcome.CREATED,
            total,
            payout_id=payout.id,
            fee_amount=fee,
            net_amount=net,
        )

    def _already_exists(self, payout: CommissionPayout) -> AggregationResult:
        payouts_created_total.labels(outcome=PayoutOutcome.ALREADY_EXISTS.value).inc()
        logger.info(
            "payout_already_exists",
            extra={
                "payout_id": payout.id,
                "referrer_id": payout.referrer_id,
                "status": payout.status,
                "outcome": "already_exists",
            },
        )
        return AggregationResult(
            payout.referrer_id,
            PayoutOutcome.ALREADY_EXISTS,
            quantize(payout.amount, self.currency),
            payout_id=payout.id,
        )
