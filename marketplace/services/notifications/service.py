"""
NotificationService: writes to the notification store consumed by the
email and in-app channels. Never commits; callers decide the transaction.
"""
import logging
from decimal import Decimal
from typing import Any

from sqlalchemy.orm import Session

from marketplace.core.config import settings
from marketplace.models.notification import Notification

logger = logging.getLogger(__name__)


def _money(amount: Decimal | None) -> str | None:
    return None if amount is None else f"{Decimal(amount):.2f}"


class NotificationService:
    def __init__(self, db: Session):
        self.db = db

    def create(
        self,
        user_id: str,
        type: str,
        title: str,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> Notification:
        notification = Notification(
            user_id=user_id,
            type=type,
            title=title,
            message=message,
            data=data or {},
        )
        self.db.add(notification)
        self.db.flush()
        logger.info(
            "notification_queued",
            extra={"user_id": user_id, "event_type": type},
        )
        return notification

    # ------------------------------------------------------------------
    # Purchases
    # ------------------------------------------------------------------

    def payment_success(self, user_id: str, product_id: str | None, amount: Decimal, currency: str) -> Notification:
        return self.create(
            user_id,
            "payment_success",
            "Payment Successful - Digital Product Access Granted",
            f"Your payment of {_money(amount)} {currency} was received. Your download is ready.",
            {
                "product_id": product_id,
                "amount": _money(amount),
                "currency": currency,
                "download_url": f"{settings.public_app_url}/downloads",
            },
        )

    def referral_commission(self, referrer_id: str, product_id: str | None, commission: Decimal, currency: str) -> Notification:
        return self.create(
            referrer_id,
            "referral_commission",
            "New Referral Commission Earned",
            f"You earned a {_money(commission)} {currency} commission on a referred purchase.",
            {
                "product_id": product_id,
                "commission_amount": _money(commission),
                "currency": currency,
                "dashboard_url": f"{settings.public_app_url}/referrals",
            },
        )

    # ------------------------------------------------------------------
    # Payouts
    # ------------------------------------------------------------------

    def payout_processed(self, payout) -> Notification:
        return self.create(
            payout.referrer_id,
            "commission_payout",
            "Commission Payout Processed",
            f"Your commission payout of ${_money(payout.amount)} has been processed and will be paid soon.",
            {
                "payout_id": payout.id,
                "amount": _money(payout.amount),
                "net_amount": _money(payout.net_amount),
                "currency": payout.currency,
                "period_start": payout.period_start.isoformat(),
                "period_end": payout.period_end.isoformat(),
            },
        )

    def payout_completed(self, payout, provider: str) -> Notification:
        return self.create(
            payout.referrer_id,
            "payout_completed",
            "Commission Paid",
            f"Your commission payment of ${_money(payout.net_amount)} has been sent successfully.",
            {
                "payout_id": payout.id,
                "amount": _money(payout.amount),
                "provider": provider,
                "transaction_id": payout.external_transaction_id,
            },
        )

    def payout_failed(self, payout, provider: str, error: str) -> Notification:
        return self.create(
            payout.referrer_id,
            "payout_failed",
            "Commission Payment Failed",
            "There was an issue processing your commission payment. Please contact support.",
            {
                "payout_id": payout.id,
                "amount": _money(payout.amount),
                "provider": provider,
                "error": error,
            },
        )
