"""
WebhookProcessor: apply one normalized payment event.

Status update, access grant and commission share the caller's transaction:
either all of them commit or the provider retries the whole event. Every
side effect is idempotent on its natural key (payment ref, purchase id,
referral + purchase), so a redelivered event converges to the same state.
Notifications go out only when the status actually changed.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy.orm import Session

from marketplace.models.webhook_event import WebhookEvent
from marketplace.services.access.service import ProductAccessService
from marketplace.services.audit.service import AuditService
from marketplace.services.notifications.service import NotificationService
from marketplace.services.payments.state import PaymentStateTracker, StatusUpdate
from marketplace.services.referrals.service import ReferralService
from marketplace.services.webhooks.events import (
    PaymentRefunded,
    PaymentStatusChanged,
    PaymentSucceeded,
    UnhandledEvent,
)

logger = logging.getLogger(__name__)


@dataclass
class WebhookProcessingResult:
    success: bool
    processed: bool  # False for unhandled or stale events
    payment_id: str | None = None
    changed: bool = False
    error: str | None = None


class WebhookProcessor:
    def __init__(self, db: Session):
        self.db = db
        self.tracker = PaymentStateTracker(db)
        self.access = ProductAccessService(db)
        self.referrals = ReferralService(db)
        self.notifications = NotificationService(db)
        self.audit = AuditService(db)

    def process(self, event) -> WebhookProcessingResult:
        """
        Raises PaymentNotFoundError for unknown references and
        ProductAccessError when the grant cannot be written; the caller
        rolls back and answers with a retryable error.
        """
        if isinstance(event, UnhandledEvent):
            logger.info(
                "webhook_event_unhandled",
                extra={"provider": event.provider, "event_type": event.event_type, "order_id": event.payment_ref},
            )
            return WebhookProcessingResult(success=True, processed=False)

        if isinstance(event, PaymentSucceeded):
            update = self._handle_succeeded(event)
        elif isinstance(event, PaymentRefunded):
            update = self._handle_refunded(event)
        elif isinstance(event, PaymentStatusChanged):
            update = self.tracker.update_status(
                event.provider, event.payment_ref, event.new_status, event.provider_metadata
            )
        else:
            raise TypeError(f"unsupported event variant: {type(event).__name__}")

        if update.changed:
            self.audit.log(
                "provider",
                event.provider,
                f"payment_{update.payment.status}",
                "payment",
                update.payment.id,
                {"event_type": event.event_type, "old_status": update.previous_status},
            )
        return WebhookProcessingResult(
            success=True,
            processed=not update.ignored,
            payment_id=update.payment.id,
            changed=update.changed,
        )

    def _handle_succeeded(self, event: PaymentSucceeded) -> StatusUpdate:
        metadata = {**event.provider_metadata, "purchase_id": event.purchase_id}
        update = self.tracker.update_status(event.provider, event.payment_ref, "succeeded", metadata)
        payment = update.payment
        if payment.status != "succeeded":
            return update

        user_id = payment.user_id or event.user_id
        product_id = payment.product_id or event.product_id
        referral_code = event.referral_code or payment.referral_code

        if user_id and product_id:
            self.access.grant(user_id, product_id, event.purchase_id, payment_id=payment.id)
        else:
            logger.warning(
                "webhook_purchase_metadata_missing",
                extra={"payment_id": payment.id, "purchase_id": event.purchase_id, "provider": event.provider},
            )

        conversion = self.referrals.compute_and_record(
            referral_code,
            product_id,
            event.purchase_id,
            event.amount,
            event.currency,
            payment_confirmed=True,
        )

        if update.changed:
            if user_id:
                self.notifications.payment_success(user_id, product_id, event.amount, event.currency)
            if conversion is not None:
                self.notifications.referral_commission(
                    conversion.referrer_id, product_id, conversion.commission_amount, conversion.currency
                )
        return update

    def _handle_refunded(self, event: PaymentRefunded) -> StatusUpdate:
        update = self.tracker.update_status(event.provider, event.payment_ref, "refunded", event.provider_metadata)
        if update.changed:
            payment = update.payment
            purchase_id = (payment.provider_metadata or {}).get("purchase_id") or payment.provider_payment_id
            self.access.revoke_by_purchase(purchase_id)
            self.referrals.revoke_conversion_by_purchase(purchase_id)
        return update

    def log_webhook_event(
        self,
        provider: str,
        event_type: str,
        reference: str | None,
        payload: dict[str, Any],
        success: bool,
        error: str | None = None,
        processing_time_ms: int | None = None,
    ) -> WebhookEvent:
        """Flushes only; failed events are written after the caller rolled back."""
        record = WebhookEvent(
            provider=provider,
            event_type=event_type,
            reference=reference,
            payload=payload,
            success=success,
            error=error,
            processing_time_ms=processing_time_ms,
        )
        self.db.add(record)
        self.db.flush()
        return record
