"""
PaymentStateTracker: single source of truth for "has this payment been processed".

Webhook delivery is at-least-once and unordered, so:
- re-applying the current status is a no-op (changed=False), never an error;
- stale transitions (e.g. "processing" after "succeeded") are ignored and logged;
- succeeded only leaves via an explicit refund.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.orm import Session

from marketplace.core.errors import PaymentNotFoundError
from marketplace.models.payment import Payment
from marketplace.utils.metrics import payment_transitions_total

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"processing", "succeeded", "failed", "cancelled", "expired"}),
    "processing": frozenset({"succeeded", "failed", "cancelled", "expired"}),
    # a failed PaymentIntent can be retried by the buyer
    "failed": frozenset({"processing", "succeeded", "cancelled", "expired"}),
    "succeeded": frozenset({"refunded"}),
    "cancelled": frozenset(),
    "expired": frozenset(),
    "refunded": frozenset(),
}


def can_transition(old: str, new: str) -> bool:
    return new in ALLOWED_TRANSITIONS.get(old, frozenset())


@dataclass
class StatusUpdate:
    payment: Payment
    previous_status: str
    changed: bool
    ignored: bool = False  # stale / out-of-order event


class PaymentStateTracker:
    def __init__(self, db: Session):
        self.db = db

    def get(self, provider: str, payment_ref: str, lock: bool = False) -> Payment:
        q = self.db.query(Payment).filter(
            Payment.provider == provider,
            Payment.provider_payment_id == payment_ref,
        )
        if lock:
            q = q.with_for_update()
        payment = q.one_or_none()
        if payment is None:
            raise PaymentNotFoundError(f"{provider}:{payment_ref}")
        return payment

    def update_status(
        self,
        provider: str,
        payment_ref: str,
        new_status: str,
        provider_metadata: dict[str, Any] | None = None,
    ) -> StatusUpdate:
        """
        Persist status + provider metadata. Raises PaymentNotFoundError when the
        reference is unknown; the caller must stop before any downstream effect.
        """
        payment = self.get(provider, payment_ref, lock=True)
        old = payment.status

        if old == new_status:
            return StatusUpdate(payment=payment, previous_status=old, changed=False)

        if not can_transition(old, new_status):
            logger.warning(
                "payment_transition_ignored",
                extra={
                    "payment_id": payment.id,
                    "provider": provider,
                    "old_status": old,
                    "new_status": new_status,
                },
            )
            return StatusUpdate(payment=payment, previous_status=old, changed=False, ignored=True)

        now = datetime.now(timezone.utc)
        payment.status = new_status
        merged = dict(payment.provider_metadata or {})
        merged.update({k: v for k, v in (provider_metadata or {}).items() if v is not None})
        payment.provider_metadata = merged
        payment.updated_at = now
        if new_status == "succeeded":
            payment.succeeded_at = now
        elif new_status == "refunded":
            payment.refunded_at = now
        self.db.add(payment)
        self.db.flush()

        payment_transitions_total.labels(provider=provider, status=new_status).inc()
        logger.info(
            "payment_status_updated",
            extra={
                "payment_id": payment.id,
                "provider": provider,
                "old_status": old,
                "new_status": new_status,
            },
        )
        return StatusUpdate(payment=payment, previous_status=old, changed=True)
