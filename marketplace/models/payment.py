"""
Payment model: one attempted purchase (PaymentIntent / order) at a provider.
Rows are never deleted; status only moves forward (see PaymentStateTracker).
"""
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, DateTime, Numeric, String, UniqueConstraint

from marketplace.db.base import Base, JSONType

PAYMENT_STATUSES = (
    "pending",
    "processing",
    "succeeded",
    "failed",
    "cancelled",
    "expired",
    "refunded",
)


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (
        UniqueConstraint("provider", "provider_payment_id", name="uq_payments_provider_ref"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    provider = Column(String, nullable=False)                    # stripe / yookassa / coingate
    provider_payment_id = Column(String, nullable=False, index=True)  # pi_..., yookassa id, coingate order_id
    user_id = Column(String, nullable=True, index=True)
    product_id = Column(String, nullable=True, index=True)
    referral_code = Column(String, nullable=True)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(8), nullable=False, default="USD")
    status = Column(String, nullable=False, default="pending")
    provider_metadata = Column(JSONType, nullable=False, default=dict)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
    succeeded_at = Column(DateTime(timezone=True), nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)
