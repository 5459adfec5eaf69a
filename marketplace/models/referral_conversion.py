"""
ReferralConversion: one commission-eligible purchase.
commission_amount is fixed at verification time and never recomputed.
"""
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, Numeric, String, UniqueConstraint

from marketplace.db.base import Base


class ReferralConversion(Base):
    __tablename__ = "referral_conversions"
    __table_args__ = (
        UniqueConstraint("referral_id", "purchase_id", name="uq_conversion_referral_purchase"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    referral_id = Column(String, nullable=False, index=True)
    referrer_id = Column(String, nullable=False, index=True)  # denormalized from referral for period sums
    purchase_id = Column(String, nullable=False, index=True)
    product_id = Column(String, nullable=True)
    purchase_amount = Column(Numeric(12, 2), nullable=False)
    commission_percent = Column(Numeric(5, 2), nullable=False)  # snapshot at verification
    commission_amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(8), nullable=False, default="USD")
    is_verified = Column(Boolean, nullable=False, default=False)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    verified_at = Column(DateTime(timezone=True), nullable=True)
    revoked_at = Column(DateTime(timezone=True), nullable=True)
