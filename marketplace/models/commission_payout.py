"""
CommissionPayout: aggregated payable unit for one referrer over one period.

State machine: pending -> processing -> {paid | failed}.
At most one pending/processing/paid payout per (referrer, period_start, period_end);
the partial unique index closes the check-then-insert race between
concurrent aggregation runs. A failed payout is re-queued as a new row.
"""
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, DateTime, Index, Numeric, String, Text, text

from marketplace.db.base import Base, JSONType

PAYOUT_ACTIVE_STATUSES = ("pending", "processing", "paid")

_active_clause = text("status IN ('pending', 'processing', 'paid')")


class CommissionPayout(Base):
    __tablename__ = "commission_payouts"
    __table_args__ = (
        Index(
            "uq_commission_payouts_referrer_period_active",
            "referrer_id",
            "period_start",
            "period_end",
            unique=True,
            postgresql_where=_active_clause,
            sqlite_where=_active_clause,
        ),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    referrer_id = Column(String, nullable=False, index=True)
    period_start = Column(DateTime(timezone=True), nullable=False)
    period_end = Column(DateTime(timezone=True), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    fee_amount = Column(Numeric(12, 2), nullable=False, default=0)
    net_amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(8), nullable=False, default="USD")
    payment_method = Column(String, nullable=False)
    payment_details = Column(JSONType, nullable=False, default=dict)  # destination snapshot
    status = Column(String, nullable=False, default="pending", index=True)
    external_transaction_id = Column(String, nullable=True)
    error = Column(Text, nullable=True)
    requeued_from_id = Column(String, nullable=True)
    # first payout of a re-queue chain; providers key idempotency on it
    root_payout_id = Column(String, nullable=True, index=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    processed_at = Column(DateTime(timezone=True), nullable=True)
