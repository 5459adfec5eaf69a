"""
PartnerPayoutRequest: a partner asking to be paid out of their available balance.

At most one pending/processing request per partner; the partial unique index
closes the check-then-insert race between concurrent submissions.
"""
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, DateTime, Index, Numeric, String, Text, text

from marketplace.db.base import Base, JSONType

REQUEST_OPEN_STATUSES = ("pending", "processing")

_open_clause = text("status IN ('pending', 'processing')")


class PartnerPayoutRequest(Base):
    __tablename__ = "partner_payout_requests"
    __table_args__ = (
        Index(
            "uq_partner_payout_requests_open",
            "partner_id",
            unique=True,
            postgresql_where=_open_clause,
            sqlite_where=_open_clause,
        ),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    partner_id = Column(String, nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    fee_amount = Column(Numeric(12, 2), nullable=False)
    net_amount = Column(Numeric(12, 2), nullable=False)
    payment_method = Column(String, nullable=False)
    payment_details = Column(JSONType, nullable=False, default=dict)
    notes = Column(Text, nullable=True)
    status = Column(String, nullable=False, default="pending")  # pending / processing / paid / rejected / failed
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
