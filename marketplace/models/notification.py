from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, DateTime, String, Text

from marketplace.db.base import Base, JSONType


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    user_id = Column(String, nullable=False, index=True)
    type = Column(String, nullable=False)  # payment_success / referral_commission / commission_payout / payout_completed / payout_failed
    title = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    data = Column(JSONType, nullable=False, default=dict)
    status = Column(String, nullable=False, default="pending")  # picked up by email / in-app channels
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
