from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, Numeric, String

from marketplace.db.base import Base


class Referral(Base):
    __tablename__ = "referrals"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    referrer_id = Column(String, nullable=False, index=True)
    product_id = Column(String, nullable=True, index=True)
    shop_id = Column(String, nullable=True, index=True)
    referral_code = Column(String, nullable=False, index=True)
    commission_percent = Column(Numeric(5, 2), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    deactivated_at = Column(DateTime(timezone=True), nullable=True)
