from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, String

from marketplace.db.base import Base, JSONType


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    email = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=True)
    role = Column(String, nullable=False, default="buyer")  # buyer / seller / partner / admin
    is_active = Column(Boolean, nullable=False, default=True)
    # partner payout destination: stripe_account / paypal_email / iban + account_name
    payout_details = Column(JSONType, nullable=False, default=dict)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    @property
    def is_partner(self) -> bool:
        return self.role == "partner"
