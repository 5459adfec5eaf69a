from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, Integer, String, UniqueConstraint

from marketplace.db.base import Base


class ProductAccessGrant(Base):
    __tablename__ = "product_access_grants"
    __table_args__ = (
        UniqueConstraint("user_id", "product_id", "purchase_id", name="uq_access_user_product_purchase"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    user_id = Column(String, nullable=False, index=True)
    product_id = Column(String, nullable=False, index=True)
    purchase_id = Column(String, nullable=False, index=True)
    payment_id = Column(String, nullable=True)
    download_count = Column(Integer, nullable=False, default=0)
    expires_at = Column(DateTime(timezone=True), nullable=True)  # None = no expiry for digital goods
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    revoked_at = Column(DateTime(timezone=True), nullable=True)
