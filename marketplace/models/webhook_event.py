from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text

from marketplace.db.base import Base, JSONType


class WebhookEvent(Base):
    """Every inbound webhook, processed or not, for audit and replay."""

    __tablename__ = "webhook_events"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    provider = Column(String, nullable=False, index=True)
    event_type = Column(String, nullable=False)
    reference = Column(String, nullable=True, index=True)  # provider payment / order id
    payload = Column(JSONType, nullable=False, default=dict)
    success = Column(Boolean, nullable=False)
    error = Column(Text, nullable=True)
    processing_time_ms = Column(Integer, nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
