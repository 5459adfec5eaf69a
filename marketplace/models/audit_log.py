from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, DateTime, String

from marketplace.db.base import Base, JSONType


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    actor_type = Column(String, nullable=False)  # webhook / worker / partner / admin
    actor_id = Column(String, nullable=True)
    action = Column(String, nullable=False)
    entity_type = Column(String, nullable=False)
    entity_id = Column(String, nullable=True)
    payload = Column(JSONType, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
