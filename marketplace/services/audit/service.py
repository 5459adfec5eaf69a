"""
Append-only audit trail for payment events, payout transitions and operator
actions. Rows are never updated; `history` replays them in write order.
"""
from typing import Any

from sqlalchemy.orm import Session

from marketplace.models.audit_log import AuditLog


class AuditService:
    def __init__(self, db: Session) -> None:
        self.db = db

    def log(
        self,
        actor_type: str,
        actor_id: str | None,
        action: str,
        entity_type: str,
        entity_id: str | None,
        payload: dict[str, Any] | None = None,
    ) -> AuditLog:
        """Flushes only; the entry commits or rolls back with the caller's change."""
        entry = AuditLog(
            actor_type=actor_type,
            actor_id=actor_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            payload=dict(payload or {}),
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    def history(self, entity_type: str, entity_id: str, action_prefix: str | None = None) -> list[AuditLog]:
        q = self.db.query(AuditLog).filter(
            AuditLog.entity_type == entity_type,
            AuditLog.entity_id == entity_id,
        )
        if action_prefix:
            q = q.filter(AuditLog.action.startswith(action_prefix))
        return q.order_by(AuditLog.created_at.asc(), AuditLog.id.asc()).all()
