"""
Audit Service - audit trail for admin actions on schedules and bookings.

Entries are added to the caller's open transaction, so an audit row is
committed together with the change it describes or not at all.
"""

import logging
import json
from typing import Optional, Dict, Any, List

from sqlalchemy import select
from sqlalchemy.orm import Session

from studio_api.services.base import BaseService
from studio_api.models.orm_models import AuditLog

logger = logging.getLogger(__name__)


class AuditService(BaseService):
    """Service for audit logging using SQLAlchemy."""

    # Action types
    ACTION_SCHEDULE_CREATE = "SCHEDULE_CREATE"
    ACTION_SCHEDULE_REGENERATE = "SCHEDULE_REGENERATE"
    ACTION_SCHEDULE_DEACTIVATE = "SCHEDULE_DEACTIVATE"
    ACTION_SCHEDULE_DELETE = "SCHEDULE_DELETE"
    ACTION_COURSE_UPDATE = "COURSE_UPDATE"
    ACTION_COURSE_DELETE = "COURSE_DELETE"
    ACTION_CAPACITY_OVERRIDE = "CAPACITY_OVERRIDE"
    ACTION_ADMIN_CANCEL = "ADMIN_CANCEL"
    ACTION_FORCED_REFUND = "FORCED_REFUND"
    ACTION_MARK_ABSENT = "MARK_ABSENT"
    ACTION_CHECKIN_UNVALIDATE = "CHECKIN_UNVALIDATE"

    def __init__(self, db: Session, clock=None):
        super().__init__(db, clock)

    @staticmethod
    def _to_json(values: Optional[Dict[str, Any]]) -> Optional[str]:
        if not values:
            return None
        try:
            return json.dumps(values, default=str, ensure_ascii=False)
        except Exception:
            return str(values)

    def record(
        self,
        action: str,
        table_name: str,
        record_id: Optional[int] = None,
        actor_id: Optional[int] = None,
        old_values: Optional[Dict[str, Any]] = None,
        new_values: Optional[Dict[str, Any]] = None,
    ) -> AuditLog:
        """
        Stage an audit entry in the current transaction.

        Args:
            action: Type of action (use ACTION_* constants)
            table_name: Name of the affected table
            record_id: ID of the affected record
            actor_id: ID of the admin performing the action
            old_values: Previous values
            new_values: New values

        Returns:
            The pending AuditLog row (flushed, so it has an id)
        """
        entry = AuditLog(
            actor_id=actor_id,
            action=action,
            table_name=table_name,
            record_id=record_id,
            old_values=self._to_json(old_values),
            new_values=self._to_json(new_values),
            created_at=self._now(),
        )
        self.db.add(entry)
        self.db.flush()
        logger.info(
            f"Audit log staged: action={action} table={table_name} "
            f"record_id={record_id} actor_id={actor_id}"
        )
        return entry

    def list_entries(
        self,
        table_name: Optional[str] = None,
        record_id: Optional[int] = None,
        action: Optional[str] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        stmt = select(AuditLog).order_by(AuditLog.id.desc()).limit(limit)
        if table_name:
            stmt = stmt.where(AuditLog.table_name == table_name)
        if record_id is not None:
            stmt = stmt.where(AuditLog.record_id == record_id)
        if action:
            stmt = stmt.where(AuditLog.action == action)
        rows = self.db.scalars(stmt).all()
        return [
            {
                "id": r.id,
                "actor_id": r.actor_id,
                "action": r.action,
                "table_name": r.table_name,
                "record_id": r.record_id,
                "old_values": json.loads(r.old_values) if r.old_values else None,
                "new_values": json.loads(r.new_values) if r.new_values else None,
                "created_at": r.created_at.isoformat() if r.created_at else None,
            }
            for r in rows
        ]
