from __future__ import annotations

from typing import Any, Optional
from uuid import UUID

from sqlalchemy import select

from execution_engine.db.enums import ActorTypeEnum, AuditEventTypeEnum
from execution_engine.db.models import AuditEvent
from execution_engine.db.repositories.base import Repository


class AuditEventsRepository(Repository):
    """Append-only access to the audit ledger; there are deliberately no update or delete methods."""

    def append(
        self,
        *,
        workspace_id: UUID,
        event_type: AuditEventTypeEnum,
        actor_type: ActorTypeEnum,
        message: str,
        details: Optional[dict[str, Any]] = None,
        ad_account_id: Optional[UUID] = None,
        unit_id: Optional[UUID] = None,
        actor_id: Optional[str] = None,
        run_id: Optional[UUID] = None,
    ) -> AuditEvent:
        event = AuditEvent(
            workspace_id=workspace_id,
            ad_account_id=ad_account_id,
            unit_id=unit_id,
            event_type=event_type,
            actor_type=actor_type,
            actor_id=actor_id,
            run_id=run_id,
            message=message,
            details=details or {},
        )
        return self.save(event)

    def list_for_unit(self, unit_id: UUID) -> list[AuditEvent]:
        stmt = select(AuditEvent).where(AuditEvent.unit_id == unit_id).order_by(AuditEvent.id.asc())
        return list(self.session.scalars(stmt).all())

    def list_for_run(self, run_id: UUID) -> list[AuditEvent]:
        stmt = select(AuditEvent).where(AuditEvent.run_id == run_id).order_by(AuditEvent.id.asc())
        return list(self.session.scalars(stmt).all())
