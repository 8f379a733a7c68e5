from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from execution_engine.db.enums import ActorTypeEnum, AuditEventTypeEnum
from execution_engine.db.models import AuditEvent
from execution_engine.db.repositories.audit_events import AuditEventsRepository

logger = logging.getLogger(__name__)


@dataclass
class AuditTrail:
    """Audit writer bound to one unit and actor; each record is committed before it returns."""

    session: Session
    workspace_id: UUID
    ad_account_id: Optional[UUID] = None
    unit_id: Optional[UUID] = None
    actor_type: ActorTypeEnum = ActorTypeEnum.system
    actor_id: Optional[str] = None
    run_id: Optional[UUID] = None

    def record(
        self,
        event_type: AuditEventTypeEnum,
        message: str,
        details: Optional[dict[str, Any]] = None,
        *,
        actor_type: Optional[ActorTypeEnum] = None,
        actor_id: Optional[str] = None,
    ) -> AuditEvent:
        event = AuditEventsRepository(self.session).append(
            workspace_id=self.workspace_id,
            ad_account_id=self.ad_account_id,
            unit_id=self.unit_id,
            event_type=event_type,
            actor_type=actor_type or self.actor_type,
            actor_id=actor_id if actor_id is not None else self.actor_id,
            run_id=self.run_id,
            message=message,
            details=details,
        )
        logger.info(
            "audit.recorded",
            extra={
                "event_type": event_type.value,
                "unit_id": str(self.unit_id) if self.unit_id else None,
                "run_id": str(self.run_id) if self.run_id else None,
            },
        )
        return event
