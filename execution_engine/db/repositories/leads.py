from __future__ import annotations

from typing import Optional, Sequence
from uuid import UUID

from sqlalchemy import select

from execution_engine.db.enums import LeadStatusEnum
from execution_engine.db.models import Lead
from execution_engine.db.repositories.base import Repository


class LeadsRepository(Repository):
    def list_active_recipients(
        self,
        *,
        workspace_id: UUID,
        statuses: Sequence[str],
        limit: int,
        segment: Optional[str] = None,
        require_email: bool = True,
        require_phone: bool = False,
    ) -> list[Lead]:
        active = [LeadStatusEnum(status) for status in statuses]
        stmt = select(Lead).where(Lead.workspace_id == workspace_id, Lead.status.in_(active))
        if require_email:
            stmt = stmt.where(Lead.email.is_not(None), Lead.email != "")
        if require_phone:
            stmt = stmt.where(Lead.phone.is_not(None), Lead.phone != "")
        if segment:
            stmt = stmt.where(Lead.segment == segment)
        stmt = stmt.order_by(Lead.created_at.asc(), Lead.id.asc()).limit(limit)
        return list(self.session.scalars(stmt).all())
