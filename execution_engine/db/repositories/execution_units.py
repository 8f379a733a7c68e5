from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Optional
from uuid import UUID

from sqlalchemy import select, update

from execution_engine.db.enums import ExecutionStatusEnum, PayloadKindEnum
from execution_engine.db.models import ExecutionUnit, utcnow
from execution_engine.db.repositories.base import Repository
from execution_engine.errors import InvalidTransitionError, NotFoundError


@dataclass(frozen=True)
class ClaimResult:
    unit_id: UUID
    status: ExecutionStatusEnum
    executed_at: Optional[datetime]
    claimed: bool


class ExecutionUnitsRepository(Repository):
    def get(self, unit_id: UUID) -> Optional[ExecutionUnit]:
        stmt = select(ExecutionUnit).where(ExecutionUnit.id == unit_id)
        return self.session.scalars(stmt).first()

    def get_for_account(
        self, *, unit_id: UUID, workspace_id: UUID, ad_account_id: UUID
    ) -> Optional[ExecutionUnit]:
        stmt = select(ExecutionUnit).where(
            ExecutionUnit.id == unit_id,
            ExecutionUnit.workspace_id == workspace_id,
            ExecutionUnit.ad_account_id == ad_account_id,
        )
        return self.session.scalars(stmt).first()

    def create(
        self,
        *,
        workspace_id: UUID,
        ad_account_id: UUID,
        kind: PayloadKindEnum,
        approved_payload: dict[str, Any],
        owner_id: Optional[UUID] = None,
        risk_flags: Optional[list[str]] = None,
    ) -> ExecutionUnit:
        unit = ExecutionUnit(
            workspace_id=workspace_id,
            ad_account_id=ad_account_id,
            owner_id=owner_id,
            kind=kind,
            status=ExecutionStatusEnum.created,
            approved_payload=approved_payload,
            risk_flags=risk_flags or [],
        )
        return self.save(unit)

    def claim_for_execution(self, unit_id: UUID) -> ClaimResult:
        """
        Atomically move a unit from approved to executing.

        Exactly one concurrent caller observes ``claimed=True``; every other caller
        gets the unit's current status and executed_at back without any write.
        """
        now = utcnow()
        stmt = (
            update(ExecutionUnit)
            .where(
                ExecutionUnit.id == unit_id,
                ExecutionUnit.status == ExecutionStatusEnum.approved,
                ExecutionUnit.executed_at.is_(None),
            )
            .values(status=ExecutionStatusEnum.executing, updated_at=now)
            .returning(ExecutionUnit.id, ExecutionUnit.status, ExecutionUnit.executed_at)
            .execution_options(synchronize_session=False)
        )
        row = self.session.execute(stmt).first()
        self.session.commit()
        if row is not None:
            return ClaimResult(unit_id=row.id, status=row.status, executed_at=row.executed_at, claimed=True)

        current = self.get(unit_id)
        if current is None:
            raise NotFoundError(f"Execution unit not found: {unit_id}")
        self.session.refresh(current)
        return ClaimResult(
            unit_id=current.id,
            status=current.status,
            executed_at=current.executed_at,
            claimed=False,
        )

    def transition(
        self,
        unit_id: UUID,
        *,
        from_statuses: Iterable[ExecutionStatusEnum],
        to_status: ExecutionStatusEnum,
        **values: Any,
    ) -> ExecutionUnit:
        allowed = list(from_statuses)
        now = utcnow()
        stmt = (
            update(ExecutionUnit)
            .where(ExecutionUnit.id == unit_id, ExecutionUnit.status.in_(allowed))
            .values(status=to_status, updated_at=now, **values)
            .returning(ExecutionUnit)
            .execution_options(synchronize_session=False)
        )
        unit = self.session.execute(stmt).scalar_one_or_none()
        if unit is None:
            self.session.rollback()
            current = self.get(unit_id)
            if current is None:
                raise NotFoundError(f"Execution unit not found: {unit_id}")
            self.session.refresh(current)
            raise InvalidTransitionError(
                f"Cannot move execution unit {unit_id} from {current.status.value} to {to_status.value}",
                current_status=current.status.value,
            )
        self.session.commit()
        self.session.refresh(unit)
        return unit

    def mark_executed(self, unit_id: UUID) -> ExecutionUnit:
        return self.transition(
            unit_id,
            from_statuses=[ExecutionStatusEnum.executing],
            to_status=ExecutionStatusEnum.executed,
            executed_at=utcnow(),
            last_error=None,
        )

    def mark_failed(self, unit_id: UUID, *, error: str) -> ExecutionUnit:
        return self.transition(
            unit_id,
            from_statuses=[ExecutionStatusEnum.executing],
            to_status=ExecutionStatusEnum.failed,
            last_error=error[:5000],
        )
