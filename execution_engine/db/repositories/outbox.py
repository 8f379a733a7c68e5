from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from execution_engine.db.enums import (
    ChannelEnum,
    DeliveryStatusEnum,
    OutboxStatusEnum,
    SkipReasonEnum,
)
from execution_engine.db.models import OutboxEntry, utcnow
from execution_engine.db.repositories.base import Repository
from execution_engine.errors import DuplicateKeyError, NotFoundError, OutboxStateError

_OPEN_STATUSES = [OutboxStatusEnum.queued, OutboxStatusEnum.scheduled]


class OutboxRepository(Repository):
    def get(self, entry_id: UUID) -> Optional[OutboxEntry]:
        stmt = select(OutboxEntry).where(OutboxEntry.id == entry_id)
        return self.session.scalars(stmt).first()

    def get_by_key(self, *, tenant_id: UUID, workspace_id: UUID, idempotency_key: str) -> Optional[OutboxEntry]:
        stmt = select(OutboxEntry).where(
            OutboxEntry.tenant_id == tenant_id,
            OutboxEntry.workspace_id == workspace_id,
            OutboxEntry.idempotency_key == idempotency_key,
        )
        return self.session.scalars(stmt).first()

    def get_by_provider_message_id(self, provider_message_id: str, *, channel: ChannelEnum) -> Optional[OutboxEntry]:
        stmt = select(OutboxEntry).where(
            OutboxEntry.provider_message_id == provider_message_id,
            OutboxEntry.channel == channel,
        )
        return self.session.scalars(stmt).first()

    def insert_pending(
        self,
        *,
        tenant_id: UUID,
        workspace_id: UUID,
        channel: ChannelEnum,
        provider: str,
        idempotency_key: str,
        payload: dict[str, Any],
        run_id: Optional[UUID] = None,
        unit_id: Optional[UUID] = None,
        recipient_id: Optional[str] = None,
        recipient_email: Optional[str] = None,
        recipient_phone: Optional[str] = None,
        resource_name: Optional[str] = None,
        scheduled_at: Optional[datetime] = None,
    ) -> OutboxEntry:
        """
        Record intent to send before the provider is called.

        Raises DuplicateKeyError when the key already exists in this tenant and
        workspace; the existing row is left untouched.
        """
        entry = OutboxEntry(
            tenant_id=tenant_id,
            workspace_id=workspace_id,
            run_id=run_id,
            unit_id=unit_id,
            channel=channel,
            provider=provider,
            recipient_id=recipient_id,
            recipient_email=recipient_email,
            recipient_phone=recipient_phone,
            resource_name=resource_name,
            idempotency_key=idempotency_key,
            payload=payload,
            status=OutboxStatusEnum.scheduled if scheduled_at else OutboxStatusEnum.queued,
            scheduled_at=scheduled_at,
            attempts=0 if scheduled_at else 1,
        )
        self.session.add(entry)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            existing = self.get_by_key(
                tenant_id=tenant_id,
                workspace_id=workspace_id,
                idempotency_key=idempotency_key,
            )
            if existing is not None:
                raise DuplicateKeyError(idempotency_key) from exc
            raise
        self.session.refresh(entry)
        return entry

    def _finish(self, entry_id: UUID, **values: Any) -> OutboxEntry:
        stmt = (
            update(OutboxEntry)
            .where(OutboxEntry.id == entry_id, OutboxEntry.status.in_(_OPEN_STATUSES))
            .values(updated_at=utcnow(), **values)
            .returning(OutboxEntry)
            .execution_options(synchronize_session=False)
        )
        entry = self.session.execute(stmt).scalar_one_or_none()
        if entry is None:
            self.session.rollback()
            current = self.get(entry_id)
            if current is None:
                raise NotFoundError(f"Outbox entry not found: {entry_id}")
            self.session.refresh(current)
            raise OutboxStateError(
                f"Outbox entry {entry_id} is already {current.status.value}; terminal updates happen once"
            )
        self.session.commit()
        self.session.refresh(entry)
        return entry

    def mark_sent(
        self,
        entry_id: UUID,
        *,
        provider_message_id: str,
        provider_response: Optional[dict[str, Any]] = None,
    ) -> OutboxEntry:
        return self._finish(
            entry_id,
            status=OutboxStatusEnum.sent,
            provider_message_id=provider_message_id,
            provider_response=provider_response,
            error=None,
        )

    def mark_called(
        self,
        entry_id: UUID,
        *,
        provider_message_id: str,
        provider_response: Optional[dict[str, Any]] = None,
    ) -> OutboxEntry:
        return self._finish(
            entry_id,
            status=OutboxStatusEnum.called,
            provider_message_id=provider_message_id,
            provider_response=provider_response,
            error=None,
        )

    def mark_failed(
        self,
        entry_id: UUID,
        *,
        error: str,
        provider_response: Optional[dict[str, Any]] = None,
    ) -> OutboxEntry:
        return self._finish(
            entry_id,
            status=OutboxStatusEnum.failed,
            error=error[:5000],
            provider_response=provider_response,
        )

    def mark_skipped(
        self,
        entry_id: UUID,
        *,
        reason: SkipReasonEnum,
        provider_response: Optional[dict[str, Any]] = None,
    ) -> OutboxEntry:
        return self._finish(
            entry_id,
            status=OutboxStatusEnum.skipped,
            skipped=True,
            skip_reason=reason,
            provider_response=provider_response,
        )

    def record_delivery(
        self,
        entry_id: UUID,
        *,
        delivery_status: DeliveryStatusEnum,
        event: dict[str, Any],
    ) -> Optional[OutboxEntry]:
        """
        Attach a provider delivery callback to a sent row.

        The send status itself never changes; None when the row is not sent.
        """
        now = utcnow()
        stmt = (
            update(OutboxEntry)
            .where(OutboxEntry.id == entry_id, OutboxEntry.status == OutboxStatusEnum.sent)
            .values(delivery_status=delivery_status, delivery_event=event, delivery_updated_at=now, updated_at=now)
            .returning(OutboxEntry)
            .execution_options(synchronize_session=False)
        )
        entry = self.session.execute(stmt).scalar_one_or_none()
        self.session.commit()
        if entry is not None:
            self.session.refresh(entry)
        return entry

    def list_due_scheduled(self, *, now: datetime, limit: int) -> list[OutboxEntry]:
        stmt = (
            select(OutboxEntry)
            .where(
                OutboxEntry.status == OutboxStatusEnum.scheduled,
                OutboxEntry.scheduled_at <= now,
            )
            .order_by(OutboxEntry.scheduled_at.asc(), OutboxEntry.created_at.asc())
            .limit(limit)
        )
        return list(self.session.scalars(stmt).all())

    def claim_scheduled(self, entry_id: UUID, *, now: datetime) -> Optional[OutboxEntry]:
        """Move one due row from scheduled to queued; None when another dispatcher got there first."""
        stmt = (
            update(OutboxEntry)
            .where(
                OutboxEntry.id == entry_id,
                OutboxEntry.status == OutboxStatusEnum.scheduled,
                OutboxEntry.scheduled_at <= now,
            )
            .values(status=OutboxStatusEnum.queued, attempts=OutboxEntry.attempts + 1, updated_at=now)
            .returning(OutboxEntry)
            .execution_options(synchronize_session=False)
        )
        entry = self.session.execute(stmt).scalar_one_or_none()
        self.session.commit()
        if entry is not None:
            self.session.refresh(entry)
        return entry

    def list_stale_queued(self, *, stale_before: datetime, limit: int) -> list[OutboxEntry]:
        stmt = (
            select(OutboxEntry)
            .where(
                OutboxEntry.status == OutboxStatusEnum.queued,
                OutboxEntry.updated_at < stale_before,
            )
            .order_by(OutboxEntry.updated_at.asc())
            .limit(limit)
        )
        return list(self.session.scalars(stmt).all())

    def claim_stale(self, entry_id: UUID, *, stale_before: datetime) -> Optional[OutboxEntry]:
        # Touching updated_at fences out a concurrent sweep working on the same row.
        now = utcnow()
        stmt = (
            update(OutboxEntry)
            .where(
                OutboxEntry.id == entry_id,
                OutboxEntry.status == OutboxStatusEnum.queued,
                OutboxEntry.updated_at < stale_before,
            )
            .values(attempts=OutboxEntry.attempts + 1, updated_at=now)
            .returning(OutboxEntry)
            .execution_options(synchronize_session=False)
        )
        entry = self.session.execute(stmt).scalar_one_or_none()
        self.session.commit()
        if entry is not None:
            self.session.refresh(entry)
        return entry

    def list_for_run(self, run_id: UUID) -> list[OutboxEntry]:
        stmt = select(OutboxEntry).where(OutboxEntry.run_id == run_id).order_by(OutboxEntry.created_at.asc())
        return list(self.session.scalars(stmt).all())

    def count_by_status(self, *, run_id: UUID) -> dict[str, int]:
        stmt = (
            select(OutboxEntry.status, func.count(OutboxEntry.id))
            .where(OutboxEntry.run_id == run_id)
            .group_by(OutboxEntry.status)
        )
        counts = {status.value: 0 for status in OutboxStatusEnum}
        for status, count in self.session.execute(stmt).all():
            counts[status.value] = int(count)
        return counts
