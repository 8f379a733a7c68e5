from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID, uuid4

import sqlalchemy as sa
from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, validates

from execution_engine.db.base import Base
from execution_engine.db.enums import (
    ActorTypeEnum,
    AdsProviderEnum,
    AuditEventTypeEnum,
    ChannelEnum,
    DeliveryStatusEnum,
    ExecutionStatusEnum,
    LeadStatusEnum,
    OutboxStatusEnum,
    PayloadKindEnum,
    SkipReasonEnum,
)
from execution_engine.errors import (
    ApprovedPayloadImmutableError,
    AuditImmutableError,
    GuardrailCapError,
)

JSONType = sa.JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Absolute maxima; a tenant can configure lower values, never higher.
GUARDRAIL_CAPS: dict[str, tuple[float, float]] = {
    "max_single_budget_change_pct": (0.0, 0.20),
    "approval_budget_increase_pct": (0.0, 0.10),
    "max_net_daily_spend_increase_pct": (0.0, 0.15),
    "bid_reduction_pct": (0.0, 0.50),
}
LOOKBACK_DAYS_RANGE = (1, 90)


def check_guardrail_value(field: str, value: Any) -> Any:
    if field == "lookback_days":
        low, high = LOOKBACK_DAYS_RANGE
        if not isinstance(value, int) or isinstance(value, bool) or not low <= value <= high:
            raise GuardrailCapError(f"lookback_days must be an integer between {low} and {high}; got {value!r}")
        return value
    low, high = GUARDRAIL_CAPS[field]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise GuardrailCapError(f"{field} must be a number; got {value!r}")
    if not (low < float(value) <= high):
        raise GuardrailCapError(f"{field} must be > {low:g} and <= {high:g}; got {value!r}")
    return float(value)


class AdAccount(Base):
    __tablename__ = "ad_accounts"
    __table_args__ = (sa.Index("idx_ad_accounts_workspace", "workspace_id"),)

    id: Mapped[UUID] = mapped_column(sa.Uuid, primary_key=True, default=uuid4)
    workspace_id: Mapped[UUID] = mapped_column(sa.Uuid, nullable=False)
    provider: Mapped[AdsProviderEnum] = mapped_column(
        Enum(AdsProviderEnum, name="ads_provider"),
        nullable=False,
        default=AdsProviderEnum.google_ads,
    )
    customer_id: Mapped[str] = mapped_column(Text, nullable=False)
    login_customer_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    # Kill switch: false stops automated execution without touching approval state.
    execution_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class GuardrailPolicy(Base):
    __tablename__ = "guardrail_policies"
    __table_args__ = (
        UniqueConstraint("workspace_id", "ad_account_id", name="uq_guardrail_policies_scope"),
        CheckConstraint(
            "max_single_budget_change_pct > 0 AND max_single_budget_change_pct <= 0.2",
            name="ck_guardrail_max_single_budget_change_pct",
        ),
        CheckConstraint(
            "approval_budget_increase_pct > 0 AND approval_budget_increase_pct <= 0.1",
            name="ck_guardrail_approval_budget_increase_pct",
        ),
        CheckConstraint(
            "max_net_daily_spend_increase_pct > 0 AND max_net_daily_spend_increase_pct <= 0.15",
            name="ck_guardrail_max_net_daily_spend_increase_pct",
        ),
        CheckConstraint(
            "bid_reduction_pct > 0 AND bid_reduction_pct <= 0.5",
            name="ck_guardrail_bid_reduction_pct",
        ),
        CheckConstraint(
            "lookback_days >= 1 AND lookback_days <= 90",
            name="ck_guardrail_lookback_days",
        ),
    )

    id: Mapped[UUID] = mapped_column(sa.Uuid, primary_key=True, default=uuid4)
    workspace_id: Mapped[UUID] = mapped_column(sa.Uuid, nullable=False)
    ad_account_id: Mapped[UUID] = mapped_column(
        ForeignKey("ad_accounts.id", ondelete="CASCADE"), nullable=False
    )
    max_single_budget_change_pct: Mapped[float] = mapped_column(Float, nullable=False, default=0.20)
    approval_budget_increase_pct: Mapped[float] = mapped_column(Float, nullable=False, default=0.10)
    max_net_daily_spend_increase_pct: Mapped[float] = mapped_column(Float, nullable=False, default=0.15)
    bid_reduction_pct: Mapped[float] = mapped_column(Float, nullable=False, default=0.20)
    lookback_days: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    @validates(
        "max_single_budget_change_pct",
        "approval_budget_increase_pct",
        "max_net_daily_spend_increase_pct",
        "bid_reduction_pct",
        "lookback_days",
    )
    def _validate_caps(self, key: str, value: Any) -> Any:
        return check_guardrail_value(key, value)


class ExecutionUnit(Base):
    __tablename__ = "execution_units"
    __table_args__ = (
        sa.Index("idx_execution_units_workspace_status", "workspace_id", "status"),
        sa.Index("idx_execution_units_ad_account", "ad_account_id"),
    )

    id: Mapped[UUID] = mapped_column(sa.Uuid, primary_key=True, default=uuid4)
    workspace_id: Mapped[UUID] = mapped_column(sa.Uuid, nullable=False)
    ad_account_id: Mapped[UUID] = mapped_column(
        ForeignKey("ad_accounts.id", ondelete="CASCADE"), nullable=False
    )
    owner_id: Mapped[Optional[UUID]] = mapped_column(sa.Uuid, nullable=True)
    kind: Mapped[PayloadKindEnum] = mapped_column(Enum(PayloadKindEnum, name="payload_kind"), nullable=False)
    status: Mapped[ExecutionStatusEnum] = mapped_column(
        Enum(ExecutionStatusEnum, name="execution_status"),
        nullable=False,
        default=ExecutionStatusEnum.created,
    )
    approved_payload: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    risk_flags: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    executed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    @validates("approved_payload")
    def _freeze_approved_payload(self, key: str, value: Optional[dict[str, Any]]) -> Optional[dict[str, Any]]:
        current = self.approved_payload
        if current is not None and value != current:
            raise ApprovedPayloadImmutableError(f"approved_payload of execution unit {self.id} is immutable")
        return value


class OutboxEntry(Base):
    __tablename__ = "outbox_entries"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "workspace_id",
            "idempotency_key",
            name="uq_outbox_entries_idempotency_key",
        ),
        sa.Index("idx_outbox_entries_run", "run_id"),
        sa.Index("idx_outbox_entries_status_scheduled", "status", "scheduled_at"),
        sa.Index("idx_outbox_entries_provider_message", "provider_message_id"),
    )

    id: Mapped[UUID] = mapped_column(sa.Uuid, primary_key=True, default=uuid4)
    tenant_id: Mapped[UUID] = mapped_column(sa.Uuid, nullable=False)
    workspace_id: Mapped[UUID] = mapped_column(sa.Uuid, nullable=False)
    run_id: Mapped[Optional[UUID]] = mapped_column(sa.Uuid, nullable=True)
    unit_id: Mapped[Optional[UUID]] = mapped_column(
        ForeignKey("execution_units.id", ondelete="SET NULL"), nullable=True
    )
    channel: Mapped[ChannelEnum] = mapped_column(Enum(ChannelEnum, name="outbox_channel"), nullable=False)
    provider: Mapped[str] = mapped_column(Text, nullable=False)
    recipient_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    recipient_email: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    recipient_phone: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    resource_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    idempotency_key: Mapped[str] = mapped_column(Text, nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    status: Mapped[OutboxStatusEnum] = mapped_column(
        Enum(OutboxStatusEnum, name="outbox_status"),
        nullable=False,
        default=OutboxStatusEnum.queued,
    )
    provider_message_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    provider_response: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    skipped: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    skip_reason: Mapped[Optional[SkipReasonEnum]] = mapped_column(
        Enum(SkipReasonEnum, name="outbox_skip_reason"), nullable=True
    )
    delivery_status: Mapped[Optional[DeliveryStatusEnum]] = mapped_column(
        Enum(DeliveryStatusEnum, name="outbox_delivery_status"), nullable=True
    )
    delivery_event: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    delivery_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    scheduled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class AuditEvent(Base):
    __tablename__ = "audit_events"
    __table_args__ = (
        sa.Index("idx_audit_events_unit", "unit_id", "created_at"),
        sa.Index("idx_audit_events_workspace", "workspace_id", "created_at"),
        sa.Index("idx_audit_events_run", "run_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workspace_id: Mapped[UUID] = mapped_column(sa.Uuid, nullable=False)
    ad_account_id: Mapped[Optional[UUID]] = mapped_column(sa.Uuid, nullable=True)
    unit_id: Mapped[Optional[UUID]] = mapped_column(sa.Uuid, nullable=True)
    event_type: Mapped[AuditEventTypeEnum] = mapped_column(
        Enum(AuditEventTypeEnum, name="audit_event_type"), nullable=False
    )
    actor_type: Mapped[ActorTypeEnum] = mapped_column(Enum(ActorTypeEnum, name="actor_type"), nullable=False)
    actor_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    run_id: Mapped[Optional[UUID]] = mapped_column(sa.Uuid, nullable=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


@event.listens_for(AuditEvent, "before_update")
def _reject_audit_update(_mapper, _connection, target: AuditEvent) -> None:
    raise AuditImmutableError(f"audit event {target.id} is append-only and cannot be updated")


@event.listens_for(AuditEvent, "before_delete")
def _reject_audit_delete(_mapper, _connection, target: AuditEvent) -> None:
    raise AuditImmutableError(f"audit event {target.id} is append-only and cannot be deleted")


class Lead(Base):
    __tablename__ = "leads"
    __table_args__ = (sa.Index("idx_leads_workspace_status", "workspace_id", "status"),)

    id: Mapped[UUID] = mapped_column(sa.Uuid, primary_key=True, default=uuid4)
    workspace_id: Mapped[UUID] = mapped_column(sa.Uuid, nullable=False)
    first_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    email: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    company: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    industry: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    location: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    job_title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    vertical: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    city: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    custom_fields: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    status: Mapped[LeadStatusEnum] = mapped_column(
        Enum(LeadStatusEnum, name="lead_status"),
        nullable=False,
        default=LeadStatusEnum.new,
    )
    segment: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
