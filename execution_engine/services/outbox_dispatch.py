from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from uuid import UUID, uuid4
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.orm import Session

from execution_engine.config import settings
from execution_engine.db.enums import ChannelEnum, OutboxStatusEnum, SkipReasonEnum
from execution_engine.db.models import OutboxEntry, utcnow
from execution_engine.db.repositories.outbox import OutboxRepository
from execution_engine.errors import DuplicateKeyError, ExecutionValidationError, ProviderConfigError, ProviderError
from execution_engine.providers.dispatcher import ChannelDispatcher
from execution_engine.schemas.outbox import (
    EmailContent,
    EmailDeployRequest,
    ScheduleConfig,
    ScheduleEmailsRequest,
    VoiceCallsRequest,
)
from execution_engine.services.idempotency import derive_key, time_bucket
from execution_engine.services.personalization import personalize
from execution_engine.services.recipients import recipient_identity, resolve_recipients

logger = logging.getLogger(__name__)

TIME_SLOT_HOURS = {"morning": 9, "midday": 12, "afternoon": 15, "evening": 18}
_WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

RECOVERY_UNSAFE_ERROR = (
    "Interrupted before provider confirmation; not retried because the provider offers no idempotency key"
)


@dataclass(frozen=True)
class SendOutcome:
    idempotency_key: str
    status: str
    entry_id: Optional[UUID] = None
    recipient: Optional[str] = None
    skipped: bool = False
    skip_reason: Optional[str] = None
    provider_message_id: Optional[str] = None
    error: Optional[str] = None
    scheduled_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "entryId": str(self.entry_id) if self.entry_id else None,
            "idempotencyKey": self.idempotency_key,
            "recipient": self.recipient,
            "status": self.status,
            "skipped": self.skipped,
            "skipReason": self.skip_reason,
            "providerMessageId": self.provider_message_id,
            "error": self.error,
            "scheduledAt": self.scheduled_at.isoformat() if self.scheduled_at else None,
        }


@dataclass
class BatchReport:
    run_id: Optional[UUID]
    outcomes: list[SendOutcome] = field(default_factory=list)

    def counts(self) -> dict[str, int]:
        return dict(Counter(outcome.status for outcome in self.outcomes))

    def to_dict(self) -> dict[str, Any]:
        return {
            "runId": str(self.run_id) if self.run_id else None,
            "total": len(self.outcomes),
            "counts": self.counts(),
            "outcomes": [outcome.to_dict() for outcome in self.outcomes],
        }


def _outcome_from_entry(entry: OutboxEntry) -> SendOutcome:
    return SendOutcome(
        idempotency_key=entry.idempotency_key,
        status=entry.status.value,
        entry_id=entry.id,
        recipient=entry.recipient_email or entry.recipient_phone or entry.resource_name,
        skipped=entry.skipped,
        skip_reason=entry.skip_reason.value if entry.skip_reason else None,
        provider_message_id=entry.provider_message_id,
        error=entry.error,
        scheduled_at=entry.scheduled_at,
    )


def next_scheduled_dates(
    schedule: ScheduleConfig, count: int, *, now: datetime, max_days: Optional[int] = None
) -> list[datetime]:
    """Next ``count`` enabled weekday slots at the schedule's hour, in UTC."""
    try:
        tz = ZoneInfo(schedule.timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ExecutionValidationError(f"Unknown schedule timezone: {schedule.timezone}") from exc
    enabled = {index for index, name in enumerate(_WEEKDAYS) if getattr(schedule.days, name)}
    if not enabled:
        return []

    hour = TIME_SLOT_HOURS[schedule.timeOfDay]
    local_now = now.astimezone(tz)
    candidate = local_now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if candidate <= local_now:
        candidate = (candidate + timedelta(days=1)).replace(hour=hour)

    limit = max_days if max_days is not None else settings.OUTBOX_MAX_SCHEDULE_DAYS
    dates: list[datetime] = []
    checked = 0
    while len(dates) < count and checked < limit:
        if candidate.weekday() in enabled:
            dates.append(candidate.astimezone(timezone.utc))
        candidate = (candidate + timedelta(days=1)).replace(hour=hour)
        checked += 1
    return dates


def _email_payload(
    content: EmailContent, recipient: dict[str, Any], *, campaign_id: str, asset_id: str
) -> dict[str, Any]:
    # Content is personalized once at insert time so a re-dispatch sends identical bytes.
    return {
        "campaign_id": campaign_id,
        "asset_id": asset_id,
        "to": recipient["email"],
        "subject": personalize(content.subject, recipient),
        "html": personalize(content.html, recipient, escape_html=True),
        "text": personalize(content.text, recipient) if content.text else None,
        "from_address": content.from_address,
        "reply_to": content.reply_to,
    }


class OutboxDispatchService:
    def __init__(self, session: Session, *, dispatcher: Optional[ChannelDispatcher] = None) -> None:
        self.session = session
        self.outbox = OutboxRepository(session)
        self.dispatcher = dispatcher or ChannelDispatcher()

    # Single sends

    def send(
        self,
        *,
        tenant_id: UUID,
        workspace_id: UUID,
        channel: ChannelEnum,
        provider: str,
        idempotency_key: str,
        payload: dict[str, Any],
        run_id: Optional[UUID] = None,
        recipient_id: Optional[str] = None,
        recipient_email: Optional[str] = None,
        recipient_phone: Optional[str] = None,
    ) -> SendOutcome:
        """Insert the outbox row, then call the provider; a duplicate key is a skip, never a second send."""
        try:
            entry = self.outbox.insert_pending(
                tenant_id=tenant_id,
                workspace_id=workspace_id,
                run_id=run_id,
                channel=channel,
                provider=provider,
                idempotency_key=idempotency_key,
                payload=payload,
                recipient_id=recipient_id,
                recipient_email=recipient_email,
                recipient_phone=recipient_phone,
            )
        except DuplicateKeyError:
            logger.info(
                "outbox.idempotent_replay",
                extra={
                    "idempotency_key": idempotency_key,
                    "channel": channel.value,
                    "run_id": str(run_id) if run_id else None,
                },
            )
            return SendOutcome(
                idempotency_key=idempotency_key,
                status=OutboxStatusEnum.skipped.value,
                recipient=recipient_email or recipient_phone,
                skipped=True,
                skip_reason=SkipReasonEnum.idempotent_replay.value,
            )
        return self._dispatch_entry(entry)

    def _dispatch_entry(self, entry: OutboxEntry) -> SendOutcome:
        try:
            receipt = self.dispatcher.dispatch(entry)
        except (ProviderError, ProviderConfigError) as exc:
            logger.warning(
                "outbox.dispatch_failed",
                extra={"entry_id": str(entry.id), "channel": entry.channel.value, "error": str(exc)},
            )
            error_payload = getattr(exc, "error_payload", None)
            failed = self.outbox.mark_failed(
                entry.id,
                error=str(exc),
                provider_response=error_payload if isinstance(error_payload, dict) else None,
            )
            return _outcome_from_entry(failed)

        if receipt.terminal_status == OutboxStatusEnum.called:
            done = self.outbox.mark_called(
                entry.id, provider_message_id=receipt.message_id, provider_response=receipt.response
            )
        else:
            done = self.outbox.mark_sent(
                entry.id, provider_message_id=receipt.message_id, provider_response=receipt.response
            )
        return _outcome_from_entry(done)

    # Bulk channel sends

    def deploy_email(self, request: EmailDeployRequest, *, now: Optional[datetime] = None) -> BatchReport:
        workspace_id = request.workspace_id
        tenant_id = request.tenant_id or workspace_id
        run_id = request.run_id or uuid4()
        recipients = resolve_recipients(
            self.session,
            workspace_id=workspace_id,
            address_field="email",
            explicit=request.recipients,
            segment=request.segment,
        )
        if not recipients:
            raise ExecutionValidationError(
                "No recipients specified: add recipients or link CRM leads with email addresses"
            )
        # Missing credentials fail here, before any row is written.
        self.dispatcher.client_for(ChannelEnum.email)

        bucket = time_bucket(now or utcnow(), settings.OUTBOX_TIME_BUCKET)
        report = BatchReport(run_id=run_id)
        for recipient in recipients:
            key = derive_key(request.campaign_id, recipient_identity(recipient, "email"), request.asset_id, bucket)
            report.outcomes.append(
                self.send(
                    tenant_id=tenant_id,
                    workspace_id=workspace_id,
                    channel=ChannelEnum.email,
                    provider="resend",
                    idempotency_key=key,
                    payload=_email_payload(
                        request.content, recipient, campaign_id=request.campaign_id, asset_id=request.asset_id
                    ),
                    run_id=run_id,
                    recipient_id=recipient.get("id"),
                    recipient_email=recipient["email"],
                )
            )
        logger.info("outbox.email_deploy", extra={"run_id": str(run_id), "counts": report.counts()})
        return report

    def deploy_voice(self, request: VoiceCallsRequest, *, now: Optional[datetime] = None) -> BatchReport:
        workspace_id = request.workspace_id
        tenant_id = request.tenant_id or workspace_id
        run_id = request.run_id or uuid4()
        recipients = resolve_recipients(
            self.session,
            workspace_id=workspace_id,
            address_field="phone",
            explicit=request.recipients,
            segment=request.segment,
        )
        if not recipients:
            raise ExecutionValidationError("No recipients with phone numbers to call")
        self.dispatcher.client_for(ChannelEnum.voice)

        bucket = time_bucket(now or utcnow(), settings.OUTBOX_TIME_BUCKET)
        report = BatchReport(run_id=run_id)
        for recipient in recipients:
            key = derive_key(request.campaign_id, recipient_identity(recipient, "phone"), request.agent_id, bucket)
            payload = {
                "campaign_id": request.campaign_id,
                "agent_id": request.agent_id,
                "to_phone_number": recipient["phone"],
                "from_phone_number": request.from_phone_number,
                "metadata": {
                    **request.metadata,
                    "campaign_id": request.campaign_id,
                    "lead_id": recipient.get("id"),
                    "run_id": str(run_id),
                },
            }
            report.outcomes.append(
                self.send(
                    tenant_id=tenant_id,
                    workspace_id=workspace_id,
                    channel=ChannelEnum.voice,
                    provider="elevenlabs",
                    idempotency_key=key,
                    payload=payload,
                    run_id=run_id,
                    recipient_id=recipient.get("id"),
                    recipient_phone=recipient["phone"],
                )
            )
        logger.info("outbox.voice_calls", extra={"run_id": str(run_id), "counts": report.counts()})
        return report

    # Scheduling

    def schedule_emails(self, request: ScheduleEmailsRequest, *, now: Optional[datetime] = None) -> BatchReport:
        workspace_id = request.workspace_id
        tenant_id = request.tenant_id or workspace_id
        run_id = request.run_id or uuid4()
        slots = next_scheduled_dates(request.schedule, request.daysToSchedule, now=now or utcnow())
        recipients = resolve_recipients(
            self.session,
            workspace_id=workspace_id,
            address_field="email",
            explicit=request.recipients,
            segment=request.segment,
        )
        if not recipients:
            raise ExecutionValidationError("No leads found to schedule emails for")

        report = BatchReport(run_id=run_id)
        for slot in slots:
            for recipient in recipients:
                key = derive_key(
                    request.campaign_id,
                    recipient_identity(recipient, "email"),
                    request.asset_id,
                    time_bucket(slot, "day"),
                )
                try:
                    entry = self.outbox.insert_pending(
                        tenant_id=tenant_id,
                        workspace_id=workspace_id,
                        run_id=run_id,
                        channel=ChannelEnum.email,
                        provider="resend",
                        idempotency_key=key,
                        payload=_email_payload(
                            request.content, recipient, campaign_id=request.campaign_id, asset_id=request.asset_id
                        ),
                        recipient_id=recipient.get("id"),
                        recipient_email=recipient["email"],
                        scheduled_at=slot,
                    )
                except DuplicateKeyError:
                    report.outcomes.append(
                        SendOutcome(
                            idempotency_key=key,
                            status=OutboxStatusEnum.skipped.value,
                            recipient=recipient["email"],
                            skipped=True,
                            skip_reason=SkipReasonEnum.idempotent_replay.value,
                            scheduled_at=slot,
                        )
                    )
                    continue
                report.outcomes.append(_outcome_from_entry(entry))
        logger.info(
            "outbox.scheduled",
            extra={"run_id": str(run_id), "slots": len(slots), "counts": report.counts()},
        )
        return report

    def dispatch_due(self, *, now: Optional[datetime] = None, limit: Optional[int] = None) -> BatchReport:
        """Send scheduled rows whose time has come; each row is claimed before its provider call."""
        now = now or utcnow()
        report = BatchReport(run_id=None)
        for entry in self.outbox.list_due_scheduled(now=now, limit=limit or settings.OUTBOX_DISPATCH_BATCH_SIZE):
            claimed = self.outbox.claim_scheduled(entry.id, now=now)
            if claimed is None:
                continue
            report.outcomes.append(self._dispatch_entry(claimed))
        logger.info("outbox.dispatch_due", extra={"counts": report.counts()})
        return report

    # Recovery

    def recover_stale(
        self,
        *,
        stale_after_seconds: Optional[int] = None,
        limit: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> BatchReport:
        """
        Reconcile rows left queued by a crash between insert and provider confirmation.

        Channels whose provider deduplicates on our idempotency key are re-dispatched
        with the same key. Everything else is failed without calling the provider,
        since the earlier attempt may already have gone out.
        """
        now = now or utcnow()
        stale_before = now - timedelta(seconds=stale_after_seconds or settings.OUTBOX_STALE_AFTER_SECONDS)
        report = BatchReport(run_id=None)
        batch = limit or settings.OUTBOX_DISPATCH_BATCH_SIZE
        for entry in self.outbox.list_stale_queued(stale_before=stale_before, limit=batch):
            claimed = self.outbox.claim_stale(entry.id, stale_before=stale_before)
            if claimed is None:
                continue
            if self.dispatcher.supports_provider_idempotency(claimed):
                logger.info("outbox.recovery_redispatch", extra={"entry_id": str(claimed.id)})
                report.outcomes.append(self._dispatch_entry(claimed))
                continue
            logger.warning(
                "outbox.recovery_failed_unsafe",
                extra={"entry_id": str(claimed.id), "channel": claimed.channel.value},
            )
            failed = self.outbox.mark_failed(claimed.id, error=RECOVERY_UNSAFE_ERROR)
            report.outcomes.append(_outcome_from_entry(failed))
        return report

    def run_summary(self, run_id: UUID) -> dict[str, Any]:
        counts = self.outbox.count_by_status(run_id=run_id)
        return {"runId": str(run_id), "total": sum(counts.values()), "counts": counts}
