from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Literal, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from execution_engine.db.enums import ActorTypeEnum, AuditEventTypeEnum, ChannelEnum, DeliveryStatusEnum
from execution_engine.db.repositories.outbox import OutboxRepository
from execution_engine.errors import ExecutionValidationError
from execution_engine.schemas.outbox import ResendWebhookEvent
from execution_engine.services.audit import AuditTrail

logger = logging.getLogger(__name__)

RESEND_EVENT_STATUSES = {
    "email.sent": DeliveryStatusEnum.sent,
    "email.delivered": DeliveryStatusEnum.delivered,
    "email.opened": DeliveryStatusEnum.opened,
    "email.clicked": DeliveryStatusEnum.clicked,
    "email.bounced": DeliveryStatusEnum.bounced,
    "email.complained": DeliveryStatusEnum.complained,
    "email.unsubscribed": DeliveryStatusEnum.unsubscribed,
}


@dataclass(frozen=True)
class WebhookOutcome:
    status: Literal["ok", "ignored", "no_match"]
    provider_message_id: Optional[str] = None
    outbox_id: Optional[UUID] = None
    delivery_status: Optional[DeliveryStatusEnum] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "providerMessageId": self.provider_message_id,
            "outboxId": str(self.outbox_id) if self.outbox_id else None,
            "deliveryStatus": self.delivery_status.value if self.delivery_status else None,
        }


class ResendWebhookService:
    """Applies Resend delivery callbacks to the email outbox rows they belong to."""

    def __init__(self, session: Session) -> None:
        self.session = session
        self.outbox = OutboxRepository(session)

    def handle(self, event: ResendWebhookEvent) -> WebhookOutcome:
        delivery_status = RESEND_EVENT_STATUSES.get(event.type)
        if delivery_status is None:
            logger.info("resend_webhook.ignored", extra={"event_type": event.type})
            return WebhookOutcome("ignored")

        email_id = event.data.email_id
        if not email_id:
            raise ExecutionValidationError("Resend webhook payload is missing data.email_id")

        entry = self.outbox.get_by_provider_message_id(email_id, channel=ChannelEnum.email)
        if entry is None:
            logger.info("resend_webhook.no_match", extra={"provider_message_id": email_id})
            return WebhookOutcome("no_match", provider_message_id=email_id)

        click = event.data.click or {}
        updated = self.outbox.record_delivery(
            entry.id,
            delivery_status=delivery_status,
            event={"event_type": event.type, "occurred_at": event.created_at, "click_link": click.get("link")},
        )
        if updated is None:
            logger.info(
                "resend_webhook.not_sent",
                extra={"outbox_id": str(entry.id), "status": entry.status.value},
            )
            return WebhookOutcome("ignored", provider_message_id=email_id, outbox_id=entry.id)

        AuditTrail(
            self.session,
            workspace_id=updated.workspace_id,
            actor_type=ActorTypeEnum.system,
            actor_id="resend_webhook",
            run_id=updated.run_id,
        ).record(
            AuditEventTypeEnum.note,
            f"Email {delivery_status.value}",
            {
                "outbox_id": str(updated.id),
                "provider_message_id": email_id,
                "recipient": updated.recipient_email,
                "resend_event": event.type,
                "occurred_at": event.created_at,
            },
        )
        logger.info(
            "resend_webhook.recorded",
            extra={"outbox_id": str(updated.id), "delivery_status": delivery_status.value},
        )
        return WebhookOutcome("ok", provider_message_id=email_id, outbox_id=updated.id, delivery_status=delivery_status)
