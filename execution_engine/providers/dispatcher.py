from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Optional

from execution_engine.db.enums import ChannelEnum, OutboxStatusEnum
from execution_engine.db.models import OutboxEntry
from execution_engine.providers.elevenlabs import ElevenLabsClient
from execution_engine.providers.resend import ResendClient


@dataclass(frozen=True)
class ProviderReceipt:
    message_id: str
    response: dict[str, Any]
    terminal_status: OutboxStatusEnum


class ChannelDispatcher:
    """
    Routes an outbox row to the adapter for its channel.

    Clients are created lazily from settings unless injected, so a run that only
    sends email never needs voice credentials.
    """

    def __init__(
        self,
        *,
        resend: Optional[ResendClient] = None,
        elevenlabs: Optional[ElevenLabsClient] = None,
        resend_factory: Callable[[], ResendClient] = ResendClient.from_settings,
        elevenlabs_factory: Callable[[], ElevenLabsClient] = ElevenLabsClient.from_settings,
    ) -> None:
        self._resend = resend
        self._elevenlabs = elevenlabs
        self._resend_factory = resend_factory
        self._elevenlabs_factory = elevenlabs_factory

    @property
    def resend(self) -> ResendClient:
        if self._resend is None:
            self._resend = self._resend_factory()
        return self._resend

    @property
    def elevenlabs(self) -> ElevenLabsClient:
        if self._elevenlabs is None:
            self._elevenlabs = self._elevenlabs_factory()
        return self._elevenlabs

    def client_for(self, channel: ChannelEnum) -> ResendClient | ElevenLabsClient:
        if channel == ChannelEnum.email:
            return self.resend
        if channel == ChannelEnum.voice:
            return self.elevenlabs
        raise ValueError(f"No messaging client for channel {channel.value}")

    @staticmethod
    def supports_provider_idempotency(entry: OutboxEntry) -> bool:
        return entry.channel == ChannelEnum.email

    def dispatch(self, entry: OutboxEntry) -> ProviderReceipt:
        payload = entry.payload or {}
        if entry.channel == ChannelEnum.email:
            message_id, response = self.resend.send_email(
                to=entry.recipient_email or payload["to"],
                subject=payload["subject"],
                html=payload["html"],
                from_address=payload.get("from_address"),
                text=payload.get("text"),
                reply_to=payload.get("reply_to"),
                tags=payload.get("tags"),
                idempotency_key=entry.idempotency_key,
            )
            return ProviderReceipt(message_id, response, OutboxStatusEnum.sent)
        if entry.channel == ChannelEnum.voice:
            message_id, response = self.elevenlabs.place_call(
                agent_id=payload["agent_id"],
                to_phone_number=entry.recipient_phone or payload["to_phone_number"],
                from_phone_number=payload["from_phone_number"],
                metadata=payload.get("metadata"),
            )
            return ProviderReceipt(message_id, response, OutboxStatusEnum.called)
        raise ValueError(f"Outbox channel {entry.channel.value} is not dispatched through ChannelDispatcher")

    def close(self) -> None:
        if self._resend is not None:
            self._resend.close()
        if self._elevenlabs is not None:
            self._elevenlabs.close()
