from __future__ import annotations

from typing import Any, Optional

import httpx

from execution_engine.config import settings
from execution_engine.errors import ProviderConfigError, ProviderError


class ElevenLabsError(ProviderError):
    pass


class ElevenLabsClient:
    def __init__(
        self,
        *,
        api_key: str,
        base_url: Optional[str] = None,
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = (base_url or settings.ELEVENLABS_API_BASE_URL).rstrip("/")
        self.timeout = httpx.Timeout(settings.PROVIDER_REQUEST_TIMEOUT_SECONDS)
        self._http = http_client or httpx.Client(timeout=self.timeout)

    @classmethod
    def from_settings(cls) -> "ElevenLabsClient":
        if not settings.ELEVENLABS_API_KEY:
            raise ProviderConfigError("ELEVENLABS_API_KEY is required to place calls.")
        return cls(api_key=settings.ELEVENLABS_API_KEY)

    def close(self) -> None:
        self._http.close()

    def place_call(
        self,
        *,
        agent_id: str,
        to_phone_number: str,
        from_phone_number: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> tuple[str, dict[str, Any]]:
        # The calls API has no idempotency header; the outbox row is the only fence.
        body = {
            "agent_id": agent_id,
            "to_phone_number": to_phone_number,
            "from_phone_number": from_phone_number,
            "metadata": metadata or {},
        }
        try:
            response = self._http.post(
                f"{self.base_url}/v1/convai/conversations/phone",
                json=body,
                headers={"xi-api-key": self.api_key},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            error_payload: Any
            try:
                error_payload = exc.response.json()
            except ValueError:
                error_payload = {"text": exc.response.text}
            raise ElevenLabsError(
                f"ElevenLabs API error ({exc.response.status_code}).",
                status_code=exc.response.status_code,
                error_payload=error_payload,
            ) from exc
        except httpx.RequestError as exc:
            raise ElevenLabsError(f"ElevenLabs request failed: {exc}") from exc

        try:
            data = response.json()
        except ValueError as exc:
            raise ElevenLabsError("ElevenLabs returned a non-JSON response.") from exc
        conversation_id = data.get("conversation_id") if isinstance(data, dict) else None
        if not conversation_id:
            raise ElevenLabsError("ElevenLabs response did not include a conversation_id.", error_payload=data)
        return str(conversation_id), data
