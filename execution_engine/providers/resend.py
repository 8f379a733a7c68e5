from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from execution_engine.config import settings
from execution_engine.errors import ProviderConfigError, ProviderError

logger = logging.getLogger("resend")


class ResendError(ProviderError):
    pass


class ResendClient:
    def __init__(
        self,
        *,
        api_key: str,
        base_url: Optional[str] = None,
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = (base_url or settings.RESEND_API_BASE_URL).rstrip("/")
        self.timeout = httpx.Timeout(settings.PROVIDER_REQUEST_TIMEOUT_SECONDS)
        self._http = http_client or httpx.Client(timeout=self.timeout)

    @classmethod
    def from_settings(cls) -> "ResendClient":
        if not settings.RESEND_API_KEY:
            raise ProviderConfigError("RESEND_API_KEY is required to send email.")
        return cls(api_key=settings.RESEND_API_KEY)

    def close(self) -> None:
        self._http.close()

    def send_email(
        self,
        *,
        to: str,
        subject: str,
        html: str,
        from_address: Optional[str] = None,
        text: Optional[str] = None,
        reply_to: Optional[str] = None,
        tags: Optional[list[dict[str, str]]] = None,
        idempotency_key: Optional[str] = None,
    ) -> tuple[str, dict[str, Any]]:
        """
        Send one email and return (message_id, provider_response).

        Resend deduplicates requests carrying the same Idempotency-Key, which lets a
        retry after a crash reuse the outbox key without a second delivery.
        """
        body: dict[str, Any] = {
            "from": from_address or settings.RESEND_FROM_ADDRESS,
            "to": [to],
            "subject": subject,
            "html": html,
        }
        if text:
            body["text"] = text
        if reply_to:
            body["reply_to"] = reply_to
        if tags:
            body["tags"] = tags

        headers = {"Authorization": f"Bearer {self.api_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        try:
            response = self._http.post(f"{self.base_url}/emails", json=body, headers=headers, timeout=self.timeout)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            error_payload: Any
            try:
                error_payload = exc.response.json()
            except ValueError:
                error_payload = {"text": exc.response.text}
            raise ResendError(
                f"Resend API error ({exc.response.status_code}).",
                status_code=exc.response.status_code,
                error_payload=error_payload,
            ) from exc
        except httpx.RequestError as exc:
            raise ResendError(f"Resend request failed: {exc}") from exc

        try:
            data = response.json()
        except ValueError as exc:
            raise ResendError("Resend returned a non-JSON response.") from exc
        message_id = data.get("id") if isinstance(data, dict) else None
        if not message_id:
            raise ResendError("Resend response did not include a message id.", error_payload=data)
        return str(message_id), data
