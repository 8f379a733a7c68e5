from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import ValidationError
from sqlalchemy.orm import Session

from execution_engine.db.deps import get_session
from execution_engine.schemas.outbox import ResendWebhookEvent
from execution_engine.security import require_resend_webhook_signature
from execution_engine.services.delivery_webhooks import ResendWebhookService

router = APIRouter(prefix="/outbox/webhooks", tags=["webhooks"])


@router.post("/resend")
def resend_webhook(
    body: bytes = Depends(require_resend_webhook_signature),
    session: Session = Depends(get_session),
) -> dict[str, Any]:
    try:
        event = ResendWebhookEvent.model_validate_json(body)
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid Resend webhook payload.",
        ) from exc
    outcome = ResendWebhookService(session).handle(event)
    return {"ok": True, **outcome.to_dict()}
