from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import time

from fastapi import Header, HTTPException, Request, status

from execution_engine.config import settings

INTERNAL_SECRET_HEADER = "x-internal-secret"
SVIX_SECRET_PREFIX = "whsec_"


def require_internal_secret(
    internal_secret: str | None = Header(default=None, alias=INTERNAL_SECRET_HEADER),
) -> None:
    if not internal_secret:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Missing {INTERNAL_SECRET_HEADER} header",
        )
    if not hmac.compare_digest(internal_secret.encode("utf-8"), settings.ADS_OPERATOR_INTERNAL_SECRET.encode("utf-8")):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid internal secret",
        )


def verify_svix_signature(
    *,
    body: bytes,
    msg_id: str | None,
    timestamp: str | None,
    signature_header: str | None,
    secret: str,
    tolerance_seconds: int,
    now: float | None = None,
) -> bool:
    """
    Check a Svix-signed webhook (the scheme Resend uses).

    The signature is base64(HMAC-SHA256(secret, "{id}.{timestamp}.{body}")); the
    header may carry several space separated "v1,<signature>" entries.
    """
    if not msg_id or not timestamp or not signature_header:
        return False
    try:
        sent_at = int(timestamp)
    except ValueError:
        return False
    current = time.time() if now is None else now
    if abs(current - sent_at) > tolerance_seconds:
        return False

    encoded_key = secret[len(SVIX_SECRET_PREFIX):] if secret.startswith(SVIX_SECRET_PREFIX) else secret
    try:
        key = base64.b64decode(encoded_key, validate=True)
    except binascii.Error:
        return False
    signed = f"{msg_id}.{timestamp}.".encode("utf-8") + body
    expected = base64.b64encode(hmac.new(key, signed, hashlib.sha256).digest()).decode("utf-8")
    for candidate in signature_header.split():
        version, _, signature = candidate.partition(",")
        if version == "v1" and hmac.compare_digest(signature, expected):
            return True
    return False


async def require_resend_webhook_signature(request: Request) -> bytes:
    """Return the raw webhook body once its Svix signature checks out."""
    if not settings.RESEND_WEBHOOK_SECRET:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Resend webhook secret is not configured.",
        )
    body = await request.body()
    valid = verify_svix_signature(
        body=body,
        msg_id=request.headers.get("svix-id"),
        timestamp=request.headers.get("svix-timestamp"),
        signature_header=request.headers.get("svix-signature"),
        secret=settings.RESEND_WEBHOOK_SECRET,
        tolerance_seconds=settings.RESEND_WEBHOOK_TOLERANCE_SECONDS,
    )
    if not valid:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook signature",
        )
    return body
