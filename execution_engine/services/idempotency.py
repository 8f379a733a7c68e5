"""Deterministic idempotency keys for outbound side effects."""

from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from typing import Literal

ONCE_BUCKET = "once"
_SEPARATOR = "\x1f"

TimeBucketGranularity = Literal["day", "hour", "once"]


def derive_key(scope_id: str, target_id: str, asset_id: str, time_bucket: str) -> str:
    """
    SHA-256 hex digest identifying one logical send or mutation.

    Each part is length-prefixed before joining, so ("a|b", "c") and ("a", "b|c")
    can never produce the same digest whatever characters the ids contain.
    """
    encoded = _SEPARATOR.join(f"{len(part)}:{part}" for part in (scope_id, target_id, asset_id, time_bucket))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def time_bucket(ts: datetime, granularity: TimeBucketGranularity = "day") -> str:
    if granularity == "once":
        return ONCE_BUCKET
    if ts.tzinfo is not None:
        ts = ts.astimezone(timezone.utc)
    if granularity == "hour":
        return ts.strftime("%Y-%m-%dT%H")
    if granularity == "day":
        return ts.strftime("%Y-%m-%d")
    raise ValueError(f"Unsupported time bucket granularity: {granularity}")
