from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable


@dataclass(frozen=True)
class VerificationResult:
    ok: bool
    actual_state: dict[str, Any]
    expected: dict[str, Any]
    mismatches: dict[str, dict[str, Any]] = field(default_factory=dict)


def verify(fetch_state: Callable[[], dict[str, Any]], expected: dict[str, Any]) -> VerificationResult:
    # Always a fresh authoritative read; the mutation response is never trusted here.
    actual = fetch_state()
    mismatches = {
        key: {"expected": value, "actual": actual.get(key)}
        for key, value in expected.items()
        if actual.get(key) != value
    }
    return VerificationResult(ok=not mismatches, actual_state=actual, expected=dict(expected), mismatches=mismatches)
