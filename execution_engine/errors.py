from __future__ import annotations

from typing import Any, Optional


class ExecutionValidationError(ValueError):
    """Raised before any state transition or provider call when input is malformed."""


class NotFoundError(LookupError):
    pass


class InvalidTransitionError(RuntimeError):
    def __init__(self, message: str, *, current_status: Optional[str] = None) -> None:
        super().__init__(message)
        self.current_status = current_status


class ApprovedPayloadImmutableError(RuntimeError):
    pass


class AuditImmutableError(RuntimeError):
    pass


class GuardrailCapError(ValueError):
    pass


class DuplicateKeyError(RuntimeError):
    """An outbox row with the same idempotency key already exists (idempotent replay)."""

    def __init__(self, idempotency_key: str) -> None:
        super().__init__(f"Outbox entry already exists for idempotency key {idempotency_key[:16]}...")
        self.idempotency_key = idempotency_key


class OutboxStateError(RuntimeError):
    pass


class VerificationMismatchError(RuntimeError):
    def __init__(self, message: str, *, expected: dict[str, Any], actual: dict[str, Any]) -> None:
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class ProviderConfigError(RuntimeError):
    pass


class ProviderError(RuntimeError):
    def __init__(self, message: str, status_code: Optional[int] = None, error_payload: Any = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_payload = error_payload
