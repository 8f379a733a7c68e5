from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Literal, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from execution_engine.db.enums import (
    ActorTypeEnum,
    AuditEventTypeEnum,
    ChannelEnum,
    SkipReasonEnum,
)
from execution_engine.db.models import AdAccount
from execution_engine.db.repositories.ad_accounts import AdAccountsRepository
from execution_engine.db.repositories.execution_units import ExecutionUnitsRepository
from execution_engine.db.repositories.guardrails import GuardrailPoliciesRepository
from execution_engine.db.repositories.outbox import OutboxRepository
from execution_engine.errors import (
    DuplicateKeyError,
    ExecutionValidationError,
    NotFoundError,
    VerificationMismatchError,
)
from execution_engine.providers.google_ads import EnsureResult, GoogleAdsClient
from execution_engine.schemas.payloads import dump_approved_payload, parse_approved_payload
from execution_engine.services.ads_actions import build_action
from execution_engine.services.audit import AuditTrail
from execution_engine.services.guardrail_gate import check_gate
from execution_engine.services.idempotency import ONCE_BUCKET, derive_key
from execution_engine.services.verifier import verify

logger = logging.getLogger(__name__)

REASON_ALREADY_EXECUTED = "already_executed"
REASON_NOT_EXECUTABLE = "not_executable"

GoogleAdsClientFactory = Callable[[AdAccount], GoogleAdsClient]


def default_client_factory(account: AdAccount) -> GoogleAdsClient:
    return GoogleAdsClient.from_settings(
        customer_id=account.customer_id,
        login_customer_id=account.login_customer_id,
    )


@dataclass(frozen=True)
class ExecutionResult:
    outcome: Literal["success", "failure"]
    skipped: bool
    reason: Optional[str] = None
    kind: Optional[str] = None
    action: Optional[str] = None
    before: Optional[dict[str, Any]] = None
    after: Optional[dict[str, Any]] = None
    status: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"outcome": self.outcome, "skipped": self.skipped}
        for key in ("reason", "kind", "action", "before", "after", "status"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data


class ApprovedActionExecutor:
    """
    Runs one approved ads proposal end to end.

    gate -> claim -> before fetch -> outbox-fenced mutation -> after fetch ->
    verify -> final status, with an audit event for every branch.
    """

    def __init__(self, session: Session, *, client_factory: GoogleAdsClientFactory = default_client_factory) -> None:
        self.session = session
        self.client_factory = client_factory
        self.units = ExecutionUnitsRepository(session)
        self.accounts = AdAccountsRepository(session)
        self.policies = GuardrailPoliciesRepository(session)
        self.outbox = OutboxRepository(session)

    def execute(
        self,
        *,
        unit_id: UUID,
        workspace_id: UUID,
        ad_account_id: UUID,
        approved_payload: Any,
        run_id: Optional[UUID] = None,
        actor_type: ActorTypeEnum = ActorTypeEnum.system,
        actor_id: Optional[str] = None,
    ) -> ExecutionResult:
        unit = self.units.get_for_account(unit_id=unit_id, workspace_id=workspace_id, ad_account_id=ad_account_id)
        if unit is None:
            raise NotFoundError(f"Action proposal not found: {unit_id}")
        account = self.accounts.get_in_workspace(workspace_id=workspace_id, ad_account_id=ad_account_id)
        if account is None:
            raise NotFoundError(f"Ad account not found: {ad_account_id}")

        trail = AuditTrail(
            self.session,
            workspace_id=workspace_id,
            ad_account_id=ad_account_id,
            unit_id=unit_id,
            actor_type=actor_type,
            actor_id=actor_id,
            run_id=run_id,
        )
        log_extra = {
            "unit_id": str(unit_id),
            "ad_account_id": str(ad_account_id),
            "run_id": str(run_id) if run_id else None,
        }

        try:
            payload = parse_approved_payload(approved_payload)
            if unit.approved_payload is None:
                raise ExecutionValidationError("Proposal has no approved payload")
            if parse_approved_payload(unit.approved_payload) != payload:
                raise ExecutionValidationError("approvedPayload does not match the payload approved for this proposal")
        except ExecutionValidationError as exc:
            trail.record(AuditEventTypeEnum.note, "Execution rejected: invalid approved payload", {"error": str(exc)})
            raise

        if not account.is_active:
            trail.record(
                AuditEventTypeEnum.note,
                "Execution rejected: ad account is inactive",
                {"ad_account_id": str(account.id), "is_active": False},
            )
            raise ExecutionValidationError("ad_account is inactive")

        policy = self.policies.get_effective(workspace_id=workspace_id, ad_account_id=ad_account_id)
        decision = check_gate(account, payload, policy)
        if not decision.allowed:
            trail.record(
                decision.event_type,
                decision.message,
                {**decision.details, "reason": decision.reason, "kind": payload.kind},
            )
            logger.info("executor.gate_denied", extra={**log_extra, "reason": decision.reason})
            return ExecutionResult(outcome="success", skipped=True, reason=decision.reason)

        claim = self.units.claim_for_execution(unit_id)
        if not claim.claimed:
            if claim.executed_at is not None:
                trail.record(
                    AuditEventTypeEnum.note,
                    "Execution skipped: proposal already executed",
                    {"status": claim.status.value, "executed_at": claim.executed_at.isoformat()},
                )
                return ExecutionResult(
                    outcome="success",
                    skipped=True,
                    reason=REASON_ALREADY_EXECUTED,
                    status=claim.status.value,
                )
            trail.record(
                AuditEventTypeEnum.note,
                f"Execution skipped: proposal is {claim.status.value}, not approved",
                {"status": claim.status.value},
            )
            logger.info("executor.not_executable", extra={**log_extra, "status": claim.status.value})
            return ExecutionResult(
                outcome="failure",
                skipped=True,
                reason=REASON_NOT_EXECUTABLE,
                status=claim.status.value,
            )

        before_state: dict[str, Any] = {}
        mutation: dict[str, Any] = {"kind": payload.kind}
        open_entry_id: Optional[UUID] = None
        try:
            trail.record(
                AuditEventTypeEnum.execution_started,
                f"Execution started for {payload.kind}",
                {"approved_payload": dump_approved_payload(payload)},
            )
            with self.client_factory(account) as client:
                action = build_action(client, payload)
                mutation = action.mutation()

                entry_id = self._open_outbox_entry(unit_id, workspace_id, run_id, action.resource_name, mutation, trail)
                open_entry_id = entry_id

                before_state = action.fetch_state()
                if entry_id is not None:
                    result = action.ensure()
                    self._close_outbox_entry(entry_id, result)
                    open_entry_id = None
                else:
                    result = EnsureResult("noop", action.resource_name, before_state, dict(before_state))
                trail.record(
                    AuditEventTypeEnum.execution_succeeded,
                    "Mutation applied" if result.kind == "mutated" else "Resource already in desired state",
                    {"before_state": before_state, "mutation": mutation, "result": result.to_dict()},
                )

                verification = verify(action.fetch_state, action.expected)
            if not verification.ok:
                trail.record(
                    AuditEventTypeEnum.verification_failed,
                    "Verification failed",
                    {
                        "expected": verification.expected,
                        "after_state": verification.actual_state,
                        "mismatches": verification.mismatches,
                    },
                )
                raise VerificationMismatchError(
                    f"Verification failed for {action.resource_name}: "
                    f"expected {verification.expected}, got {verification.actual_state}",
                    expected=verification.expected,
                    actual=verification.actual_state,
                )
            trail.record(
                AuditEventTypeEnum.verification_succeeded,
                "Verification succeeded",
                {"expected": verification.expected, "after_state": verification.actual_state},
            )

            self.units.mark_executed(unit_id)
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            logger.warning("executor.failed", extra={**log_extra, "error": message})
            self.session.rollback()
            try:
                trail.record(
                    AuditEventTypeEnum.execution_failed,
                    message,
                    {"before_state": before_state, "mutation": mutation, "error": message},
                )
            finally:
                # A unit that stops here never stays executing, even when the failure record itself fails.
                self.session.rollback()
                if open_entry_id is not None:
                    self.outbox.mark_failed(open_entry_id, error=message)
                self.units.mark_failed(unit_id, error=message)
            raise

        logger.info("executor.executed", extra={**log_extra, "kind": payload.kind, "result": result.kind})
        return ExecutionResult(
            outcome="success",
            skipped=False,
            kind=result.kind,
            action=payload.kind,
            before=result.before,
            after=verification.actual_state,
        )

    def _open_outbox_entry(
        self,
        unit_id: UUID,
        workspace_id: UUID,
        run_id: Optional[UUID],
        resource_name: str,
        mutation: dict[str, Any],
        trail: AuditTrail,
    ) -> Optional[UUID]:
        desired = json.dumps(mutation["desired"], sort_keys=True)
        key = derive_key(str(unit_id), resource_name, f"{mutation['kind']}:{desired}", ONCE_BUCKET)
        try:
            entry = self.outbox.insert_pending(
                tenant_id=workspace_id,
                workspace_id=workspace_id,
                run_id=run_id,
                unit_id=unit_id,
                channel=ChannelEnum.ads,
                provider="google_ads",
                resource_name=resource_name,
                idempotency_key=key,
                payload=mutation,
            )
        except DuplicateKeyError:
            trail.record(
                AuditEventTypeEnum.note,
                "Mutation already recorded in the outbox; verifying without re-applying",
                {"resource_name": resource_name, "skip_reason": SkipReasonEnum.idempotent_replay.value},
            )
            return None
        return entry.id

    def _close_outbox_entry(self, entry_id: UUID, result: EnsureResult) -> None:
        if result.kind == "noop":
            self.outbox.mark_skipped(
                entry_id,
                reason=SkipReasonEnum.already_in_desired_state,
                provider_response=result.to_dict(),
            )
            return
        self.outbox.mark_sent(entry_id, provider_message_id=result.resource_name, provider_response=result.to_dict())
