from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from execution_engine.db.enums import (
    ActorTypeEnum,
    AuditEventTypeEnum,
    ExecutionStatusEnum,
    PayloadKindEnum,
)
from execution_engine.db.models import ExecutionUnit, GuardrailPolicy, utcnow
from execution_engine.db.repositories.ad_accounts import AdAccountsRepository
from execution_engine.db.repositories.execution_units import ExecutionUnitsRepository
from execution_engine.db.repositories.guardrails import GuardrailPoliciesRepository
from execution_engine.errors import NotFoundError
from execution_engine.schemas.payloads import (
    ApprovedPayload,
    IncreaseCampaignBudgetPayload,
    ReduceKeywordBidPayload,
    dump_approved_payload,
    parse_approved_payload,
)
from execution_engine.services.audit import AuditTrail
from execution_engine.services.guardrail_gate import budget_increase_pct

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GovernorVerdict:
    status: ExecutionStatusEnum
    risk_flags: list[str] = field(default_factory=list)
    details: dict[str, Any] = field(default_factory=dict)


def _todays_budget_increase_pct(session: Session, *, ad_account_id: UUID) -> float:
    """Sum of budget increases executed on this account since 00:00 UTC."""
    since = utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
    stmt = select(ExecutionUnit).where(
        ExecutionUnit.ad_account_id == ad_account_id,
        ExecutionUnit.kind == PayloadKindEnum.increase_campaign_budget,
        ExecutionUnit.status == ExecutionStatusEnum.executed,
        ExecutionUnit.executed_at >= since,
    )
    total = 0.0
    for unit in session.scalars(stmt).all():
        payload = unit.approved_payload or {}
        before, after = payload.get("beforeAmountMicros"), payload.get("afterAmountMicros")
        if before and after and after > before:
            total += budget_increase_pct(before, after)
    return total


def evaluate_proposal(
    payload: ApprovedPayload, policy: GuardrailPolicy, *, recent_increase_pct: float = 0.0
) -> GovernorVerdict:
    """
    Decide where a new proposal lands.

    Budget increases above the single-change cap are blocked outright. Increases
    above the approval threshold, increases that push the account's net increase
    for the current UTC day past its cap, and bid cuts deeper than the allowed
    reduction all wait for a human. Everything else is auto-approved.
    """
    if isinstance(payload, IncreaseCampaignBudgetPayload):
        if payload.beforeAmountMicros is None:
            return GovernorVerdict(
                ExecutionStatusEnum.queued_for_approval,
                ["missing_before_amount"],
                {"reason": "budget change size cannot be computed without beforeAmountMicros"},
            )
        pct = budget_increase_pct(payload.beforeAmountMicros, payload.afterAmountMicros)
        details = {"change_pct": round(pct, 6), "recent_increase_pct": round(recent_increase_pct, 6)}
        if pct > policy.max_single_budget_change_pct:
            return GovernorVerdict(ExecutionStatusEnum.blocked, ["exceeds_max_single_budget_change"], details)
        flags: list[str] = []
        if pct > policy.approval_budget_increase_pct:
            flags.append("requires_budget_approval")
        if pct > 0 and recent_increase_pct + pct > policy.max_net_daily_spend_increase_pct:
            flags.append("exceeds_max_net_daily_spend_increase")
        if flags:
            return GovernorVerdict(ExecutionStatusEnum.queued_for_approval, flags, details)
        return GovernorVerdict(ExecutionStatusEnum.approved, [], details)

    if isinstance(payload, ReduceKeywordBidPayload):
        if payload.beforeCpcBidMicros is None:
            return GovernorVerdict(
                ExecutionStatusEnum.queued_for_approval,
                ["missing_before_bid"],
                {"reason": "bid change size cannot be computed without beforeCpcBidMicros"},
            )
        if payload.afterCpcBidMicros > payload.beforeCpcBidMicros:
            return GovernorVerdict(
                ExecutionStatusEnum.queued_for_approval,
                ["bid_increase"],
                {
                    "before_cpc_bid_micros": payload.beforeCpcBidMicros,
                    "after_cpc_bid_micros": payload.afterCpcBidMicros,
                },
            )
        reduction = (payload.beforeCpcBidMicros - payload.afterCpcBidMicros) / payload.beforeCpcBidMicros
        details = {"reduction_pct": round(reduction, 6)}
        if reduction > policy.bid_reduction_pct:
            return GovernorVerdict(ExecutionStatusEnum.queued_for_approval, ["exceeds_bid_reduction"], details)
        return GovernorVerdict(ExecutionStatusEnum.approved, [], details)

    return GovernorVerdict(ExecutionStatusEnum.approved)


_VERDICT_EVENTS = {
    ExecutionStatusEnum.blocked: (AuditEventTypeEnum.blocked, "Proposal blocked by guardrails"),
    ExecutionStatusEnum.queued_for_approval: (
        AuditEventTypeEnum.queued_for_approval,
        "Proposal queued for human approval",
    ),
    ExecutionStatusEnum.approved: (AuditEventTypeEnum.approved, "Proposal auto-approved within guardrails"),
}


class ProposalGovernor:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.units = ExecutionUnitsRepository(session)
        self.accounts = AdAccountsRepository(session)
        self.policies = GuardrailPoliciesRepository(session)

    def submit_proposal(
        self,
        *,
        workspace_id: UUID,
        ad_account_id: UUID,
        raw_payload: Any,
        owner_id: Optional[UUID] = None,
        actor_type: ActorTypeEnum = ActorTypeEnum.ai,
        actor_id: Optional[str] = None,
        run_id: Optional[UUID] = None,
    ) -> ExecutionUnit:
        payload = parse_approved_payload(raw_payload)
        account = self.accounts.get_in_workspace(workspace_id=workspace_id, ad_account_id=ad_account_id)
        if account is None:
            raise NotFoundError(f"Ad account not found: {ad_account_id}")

        policy = self.policies.get_effective(workspace_id=workspace_id, ad_account_id=ad_account_id)
        recent = 0.0
        if isinstance(payload, IncreaseCampaignBudgetPayload):
            recent = _todays_budget_increase_pct(self.session, ad_account_id=ad_account_id)
        verdict = evaluate_proposal(payload, policy, recent_increase_pct=recent)

        unit = self.units.create(
            workspace_id=workspace_id,
            ad_account_id=ad_account_id,
            owner_id=owner_id,
            kind=PayloadKindEnum(payload.kind),
            approved_payload=dump_approved_payload(payload),
            risk_flags=verdict.risk_flags,
        )
        trail = AuditTrail(
            self.session,
            workspace_id=workspace_id,
            ad_account_id=ad_account_id,
            unit_id=unit.id,
            actor_type=actor_type,
            actor_id=actor_id,
            run_id=run_id,
        )
        trail.record(
            AuditEventTypeEnum.created,
            f"Proposal created for {payload.kind}",
            {"payload": unit.approved_payload},
        )

        unit = self.units.transition(
            unit.id,
            from_statuses=[ExecutionStatusEnum.created],
            to_status=verdict.status,
        )
        event_type, message = _VERDICT_EVENTS[verdict.status]
        trail.record(
            event_type,
            message,
            {"risk_flags": verdict.risk_flags, **verdict.details},
            actor_type=ActorTypeEnum.system,
            actor_id=None,
        )
        logger.info(
            "governor.proposal_submitted",
            extra={"unit_id": str(unit.id), "status": verdict.status.value, "risk_flags": verdict.risk_flags},
        )
        return unit

    def approve(self, unit_id: UUID, *, actor_id: str) -> ExecutionUnit:
        unit = self.units.transition(
            unit_id,
            from_statuses=[ExecutionStatusEnum.queued_for_approval],
            to_status=ExecutionStatusEnum.approved,
        )
        AuditTrail(
            self.session,
            workspace_id=unit.workspace_id,
            ad_account_id=unit.ad_account_id,
            unit_id=unit.id,
            actor_type=ActorTypeEnum.human,
            actor_id=actor_id,
        ).record(AuditEventTypeEnum.approved, "Proposal approved", {"risk_flags": unit.risk_flags})
        return unit

    def reject(self, unit_id: UUID, *, actor_id: str, reason: Optional[str] = None) -> ExecutionUnit:
        unit = self.units.transition(
            unit_id,
            from_statuses=[ExecutionStatusEnum.queued_for_approval],
            to_status=ExecutionStatusEnum.rejected,
        )
        AuditTrail(
            self.session,
            workspace_id=unit.workspace_id,
            ad_account_id=unit.ad_account_id,
            unit_id=unit.id,
            actor_type=ActorTypeEnum.human,
            actor_id=actor_id,
        ).record(AuditEventTypeEnum.rejected, "Proposal rejected", {"reason": reason})
        return unit
