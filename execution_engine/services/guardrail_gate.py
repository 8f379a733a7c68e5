from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from execution_engine.db.enums import AuditEventTypeEnum
from execution_engine.db.models import AdAccount, GuardrailPolicy
from execution_engine.schemas.payloads import ApprovedPayload, IncreaseCampaignBudgetPayload

REASON_EXECUTION_DISABLED = "execution_disabled"
REASON_GUARDRAIL_EXCEEDED = "guardrail_exceeded"


@dataclass(frozen=True)
class GateDecision:
    allowed: bool
    reason: Optional[str] = None
    event_type: Optional[AuditEventTypeEnum] = None
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)


def budget_increase_pct(before_micros: int, after_micros: int) -> float:
    return (after_micros - before_micros) / before_micros


def check_gate(account: AdAccount, payload: ApprovedPayload, policy: GuardrailPolicy) -> GateDecision:
    """Evaluated before the claim; a denial never touches the unit's status."""
    if not account.execution_enabled:
        return GateDecision(
            allowed=False,
            reason=REASON_EXECUTION_DISABLED,
            event_type=AuditEventTypeEnum.note,
            message="Execution skipped: execution is disabled for this ad account",
            details={"ad_account_id": str(account.id), "execution_enabled": False},
        )
    if isinstance(payload, IncreaseCampaignBudgetPayload) and payload.beforeAmountMicros is not None:
        pct = budget_increase_pct(payload.beforeAmountMicros, payload.afterAmountMicros)
        if pct > policy.max_single_budget_change_pct:
            return GateDecision(
                allowed=False,
                reason=REASON_GUARDRAIL_EXCEEDED,
                event_type=AuditEventTypeEnum.blocked,
                message="Execution blocked: budget change exceeds the single-change guardrail",
                details={
                    "change_pct": round(pct, 6),
                    "max_single_budget_change_pct": policy.max_single_budget_change_pct,
                    "before_amount_micros": payload.beforeAmountMicros,
                    "after_amount_micros": payload.afterAmountMicros,
                },
            )
    return GateDecision(allowed=True)
