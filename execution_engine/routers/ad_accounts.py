from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from execution_engine.db.deps import get_session
from execution_engine.db.models import GuardrailPolicy
from execution_engine.db.repositories.ad_accounts import AdAccountsRepository
from execution_engine.db.repositories.guardrails import GuardrailPoliciesRepository
from execution_engine.errors import NotFoundError
from execution_engine.routers.deps import parse_uuid
from execution_engine.schemas.guardrails import (
    ExecutionEnabledUpdate,
    GuardrailPolicyResponse,
    GuardrailPolicyUpdate,
)
from execution_engine.security import require_internal_secret

router = APIRouter(prefix="/ads", tags=["ads"], dependencies=[Depends(require_internal_secret)])


def _serialize_policy(policy: GuardrailPolicy, *, is_default: bool) -> dict[str, Any]:
    return GuardrailPolicyResponse(
        workspace_id=str(policy.workspace_id),
        ad_account_id=str(policy.ad_account_id),
        max_single_budget_change_pct=policy.max_single_budget_change_pct,
        approval_budget_increase_pct=policy.approval_budget_increase_pct,
        max_net_daily_spend_increase_pct=policy.max_net_daily_spend_increase_pct,
        bid_reduction_pct=policy.bid_reduction_pct,
        lookback_days=policy.lookback_days,
        is_default=is_default,
    ).model_dump()


@router.put("/{ad_account_id}/execution-enabled")
def set_execution_enabled(
    ad_account_id: str,
    payload: ExecutionEnabledUpdate,
    session: Session = Depends(get_session),
) -> dict[str, Any]:
    account = AdAccountsRepository(session).set_execution_enabled(
        parse_uuid(ad_account_id, field="ad_account_id"),
        enabled=payload.enabled,
    )
    if account is None:
        raise NotFoundError(f"Ad account not found: {ad_account_id}")
    return {"ok": True, "adAccountId": str(account.id), "executionEnabled": account.execution_enabled}


@router.get("/{ad_account_id}/guardrails")
def get_guardrails(ad_account_id: str, session: Session = Depends(get_session)) -> dict[str, Any]:
    account = AdAccountsRepository(session).get(parse_uuid(ad_account_id, field="ad_account_id"))
    if account is None:
        raise NotFoundError(f"Ad account not found: {ad_account_id}")
    repo = GuardrailPoliciesRepository(session)
    stored = repo.get(workspace_id=account.workspace_id, ad_account_id=account.id)
    policy = stored or repo.get_effective(workspace_id=account.workspace_id, ad_account_id=account.id)
    return {"ok": True, "policy": _serialize_policy(policy, is_default=stored is None)}


@router.put("/{ad_account_id}/guardrails")
def update_guardrails(
    ad_account_id: str,
    payload: GuardrailPolicyUpdate,
    session: Session = Depends(get_session),
) -> dict[str, Any]:
    account = AdAccountsRepository(session).get(parse_uuid(ad_account_id, field="ad_account_id"))
    if account is None:
        raise NotFoundError(f"Ad account not found: {ad_account_id}")
    policy = GuardrailPoliciesRepository(session).upsert(
        workspace_id=account.workspace_id,
        ad_account_id=account.id,
        values=payload.model_dump(exclude_none=True),
    )
    return {"ok": True, "policy": _serialize_policy(policy, is_default=False)}
