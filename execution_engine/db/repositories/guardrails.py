from __future__ import annotations

from typing import Any, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from execution_engine.db.models import GuardrailPolicy
from execution_engine.db.repositories.base import Repository

DEFAULT_GUARDRAIL_VALUES: dict[str, Any] = {
    "max_single_budget_change_pct": 0.20,
    "approval_budget_increase_pct": 0.10,
    "max_net_daily_spend_increase_pct": 0.15,
    "bid_reduction_pct": 0.20,
    "lookback_days": 30,
}


class GuardrailPoliciesRepository(Repository):
    def get(self, *, workspace_id: UUID, ad_account_id: UUID) -> Optional[GuardrailPolicy]:
        stmt = select(GuardrailPolicy).where(
            GuardrailPolicy.workspace_id == workspace_id,
            GuardrailPolicy.ad_account_id == ad_account_id,
        )
        return self.session.scalars(stmt).first()

    def get_effective(self, *, workspace_id: UUID, ad_account_id: UUID) -> GuardrailPolicy:
        """Stored policy, or an unsaved one carrying the defaults when none was configured."""
        policy = self.get(workspace_id=workspace_id, ad_account_id=ad_account_id)
        if policy is not None:
            return policy
        return GuardrailPolicy(workspace_id=workspace_id, ad_account_id=ad_account_id, **DEFAULT_GUARDRAIL_VALUES)

    def upsert(self, *, workspace_id: UUID, ad_account_id: UUID, values: dict[str, Any]) -> GuardrailPolicy:
        policy = self.get(workspace_id=workspace_id, ad_account_id=ad_account_id)
        if policy is None:
            # Attribute validators raise GuardrailCapError before anything reaches the session.
            policy = GuardrailPolicy(
                workspace_id=workspace_id,
                ad_account_id=ad_account_id,
                **{**DEFAULT_GUARDRAIL_VALUES, **values},
            )
            self.session.add(policy)
            try:
                self.session.commit()
            except IntegrityError:
                self.session.rollback()
                policy = self.get(workspace_id=workspace_id, ad_account_id=ad_account_id)
                if policy is None:
                    raise
                return self._apply(policy, values)
            self.session.refresh(policy)
            return policy
        return self._apply(policy, values)

    def _apply(self, policy: GuardrailPolicy, values: dict[str, Any]) -> GuardrailPolicy:
        try:
            for field, value in values.items():
                setattr(policy, field, value)
        except Exception:
            self.session.rollback()
            raise
        self.session.commit()
        self.session.refresh(policy)
        return policy
