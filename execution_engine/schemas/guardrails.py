from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class GuardrailPolicyUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_single_budget_change_pct: Optional[float] = Field(default=None, gt=0, le=0.20)
    approval_budget_increase_pct: Optional[float] = Field(default=None, gt=0, le=0.10)
    max_net_daily_spend_increase_pct: Optional[float] = Field(default=None, gt=0, le=0.15)
    bid_reduction_pct: Optional[float] = Field(default=None, gt=0, le=0.50)
    lookback_days: Optional[int] = Field(default=None, ge=1, le=90)


class GuardrailPolicyResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    workspace_id: str
    ad_account_id: str
    max_single_budget_change_pct: float
    approval_budget_increase_pct: float
    max_net_daily_spend_increase_pct: float
    bid_reduction_pct: float
    lookback_days: int
    is_default: bool = False


class ExecutionEnabledUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool
