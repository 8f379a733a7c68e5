from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class ExecuteApprovedRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    proposalId: str
    workspaceId: str
    adAccountId: str
    approvedPayload: dict[str, Any]
    runId: Optional[str] = None
    actorType: Literal["ai", "human", "system"] = "system"
    actorId: Optional[str] = None


class ProposalCreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    workspaceId: str
    adAccountId: str
    ownerId: Optional[str] = None
    payload: dict[str, Any]
    actorType: Literal["ai", "human", "system"] = "ai"
    actorId: Optional[str] = None
    runId: Optional[str] = None


class ProposalDecisionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    actorId: str = Field(min_length=1)
    reason: Optional[str] = None


class ProposalResponse(BaseModel):
    id: str
    workspace_id: str
    ad_account_id: str
    kind: str
    status: str
    approved_payload: Optional[dict[str, Any]] = None
    risk_flags: list[str] = []
    executed_at: Optional[datetime] = None
    last_error: Optional[str] = None


class AuditEventResponse(BaseModel):
    id: int
    event_type: str
    actor_type: str
    actor_id: Optional[str] = None
    run_id: Optional[str] = None
    message: str
    details: dict[str, Any] = {}
    created_at: datetime
