from __future__ import annotations

import logging
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Body, Depends
from fastapi.responses import ORJSONResponse
from sqlalchemy.orm import Session

from execution_engine.db.deps import get_session
from execution_engine.db.enums import ActorTypeEnum
from execution_engine.db.models import AuditEvent, ExecutionUnit
from execution_engine.db.repositories.audit_events import AuditEventsRepository
from execution_engine.db.repositories.execution_units import ExecutionUnitsRepository
from execution_engine.errors import NotFoundError
from execution_engine.routers.deps import get_ads_client_factory, parse_uuid
from execution_engine.schemas.ads_operator import (
    AuditEventResponse,
    ExecuteApprovedRequest,
    ProposalCreateRequest,
    ProposalDecisionRequest,
    ProposalResponse,
)
from execution_engine.security import require_internal_secret
from execution_engine.services.executor import ApprovedActionExecutor, GoogleAdsClientFactory
from execution_engine.services.governor import ProposalGovernor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ads-operator", tags=["ads-operator"], dependencies=[Depends(require_internal_secret)])


def _serialize_unit(unit: ExecutionUnit) -> dict[str, Any]:
    return ProposalResponse(
        id=str(unit.id),
        workspace_id=str(unit.workspace_id),
        ad_account_id=str(unit.ad_account_id),
        kind=unit.kind.value,
        status=unit.status.value,
        approved_payload=unit.approved_payload,
        risk_flags=list(unit.risk_flags or []),
        executed_at=unit.executed_at,
        last_error=unit.last_error,
    ).model_dump(mode="json")


def _serialize_event(event: AuditEvent) -> dict[str, Any]:
    return AuditEventResponse(
        id=event.id,
        event_type=event.event_type.value,
        actor_type=event.actor_type.value,
        actor_id=event.actor_id,
        run_id=str(event.run_id) if event.run_id else None,
        message=event.message,
        details=event.details or {},
        created_at=event.created_at,
    ).model_dump(mode="json")


@router.post("/execute-approved")
def execute_approved(
    body: Any = Body(default=None),
    session: Session = Depends(get_session),
    client_factory: GoogleAdsClientFactory = Depends(get_ads_client_factory),
) -> ORJSONResponse:
    # Every failure, validation included, is reported as a 500 envelope.
    try:
        request = ExecuteApprovedRequest.model_validate(body)
        result = ApprovedActionExecutor(session, client_factory=client_factory).execute(
            unit_id=UUID(request.proposalId),
            workspace_id=UUID(request.workspaceId),
            ad_account_id=UUID(request.adAccountId),
            approved_payload=request.approvedPayload,
            run_id=UUID(request.runId) if request.runId else None,
            actor_type=ActorTypeEnum(request.actorType),
            actor_id=request.actorId,
        )
    except Exception as exc:
        logger.exception("ads_operator.execute_failed")
        return ORJSONResponse(status_code=500, content={"ok": False, "error": str(exc) or exc.__class__.__name__})
    return ORJSONResponse(content={"ok": True, "result": result.to_dict()})


@router.post("/proposals", status_code=201)
def submit_proposal(payload: ProposalCreateRequest, session: Session = Depends(get_session)) -> dict[str, Any]:
    unit = ProposalGovernor(session).submit_proposal(
        workspace_id=parse_uuid(payload.workspaceId, field="workspaceId"),
        ad_account_id=parse_uuid(payload.adAccountId, field="adAccountId"),
        raw_payload=payload.payload,
        owner_id=parse_uuid(payload.ownerId, field="ownerId") if payload.ownerId else None,
        actor_type=ActorTypeEnum(payload.actorType),
        actor_id=payload.actorId,
        run_id=parse_uuid(payload.runId, field="runId") if payload.runId else None,
    )
    return {"ok": True, "proposal": _serialize_unit(unit)}


@router.post("/proposals/{proposal_id}/approve")
def approve_proposal(
    proposal_id: str,
    payload: ProposalDecisionRequest,
    session: Session = Depends(get_session),
) -> dict[str, Any]:
    unit = ProposalGovernor(session).approve(parse_uuid(proposal_id, field="proposal_id"), actor_id=payload.actorId)
    return {"ok": True, "proposal": _serialize_unit(unit)}


@router.post("/proposals/{proposal_id}/reject")
def reject_proposal(
    proposal_id: str,
    payload: ProposalDecisionRequest,
    session: Session = Depends(get_session),
) -> dict[str, Any]:
    unit = ProposalGovernor(session).reject(
        parse_uuid(proposal_id, field="proposal_id"),
        actor_id=payload.actorId,
        reason=payload.reason,
    )
    return {"ok": True, "proposal": _serialize_unit(unit)}


@router.get("/proposals/{proposal_id}/events")
def list_proposal_events(proposal_id: str, session: Session = Depends(get_session)) -> dict[str, Any]:
    unit_id = parse_uuid(proposal_id, field="proposal_id")
    unit = ExecutionUnitsRepository(session).get(unit_id)
    if unit is None:
        raise NotFoundError(f"Action proposal not found: {proposal_id}")
    events = AuditEventsRepository(session).list_for_unit(unit_id)
    return {"ok": True, "proposal": _serialize_unit(unit), "events": [_serialize_event(event) for event in events]}
