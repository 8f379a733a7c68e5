from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Body, Depends
from sqlalchemy.orm import Session

from execution_engine.db.deps import get_session
from execution_engine.providers.dispatcher import ChannelDispatcher
from execution_engine.routers.deps import get_channel_dispatcher, parse_uuid
from execution_engine.schemas.outbox import (
    DispatchDueRequest,
    EmailDeployRequest,
    RecoverRequest,
    ScheduleEmailsRequest,
    VoiceCallsRequest,
)
from execution_engine.security import require_internal_secret
from execution_engine.services.outbox_dispatch import OutboxDispatchService

router = APIRouter(prefix="/outbox", tags=["outbox"], dependencies=[Depends(require_internal_secret)])


@router.post("/email-deploy")
def email_deploy(
    payload: EmailDeployRequest,
    session: Session = Depends(get_session),
    dispatcher: ChannelDispatcher = Depends(get_channel_dispatcher),
) -> dict[str, Any]:
    report = OutboxDispatchService(session, dispatcher=dispatcher).deploy_email(payload)
    return {"ok": True, **report.to_dict()}


@router.post("/voice-calls")
def voice_calls(
    payload: VoiceCallsRequest,
    session: Session = Depends(get_session),
    dispatcher: ChannelDispatcher = Depends(get_channel_dispatcher),
) -> dict[str, Any]:
    report = OutboxDispatchService(session, dispatcher=dispatcher).deploy_voice(payload)
    return {"ok": True, **report.to_dict()}


@router.post("/schedule")
def schedule_emails(
    payload: ScheduleEmailsRequest,
    session: Session = Depends(get_session),
    dispatcher: ChannelDispatcher = Depends(get_channel_dispatcher),
) -> dict[str, Any]:
    report = OutboxDispatchService(session, dispatcher=dispatcher).schedule_emails(payload)
    return {"ok": True, **report.to_dict()}


@router.post("/dispatch-due")
def dispatch_due(
    payload: Optional[DispatchDueRequest] = Body(default=None),
    session: Session = Depends(get_session),
    dispatcher: ChannelDispatcher = Depends(get_channel_dispatcher),
) -> dict[str, Any]:
    payload = payload or DispatchDueRequest()
    report = OutboxDispatchService(session, dispatcher=dispatcher).dispatch_due(now=payload.now, limit=payload.limit)
    return {"ok": True, **report.to_dict()}


@router.post("/recover")
def recover(
    payload: Optional[RecoverRequest] = Body(default=None),
    session: Session = Depends(get_session),
    dispatcher: ChannelDispatcher = Depends(get_channel_dispatcher),
) -> dict[str, Any]:
    payload = payload or RecoverRequest()
    report = OutboxDispatchService(session, dispatcher=dispatcher).recover_stale(
        stale_after_seconds=payload.stale_after_seconds,
        limit=payload.limit,
    )
    return {"ok": True, **report.to_dict()}


@router.get("/runs/{run_id}/summary")
def run_summary(run_id: str, session: Session = Depends(get_session)) -> dict[str, Any]:
    summary = OutboxDispatchService(session).run_summary(parse_uuid(run_id, field="run_id"))
    return {"ok": True, **summary}
