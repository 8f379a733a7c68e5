import pytest

from execution_engine.db.enums import ActorTypeEnum, AuditEventTypeEnum
from execution_engine.db.models import AuditEvent
from execution_engine.db.repositories.audit_events import AuditEventsRepository
from execution_engine.errors import AuditImmutableError
from execution_engine.services.audit import AuditTrail

from conftest import WORKSPACE_ID


def test_trail_appends_events_in_order(session, make_unit):
    unit = make_unit({"kind": "pause_ad_group", "adGroupId": "111"})
    trail = AuditTrail(session, workspace_id=WORKSPACE_ID, unit_id=unit.id, actor_type=ActorTypeEnum.ai, actor_id="agent")

    trail.record(AuditEventTypeEnum.created, "created")
    trail.record(AuditEventTypeEnum.approved, "approved", actor_type=ActorTypeEnum.human, actor_id="reviewer")

    events = AuditEventsRepository(session).list_for_unit(unit.id)
    assert [event.event_type for event in events] == [AuditEventTypeEnum.created, AuditEventTypeEnum.approved]
    assert (events[0].actor_type, events[0].actor_id) == (ActorTypeEnum.ai, "agent")
    assert (events[1].actor_type, events[1].actor_id) == (ActorTypeEnum.human, "reviewer")
    assert events[0].details == {}


def test_audit_events_cannot_be_updated(session):
    event = AuditEventsRepository(session).append(
        workspace_id=WORKSPACE_ID,
        event_type=AuditEventTypeEnum.note,
        actor_type=ActorTypeEnum.system,
        message="original",
    )

    event.message = "rewritten"
    with pytest.raises(AuditImmutableError):
        session.flush()
    session.rollback()

    assert event.message == "original"


def test_audit_events_cannot_be_deleted(session):
    event = AuditEventsRepository(session).append(
        workspace_id=WORKSPACE_ID,
        event_type=AuditEventTypeEnum.note,
        actor_type=ActorTypeEnum.system,
        message="keep me",
    )

    session.delete(event)
    with pytest.raises(AuditImmutableError):
        session.flush()
    session.rollback()

    assert session.get(AuditEvent, event.id).message == "keep me"
