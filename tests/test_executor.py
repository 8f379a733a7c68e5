import uuid
from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import select

from execution_engine.db.base import SessionLocal
from execution_engine.db.enums import (
    AuditEventTypeEnum,
    ChannelEnum,
    ExecutionStatusEnum,
    OutboxStatusEnum,
    PayloadKindEnum,
)
from execution_engine.db.models import OutboxEntry
from execution_engine.db.repositories.ad_accounts import AdAccountsRepository
from execution_engine.db.repositories.audit_events import AuditEventsRepository
from execution_engine.db.repositories.execution_units import ExecutionUnitsRepository
from execution_engine.db.repositories.guardrails import GuardrailPoliciesRepository
from execution_engine.errors import ExecutionValidationError, NotFoundError, VerificationMismatchError
from execution_engine.services.executor import ApprovedActionExecutor

from conftest import CUSTOMER_ID, FakeGoogleAdsApi

AD_GROUP = f"customers/{CUSTOMER_ID}/adGroups/111"
CRITERION = f"customers/{CUSTOMER_ID}/adGroupCriteria/111~222"
BUDGET = f"customers/{CUSTOMER_ID}/campaignBudgets/333"

PAUSE = {"kind": "pause_ad_group", "adGroupId": "111"}
BID = {"kind": "reduce_keyword_bid", "adGroupId": "111", "criterionId": "222", "afterCpcBidMicros": 800_000}
BUDGET_UP = {
    "kind": "increase_campaign_budget",
    "campaignBudgetId": "333",
    "beforeAmountMicros": 100_000_000,
    "afterAmountMicros": 150_000_000,
}


def _execute(session, api, unit, payload, **kwargs):
    return ApprovedActionExecutor(session, client_factory=api.client_factory).execute(
        unit_id=unit.id,
        workspace_id=unit.workspace_id,
        ad_account_id=unit.ad_account_id,
        approved_payload=payload,
        **kwargs,
    )


def _event_types(session, unit_id):
    return [event.event_type for event in AuditEventsRepository(session).list_for_unit(unit_id)]


def _status(session, unit_id):
    unit = ExecutionUnitsRepository(session).get(unit_id)
    session.refresh(unit)
    return unit.status


def test_bid_change_is_applied_verified_and_recorded(session, google_ads_api, make_unit):
    google_ads_api.keyword_bids[CRITERION] = 1_000_000
    unit = make_unit(BID)
    run_id = uuid.uuid4()

    result = _execute(session, google_ads_api, unit, BID, run_id=run_id)

    assert result.to_dict() == {
        "outcome": "success",
        "skipped": False,
        "kind": "mutated",
        "action": "reduce_keyword_bid",
        "before": {"cpc_bid_micros": 1_000_000},
        "after": {"cpc_bid_micros": 800_000},
    }
    assert google_ads_api.keyword_bids[CRITERION] == 800_000
    assert len(google_ads_api.mutations) == 1
    assert _status(session, unit.id) == ExecutionStatusEnum.executed
    assert _event_types(session, unit.id) == [
        AuditEventTypeEnum.execution_started,
        AuditEventTypeEnum.execution_succeeded,
        AuditEventTypeEnum.verification_succeeded,
    ]
    events = AuditEventsRepository(session).list_for_run(run_id)
    assert events[1].details["before_state"] == {"cpc_bid_micros": 1_000_000}
    assert events[1].details["mutation"]["desired"] == {"cpc_bid_micros": 800_000}

    entry = session.scalars(select(OutboxEntry).where(OutboxEntry.unit_id == unit.id)).one()
    assert entry.channel == ChannelEnum.ads
    assert entry.status == OutboxStatusEnum.sent
    assert entry.resource_name == CRITERION


def test_pausing_a_paused_ad_group_is_a_noop(session, google_ads_api, make_unit):
    google_ads_api.ad_groups[AD_GROUP] = "PAUSED"
    unit = make_unit(PAUSE)

    result = _execute(session, google_ads_api, unit, PAUSE)

    assert result.kind == "noop"
    assert result.skipped is False
    assert result.after == {"status": "PAUSED"}
    assert google_ads_api.mutations == []
    assert _status(session, unit.id) == ExecutionStatusEnum.executed
    entry = session.scalars(select(OutboxEntry).where(OutboxEntry.unit_id == unit.id)).one()
    assert entry.status == OutboxStatusEnum.skipped
    assert entry.skip_reason.value == "already_in_desired_state"


def test_kill_switch_skips_without_touching_status(session, google_ads_api, make_unit, ad_account):
    google_ads_api.ad_groups[AD_GROUP] = "ENABLED"
    AdAccountsRepository(session).set_execution_enabled(ad_account.id, enabled=False)
    unit = make_unit(PAUSE)

    result = _execute(session, google_ads_api, unit, PAUSE)

    assert result.to_dict() == {"outcome": "success", "skipped": True, "reason": "execution_disabled"}
    assert _status(session, unit.id) == ExecutionStatusEnum.approved
    assert google_ads_api.requests == []
    assert _event_types(session, unit.id) == [AuditEventTypeEnum.note]


def test_inactive_account_fails_before_the_claim(session, google_ads_api):
    account = AdAccountsRepository(session).create(
        workspace_id=uuid.uuid4(), customer_id=CUSTOMER_ID, is_active=False
    )
    unit = ExecutionUnitsRepository(session).create(
        workspace_id=account.workspace_id,
        ad_account_id=account.id,
        kind=PayloadKindEnum.pause_ad_group,
        approved_payload=PAUSE,
    )

    with pytest.raises(ExecutionValidationError, match="inactive"):
        _execute(session, google_ads_api, unit, PAUSE)

    assert _status(session, unit.id) == ExecutionStatusEnum.approved
    assert _event_types(session, unit.id) == [AuditEventTypeEnum.note]
    assert google_ads_api.requests == []


def test_budget_change_over_guardrail_is_blocked(session, google_ads_api, make_unit, ad_account):
    google_ads_api.budgets[BUDGET] = 100_000_000
    unit = make_unit(BUDGET_UP)

    result = _execute(session, google_ads_api, unit, BUDGET_UP)

    assert result.to_dict() == {"outcome": "success", "skipped": True, "reason": "guardrail_exceeded"}
    assert google_ads_api.budgets[BUDGET] == 100_000_000
    assert _status(session, unit.id) == ExecutionStatusEnum.approved
    events = AuditEventsRepository(session).list_for_unit(unit.id)
    assert events[0].event_type == AuditEventTypeEnum.blocked
    assert events[0].details["change_pct"] == pytest.approx(0.5)


def test_tighter_policy_blocks_smaller_increase(session, google_ads_api, make_unit, ad_account):
    GuardrailPoliciesRepository(session).upsert(
        workspace_id=ad_account.workspace_id,
        ad_account_id=ad_account.id,
        values={"max_single_budget_change_pct": 0.05},
    )
    payload = {**BUDGET_UP, "afterAmountMicros": 110_000_000}
    unit = make_unit(payload)

    result = _execute(session, google_ads_api, unit, payload)

    assert result.reason == "guardrail_exceeded"


def test_verification_mismatch_fails_the_unit(session, make_unit):
    api = FakeGoogleAdsApi(apply_mutations=False)
    api.ad_groups[AD_GROUP] = "ENABLED"
    unit = make_unit(PAUSE)

    with pytest.raises(VerificationMismatchError):
        _execute(session, api, unit, PAUSE)

    assert len(api.mutations) == 1
    assert _status(session, unit.id) == ExecutionStatusEnum.failed
    assert _event_types(session, unit.id) == [
        AuditEventTypeEnum.execution_started,
        AuditEventTypeEnum.execution_succeeded,
        AuditEventTypeEnum.verification_failed,
        AuditEventTypeEnum.execution_failed,
    ]
    failed = AuditEventsRepository(session).list_for_unit(unit.id)[2]
    assert failed.details["mismatches"] == {"status": {"expected": "PAUSED", "actual": "ENABLED"}}


def test_missing_resource_fails_the_unit_and_outbox_entry(session, google_ads_api, make_unit):
    unit = make_unit(PAUSE)

    with pytest.raises(NotFoundError):
        _execute(session, google_ads_api, unit, PAUSE)

    refreshed = ExecutionUnitsRepository(session).get(unit.id)
    session.refresh(refreshed)
    assert refreshed.status == ExecutionStatusEnum.failed
    assert "not found" in refreshed.last_error
    entry = session.scalars(select(OutboxEntry).where(OutboxEntry.unit_id == unit.id)).one()
    assert entry.status == OutboxStatusEnum.failed
    assert _event_types(session, unit.id)[-1] == AuditEventTypeEnum.execution_failed


def test_second_execution_reports_already_executed(session, google_ads_api, make_unit):
    google_ads_api.ad_groups[AD_GROUP] = "ENABLED"
    unit = make_unit(PAUSE)
    _execute(session, google_ads_api, unit, PAUSE)

    again = _execute(session, google_ads_api, unit, PAUSE)

    assert again.outcome == "success"
    assert again.skipped is True
    assert again.reason == "already_executed"
    assert again.status == "executed"
    assert len(google_ads_api.mutations) == 1


def test_unapproved_unit_is_not_executable(session, google_ads_api, make_unit):
    unit = make_unit(PAUSE, status=ExecutionStatusEnum.queued_for_approval)

    result = _execute(session, google_ads_api, unit, PAUSE)

    assert result.to_dict() == {
        "outcome": "failure",
        "skipped": True,
        "reason": "not_executable",
        "status": "queued_for_approval",
    }
    assert google_ads_api.requests == []


@pytest.mark.parametrize(
    "payload",
    [
        {"kind": "delete_campaign", "campaignId": "1"},
        {"kind": "reduce_keyword_bid", "adGroupId": "111", "criterionId": "222", "afterCpcBidMicros": 0},
        {"kind": "reduce_keyword_bid", "adGroupId": "111", "criterionId": "222", "afterCpcBidMicros": 700_000},
        {"kind": "pause_ad_group", "adGroupId": "111", "extra": True},
    ],
)
def test_invalid_or_mismatched_payload_changes_nothing(session, google_ads_api, make_unit, payload):
    unit = make_unit(BID)

    with pytest.raises(ExecutionValidationError):
        _execute(session, google_ads_api, unit, payload)

    assert _status(session, unit.id) == ExecutionStatusEnum.approved
    assert google_ads_api.requests == []
    assert _event_types(session, unit.id) == [AuditEventTypeEnum.note]


def test_concurrent_executions_mutate_once(make_unit, google_ads_api):
    google_ads_api.keyword_bids[CRITERION] = 1_000_000
    unit = make_unit(BID)
    unit_id, workspace_id, ad_account_id = unit.id, unit.workspace_id, unit.ad_account_id

    def run(_):
        db = SessionLocal()
        try:
            return ApprovedActionExecutor(db, client_factory=google_ads_api.client_factory).execute(
                unit_id=unit_id, workspace_id=workspace_id, ad_account_id=ad_account_id, approved_payload=BID
            )
        finally:
            db.close()

    with ThreadPoolExecutor(max_workers=4) as pool:
        results = list(pool.map(run, range(4)))

    assert len(google_ads_api.mutations) == 1
    assert sum(1 for result in results if not result.skipped) == 1
    assert all(result.outcome == "success" or result.reason == "not_executable" for result in results)


def _tracking_factory(api):
    made = []

    def factory(account):
        client = api.client_factory(account)
        made.append(client)
        return client

    return factory, made


def test_google_ads_client_is_closed_after_each_execution(session, google_ads_api, make_unit):
    google_ads_api.ad_groups[AD_GROUP] = "ENABLED"
    factory, made = _tracking_factory(google_ads_api)
    executor = ApprovedActionExecutor(session, client_factory=factory)
    done, missing = make_unit(PAUSE), make_unit({"kind": "pause_ad_group", "adGroupId": "404"})

    executor.execute(
        unit_id=done.id, workspace_id=done.workspace_id, ad_account_id=done.ad_account_id, approved_payload=PAUSE
    )
    with pytest.raises(NotFoundError):
        executor.execute(
            unit_id=missing.id,
            workspace_id=missing.workspace_id,
            ad_account_id=missing.ad_account_id,
            approved_payload={"kind": "pause_ad_group", "adGroupId": "404"},
        )

    assert len(made) == 2
    assert all(client._http.is_closed for client in made)


class AuditWriteError(RuntimeError):
    pass


def _fail_audit_writes(monkeypatch, *event_types):
    append = AuditEventsRepository.append

    def failing_append(self, **kwargs):
        if kwargs["event_type"] in event_types:
            raise AuditWriteError(f"audit write failed for {kwargs['event_type'].value}")
        return append(self, **kwargs)

    monkeypatch.setattr(AuditEventsRepository, "append", failing_append)


def test_failed_audit_write_at_the_gate_propagates(session, google_ads_api, make_unit, ad_account, monkeypatch):
    AdAccountsRepository(session).set_execution_enabled(ad_account.id, enabled=False)
    unit = make_unit(PAUSE)
    _fail_audit_writes(monkeypatch, AuditEventTypeEnum.note)

    with pytest.raises(AuditWriteError):
        _execute(session, google_ads_api, unit, PAUSE)

    assert _status(session, unit.id) == ExecutionStatusEnum.approved
    assert google_ads_api.requests == []


def test_failed_success_record_fails_the_execution(session, google_ads_api, make_unit, monkeypatch):
    google_ads_api.ad_groups[AD_GROUP] = "ENABLED"
    unit = make_unit(PAUSE)
    _fail_audit_writes(monkeypatch, AuditEventTypeEnum.execution_succeeded)

    with pytest.raises(AuditWriteError):
        _execute(session, google_ads_api, unit, PAUSE)

    assert len(google_ads_api.mutations) == 1
    assert _status(session, unit.id) == ExecutionStatusEnum.failed
    assert _event_types(session, unit.id) == [
        AuditEventTypeEnum.execution_started,
        AuditEventTypeEnum.execution_failed,
    ]


def test_failed_failure_record_still_marks_the_unit_failed(session, google_ads_api, make_unit, monkeypatch):
    google_ads_api.ad_groups[AD_GROUP] = "ENABLED"
    unit = make_unit(PAUSE)
    _fail_audit_writes(monkeypatch, AuditEventTypeEnum.verification_succeeded, AuditEventTypeEnum.execution_failed)

    with pytest.raises(AuditWriteError, match="execution_failed"):
        _execute(session, google_ads_api, unit, PAUSE)

    refreshed = ExecutionUnitsRepository(session).get(unit.id)
    session.refresh(refreshed)
    assert refreshed.status == ExecutionStatusEnum.failed
    assert "verification_succeeded" in refreshed.last_error
    assert _event_types(session, unit.id)[-1] == AuditEventTypeEnum.execution_succeeded
