from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

from execution_engine.db.enums import PayloadKindEnum
from execution_engine.providers.google_ads import EnsureResult, GoogleAdsClient
from execution_engine.schemas.payloads import (
    ApprovedPayload,
    IncreaseCampaignBudgetPayload,
    PauseAdGroupPayload,
    ReduceKeywordBidPayload,
)


@dataclass(frozen=True)
class AdsAction:
    """One approved mutation bound to a client: how to read it, apply it and what it should look like after."""

    kind: PayloadKindEnum
    resource_name: str
    expected: dict[str, Any]
    fetch_state: Callable[[], dict[str, Any]]
    ensure: Callable[[], EnsureResult]

    def mutation(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "resource_name": self.resource_name, "desired": dict(self.expected)}


def build_action(client: GoogleAdsClient, payload: ApprovedPayload) -> AdsAction:
    if isinstance(payload, PauseAdGroupPayload):
        ad_group_id = payload.adGroupId
        return AdsAction(
            kind=PayloadKindEnum.pause_ad_group,
            resource_name=client.ad_group_resource_name(ad_group_id),
            expected={"status": "PAUSED"},
            fetch_state=lambda: client.get_ad_group_status(ad_group_id),
            ensure=lambda: client.ensure_ad_group_paused(ad_group_id),
        )
    if isinstance(payload, ReduceKeywordBidPayload):
        ad_group_id, criterion_id, bid = payload.adGroupId, payload.criterionId, payload.afterCpcBidMicros
        return AdsAction(
            kind=PayloadKindEnum.reduce_keyword_bid,
            resource_name=client.ad_group_criterion_resource_name(ad_group_id, criterion_id),
            expected={"cpc_bid_micros": bid},
            fetch_state=lambda: client.get_keyword_cpc_bid_micros(ad_group_id, criterion_id),
            ensure=lambda: client.ensure_keyword_cpc_bid_micros(ad_group_id, criterion_id, bid),
        )
    if isinstance(payload, IncreaseCampaignBudgetPayload):
        budget_id, amount = payload.campaignBudgetId, payload.afterAmountMicros
        return AdsAction(
            kind=PayloadKindEnum.increase_campaign_budget,
            resource_name=client.campaign_budget_resource_name(budget_id),
            expected={"amount_micros": amount},
            fetch_state=lambda: client.get_campaign_budget_amount_micros(budget_id),
            ensure=lambda: client.ensure_campaign_budget_amount_micros(budget_id, amount),
        )
    raise TypeError(f"Unsupported approved payload: {type(payload).__name__}")
