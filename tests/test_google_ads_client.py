import json

import httpx
import pytest

from execution_engine.errors import ExecutionValidationError
from execution_engine.providers.google_ads import (
    GoogleAdsAuth,
    GoogleAdsClient,
    GoogleAdsCustomerRef,
    GoogleAdsError,
    GoogleAdsNotFoundError,
)

from conftest import CUSTOMER_ID, FakeGoogleAdsApi, MockAuthRequest

AD_GROUP = f"customers/{CUSTOMER_ID}/adGroups/111"
CRITERION = f"customers/{CUSTOMER_ID}/adGroupCriteria/111~222"
BUDGET = f"customers/{CUSTOMER_ID}/campaignBudgets/333"


def _mutate_requests(api: FakeGoogleAdsApi) -> list[httpx.Request]:
    return [request for request in api.requests if request.url.path.endswith(":mutate")]


def test_customer_ids_are_normalized():
    ref = GoogleAdsCustomerRef(customer_id="123-456-7890", login_customer_id="999-000-1111")

    assert ref.customer_id == "1234567890"
    assert ref.login_customer_id == "9990001111"


def test_pause_ad_group_already_paused_is_noop(google_ads_api):
    google_ads_api.ad_groups[AD_GROUP] = "PAUSED"

    result = google_ads_api.client().ensure_ad_group_paused("111")

    assert result.kind == "noop"
    assert result.before == {"status": "PAUSED"}
    assert google_ads_api.mutations == []


def test_pause_ad_group_mutates_enabled_group(google_ads_api):
    google_ads_api.ad_groups[AD_GROUP] = "ENABLED"

    result = google_ads_api.client().ensure_ad_group_paused("111")

    assert result.kind == "mutated"
    assert result.after == {"status": "PAUSED"}
    assert google_ads_api.ad_groups[AD_GROUP] == "PAUSED"
    mutation = google_ads_api.mutations[0]
    assert mutation["path"] == f"/v17/customers/{CUSTOMER_ID}/adGroups:mutate"
    assert mutation["body"]["operations"] == [
        {"update": {"resourceName": AD_GROUP, "status": "PAUSED"}, "updateMask": "status"}
    ]


def test_mutate_request_disables_partial_failure_and_sends_auth_headers(google_ads_api):
    google_ads_api.keyword_bids[CRITERION] = 1_500_000
    client = google_ads_api.client(login_customer_id="555-555-5555")

    result = client.ensure_keyword_cpc_bid_micros("111", "222", 1_000_000)

    assert result.kind == "mutated"
    request = _mutate_requests(google_ads_api)[0]
    body = json.loads(request.content)
    assert body["partialFailure"] is False
    assert body["validateOnly"] is False
    assert body["operations"][0]["update"] == {"resourceName": CRITERION, "cpcBidMicros": "1000000"}
    assert body["operations"][0]["updateMask"] == "cpcBidMicros"
    assert request.headers["Authorization"] == "Bearer access-token"
    assert request.headers["developer-token"] == "dev-token"
    assert request.headers["login-customer-id"] == "5555555555"


def test_access_token_is_fetched_once_per_client(google_ads_api):
    google_ads_api.budgets[BUDGET] = 10_000_000
    client = google_ads_api.client()

    client.get_campaign_budget_amount_micros("333")
    client.ensure_campaign_budget_amount_micros("333", 11_000_000)

    token_requests = [r for r in google_ads_api.requests if r.url.host == "oauth2.googleapis.com"]
    assert len(token_requests) == 1
    assert b"grant_type=refresh_token" in token_requests[0].content


def test_expired_access_token_is_refreshed(google_ads_api):
    google_ads_api.token_expires_in = 1
    google_ads_api.budgets[BUDGET] = 10_000_000
    client = google_ads_api.client()

    client.get_campaign_budget_amount_micros("333")
    client.get_campaign_budget_amount_micros("333")

    token_requests = [r for r in google_ads_api.requests if r.url.host == "oauth2.googleapis.com"]
    assert len(token_requests) == 2
    assert client.credentials.token == "access-token"


def test_reads_parse_string_micros(google_ads_api):
    google_ads_api.keyword_bids[CRITERION] = 750_000
    google_ads_api.budgets[BUDGET] = 42_000_000
    client = google_ads_api.client()

    assert client.get_keyword_cpc_bid_micros("111", "222") == {"cpc_bid_micros": 750_000}
    assert client.get_campaign_budget_amount_micros("333") == {"amount_micros": 42_000_000}


def test_search_follows_page_tokens():
    pages = [
        {"results": [{"adGroup": {"status": "ENABLED"}}], "nextPageToken": "page-2"},
        {"results": [{"adGroup": {"status": "PAUSED"}}]},
    ]
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "oauth2.googleapis.com":
            return httpx.Response(200, json={"access_token": "t"})
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json=pages[len(bodies) - 1])

    client = GoogleAdsClient(
        auth=GoogleAdsAuth("id", "secret", "dev", "refresh"),
        customer=GoogleAdsCustomerRef(customer_id=CUSTOMER_ID),
        http_client=httpx.Client(transport=httpx.MockTransport(handler)),
        auth_request=MockAuthRequest(handler),
    )

    rows = client.search("SELECT ad_group.status FROM ad_group")

    assert len(rows) == 2
    assert bodies[1]["pageToken"] == "page-2"


@pytest.mark.parametrize("bad_value", [0, -5, float("inf"), float("nan"), 1.5, True, "100"])
def test_invalid_micros_are_rejected_before_any_request(google_ads_api, bad_value):
    client = google_ads_api.client()

    with pytest.raises(ExecutionValidationError):
        client.ensure_keyword_cpc_bid_micros("111", "222", bad_value)
    with pytest.raises(ExecutionValidationError):
        client.ensure_campaign_budget_amount_micros("333", bad_value)

    assert google_ads_api.requests == []


def test_missing_resource_raises_not_found(google_ads_api):
    with pytest.raises(GoogleAdsNotFoundError) as excinfo:
        google_ads_api.client().get_ad_group_status("404")

    assert excinfo.value.resource_name == f"customers/{CUSTOMER_ID}/adGroups/404"


def test_api_error_carries_status_and_payload():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "oauth2.googleapis.com":
            return httpx.Response(200, json={"access_token": "t"})
        return httpx.Response(403, json={"error": {"status": "PERMISSION_DENIED"}})

    client = GoogleAdsClient(
        auth=GoogleAdsAuth("id", "secret", "dev", "refresh"),
        customer=GoogleAdsCustomerRef(customer_id=CUSTOMER_ID),
        http_client=httpx.Client(transport=httpx.MockTransport(handler)),
        auth_request=MockAuthRequest(handler),
    )

    with pytest.raises(GoogleAdsError) as excinfo:
        client.get_ad_group_status("111")

    assert excinfo.value.status_code == 403
    assert excinfo.value.error_payload == {"error": {"status": "PERMISSION_DENIED"}}


def test_token_exchange_failure_is_a_provider_error():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.host)
        return httpx.Response(400, json={"error": "invalid_grant"})

    client = GoogleAdsClient(
        auth=GoogleAdsAuth("id", "secret", "dev", "refresh"),
        customer=GoogleAdsCustomerRef(customer_id=CUSTOMER_ID),
        http_client=httpx.Client(transport=httpx.MockTransport(handler)),
        auth_request=MockAuthRequest(handler),
    )

    with pytest.raises(GoogleAdsError) as excinfo:
        client.get_ad_group_status("111")

    assert "invalid_grant" in str(excinfo.value)
    assert excinfo.value.error_payload == {"error": "invalid_grant"}
    assert calls == ["oauth2.googleapis.com"]
