from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Literal, Optional

import httpx
from google.auth import exceptions as google_auth_exceptions
from google.auth import transport as google_auth_transport
from google.auth.transport.requests import Request
from google.oauth2 import credentials as oauth2_credentials

from execution_engine.config import settings
from execution_engine.errors import ExecutionValidationError, NotFoundError, ProviderConfigError, ProviderError

logger = logging.getLogger("google.ads")


class GoogleAdsError(ProviderError):
    pass


class GoogleAdsNotFoundError(NotFoundError):
    def __init__(self, resource_name: str) -> None:
        super().__init__(f"Google Ads resource not found: {resource_name}")
        self.resource_name = resource_name


@dataclass(frozen=True)
class GoogleAdsAuth:
    client_id: str
    client_secret: str
    developer_token: str
    refresh_token: str

    @classmethod
    def from_settings(cls) -> "GoogleAdsAuth":
        missing = [
            name
            for name in (
                "GOOGLE_ADS_CLIENT_ID",
                "GOOGLE_ADS_CLIENT_SECRET",
                "GOOGLE_ADS_DEVELOPER_TOKEN",
                "GOOGLE_ADS_REFRESH_TOKEN",
            )
            if not getattr(settings, name)
        ]
        if missing:
            raise ProviderConfigError(f"{', '.join(missing)} required to use the Google Ads integration.")
        return cls(
            client_id=settings.GOOGLE_ADS_CLIENT_ID,
            client_secret=settings.GOOGLE_ADS_CLIENT_SECRET,
            developer_token=settings.GOOGLE_ADS_DEVELOPER_TOKEN,
            refresh_token=settings.GOOGLE_ADS_REFRESH_TOKEN,
        )

    def credentials(self, token_uri: Optional[str] = None) -> oauth2_credentials.Credentials:
        return oauth2_credentials.Credentials(
            token=None,
            refresh_token=self.refresh_token,
            client_id=self.client_id,
            client_secret=self.client_secret,
            token_uri=token_uri or settings.GOOGLE_OAUTH_TOKEN_URL,
        )


@dataclass(frozen=True)
class GoogleAdsCustomerRef:
    customer_id: str
    login_customer_id: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "customer_id", _normalize_customer_id(self.customer_id))
        if self.login_customer_id:
            object.__setattr__(self, "login_customer_id", _normalize_customer_id(self.login_customer_id))


@dataclass(frozen=True)
class EnsureResult:
    kind: Literal["noop", "mutated"]
    resource_name: str
    before: dict[str, Any] = field(default_factory=dict)
    after: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "resourceName": self.resource_name,
            "before": dict(self.before),
            "after": dict(self.after),
        }


def _normalize_customer_id(customer_id: str) -> str:
    normalized = str(customer_id).replace("-", "").strip()
    if not normalized.isdigit():
        raise ExecutionValidationError(f"Invalid Google Ads customer id: {customer_id!r}")
    return normalized


def _require_positive_micros(value: Any, *, label: str) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ExecutionValidationError(f"{label} must be a number")
    if not math.isfinite(value) or value <= 0:
        raise ExecutionValidationError(f"{label} must be a positive finite number")
    if int(value) != value:
        raise ExecutionValidationError(f"{label} must be a whole number of micros")
    return int(value)


def _quote(value: str) -> str:
    return "'" + value.replace("\\", "\\\\").replace("'", "\\'") + "'"


class GoogleAdsClient:
    """
    Thin REST client for the Google Ads API.

    Construct one per execution from explicit credentials. The OAuth
    credentials live only on this instance and are refreshed by google-auth
    whenever the access token is missing or expired.
    """

    def __init__(
        self,
        *,
        auth: GoogleAdsAuth,
        customer: GoogleAdsCustomerRef,
        api_version: Optional[str] = None,
        base_url: Optional[str] = None,
        token_url: Optional[str] = None,
        http_client: Optional[httpx.Client] = None,
        auth_request: Optional[google_auth_transport.Request] = None,
    ) -> None:
        self.auth = auth
        self.customer = customer
        self.api_version = api_version or settings.GOOGLE_ADS_API_VERSION
        self.base_url = (base_url or settings.GOOGLE_ADS_API_BASE_URL).rstrip("/")
        self.credentials = auth.credentials(token_url)
        self.timeout = httpx.Timeout(settings.PROVIDER_REQUEST_TIMEOUT_SECONDS)
        self._http = http_client or httpx.Client(timeout=self.timeout)
        self._auth_request = auth_request or Request()

    @classmethod
    def from_settings(
        cls, *, customer_id: str, login_customer_id: Optional[str] = None
    ) -> "GoogleAdsClient":
        return cls(
            auth=GoogleAdsAuth.from_settings(),
            customer=GoogleAdsCustomerRef(
                customer_id=customer_id,
                login_customer_id=login_customer_id or settings.GOOGLE_ADS_LOGIN_CUSTOMER_ID,
            ),
        )

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "GoogleAdsClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # Resource names

    def ad_group_resource_name(self, ad_group_id: str) -> str:
        return f"customers/{self.customer.customer_id}/adGroups/{ad_group_id}"

    def ad_group_criterion_resource_name(self, ad_group_id: str, criterion_id: str) -> str:
        return f"customers/{self.customer.customer_id}/adGroupCriteria/{ad_group_id}~{criterion_id}"

    def campaign_budget_resource_name(self, campaign_budget_id: str) -> str:
        return f"customers/{self.customer.customer_id}/campaignBudgets/{campaign_budget_id}"

    # Transport

    def _authorize(self, headers: dict[str, str]) -> None:
        if not self.credentials.valid:
            try:
                self.credentials.refresh(self._auth_request)
            except google_auth_exceptions.RefreshError as exc:
                message, payload = (exc.args + (None, None))[:2]
                raise GoogleAdsError(f"Google OAuth token refresh failed: {message}", error_payload=payload) from exc
            except google_auth_exceptions.TransportError as exc:
                raise GoogleAdsError(f"Google OAuth token request failed: {exc}") from exc
        self.credentials.apply(headers)

    def _headers(self) -> dict[str, str]:
        headers = {
            "developer-token": self.auth.developer_token,
            "Content-Type": "application/json",
        }
        if self.customer.login_customer_id:
            headers["login-customer-id"] = self.customer.login_customer_id
        self._authorize(headers)
        return headers

    def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        url = f"{self.base_url}/{self.api_version}/{path.lstrip('/')}"
        try:
            response = self._http.post(url, json=body, headers=self._headers(), timeout=self.timeout)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status_code = exc.response.status_code
            raise GoogleAdsError(
                f"Google Ads API error ({status_code}).",
                status_code=status_code,
                error_payload=_error_payload(exc.response),
            ) from exc
        except httpx.RequestError as exc:
            raise GoogleAdsError(f"Google Ads API request failed: {exc}") from exc

        try:
            return response.json()
        except ValueError as exc:
            raise GoogleAdsError("Google Ads API returned a non-JSON response.") from exc

    def search(self, query: str) -> list[dict[str, Any]]:
        path = f"customers/{self.customer.customer_id}/googleAds:search"
        results: list[dict[str, Any]] = []
        body: dict[str, Any] = {"query": query}
        while True:
            data = self._post(path, body)
            results.extend(data.get("results") or [])
            page_token = data.get("nextPageToken")
            if not page_token:
                return results
            body = {"query": query, "pageToken": page_token}

    def _mutate(self, service: str, resource: dict[str, Any], update_mask: str) -> dict[str, Any]:
        path = f"customers/{self.customer.customer_id}/{service}:mutate"
        body = {
            "operations": [{"update": resource, "updateMask": update_mask}],
            "partialFailure": False,
            "validateOnly": False,
        }
        logger.info(
            "google_ads.mutate",
            extra={"service": service, "resource_name": resource.get("resourceName"), "update_mask": update_mask},
        )
        return self._post(path, body)

    def _search_one(self, query: str, resource_name: str) -> dict[str, Any]:
        rows = self.search(query)
        if not rows:
            raise GoogleAdsNotFoundError(resource_name)
        return rows[0]

    # Reads

    def get_ad_group_status(self, ad_group_id: str) -> dict[str, Any]:
        resource_name = self.ad_group_resource_name(ad_group_id)
        row = self._search_one(
            "SELECT ad_group.resource_name, ad_group.status FROM ad_group "
            f"WHERE ad_group.resource_name = {_quote(resource_name)}",
            resource_name,
        )
        return {"status": (row.get("adGroup") or {}).get("status")}

    def get_keyword_cpc_bid_micros(self, ad_group_id: str, criterion_id: str) -> dict[str, Any]:
        resource_name = self.ad_group_criterion_resource_name(ad_group_id, criterion_id)
        row = self._search_one(
            "SELECT ad_group_criterion.resource_name, ad_group_criterion.cpc_bid_micros "
            f"FROM ad_group_criterion WHERE ad_group_criterion.resource_name = {_quote(resource_name)}",
            resource_name,
        )
        raw = (row.get("adGroupCriterion") or {}).get("cpcBidMicros")
        return {"cpc_bid_micros": int(raw) if raw is not None else None}

    def get_campaign_budget_amount_micros(self, campaign_budget_id: str) -> dict[str, Any]:
        resource_name = self.campaign_budget_resource_name(campaign_budget_id)
        row = self._search_one(
            "SELECT campaign_budget.resource_name, campaign_budget.amount_micros "
            f"FROM campaign_budget WHERE campaign_budget.resource_name = {_quote(resource_name)}",
            resource_name,
        )
        raw = (row.get("campaignBudget") or {}).get("amountMicros")
        return {"amount_micros": int(raw) if raw is not None else None}

    # Idempotent writes: read, compare, mutate only on difference.

    def ensure_ad_group_paused(self, ad_group_id: str) -> EnsureResult:
        resource_name = self.ad_group_resource_name(ad_group_id)
        before = self.get_ad_group_status(ad_group_id)
        if before["status"] == "PAUSED":
            return EnsureResult("noop", resource_name, before, dict(before))
        self._mutate("adGroups", {"resourceName": resource_name, "status": "PAUSED"}, "status")
        return EnsureResult("mutated", resource_name, before, {"status": "PAUSED"})

    def ensure_keyword_cpc_bid_micros(
        self, ad_group_id: str, criterion_id: str, cpc_bid_micros: Any
    ) -> EnsureResult:
        desired = _require_positive_micros(cpc_bid_micros, label="cpc_bid_micros")
        resource_name = self.ad_group_criterion_resource_name(ad_group_id, criterion_id)
        before = self.get_keyword_cpc_bid_micros(ad_group_id, criterion_id)
        if before["cpc_bid_micros"] == desired:
            return EnsureResult("noop", resource_name, before, dict(before))
        self._mutate(
            "adGroupCriteria",
            {"resourceName": resource_name, "cpcBidMicros": str(desired)},
            "cpcBidMicros",
        )
        return EnsureResult("mutated", resource_name, before, {"cpc_bid_micros": desired})

    def ensure_campaign_budget_amount_micros(self, campaign_budget_id: str, amount_micros: Any) -> EnsureResult:
        desired = _require_positive_micros(amount_micros, label="amount_micros")
        resource_name = self.campaign_budget_resource_name(campaign_budget_id)
        before = self.get_campaign_budget_amount_micros(campaign_budget_id)
        if before["amount_micros"] == desired:
            return EnsureResult("noop", resource_name, before, dict(before))
        self._mutate(
            "campaignBudgets",
            {"resourceName": resource_name, "amountMicros": str(desired)},
            "amountMicros",
        )
        return EnsureResult("mutated", resource_name, before, {"amount_micros": desired})


def _error_payload(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return {"text": response.text}
