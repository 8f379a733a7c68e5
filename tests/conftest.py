import json
import os
import re
import sys
import threading
import uuid
from pathlib import Path
from typing import Any, Optional

ROOT_DIR = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT_DIR))

os.environ.setdefault("ADS_OPERATOR_INTERNAL_SECRET", "test-internal-secret")
os.environ.setdefault("DATABASE_URL", "sqlite:///./test_execution_engine.db")
os.environ.setdefault("RESEND_API_KEY", "re_test_key")
os.environ.setdefault("ELEVENLABS_API_KEY", "xi_test_key")
os.environ.setdefault("GOOGLE_ADS_CLIENT_ID", "client-id")
os.environ.setdefault("GOOGLE_ADS_CLIENT_SECRET", "client-secret")
os.environ.setdefault("GOOGLE_ADS_DEVELOPER_TOKEN", "dev-token")
os.environ.setdefault("GOOGLE_ADS_REFRESH_TOKEN", "refresh-token")

import google.auth.transport
import httpx
import pytest

from execution_engine.db.base import Base, SessionLocal, engine
from execution_engine.db.enums import ExecutionStatusEnum, PayloadKindEnum
from execution_engine.db import models  # noqa: F401
from execution_engine.db.repositories.ad_accounts import AdAccountsRepository
from execution_engine.db.repositories.execution_units import ExecutionUnitsRepository
from execution_engine.providers.dispatcher import ChannelDispatcher
from execution_engine.providers.elevenlabs import ElevenLabsClient
from execution_engine.providers.google_ads import GoogleAdsAuth, GoogleAdsClient, GoogleAdsCustomerRef
from execution_engine.providers.resend import ResendClient

INTERNAL_SECRET = os.environ["ADS_OPERATOR_INTERNAL_SECRET"]
CUSTOMER_ID = "1234567890"
WORKSPACE_ID = uuid.UUID("00000000-0000-0000-0000-0000000000a1")


@pytest.fixture(autouse=True)
def reset_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def session():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


class _AuthResponse(google.auth.transport.Response):
    def __init__(self, response: httpx.Response) -> None:
        self._response = response

    @property
    def status(self) -> int:
        return self._response.status_code

    @property
    def headers(self) -> dict[str, str]:
        return dict(self._response.headers)

    @property
    def data(self) -> bytes:
        return self._response.content


class MockAuthRequest(google.auth.transport.Request):
    """google-auth transport that answers token refreshes from an httpx MockTransport handler."""

    def __init__(self, handler) -> None:
        self._http = httpx.Client(transport=httpx.MockTransport(handler))

    def __call__(self, url, method="GET", body=None, headers=None, timeout=None, **kwargs):
        return _AuthResponse(self._http.request(method, url, content=body, headers=headers))


class FakeGoogleAdsApi:
    """In-memory Google Ads REST backend served through httpx.MockTransport."""

    _RESOURCE_RE = re.compile(r"resource_name = '([^']+)'")

    def __init__(self, *, apply_mutations: bool = True) -> None:
        self.apply_mutations = apply_mutations
        self.token_expires_in = 3600
        self.ad_groups: dict[str, str] = {}
        self.keyword_bids: dict[str, int] = {}
        self.budgets: dict[str, int] = {}
        self.searches: list[str] = []
        self.mutations: list[dict[str, Any]] = []
        self.requests: list[httpx.Request] = []
        self._lock = threading.Lock()

    def handler(self, request: httpx.Request) -> httpx.Response:
        with self._lock:
            self.requests.append(request)
            path = request.url.path
            if request.url.host == "oauth2.googleapis.com":
                return httpx.Response(200, json={"access_token": "access-token", "expires_in": self.token_expires_in})
            body = json.loads(request.content or b"{}")
            if path.endswith("googleAds:search"):
                return self._search(body["query"])
            if path.endswith(":mutate"):
                return self._mutate(path, body)
            return httpx.Response(404, json={"error": {"message": f"unknown path {path}"}})

    def _search(self, query: str) -> httpx.Response:
        self.searches.append(query)
        match = self._RESOURCE_RE.search(query)
        resource_name = match.group(1) if match else ""
        if "FROM ad_group_criterion" in query:
            if resource_name not in self.keyword_bids:
                return httpx.Response(200, json={"results": []})
            row = {"adGroupCriterion": {"resourceName": resource_name, "cpcBidMicros": str(self.keyword_bids[resource_name])}}
        elif "FROM campaign_budget" in query:
            if resource_name not in self.budgets:
                return httpx.Response(200, json={"results": []})
            row = {"campaignBudget": {"resourceName": resource_name, "amountMicros": str(self.budgets[resource_name])}}
        else:
            if resource_name not in self.ad_groups:
                return httpx.Response(200, json={"results": []})
            row = {"adGroup": {"resourceName": resource_name, "status": self.ad_groups[resource_name]}}
        return httpx.Response(200, json={"results": [row]})

    def _mutate(self, path: str, body: dict[str, Any]) -> httpx.Response:
        self.mutations.append({"path": path, "body": body})
        operation = body["operations"][0]
        resource = operation["update"]
        name = resource["resourceName"]
        if self.apply_mutations:
            if path.endswith("adGroups:mutate"):
                self.ad_groups[name] = resource["status"]
            elif path.endswith("adGroupCriteria:mutate"):
                self.keyword_bids[name] = int(resource["cpcBidMicros"])
            elif path.endswith("campaignBudgets:mutate"):
                self.budgets[name] = int(resource["amountMicros"])
        return httpx.Response(200, json={"results": [{"resourceName": name}]})

    def client(self, customer_id: str = CUSTOMER_ID, login_customer_id: Optional[str] = None) -> GoogleAdsClient:
        return GoogleAdsClient(
            auth=GoogleAdsAuth(
                client_id="client-id",
                client_secret="client-secret",
                developer_token="dev-token",
                refresh_token="refresh-token",
            ),
            customer=GoogleAdsCustomerRef(customer_id=customer_id, login_customer_id=login_customer_id),
            http_client=httpx.Client(transport=httpx.MockTransport(self.handler)),
            auth_request=MockAuthRequest(self.handler),
        )

    def client_factory(self, account) -> GoogleAdsClient:
        return self.client(account.customer_id, account.login_customer_id)


class FakeResendApi:
    """Resend stand-in that, like the real API, answers a repeated Idempotency-Key with the original id."""

    def __init__(self, *, fail_with: Optional[int] = None) -> None:
        self.fail_with = fail_with
        self.deliveries: list[dict[str, Any]] = []
        self.requests: list[httpx.Request] = []
        self._by_key: dict[str, str] = {}
        self._lock = threading.Lock()

    def handler(self, request: httpx.Request) -> httpx.Response:
        with self._lock:
            self.requests.append(request)
            if self.fail_with:
                return httpx.Response(self.fail_with, json={"name": "validation_error", "message": "rejected"})
            key = request.headers.get("Idempotency-Key")
            if key and key in self._by_key:
                return httpx.Response(200, json={"id": self._by_key[key]})
            message_id = f"email_{len(self.deliveries) + 1}"
            self.deliveries.append(json.loads(request.content))
            if key:
                self._by_key[key] = message_id
            return httpx.Response(200, json={"id": message_id})

    def client(self) -> ResendClient:
        return ResendClient(api_key="re_test_key", http_client=httpx.Client(transport=httpx.MockTransport(self.handler)))


class FakeElevenLabsApi:
    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []
        self.requests: list[httpx.Request] = []
        self._lock = threading.Lock()

    def handler(self, request: httpx.Request) -> httpx.Response:
        with self._lock:
            self.requests.append(request)
            self.calls.append(json.loads(request.content))
            return httpx.Response(200, json={"success": True, "conversation_id": f"conv_{len(self.calls)}"})

    def client(self) -> ElevenLabsClient:
        return ElevenLabsClient(api_key="xi_test_key", http_client=httpx.Client(transport=httpx.MockTransport(self.handler)))


@pytest.fixture
def google_ads_api() -> FakeGoogleAdsApi:
    return FakeGoogleAdsApi()


@pytest.fixture
def resend_api() -> FakeResendApi:
    return FakeResendApi()


@pytest.fixture
def elevenlabs_api() -> FakeElevenLabsApi:
    return FakeElevenLabsApi()


@pytest.fixture
def make_dispatcher(resend_api, elevenlabs_api):
    def _make() -> ChannelDispatcher:
        return ChannelDispatcher(resend=resend_api.client(), elevenlabs=elevenlabs_api.client())

    return _make


@pytest.fixture
def ad_account(session):
    return AdAccountsRepository(session).create(workspace_id=WORKSPACE_ID, customer_id="123-456-7890", name="Main")


@pytest.fixture
def make_unit(session, ad_account):
    def _make(
        payload: dict[str, Any],
        *,
        status: ExecutionStatusEnum = ExecutionStatusEnum.approved,
    ):
        units = ExecutionUnitsRepository(session)
        unit = units.create(
            workspace_id=ad_account.workspace_id,
            ad_account_id=ad_account.id,
            kind=PayloadKindEnum(payload["kind"]),
            approved_payload=payload,
        )
        if status != ExecutionStatusEnum.created:
            unit = units.transition(unit.id, from_statuses=[ExecutionStatusEnum.created], to_status=status)
        return unit

    return _make
