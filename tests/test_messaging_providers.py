import json

import httpx
import pytest

from execution_engine.db.enums import ChannelEnum, OutboxStatusEnum
from execution_engine.db.models import OutboxEntry
from execution_engine.errors import ProviderConfigError
from execution_engine.providers.dispatcher import ChannelDispatcher
from execution_engine.providers.elevenlabs import ElevenLabsClient, ElevenLabsError
from execution_engine.providers.resend import ResendClient, ResendError

from conftest import FakeResendApi


def test_resend_send_email_posts_message_with_idempotency_key(resend_api):
    message_id, data = resend_api.client().send_email(
        to="ada@example.com",
        subject="Hello",
        html="<p>Hi</p>",
        text="Hi",
        reply_to="support@example.com",
        idempotency_key="key-123",
    )

    assert message_id == "email_1"
    assert data == {"id": "email_1"}
    request = resend_api.requests[0]
    assert request.url == "https://api.resend.com/emails"
    assert request.headers["Authorization"] == "Bearer re_test_key"
    assert request.headers["Idempotency-Key"] == "key-123"
    body = json.loads(request.content)
    assert body["to"] == ["ada@example.com"]
    assert body["reply_to"] == "support@example.com"
    assert body["from"]


def test_resend_error_keeps_status_and_payload():
    api = FakeResendApi(fail_with=422)

    with pytest.raises(ResendError) as excinfo:
        api.client().send_email(to="ada@example.com", subject="Hello", html="<p>Hi</p>")

    assert excinfo.value.status_code == 422
    assert excinfo.value.error_payload["name"] == "validation_error"


def test_resend_response_without_id_is_an_error():
    client = ResendClient(
        api_key="k",
        http_client=httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(200, json={}))),
    )

    with pytest.raises(ResendError):
        client.send_email(to="ada@example.com", subject="Hello", html="<p>Hi</p>")


def test_elevenlabs_place_call_request_shape(elevenlabs_api):
    conversation_id, _ = elevenlabs_api.client().place_call(
        agent_id="agent-1",
        to_phone_number="+15550001111",
        from_phone_number="+15559998888",
        metadata={"campaign_id": "c-1"},
    )

    assert conversation_id == "conv_1"
    request = elevenlabs_api.requests[0]
    assert request.url.path == "/v1/convai/conversations/phone"
    assert request.headers["xi-api-key"] == "xi_test_key"
    assert json.loads(request.content) == {
        "agent_id": "agent-1",
        "to_phone_number": "+15550001111",
        "from_phone_number": "+15559998888",
        "metadata": {"campaign_id": "c-1"},
    }


def test_elevenlabs_http_error():
    client = ElevenLabsClient(
        api_key="k",
        http_client=httpx.Client(
            transport=httpx.MockTransport(lambda request: httpx.Response(500, text="upstream down"))
        ),
    )

    with pytest.raises(ElevenLabsError) as excinfo:
        client.place_call(agent_id="a", to_phone_number="+1", from_phone_number="+2")

    assert excinfo.value.status_code == 500
    assert excinfo.value.error_payload == {"text": "upstream down"}


def test_dispatcher_routes_by_channel(make_dispatcher, resend_api, elevenlabs_api):
    dispatcher = make_dispatcher()
    email = OutboxEntry(
        channel=ChannelEnum.email,
        idempotency_key="email-key",
        recipient_email="ada@example.com",
        payload={"subject": "Hi", "html": "<p>Hi</p>"},
    )
    call = OutboxEntry(
        channel=ChannelEnum.voice,
        idempotency_key="voice-key",
        recipient_phone="+15550001111",
        payload={"agent_id": "agent-1", "from_phone_number": "+15559998888"},
    )

    email_receipt = dispatcher.dispatch(email)
    call_receipt = dispatcher.dispatch(call)

    assert email_receipt.terminal_status == OutboxStatusEnum.sent
    assert call_receipt.terminal_status == OutboxStatusEnum.called
    assert resend_api.requests[0].headers["Idempotency-Key"] == "email-key"
    assert elevenlabs_api.calls[0]["to_phone_number"] == "+15550001111"
    assert dispatcher.supports_provider_idempotency(email)
    assert not dispatcher.supports_provider_idempotency(call)


def test_dispatcher_reports_missing_credentials_lazily():
    def missing() -> ResendClient:
        raise ProviderConfigError("RESEND_API_KEY is required to send email.")

    dispatcher = ChannelDispatcher(resend_factory=missing)

    with pytest.raises(ProviderConfigError):
        dispatcher.client_for(ChannelEnum.email)
