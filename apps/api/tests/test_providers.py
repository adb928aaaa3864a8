from __future__ import annotations

import json

import httpx
import pytest

from app.models import MessageChannel
from app.services.providers import (
    MockProviderClient,
    OutboundSend,
    ProviderError,
    ProviderErrorCategory,
    TwilioSmsClient,
    WhatsAppCloudClient,
    get_provider_client,
    map_provider_error,
)
from app.settings import Settings


def _whatsapp(handler) -> WhatsAppCloudClient:  # noqa: ANN001
    return WhatsAppCloudClient(
        base_url="https://graph.test/v18.0",
        phone_number_id="12345",
        access_token="token",
        timeout_seconds=5,
        transport=httpx.MockTransport(handler),
    )


def _twilio(handler) -> TwilioSmsClient:  # noqa: ANN001
    return TwilioSmsClient(
        base_url="https://api.twilio.test/2010-04-01",
        account_sid="AC1",
        auth_token="secret",
        from_number="+5511000000000",
        timeout_seconds=5,
        transport=httpx.MockTransport(handler),
    )


def test_whatsapp_text_send_posts_cloud_api_payload() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"messages": [{"id": "wamid.abc"}]})

    result = _whatsapp(handler).send(OutboundSend(channel=MessageChannel.WHATSAPP, to="+5511999990000", body="Olá"))

    assert result.provider_message_id == "wamid.abc"
    request = seen[0]
    assert str(request.url) == "https://graph.test/v18.0/12345/messages"
    assert request.headers["Authorization"] == "Bearer token"
    body = json.loads(request.content)
    assert body["to"] == "5511999990000"
    assert body["type"] == "text"
    assert body["text"]["body"] == "Olá"


def test_whatsapp_template_and_media_payloads() -> None:
    client = _whatsapp(lambda request: httpx.Response(200, json={}))
    template = client.build_payload(
        OutboundSend(
            channel=MessageChannel.WHATSAPP,
            to="+5511999990000",
            body="rendered",
            template_name="visit_reminder",
            template_parameters=["Ana", "Rua A"],
        )
    )
    media = client.build_payload(
        OutboundSend(
            channel=MessageChannel.WHATSAPP,
            to="+5511999990000",
            body="Planta baixa",
            media_url="https://cdn.test/planta.PDF?sig=1",
        )
    )

    assert template["type"] == "template"
    assert template["template"]["components"][0]["parameters"] == [
        {"type": "text", "text": "Ana"},
        {"type": "text", "text": "Rua A"},
    ]
    assert media["type"] == "document"
    assert media["document"] == {"link": "https://cdn.test/planta.PDF?sig=1", "caption": "Planta baixa"}


@pytest.mark.parametrize(
    ("status_code", "error", "category", "retryable"),
    [
        (400, {"code": 131026, "message": "undeliverable"}, ProviderErrorCategory.INVALID_DESTINATION, False),
        (400, {"code": 132001, "message": "template missing"}, ProviderErrorCategory.TEMPLATE_REJECTED, False),
        (429, {"code": 130429, "message": "throughput"}, ProviderErrorCategory.RATE_LIMIT, True),
        (401, {"code": 190, "message": "expired"}, ProviderErrorCategory.AUTH, False),
        (503, {"message": "unavailable"}, ProviderErrorCategory.SERVER, True),
    ],
)
def test_whatsapp_error_responses_are_classified(
    status_code: int, error: dict, category: ProviderErrorCategory, retryable: bool
) -> None:
    client = _whatsapp(lambda request: httpx.Response(status_code, json={"error": error}))

    with pytest.raises(ProviderError) as exc_info:
        client.send(OutboundSend(channel=MessageChannel.WHATSAPP, to="+5511999990000", body="oi"))

    assert exc_info.value.category == category
    assert exc_info.value.retryable is retryable


def test_transport_timeout_is_retryable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(ProviderError) as exc_info:
        _whatsapp(handler).send(OutboundSend(channel=MessageChannel.WHATSAPP, to="+5511999990000", body="oi"))

    assert exc_info.value.category == ProviderErrorCategory.TIMEOUT
    assert exc_info.value.retryable is True


def test_twilio_send_uses_form_body_and_basic_auth() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"sid": "SM123", "status": "queued"})

    result = _twilio(handler).send(OutboundSend(channel=MessageChannel.SMS, to="+5511999990000", body="Olá"))

    assert result.provider_message_id == "SM123"
    request = seen[0]
    assert request.url.path == "/2010-04-01/Accounts/AC1/Messages.json"
    assert request.headers["Authorization"].startswith("Basic ")
    form = dict(httpx.QueryParams(request.content.decode()))
    assert form == {"To": "+5511999990000", "From": "+5511000000000", "Body": "Olá"}


def test_twilio_invalid_number_is_permanent() -> None:
    client = _twilio(lambda request: httpx.Response(400, json={"code": 21211, "message": "Invalid 'To'"}))

    with pytest.raises(ProviderError) as exc_info:
        client.send(OutboundSend(channel=MessageChannel.SMS, to="+5511999990000", body="oi"))

    assert exc_info.value.category == ProviderErrorCategory.INVALID_DESTINATION
    assert exc_info.value.error_code == "21211"


def test_map_provider_error_falls_back_on_status() -> None:
    assert map_provider_error(422).category == ProviderErrorCategory.VALIDATION
    assert map_provider_error(None).category == ProviderErrorCategory.UNKNOWN


def test_mock_mode_returns_mock_clients() -> None:
    client = get_provider_client(MessageChannel.SMS, Settings(provider_mode="mock"))

    assert isinstance(client, MockProviderClient)
    result = client.send(OutboundSend(channel=MessageChannel.SMS, to="+5511999990000", body="oi"))
    assert result.provider_message_id.startswith("mock-sms-")
