from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from app.main import app
from app.models import Conversation, ConversationMessage, MessageChannel
from app.settings import settings
from conftest import TEST_TENANT_ID
from packages.messaging import twilio_signature

WHATSAPP_URL = f"/webhooks/{TEST_TENANT_ID}/whatsapp"
TWILIO_SMS_URL = f"/webhooks/{TEST_TENANT_ID}/twilio/sms"


def _whatsapp_text(message_id: str, body: str) -> dict[str, Any]:
    return {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "id": "waba-1",
                "changes": [
                    {
                        "field": "messages",
                        "value": {
                            "contacts": [{"wa_id": "5511999990000", "profile": {"name": "Ana"}}],
                            "messages": [
                                {
                                    "from": "5511999990000",
                                    "id": message_id,
                                    "timestamp": "1704715200",
                                    "type": "text",
                                    "text": {"body": body},
                                }
                            ],
                        },
                    }
                ],
            }
        ],
    }


async def test_whatsapp_verification_handshake() -> None:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        accepted = await client.get(
            WHATSAPP_URL,
            params={"hub.mode": "subscribe", "hub.verify_token": settings.whatsapp_verify_token, "hub.challenge": "42"},
        )
        rejected = await client.get(
            WHATSAPP_URL,
            params={"hub.mode": "subscribe", "hub.verify_token": "wrong", "hub.challenge": "42"},
        )

    assert accepted.status_code == 200
    assert accepted.text == "42"
    assert rejected.status_code == 403


async def test_whatsapp_inbound_is_stored_once(api_headers: dict[str, str], session_factory: sessionmaker[Session]) -> None:
    payload = _whatsapp_text("wamid.api-1", "Bom dia")
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        first = await client.post(WHATSAPP_URL, json=payload)
        redelivered = await client.post(WHATSAPP_URL, json=payload)

    assert first.status_code == 200
    assert first.json()["inbound_created"] == 1
    assert redelivered.json()["inbound_created"] == 0
    assert redelivered.json()["duplicates"] == 1
    with session_factory() as db:
        conversation = db.scalar(select(Conversation).where(Conversation.tenant_id == TEST_TENANT_ID))
        assert conversation is not None
        assert conversation.contact_name == "Ana"
        assert conversation.unread_count == 1
        assert db.scalar(select(func.count()).select_from(ConversationMessage)) == 1


async def test_whatsapp_signature_is_enforced_when_configured(
    api_headers: dict[str, str], monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(settings, "whatsapp_app_secret", "app-secret")
    raw = json.dumps(_whatsapp_text("wamid.api-2", "Oi")).encode()
    digest = hmac.new(b"app-secret", raw, hashlib.sha256).hexdigest()

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        unsigned = await client.post(WHATSAPP_URL, content=raw, headers={"Content-Type": "application/json"})
        signed = await client.post(
            WHATSAPP_URL,
            content=raw,
            headers={"Content-Type": "application/json", "X-Hub-Signature-256": f"sha256={digest}"},
        )

    assert unsigned.status_code == 401
    assert signed.status_code == 200
    assert signed.json()["inbound_created"] == 1


async def test_unparseable_whatsapp_body_is_acknowledged(api_headers: dict[str, str]) -> None:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post(WHATSAPP_URL, content=b"not json", headers={"Content-Type": "application/json"})

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "inbound_created": 0, "duplicates": 0, "statuses_applied": 0}


async def test_twilio_inbound_returns_empty_twiml(api_headers: dict[str, str], session_factory: sessionmaker[Session]) -> None:
    form = {"MessageSid": "SM100", "From": "+5511988880000", "To": "+5511900000000", "Body": "Oi"}
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post(TWILIO_SMS_URL, data=form)

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/xml")
    assert "<Response></Response>" in response.text
    with session_factory() as db:
        message = db.scalar(select(ConversationMessage).where(ConversationMessage.provider_message_id == "SM100"))
        assert message is not None
        assert message.channel == MessageChannel.SMS


async def test_twilio_signature_is_enforced_when_enabled(
    api_headers: dict[str, str], monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(settings, "twilio_validate_signatures", True)
    monkeypatch.setattr(settings, "twilio_auth_token", "twilio-token")
    form = {"MessageSid": "SM200", "From": "+5511988880000", "Body": "Oi"}
    signature = twilio_signature("twilio-token", f"http://test{TWILIO_SMS_URL}", form)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        forged = await client.post(TWILIO_SMS_URL, data=form, headers={"X-Twilio-Signature": "bogus"})
        signed = await client.post(TWILIO_SMS_URL, data=form, headers={"X-Twilio-Signature": signature})

    assert forged.status_code == 401
    assert signed.status_code == 200


async def test_failed_inbound_returns_500_and_is_stored_on_redelivery(
    api_headers: dict[str, str], session_factory: sessionmaker[Session], monkeypatch: pytest.MonkeyPatch
) -> None:
    import app.services.webhook_ingestion as ingestion

    def _broken(*args, **kwargs):  # noqa: ANN002, ANN003, ANN202
        raise RuntimeError("auto-responder store unavailable")

    payload = _whatsapp_text("wamid.api-retry", "Bom dia")
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        monkeypatch.setattr(ingestion, "process_inbound_message", _broken)
        failed = await client.post(WHATSAPP_URL, json=payload)
        monkeypatch.undo()
        redelivered = await client.post(WHATSAPP_URL, json=payload)

    assert failed.status_code == 500
    assert redelivered.status_code == 200
    assert redelivered.json()["inbound_created"] == 1
    with session_factory() as db:
        stored = db.scalar(
            select(func.count()).select_from(ConversationMessage).where(ConversationMessage.provider_message_id == "wamid.api-retry")
        )
        assert stored == 1
