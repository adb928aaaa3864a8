from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from packages.messaging import Channel, StatusKind, parse_twilio_sms_webhook, parse_whatsapp_webhook


def _whatsapp_payload(value: dict[str, Any]) -> dict[str, Any]:
    return {
        "object": "whatsapp_business_account",
        "entry": [{"id": "waba-1", "changes": [{"field": "messages", "value": value}]}],
    }


def test_whatsapp_text_message_is_normalized() -> None:
    payload = _whatsapp_payload(
        {
            "contacts": [{"wa_id": "5511999990000", "profile": {"name": "Ana"}}],
            "messages": [
                {
                    "from": "5511999990000",
                    "id": "wamid.in-1",
                    "timestamp": "1704715200",
                    "type": "text",
                    "text": {"body": "Quero saber o preço"},
                }
            ],
        }
    )

    result = parse_whatsapp_webhook(payload)

    assert result.skipped == 0
    assert len(result.inbound) == 1
    inbound = result.inbound[0]
    assert inbound.channel == Channel.WHATSAPP
    assert inbound.phone_number == "+5511999990000"
    assert inbound.contact_name == "Ana"
    assert inbound.body == "Quero saber o preço"
    assert inbound.received_at == datetime(2024, 1, 8, 12, 0, tzinfo=UTC)


def test_whatsapp_media_and_interactive_messages_get_display_text() -> None:
    payload = _whatsapp_payload(
        {
            "messages": [
                {"from": "5511999990000", "id": "wamid.img", "timestamp": "1", "type": "image", "image": {"id": "media-1"}},
                {
                    "from": "5511999990000",
                    "id": "wamid.btn",
                    "timestamp": "1",
                    "type": "interactive",
                    "interactive": {"button_reply": {"id": "yes", "title": "Confirmo"}},
                },
                {"from": "5511999990000", "id": "wamid.loc", "timestamp": "1", "type": "location", "location": {"name": "Centro"}},
            ]
        }
    )

    bodies = {item.provider_message_id: (item.body, item.media_ref) for item in parse_whatsapp_webhook(payload).inbound}

    assert bodies["wamid.img"] == ("[Image]", "media-1")
    assert bodies["wamid.btn"] == ("Confirmo", None)
    assert bodies["wamid.loc"] == ("[Location: Centro]", None)


def test_whatsapp_statuses_carry_first_error() -> None:
    payload = _whatsapp_payload(
        {
            "statuses": [
                {"id": "wamid.out-1", "status": "delivered", "timestamp": "1704715200"},
                {
                    "id": "wamid.out-2",
                    "status": "failed",
                    "timestamp": "1704715260",
                    "errors": [{"code": 131026, "title": "Message undeliverable"}],
                },
            ]
        }
    )

    statuses = parse_whatsapp_webhook(payload).statuses

    assert [item.status for item in statuses] == [StatusKind.DELIVERED, StatusKind.FAILED]
    assert statuses[1].error_code == "131026"
    assert statuses[1].error_message == "Message undeliverable"


def test_whatsapp_malformed_items_are_skipped_not_raised() -> None:
    payload = _whatsapp_payload(
        {
            "messages": [
                {"from": "not-a-number", "id": "wamid.bad", "type": "text", "text": {"body": "oi"}},
                {"from": "5511999990000", "type": "text", "text": {"body": "sem id"}},
                "garbage",
            ],
            "statuses": [{"id": "wamid.x", "status": "deleted"}, {"status": "sent"}],
        }
    )

    result = parse_whatsapp_webhook(payload)

    assert result.inbound == []
    assert result.statuses == []
    assert result.skipped == 5


def test_whatsapp_ignores_other_objects_and_fields() -> None:
    assert parse_whatsapp_webhook({"object": "page", "entry": []}).inbound == []
    payload = {
        "object": "whatsapp_business_account",
        "entry": [{"changes": [{"field": "account_update", "value": {"messages": [{"id": "x"}]}}]}],
    }
    result = parse_whatsapp_webhook(payload)
    assert result.inbound == [] and result.skipped == 0


def test_twilio_inbound_sms() -> None:
    now = datetime(2024, 1, 8, 12, 0, tzinfo=UTC)
    result = parse_twilio_sms_webhook(
        {"MessageSid": "SM123", "From": "+5511999990000", "To": "+5511000000000", "Body": "STOP", "SmsStatus": "received"},
        now=now,
    )

    assert len(result.inbound) == 1
    assert result.inbound[0].channel == Channel.SMS
    assert result.inbound[0].body == "STOP"
    assert result.inbound[0].received_at == now


def test_twilio_status_callbacks() -> None:
    delivered = parse_twilio_sms_webhook({"MessageSid": "SM1", "MessageStatus": "delivered"})
    undelivered = parse_twilio_sms_webhook({"MessageSid": "SM2", "MessageStatus": "undelivered", "ErrorCode": "30003"})
    queued = parse_twilio_sms_webhook({"MessageSid": "SM3", "MessageStatus": "queued"})

    assert delivered.statuses[0].status == StatusKind.DELIVERED
    assert undelivered.statuses[0].status == StatusKind.FAILED
    assert undelivered.statuses[0].error_code == "30003"
    assert queued.statuses == [] and queued.skipped == 1


def test_twilio_without_sid_is_skipped() -> None:
    result = parse_twilio_sms_webhook({"Body": "oi", "From": "+5511999990000"})
    assert result.inbound == [] and result.skipped == 1
