from __future__ import annotations

import base64
import hashlib
import hmac
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from .phone import InvalidPhoneNumberError, normalize_phone


class Channel(StrEnum):
    WHATSAPP = "whatsapp"
    SMS = "sms"


class StatusKind(StrEnum):
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


class NormalizedInbound(BaseModel):
    channel: Channel
    provider_message_id: str = Field(min_length=1)
    phone_number: str
    contact_name: str | None = None
    message_type: str = "text"
    body: str = ""
    media_ref: str | None = None
    received_at: datetime


class NormalizedStatus(BaseModel):
    channel: Channel
    provider_message_id: str = Field(min_length=1)
    status: StatusKind
    occurred_at: datetime
    error_code: str | None = None
    error_message: str | None = None


class NormalizedWebhook(BaseModel):
    inbound: list[NormalizedInbound] = Field(default_factory=list)
    statuses: list[NormalizedStatus] = Field(default_factory=list)
    skipped: int = 0


def _epoch_to_datetime(raw: Any) -> datetime:
    try:
        return datetime.fromtimestamp(int(str(raw)), tz=UTC)
    except (TypeError, ValueError, OverflowError):
        return datetime.now(UTC)


def _dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def extract_whatsapp_content(message: dict[str, Any]) -> tuple[str, str | None]:
    """Return the display text and media reference for one WhatsApp message."""
    message_type = str(message.get("type") or "text")
    if message_type == "text":
        return str(_dict(message.get("text")).get("body") or ""), None
    if message_type == "image":
        image = _dict(message.get("image"))
        return str(image.get("caption") or "[Image]"), image.get("id")
    if message_type == "document":
        document = _dict(message.get("document"))
        return str(document.get("caption") or document.get("filename") or "[Document]"), document.get("id")
    if message_type == "audio":
        return "[Audio]", _dict(message.get("audio")).get("id")
    if message_type == "video":
        video = _dict(message.get("video"))
        return str(video.get("caption") or "[Video]"), video.get("id")
    if message_type == "sticker":
        return "[Sticker]", _dict(message.get("sticker")).get("id")
    if message_type == "location":
        location = _dict(message.get("location"))
        return f"[Location: {location.get('name') or ''}]", None
    if message_type == "contacts":
        return "[Contacts]", None
    if message_type == "button":
        return str(_dict(message.get("button")).get("text") or ""), None
    if message_type == "interactive":
        interactive = _dict(message.get("interactive"))
        for key in ("button_reply", "list_reply"):
            reply = _dict(interactive.get(key))
            if reply.get("title"):
                return str(reply["title"]), None
        return "", None
    return f"[{message_type}]", None


def parse_whatsapp_webhook(payload: dict[str, Any]) -> NormalizedWebhook:
    """Flatten a WhatsApp Cloud API webhook into inbound messages and statuses.

    Malformed entries are counted in ``skipped`` and never raise, so a bad
    item cannot make the provider retry the whole delivery.
    """
    result = NormalizedWebhook()
    if payload.get("object") != "whatsapp_business_account":
        return result

    for entry in _list(payload.get("entry")):
        for change in _list(_dict(entry).get("changes")):
            change = _dict(change)
            if change.get("field") != "messages":
                continue
            value = _dict(change.get("value"))
            names: dict[str, str] = {}
            for contact in _list(value.get("contacts")):
                contact = _dict(contact)
                name = _dict(contact.get("profile")).get("name")
                if contact.get("wa_id") and name:
                    names[str(contact["wa_id"])] = str(name)

            for message in _list(value.get("messages")):
                message = _dict(message)
                sender = str(message.get("from") or "")
                message_id = str(message.get("id") or "")
                try:
                    phone = normalize_phone(sender)
                except InvalidPhoneNumberError:
                    result.skipped += 1
                    continue
                if not message_id:
                    result.skipped += 1
                    continue
                body, media_ref = extract_whatsapp_content(message)
                result.inbound.append(
                    NormalizedInbound(
                        channel=Channel.WHATSAPP,
                        provider_message_id=message_id,
                        phone_number=phone,
                        contact_name=names.get(sender),
                        message_type=str(message.get("type") or "text"),
                        body=body,
                        media_ref=str(media_ref) if media_ref else None,
                        received_at=_epoch_to_datetime(message.get("timestamp")),
                    )
                )

            for status in _list(value.get("statuses")):
                status = _dict(status)
                try:
                    kind = StatusKind(str(status.get("status")))
                except ValueError:
                    result.skipped += 1
                    continue
                if not status.get("id"):
                    result.skipped += 1
                    continue
                errors = _list(status.get("errors"))
                first_error = _dict(errors[0]) if errors else {}
                result.statuses.append(
                    NormalizedStatus(
                        channel=Channel.WHATSAPP,
                        provider_message_id=str(status["id"]),
                        status=kind,
                        occurred_at=_epoch_to_datetime(status.get("timestamp")),
                        error_code=str(first_error["code"]) if first_error.get("code") is not None else None,
                        error_message=first_error.get("message") or first_error.get("title"),
                    )
                )
    return result


TWILIO_STATUS_MAP: dict[str, StatusKind] = {
    "sent": StatusKind.SENT,
    "delivered": StatusKind.DELIVERED,
    "read": StatusKind.READ,
    "failed": StatusKind.FAILED,
    "undelivered": StatusKind.FAILED,
}


def parse_twilio_sms_webhook(form: dict[str, Any], now: datetime | None = None) -> NormalizedWebhook:
    """Normalize a Twilio inbound SMS or status callback form body."""
    result = NormalizedWebhook()
    occurred_at = now or datetime.now(UTC)
    message_sid = str(form.get("MessageSid") or form.get("SmsSid") or "")
    if not message_sid:
        result.skipped += 1
        return result

    raw_status = form.get("MessageStatus") or form.get("SmsStatus")
    if form.get("Body") is not None and raw_status in (None, "received"):
        try:
            phone = normalize_phone(str(form.get("From") or ""))
        except InvalidPhoneNumberError:
            result.skipped += 1
            return result
        media_ref = form.get("MediaUrl0")
        body = str(form.get("Body") or "")
        result.inbound.append(
            NormalizedInbound(
                channel=Channel.SMS,
                provider_message_id=message_sid,
                phone_number=phone,
                message_type="media" if media_ref else "text",
                body=body or ("[Media]" if media_ref else ""),
                media_ref=str(media_ref) if media_ref else None,
                received_at=occurred_at,
            )
        )
        return result

    kind = TWILIO_STATUS_MAP.get(str(raw_status or "").lower())
    if kind is None:
        # queued, accepted and sending carry no delivery progress
        result.skipped += 1
        return result
    error_code = form.get("ErrorCode")
    result.statuses.append(
        NormalizedStatus(
            channel=Channel.SMS,
            provider_message_id=message_sid,
            status=kind,
            occurred_at=occurred_at,
            error_code=str(error_code) if error_code else None,
            error_message=form.get("ErrorMessage") or None,
        )
    )
    return result


def verify_whatsapp_signature(app_secret: str, body: bytes, header_value: str | None) -> bool:
    """Check ``X-Hub-Signature-256`` (``sha256=<hex>``) against the raw request body."""
    if not header_value or not header_value.startswith("sha256="):
        return False
    expected = hmac.new(app_secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, header_value.removeprefix("sha256="))


def twilio_signature(auth_token: str, url: str, params: dict[str, str]) -> str:
    payload = url + "".join(f"{key}{params[key]}" for key in sorted(params))
    digest = hmac.new(auth_token.encode("utf-8"), payload.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_twilio_signature(auth_token: str, url: str, params: dict[str, str], header_value: str | None) -> bool:
    if not header_value:
        return False
    return hmac.compare_digest(twilio_signature(auth_token, url, params), header_value)
