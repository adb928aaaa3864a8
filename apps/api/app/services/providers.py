from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol

import httpx

from ..models import MessageChannel
from ..settings import Settings, settings

logger = logging.getLogger(__name__)


class ProviderErrorCategory(StrEnum):
    TIMEOUT = "timeout"
    NETWORK = "network"
    RATE_LIMIT = "rate_limit"
    SERVER = "server"
    INVALID_DESTINATION = "invalid_destination"
    TEMPLATE_REJECTED = "template_rejected"
    VALIDATION = "validation"
    AUTH = "auth"
    UNKNOWN = "unknown"


RETRYABLE_CATEGORIES = frozenset(
    {
        ProviderErrorCategory.TIMEOUT,
        ProviderErrorCategory.NETWORK,
        ProviderErrorCategory.RATE_LIMIT,
        ProviderErrorCategory.SERVER,
    }
)

# Provider error codes that mean the recipient can never be reached as addressed.
INVALID_DESTINATION_CODES = frozenset({"131026", "131030", "21211", "21214", "21612", "21614", "21610"})
# WhatsApp template failures: missing, paused, disabled or parameter mismatch.
TEMPLATE_REJECTED_CODES = frozenset({"132000", "132001", "132005", "132007", "132012", "132015", "132016"})
RATE_LIMIT_CODES = frozenset({"4", "80007", "130429", "131048", "131056", "20429"})


class ProviderError(Exception):
    def __init__(
        self,
        category: ProviderErrorCategory,
        message: str,
        status_code: int | None = None,
        provider_code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.category = category
        self.message = message
        self.status_code = status_code
        self.provider_code = provider_code

    @property
    def retryable(self) -> bool:
        return self.category in RETRYABLE_CATEGORIES

    @property
    def error_code(self) -> str:
        return self.provider_code or self.category.value


@dataclass
class OutboundSend:
    channel: MessageChannel
    to: str
    body: str
    template_name: str | None = None
    template_language: str = "pt_BR"
    template_parameters: list[str] = field(default_factory=list)
    media_url: str | None = None


@dataclass
class ProviderSendResult:
    provider_message_id: str
    raw_ref: str


class ProviderClient(Protocol):
    channel: MessageChannel

    def send(self, message: OutboundSend) -> ProviderSendResult: ...

    def fetch_number_type(self, phone_number: str) -> str: ...


def map_provider_error(
    status_code: int | None,
    provider_code: str | None = None,
    message: str = "provider request failed",
) -> ProviderError:
    code = str(provider_code) if provider_code is not None else None
    if code in INVALID_DESTINATION_CODES:
        return ProviderError(ProviderErrorCategory.INVALID_DESTINATION, message, status_code, code)
    if code in TEMPLATE_REJECTED_CODES:
        return ProviderError(ProviderErrorCategory.TEMPLATE_REJECTED, message, status_code, code)
    if status_code == 429 or code in RATE_LIMIT_CODES:
        return ProviderError(ProviderErrorCategory.RATE_LIMIT, message, status_code, code)
    if status_code in {401, 403}:
        return ProviderError(ProviderErrorCategory.AUTH, message, status_code, code)
    if status_code is not None and 400 <= status_code < 500:
        return ProviderError(ProviderErrorCategory.VALIDATION, message, status_code, code)
    if status_code is not None and status_code >= 500:
        return ProviderError(ProviderErrorCategory.SERVER, message, status_code, code)
    return ProviderError(ProviderErrorCategory.UNKNOWN, message, status_code, code)


def classify_transport_error(exc: httpx.HTTPError) -> ProviderError:
    if isinstance(exc, httpx.TimeoutException):
        return ProviderError(ProviderErrorCategory.TIMEOUT, f"provider timeout: {exc.__class__.__name__}")
    return ProviderError(ProviderErrorCategory.NETWORK, f"provider transport error: {exc.__class__.__name__}")


def infer_media_type(media_url: str) -> str:
    path = media_url.lower().split("?", 1)[0]
    if path.endswith((".jpg", ".jpeg", ".png", ".webp")):
        return "image"
    if path.endswith((".mp4", ".3gp")):
        return "video"
    if path.endswith((".mp3", ".ogg", ".aac", ".amr", ".m4a")):
        return "audio"
    return "document"


class MockProviderClient:
    """Accepts every send. Used when PROVIDER_MODE=mock."""

    def __init__(self, channel: MessageChannel) -> None:
        self.channel = channel
        self.sent: list[OutboundSend] = []

    def send(self, message: OutboundSend) -> ProviderSendResult:
        self.sent.append(message)
        return ProviderSendResult(
            provider_message_id=f"mock-{self.channel.value}-{uuid.uuid4().hex[:16]}",
            raw_ref="mock",
        )

    def fetch_number_type(self, phone_number: str) -> str:
        return "mobile"


class WhatsAppCloudClient:
    channel = MessageChannel.WHATSAPP

    def __init__(
        self,
        base_url: str,
        phone_number_id: str,
        access_token: str,
        timeout_seconds: float,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.phone_number_id = phone_number_id
        self.access_token = access_token
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(
            timeout=self.timeout_seconds,
            transport=self.transport,
            headers={"Authorization": f"Bearer {self.access_token}"},
        )

    def build_payload(self, message: OutboundSend) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": message.to.lstrip("+"),
        }
        if message.template_name:
            components: list[dict[str, Any]] = []
            if message.template_parameters:
                components.append(
                    {
                        "type": "body",
                        "parameters": [{"type": "text", "text": value} for value in message.template_parameters],
                    }
                )
            payload["type"] = "template"
            payload["template"] = {
                "name": message.template_name,
                "language": {"code": message.template_language},
                "components": components,
            }
        elif message.media_url:
            media_type = infer_media_type(message.media_url)
            media: dict[str, Any] = {"link": message.media_url}
            if message.body and media_type in {"image", "video", "document"}:
                media["caption"] = message.body
            payload["type"] = media_type
            payload[media_type] = media
        else:
            payload["type"] = "text"
            payload["text"] = {"preview_url": False, "body": message.body}
        return payload

    def _raise_for_response(self, response: httpx.Response) -> None:
        if response.status_code < 400:
            return
        provider_code: str | None = None
        detail = f"whatsapp request failed with status {response.status_code}"
        try:
            error = response.json().get("error", {})
        except ValueError:
            error = {}
        if isinstance(error, dict):
            if error.get("code") is not None:
                provider_code = str(error["code"])
            detail = str(error.get("message") or detail)
        logger.warning("whatsapp send rejected", extra={"status_code": response.status_code, "provider_code": provider_code})
        raise map_provider_error(response.status_code, provider_code=provider_code, message=detail)

    def send(self, message: OutboundSend) -> ProviderSendResult:
        url = f"{self.base_url}/{self.phone_number_id}/messages"
        try:
            with self._client() as client:
                response = client.post(url, json=self.build_payload(message))
        except httpx.HTTPError as exc:
            raise classify_transport_error(exc) from exc
        self._raise_for_response(response)
        messages = response.json().get("messages") or []
        if not messages or not messages[0].get("id"):
            raise ProviderError(ProviderErrorCategory.UNKNOWN, "whatsapp response missing message id", response.status_code)
        return ProviderSendResult(provider_message_id=str(messages[0]["id"]), raw_ref="whatsapp.messages.create")

    def fetch_number_type(self, phone_number: str) -> str:
        # The Cloud API has no line-type lookup; every WhatsApp recipient is a mobile account.
        return "mobile"


class TwilioSmsClient:
    channel = MessageChannel.SMS

    def __init__(
        self,
        base_url: str,
        account_sid: str,
        auth_token: str,
        from_number: str,
        timeout_seconds: float,
        status_callback_url: str | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.timeout_seconds = timeout_seconds
        self.status_callback_url = status_callback_url
        self.transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(
            timeout=self.timeout_seconds,
            transport=self.transport,
            auth=(self.account_sid, self.auth_token),
        )

    def _raise_for_response(self, response: httpx.Response) -> None:
        if response.status_code < 400:
            return
        try:
            body = response.json()
        except ValueError:
            body = {}
        provider_code = str(body["code"]) if isinstance(body, dict) and body.get("code") is not None else None
        detail = str(body.get("message") if isinstance(body, dict) and body.get("message") else response.status_code)
        logger.warning("twilio request rejected", extra={"status_code": response.status_code, "provider_code": provider_code})
        raise map_provider_error(response.status_code, provider_code=provider_code, message=detail)

    def send(self, message: OutboundSend) -> ProviderSendResult:
        form: dict[str, str] = {"To": message.to, "From": self.from_number, "Body": message.body}
        if message.media_url:
            form["MediaUrl"] = message.media_url
        if self.status_callback_url:
            form["StatusCallback"] = self.status_callback_url
        url = f"{self.base_url}/Accounts/{self.account_sid}/Messages.json"
        try:
            with self._client() as client:
                response = client.post(url, data=form)
        except httpx.HTTPError as exc:
            raise classify_transport_error(exc) from exc
        self._raise_for_response(response)
        sid = response.json().get("sid")
        if not sid:
            raise ProviderError(ProviderErrorCategory.UNKNOWN, "twilio response missing sid", response.status_code)
        return ProviderSendResult(provider_message_id=str(sid), raw_ref="twilio.messages.create")

    def fetch_number_type(self, phone_number: str) -> str:
        url = f"https://lookups.twilio.com/v2/PhoneNumbers/{phone_number}"
        try:
            with self._client() as client:
                response = client.get(url, params={"Fields": "line_type_intelligence"})
        except httpx.HTTPError as exc:
            raise classify_transport_error(exc) from exc
        self._raise_for_response(response)
        line_type = (response.json().get("line_type_intelligence") or {}).get("type")
        if line_type in {"mobile", "landline"}:
            return line_type
        if line_type in {"fixedVoip", "nonFixedVoip"}:
            return "voip"
        return "unknown"


def get_provider_client(channel: MessageChannel, config: Settings | None = None) -> ProviderClient:
    active = config or settings
    if active.provider_mode != "live":
        return MockProviderClient(channel)
    if channel == MessageChannel.WHATSAPP:
        return WhatsAppCloudClient(
            base_url=active.whatsapp_api_base_url,
            phone_number_id=active.whatsapp_phone_number_id or "",
            access_token=active.whatsapp_access_token or "",
            timeout_seconds=active.provider_timeout_seconds,
        )
    return TwilioSmsClient(
        base_url=active.twilio_api_base_url,
        account_sid=active.twilio_account_sid or "",
        auth_token=active.twilio_auth_token or "",
        from_number=active.twilio_from_number or "",
        timeout_seconds=active.provider_timeout_seconds,
    )
