from __future__ import annotations

import re

E164_PATTERN = re.compile(r"^\+[1-9]\d{7,14}$")
_STRIP_PATTERN = re.compile(r"[\s\-().]")

DEFAULT_COUNTRY_CALLING_CODE = "55"


class InvalidPhoneNumberError(ValueError):
    def __init__(self, raw: str) -> None:
        super().__init__(f"phone number is not valid E.164: {raw!r}")
        self.raw = raw


def is_e164(value: str | None) -> bool:
    return bool(value) and E164_PATTERN.match(value or "") is not None


def normalize_phone(raw: str | None, default_calling_code: str = DEFAULT_COUNTRY_CALLING_CODE) -> str:
    """Normalize provider or user supplied numbers to E.164.

    WhatsApp reports senders as bare digits ("5511999990000"), Twilio prefixes
    its addresses with a channel ("whatsapp:+55..."). National Brazilian
    numbers (10 or 11 digits) get the default calling code.
    """
    if raw is None:
        raise InvalidPhoneNumberError("")
    value = raw.strip()
    if ":" in value:
        value = value.split(":", 1)[1]
    value = _STRIP_PATTERN.sub("", value)
    if value.startswith("00"):
        value = "+" + value[2:]
    if not value.startswith("+"):
        if not value.isdigit():
            raise InvalidPhoneNumberError(raw)
        if len(value) in {10, 11} and default_calling_code:
            value = f"+{default_calling_code}{value}"
        else:
            value = f"+{value}"
    if not is_e164(value):
        raise InvalidPhoneNumberError(raw)
    return value


def mask_phone(value: str) -> str:
    if len(value) <= 7:
        return "*" * len(value)
    return f"{value[:3]}{'*' * (len(value) - 7)}{value[-4:]}"
