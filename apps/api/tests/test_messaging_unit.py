from __future__ import annotations

import base64
import hashlib
import hmac
from datetime import UTC, datetime

import pytest
from pydantic import ValidationError

from packages.messaging import (
    BusinessHours,
    DaySchedule,
    InvalidPhoneNumberError,
    KeywordAction,
    TemplateRenderError,
    TokenBucket,
    detect_keyword_action,
    estimate_sms_cost,
    extract_variables,
    is_within_business_hours,
    mask_phone,
    normalize_phone,
    render_template,
    sms_segments,
    verify_twilio_signature,
    verify_whatsapp_signature,
)


class _FakeMonotonic:
    def __init__(self) -> None:
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value


def test_token_bucket_spends_capacity_then_refuses() -> None:
    clock = _FakeMonotonic()
    bucket = TokenBucket(capacity=3, window_seconds=60, clock=clock)

    assert [bucket.try_acquire() for _ in range(4)] == [True, True, True, False]
    assert bucket.available() == 0


def test_token_bucket_refills_linearly_and_caps_at_capacity() -> None:
    clock = _FakeMonotonic()
    bucket = TokenBucket(capacity=3, window_seconds=60, clock=clock)
    for _ in range(3):
        bucket.try_acquire()

    clock.value += 20
    assert bucket.try_acquire() is True
    assert bucket.try_acquire() is False

    clock.value += 3600
    assert bucket.available() == 3


def test_token_bucket_ignores_clock_going_backwards() -> None:
    clock = _FakeMonotonic()
    bucket = TokenBucket(capacity=2, window_seconds=60, clock=clock)
    bucket.try_acquire()
    clock.value -= 500
    assert bucket.available() == 1


def test_token_bucket_release_returns_a_token_up_to_capacity() -> None:
    clock = _FakeMonotonic()
    bucket = TokenBucket(capacity=2, window_seconds=60, clock=clock)
    bucket.try_acquire()
    bucket.try_acquire()

    bucket.release()
    assert bucket.available() == 1
    bucket.release()
    bucket.release()
    assert bucket.available() == 2


def test_token_bucket_rejects_invalid_configuration() -> None:
    with pytest.raises(ValueError):
        TokenBucket(capacity=0)
    with pytest.raises(ValueError):
        TokenBucket(capacity=5, window_seconds=0)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("5511999990000", "+5511999990000"),
        ("+55 (11) 99999-0000", "+5511999990000"),
        ("(11) 99999-0000", "+5511999990000"),
        ("whatsapp:+5511999990000", "+5511999990000"),
        ("0044 20 7946 0958", "+442079460958"),
    ],
)
def test_normalize_phone_produces_e164(raw: str, expected: str) -> None:
    assert normalize_phone(raw) == expected


@pytest.mark.parametrize("raw", ["", "abc", "+0123", "12345", None])
def test_normalize_phone_rejects_garbage(raw: str | None) -> None:
    with pytest.raises(InvalidPhoneNumberError):
        normalize_phone(raw)


def test_mask_phone_keeps_prefix_and_last_digits() -> None:
    assert mask_phone("+5511999990000") == "+55*******0000"


@pytest.mark.parametrize(
    ("body", "expected"),
    [
        ("STOP", KeywordAction.OPT_OUT),
        ("  parar! ", KeywordAction.OPT_OUT),
        ("Cancelar.", KeywordAction.OPT_OUT),
        ("STOP por favor", KeywordAction.OPT_OUT),
        ("parar de enviar", KeywordAction.OPT_OUT),
        ("Por favor, quero SAIR da lista", KeywordAction.OPT_OUT),
        ("start", KeywordAction.OPT_IN),
        ("Começar", KeywordAction.OPT_IN),
        ("sim, quero visitar", None),
        ("start amanhã", None),
        ("stopped by yesterday", None),
        ("descancelar", None),
        ("", None),
        (None, None),
    ],
)
def test_detect_keyword_action_matches_stop_words_and_bare_start(body: str | None, expected: KeywordAction | None) -> None:
    assert detect_keyword_action(body) == expected


def test_render_template_substitutes_every_occurrence() -> None:
    body = "Olá {{nome}}! {{ nome }}, sua visita é às {{hora}}."
    assert extract_variables(body) == ["nome", "hora"]
    assert render_template(body, {"nome": "Ana", "hora": "10h"}) == "Olá Ana! Ana, sua visita é às 10h."


def test_render_template_reports_every_missing_variable() -> None:
    with pytest.raises(TemplateRenderError) as exc_info:
        render_template("{{nome}} {{data}} {{hora}}", {"nome": "Ana", "data": "  "}, template_name="visit")

    assert exc_info.value.missing == ["data", "hora"]
    assert "visit" in str(exc_info.value)


def test_sms_segments_and_cost() -> None:
    assert sms_segments("") == 0
    assert sms_segments("a" * 160) == 1
    assert sms_segments("a" * 161) == 2
    assert sms_segments("a" * 307) == 3
    assert estimate_sms_cost("a" * 161) == 0.015


def _weekday_hours() -> BusinessHours:
    return BusinessHours(enabled=True, timezone="America/Sao_Paulo")


@pytest.mark.parametrize(
    ("moment", "expected"),
    [
        (datetime(2024, 1, 8, 13, 0, tzinfo=UTC), True),  # Monday 10:00 local
        (datetime(2024, 1, 8, 22, 0, tzinfo=UTC), False),  # Monday 19:00 local
        (datetime(2024, 1, 6, 15, 0, tzinfo=UTC), True),  # Saturday 12:00 local
        (datetime(2024, 1, 6, 17, 0, tzinfo=UTC), False),  # Saturday 14:00 local
        (datetime(2024, 1, 7, 15, 0, tzinfo=UTC), False),  # Sunday
    ],
)
def test_business_hours_uses_tenant_timezone(moment: datetime, expected: bool) -> None:
    assert is_within_business_hours(_weekday_hours(), moment) is expected


def test_disabled_business_hours_are_always_open() -> None:
    assert is_within_business_hours(BusinessHours(enabled=False), datetime(2024, 1, 7, 3, 0, tzinfo=UTC)) is True
    assert is_within_business_hours(None) is True


def test_business_hours_validation() -> None:
    with pytest.raises(ValidationError):
        BusinessHours(timezone="Mars/Olympus_Mons")
    with pytest.raises(ValidationError):
        DaySchedule(start="18:00", end="09:00")
    with pytest.raises(ValidationError):
        BusinessHours(days={"funday": DaySchedule()})


def test_whatsapp_signature_verification() -> None:
    body = b'{"object":"whatsapp_business_account"}'
    digest = hmac.new(b"app-secret", body, hashlib.sha256).hexdigest()

    assert verify_whatsapp_signature("app-secret", body, f"sha256={digest}") is True
    assert verify_whatsapp_signature("other-secret", body, f"sha256={digest}") is False
    assert verify_whatsapp_signature("app-secret", body, digest) is False
    assert verify_whatsapp_signature("app-secret", body, None) is False


def test_twilio_signature_verification() -> None:
    url = "https://courier.example.com/webhooks/t/twilio/sms"
    params = {"MessageSid": "SM1", "From": "+5511999990000", "Body": "oi"}
    payload = url + "BodyoiFrom+5511999990000MessageSidSM1"
    expected = base64.b64encode(hmac.new(b"token", payload.encode(), hashlib.sha1).digest()).decode()

    assert verify_twilio_signature("token", url, params, expected) is True
    assert verify_twilio_signature("token", url, {**params, "Body": "tchau"}, expected) is False
    assert verify_twilio_signature("token", url, params, None) is False
