from __future__ import annotations

import uuid
from typing import Any

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from packages.messaging import BusinessHours

from ..models import TenantMessagingSettings

DEFAULT_TENANT_SETTINGS: dict[str, Any] = {
    "auto_reply_enabled": True,
    "send_opt_out_confirmation": True,
    "default_channel": "whatsapp",
    "business_hours": BusinessHours().model_dump(),
}


def _safe_bool(value: Any, fallback: bool) -> bool:
    return value if isinstance(value, bool) else fallback


def _safe_channel(value: Any, fallback: str) -> str:
    if isinstance(value, str) and value in {"whatsapp", "sms"}:
        return value
    return fallback


def _safe_business_hours(value: Any) -> dict[str, Any]:
    if not isinstance(value, dict):
        return dict(DEFAULT_TENANT_SETTINGS["business_hours"])
    try:
        return BusinessHours.model_validate(value).model_dump()
    except ValidationError:
        return dict(DEFAULT_TENANT_SETTINGS["business_hours"])


def normalize_settings(raw: dict[str, Any] | None) -> dict[str, Any]:
    source = raw or {}
    normalized = dict(DEFAULT_TENANT_SETTINGS)
    normalized["auto_reply_enabled"] = _safe_bool(
        source.get("auto_reply_enabled"), DEFAULT_TENANT_SETTINGS["auto_reply_enabled"]
    )
    normalized["send_opt_out_confirmation"] = _safe_bool(
        source.get("send_opt_out_confirmation"), DEFAULT_TENANT_SETTINGS["send_opt_out_confirmation"]
    )
    normalized["default_channel"] = _safe_channel(
        source.get("default_channel"), DEFAULT_TENANT_SETTINGS["default_channel"]
    )
    normalized["business_hours"] = _safe_business_hours(source.get("business_hours"))
    return normalized


def get_or_create_tenant_settings(db: Session, tenant_id: uuid.UUID) -> TenantMessagingSettings:
    row = db.scalar(select(TenantMessagingSettings).where(TenantMessagingSettings.tenant_id == tenant_id))
    if row is None:
        row = TenantMessagingSettings(tenant_id=tenant_id, settings_json=normalize_settings(None))
        db.add(row)
        db.flush()
    return row


def get_tenant_settings_payload(db: Session, tenant_id: uuid.UUID) -> dict[str, Any]:
    row = db.scalar(select(TenantMessagingSettings).where(TenantMessagingSettings.tenant_id == tenant_id))
    return normalize_settings(row.settings_json if row is not None else None)


def update_tenant_settings_payload(db: Session, tenant_id: uuid.UUID, patch: dict[str, Any]) -> dict[str, Any]:
    row = get_or_create_tenant_settings(db=db, tenant_id=tenant_id)
    merged = normalize_settings({**row.settings_json, **patch})
    row.settings_json = merged
    db.flush()
    return merged


def business_hours_for_tenant(db: Session, tenant_id: uuid.UUID) -> BusinessHours:
    payload = get_tenant_settings_payload(db=db, tenant_id=tenant_id)
    return BusinessHours.model_validate(payload["business_hours"])
