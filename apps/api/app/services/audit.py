from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy.orm import Session

from packages.messaging import KeywordAction, mask_phone

from ..models import AuditLog, MessageChannel, OptOutEntry, RiskTier
from ..tenancy import RequestContext

KEYWORD_MESSAGE_LIMIT = 160


def _add_entry(
    db: Session,
    tenant_id: uuid.UUID,
    actor_user_id: uuid.UUID | None,
    action: str,
    target_type: str,
    target_id: str,
    metadata_json: dict[str, Any],
    risk_tier: RiskTier,
) -> AuditLog:
    entry = AuditLog(
        tenant_id=tenant_id,
        actor_user_id=actor_user_id,
        action=action,
        target_type=target_type,
        target_id=target_id,
        metadata_json=metadata_json,
        risk_tier=risk_tier,
    )
    db.add(entry)
    db.flush()
    return entry


def write_audit_log(
    db: Session,
    context: RequestContext,
    action: str,
    target_type: str,
    target_id: str,
    metadata_json: dict[str, Any] | None = None,
    risk_tier: RiskTier = RiskTier.TIER_1,
) -> AuditLog:
    metadata = dict(metadata_json or {})
    metadata["actor_role"] = context.current_role.value
    return _add_entry(
        db,
        tenant_id=context.current_tenant_id,
        actor_user_id=context.current_user_id,
        action=action,
        target_type=target_type,
        target_id=target_id,
        metadata_json=metadata,
        risk_tier=risk_tier,
    )


def write_keyword_audit_log(
    db: Session,
    entry: OptOutEntry,
    action: KeywordAction,
    channel: MessageChannel,
) -> AuditLog:
    # The contact is the actor here, so there is no user id; the phone is masked.
    return _add_entry(
        db,
        tenant_id=entry.tenant_id,
        actor_user_id=None,
        action=f"opt_outs.keyword_{action.value}",
        target_type="opt_out_entry",
        target_id=str(entry.id),
        metadata_json={
            "actor_role": "contact",
            "channel": channel.value,
            "phone": mask_phone(entry.phone_number),
            "keyword_message": (entry.keyword_message or "")[:KEYWORD_MESSAGE_LIMIT],
        },
        risk_tier=RiskTier.TIER_2,
    )
