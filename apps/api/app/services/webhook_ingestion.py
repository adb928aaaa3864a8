from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from packages.messaging import (
    OPT_IN_CONFIRMATION,
    OPT_OUT_CONFIRMATION,
    KeywordAction,
    NormalizedInbound,
    NormalizedStatus,
    NormalizedWebhook,
    mask_phone,
    normalize_phone,
)

from ..db import utcnow
from ..errors import MessageValidationError
from ..models import (
    ConversationMessage,
    DeliveryRecord,
    DeliveryStatus,
    MessageChannel,
    MessageDirection,
    MessagePriority,
    MessageSource,
)
from .auto_responder import process_inbound_message
from .conversations import get_or_create_conversation, record_inbound_activity
from .message_queue import SendRequest, enqueue_message
from .audit import write_keyword_audit_log
from .opt_out import get_entry, process_keyword_message
from .tenant_settings import get_tenant_settings_payload

logger = logging.getLogger(__name__)

STATUS_RANK: dict[DeliveryStatus, int] = {
    DeliveryStatus.SENT: 1,
    DeliveryStatus.DELIVERED: 2,
    DeliveryStatus.READ: 3,
}


@dataclass
class IngestResult:
    inbound_created: int = 0
    duplicates: int = 0
    statuses_applied: int = 0
    statuses_ignored: int = 0
    unknown_statuses: int = 0
    opt_outs: int = 0
    opt_ins: int = 0
    auto_responses: int = 0
    errors: int = 0
    skipped: int = 0


def should_apply_status(current: DeliveryStatus | None, incoming: DeliveryStatus) -> bool:
    """Forward-only progression; failed always lands, nothing moves past failed except itself."""
    if incoming == DeliveryStatus.FAILED:
        return current != DeliveryStatus.FAILED
    if current is None:
        return True
    if current == DeliveryStatus.FAILED:
        return False
    return STATUS_RANK[incoming] > STATUS_RANK[current]


def _set_status_timestamp(row: DeliveryRecord | ConversationMessage, status: DeliveryStatus, update: NormalizedStatus) -> None:
    row.status = status
    if status == DeliveryStatus.SENT:
        row.sent_at = row.sent_at or update.occurred_at
    elif status == DeliveryStatus.DELIVERED:
        row.delivered_at = update.occurred_at
    elif status == DeliveryStatus.READ:
        row.read_at = update.occurred_at
        # A read receipt implies delivery even when that callback never arrived.
        row.delivered_at = row.delivered_at or update.occurred_at
    else:
        row.failed_at = update.occurred_at


def _message_exists(db: Session, tenant_id: uuid.UUID, provider_message_id: str) -> bool:
    return (
        db.scalar(
            select(ConversationMessage.id).where(
                ConversationMessage.tenant_id == tenant_id,
                ConversationMessage.provider_message_id == provider_message_id,
            )
        )
        is not None
    )


def _send_keyword_confirmation(
    db: Session,
    tenant_id: uuid.UUID,
    channel: MessageChannel,
    phone_number: str,
    action: KeywordAction,
    default_max_retries: int,
) -> None:
    body = OPT_OUT_CONFIRMATION if action == KeywordAction.OPT_OUT else OPT_IN_CONFIRMATION
    try:
        enqueue_message(
            db,
            SendRequest(
                tenant_id=tenant_id,
                channel=channel,
                phone_number=phone_number,
                body=body,
                priority=MessagePriority.URGENT,
                source=MessageSource.SYSTEM,
                compliance_notice=True,
            ),
            default_max_retries=default_max_retries,
        )
    except MessageValidationError as exc:
        logger.warning("keyword confirmation not enqueued", extra={"errors": exc.errors})


def _ingest_inbound(
    db: Session,
    tenant_id: uuid.UUID,
    inbound: NormalizedInbound,
    result: IngestResult,
    first_contact_window: timedelta,
    default_max_retries: int,
) -> None:
    if _message_exists(db, tenant_id, inbound.provider_message_id):
        result.duplicates += 1
        return

    channel = MessageChannel(inbound.channel.value)
    conversation, _ = get_or_create_conversation(db, tenant_id, inbound.phone_number, inbound.contact_name)
    try:
        with db.begin_nested():
            db.add(
                ConversationMessage(
                    tenant_id=tenant_id,
                    conversation_id=conversation.id,
                    channel=channel,
                    direction=MessageDirection.INBOUND,
                    message_type=inbound.message_type,
                    body=inbound.body,
                    media_ref=inbound.media_ref,
                    provider_message_id=inbound.provider_message_id,
                    occurred_at=inbound.received_at,
                )
            )
            db.flush()
    except IntegrityError:
        # Concurrent delivery of the same webhook won the insert.
        result.duplicates += 1
        return
    record_inbound_activity(db, conversation, inbound.received_at)
    result.inbound_created += 1

    action = process_keyword_message(db, tenant_id, inbound.phone_number, inbound.body)
    if action is not None:
        if action == KeywordAction.OPT_OUT:
            result.opt_outs += 1
        else:
            result.opt_ins += 1
        entry = get_entry(db, tenant_id, normalize_phone(inbound.phone_number))
        if entry is not None:
            write_keyword_audit_log(db, entry, action, channel)
        if get_tenant_settings_payload(db, tenant_id)["send_opt_out_confirmation"]:
            _send_keyword_confirmation(db, tenant_id, channel, inbound.phone_number, action, default_max_retries)
    if action == KeywordAction.OPT_OUT:
        return

    reply = process_inbound_message(
        db,
        tenant_id,
        conversation,
        channel,
        inbound.body,
        first_contact_window=first_contact_window,
        default_max_retries=default_max_retries,
        now=utcnow(),
    )
    if reply is not None:
        result.auto_responses += 1


def _apply_status(db: Session, tenant_id: uuid.UUID, update: NormalizedStatus, result: IngestResult) -> None:
    incoming = DeliveryStatus(update.status.value)
    record = db.scalar(
        select(DeliveryRecord).where(
            DeliveryRecord.tenant_id == tenant_id,
            DeliveryRecord.provider_message_id == update.provider_message_id,
        )
    )
    if record is None:
        result.unknown_statuses += 1
        logger.debug("status for unknown provider message", extra={"provider_message_id": update.provider_message_id})
        return
    if not should_apply_status(record.status, incoming):
        result.statuses_ignored += 1
        return

    _set_status_timestamp(record, incoming, update)
    if incoming == DeliveryStatus.FAILED:
        record.error_code = (update.error_code or "provider_failed")[:100]
        record.error_message = update.error_message

    message = db.scalar(
        select(ConversationMessage).where(
            ConversationMessage.tenant_id == tenant_id,
            ConversationMessage.provider_message_id == update.provider_message_id,
        )
    )
    if message is not None and should_apply_status(message.status, incoming):
        _set_status_timestamp(message, incoming, update)
    db.flush()
    result.statuses_applied += 1


def ingest_webhook(
    db: Session,
    tenant_id: uuid.UUID,
    payload: NormalizedWebhook,
    first_contact_window: timedelta = timedelta(minutes=5),
    default_max_retries: int = 3,
) -> IngestResult:
    """Each item runs in its own savepoint. The caller commits."""
    result = IngestResult(skipped=payload.skipped)
    for inbound in payload.inbound:
        try:
            with db.begin_nested():
                _ingest_inbound(db, tenant_id, inbound, result, first_contact_window, default_max_retries)
        except Exception:
            result.errors += 1
            logger.exception(
                "inbound message ingestion failed",
                extra={"provider_message_id": inbound.provider_message_id, "phone": mask_phone(inbound.phone_number)},
            )
    for update in payload.statuses:
        try:
            with db.begin_nested():
                _apply_status(db, tenant_id, update, result)
        except Exception:
            result.errors += 1
            logger.exception("status update failed", extra={"provider_message_id": update.provider_message_id})
    logger.info(
        "webhook ingested",
        extra={
            "tenant_id": str(tenant_id),
            "inbound_created": result.inbound_created,
            "duplicates": result.duplicates,
            "statuses_applied": result.statuses_applied,
            "statuses_ignored": result.statuses_ignored,
            "unknown_statuses": result.unknown_statuses,
            "errors": result.errors,
        },
    )
    return result
