from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from packages.messaging import InvalidPhoneNumberError, normalize_phone

from ..db import utcnow
from ..errors import MessageValidationError, OptOutLookupError
from ..models import (
    DeliveryRecord,
    MessageChannel,
    MessagePriority,
    MessageSource,
    QueuedMessage,
    QueuedMessageStatus,
    TERMINAL_QUEUE_STATUSES,
)
from .opt_out import is_opted_out
from .templates import validate_template_for_send

logger = logging.getLogger(__name__)

MAX_BODY_LENGTH = 4096
MAX_RETRIES_CEILING = 10
PRIORITY_MIN = 0
PRIORITY_MAX = int(MessagePriority.URGENT)


@dataclass(frozen=True)
class AutoResponseContext:
    rule_id: uuid.UUID
    conversation_id: uuid.UUID


@dataclass
class SendRequest:
    tenant_id: uuid.UUID
    channel: MessageChannel
    phone_number: str
    body: str | None = None
    template_name: str | None = None
    template_variables: dict[str, str] = field(default_factory=dict)
    media_url: str | None = None
    priority: int = MessagePriority.NORMAL
    scheduled_for: datetime | None = None
    max_retries: int | None = None
    source: MessageSource = MessageSource.API
    auto_response: AutoResponseContext | None = None
    requested_by_user_id: uuid.UUID | None = None
    compliance_notice: bool = False


@dataclass
class BulkEnqueueResult:
    index: int
    message_id: uuid.UUID | None = None
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.message_id is not None


def _validate(db: Session, request: SendRequest) -> tuple[str, list[str]]:
    errors: list[str] = []
    phone = request.phone_number
    try:
        phone = normalize_phone(request.phone_number)
    except InvalidPhoneNumberError:
        errors.append("phone_number must be a valid E.164 number")

    has_body = bool(request.body and request.body.strip())
    if has_body == bool(request.template_name):
        errors.append("exactly one of body or template_name is required")
    if request.body and len(request.body) > MAX_BODY_LENGTH:
        errors.append(f"body exceeds {MAX_BODY_LENGTH} characters")
    if request.template_name and not has_body:
        _, template_errors = validate_template_for_send(
            db, request.tenant_id, request.template_name, request.template_variables
        )
        errors.extend(template_errors)
    if request.max_retries is not None and not 0 <= request.max_retries <= MAX_RETRIES_CEILING:
        errors.append(f"max_retries must be between 0 and {MAX_RETRIES_CEILING}")
    if not PRIORITY_MIN <= int(request.priority) <= PRIORITY_MAX:
        errors.append(f"priority must be between {PRIORITY_MIN} and {PRIORITY_MAX}")
    return phone, errors


def enqueue_message(db: Session, request: SendRequest, default_max_retries: int = 3) -> QueuedMessage:
    """Registry errors at enqueue are logged and the message accepted."""
    phone, errors = _validate(db, request)
    if not errors and not request.compliance_notice:
        try:
            if is_opted_out(db, request.tenant_id, phone):
                errors.append("recipient has opted out")
        except OptOutLookupError:
            logger.warning("opt-out check unavailable at enqueue", extra={"tenant_id": str(request.tenant_id)})
    if errors:
        raise MessageValidationError(errors)

    message = QueuedMessage(
        tenant_id=request.tenant_id,
        channel=request.channel,
        phone_number=phone,
        body=request.body if request.body and request.body.strip() else None,
        template_name=request.template_name if not (request.body and request.body.strip()) else None,
        template_variables_json=dict(request.template_variables or {}),
        media_url=request.media_url,
        priority=int(request.priority),
        scheduled_for=request.scheduled_for or utcnow(),
        retry_count=0,
        max_retries=request.max_retries if request.max_retries is not None else default_max_retries,
        status=QueuedMessageStatus.PENDING,
        source=request.source,
        auto_response_rule_id=request.auto_response.rule_id if request.auto_response else None,
        conversation_id=request.auto_response.conversation_id if request.auto_response else None,
        requested_by_user_id=request.requested_by_user_id,
        compliance_notice=request.compliance_notice,
    )
    db.add(message)
    db.flush()
    logger.info(
        "message enqueued",
        extra={
            "message_id": str(message.id),
            "tenant_id": str(message.tenant_id),
            "channel": message.channel.value,
            "priority": message.priority,
            "source": message.source.value,
        },
    )
    return message


def enqueue_bulk(
    db: Session,
    requests: list[SendRequest],
    default_max_retries: int = 3,
) -> list[BulkEnqueueResult]:
    """Enqueue each request independently; one bad entry never aborts the rest."""
    results: list[BulkEnqueueResult] = []
    for index, request in enumerate(requests):
        try:
            with db.begin_nested():
                message = enqueue_message(db, request, default_max_retries=default_max_retries)
            results.append(BulkEnqueueResult(index=index, message_id=message.id))
        except MessageValidationError as exc:
            results.append(BulkEnqueueResult(index=index, errors=exc.errors))
        except SQLAlchemyError:
            logger.exception("bulk enqueue entry failed", extra={"index": index})
            results.append(BulkEnqueueResult(index=index, errors=["storage error"]))
    return results


def get_message(db: Session, tenant_id: uuid.UUID, message_id: uuid.UUID) -> QueuedMessage | None:
    return db.scalar(select(QueuedMessage).where(QueuedMessage.tenant_id == tenant_id, QueuedMessage.id == message_id))


def get_delivery_record(db: Session, message_id: uuid.UUID) -> DeliveryRecord | None:
    return db.scalar(select(DeliveryRecord).where(DeliveryRecord.queued_message_id == message_id))


def cancel_message(db: Session, tenant_id: uuid.UUID, message_id: uuid.UUID) -> QueuedMessage | None:
    """Cancel a pending or processing message. Returns None when nothing was cancellable."""
    message = db.scalar(
        select(QueuedMessage)
        .where(
            QueuedMessage.tenant_id == tenant_id,
            QueuedMessage.id == message_id,
            QueuedMessage.status.in_([QueuedMessageStatus.PENDING, QueuedMessageStatus.PROCESSING]),
        )
        .with_for_update()
    )
    if message is None:
        return None
    message.status = QueuedMessageStatus.CANCELLED
    message.processed_at = utcnow()
    db.flush()
    return message


def list_messages(
    db: Session,
    tenant_id: uuid.UUID,
    status: QueuedMessageStatus | None = None,
    channel: MessageChannel | None = None,
    phone_number: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[QueuedMessage]:
    stmt = select(QueuedMessage).where(QueuedMessage.tenant_id == tenant_id)
    if status is not None:
        stmt = stmt.where(QueuedMessage.status == status)
    if channel is not None:
        stmt = stmt.where(QueuedMessage.channel == channel)
    if phone_number:
        stmt = stmt.where(QueuedMessage.phone_number == phone_number)
    stmt = stmt.order_by(QueuedMessage.created_at.desc()).limit(limit).offset(offset)
    return list(db.scalars(stmt).all())


def queue_stats(db: Session, tenant_id: uuid.UUID | None = None, channel: MessageChannel | None = None) -> dict[str, Any]:
    filters = []
    if tenant_id is not None:
        filters.append(QueuedMessage.tenant_id == tenant_id)
    if channel is not None:
        filters.append(QueuedMessage.channel == channel)
    counts: dict[str, int] = {status.value: 0 for status in QueuedMessageStatus}
    rows = db.execute(
        select(QueuedMessage.status, func.count()).where(*filters).group_by(QueuedMessage.status)
    ).all()
    for status, count in rows:
        counts[QueuedMessageStatus(status).value] = int(count)
    scheduled = db.scalar(
        select(func.count())
        .select_from(QueuedMessage)
        .where(
            *filters,
            QueuedMessage.status == QueuedMessageStatus.PENDING,
            QueuedMessage.scheduled_for > utcnow(),
        )
    )
    return {**counts, "scheduled": int(scheduled or 0), "total": sum(counts.values())}


def cleanup_queue(db: Session, older_than_days: int, now: datetime | None = None) -> int:
    """Retention sweep: remove terminal queue rows and their delivery records."""
    cutoff = (now or utcnow()) - timedelta(days=older_than_days)
    stale_ids = list(
        db.scalars(
            select(QueuedMessage.id).where(
                QueuedMessage.status.in_(list(TERMINAL_QUEUE_STATUSES)),
                func.coalesce(QueuedMessage.processed_at, QueuedMessage.updated_at) < cutoff,
            )
        ).all()
    )
    if not stale_ids:
        return 0
    db.execute(delete(DeliveryRecord).where(DeliveryRecord.queued_message_id.in_(stale_ids)))
    db.execute(delete(QueuedMessage).where(QueuedMessage.id.in_(stale_ids)))
    db.flush()
    logger.info("queue retention sweep", extra={"deleted": len(stale_ids), "older_than_days": older_than_days})
    return len(stale_ids)
