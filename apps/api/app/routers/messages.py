from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.orm import Session

from ..db import get_db
from ..models import DeliveryRecord, MessageChannel, MessagePriority, MessageSource, QueuedMessage, QueuedMessageStatus, RiskTier, Role
from ..schemas import (
    BulkEnqueueEntryResponse,
    BulkEnqueueResponse,
    BulkSendRequest,
    DeliveryRecordResponse,
    EnqueueResponse,
    QueuedMessageResponse,
    QueueStatsResponse,
    SendMessageRequest,
)
from ..services.audit import write_audit_log
from ..services.message_queue import (
    SendRequest,
    cancel_message,
    enqueue_bulk,
    enqueue_message,
    get_delivery_record,
    get_message,
    list_messages,
    queue_stats,
)
from ..services.rate_limit import enforce_enqueue_quota
from ..settings import settings
from ..tenancy import RequestContext, get_request_context, require_role

router = APIRouter(prefix="/messages", tags=["messages"])


def _serialize_delivery(row: DeliveryRecord | None) -> DeliveryRecordResponse | None:
    if row is None:
        return None
    return DeliveryRecordResponse(
        provider_message_id=row.provider_message_id,
        status=row.status,
        sent_at=row.sent_at,
        delivered_at=row.delivered_at,
        read_at=row.read_at,
        failed_at=row.failed_at,
        error_code=row.error_code,
        error_message=row.error_message,
    )


def _serialize_message(row: QueuedMessage, delivery: DeliveryRecord | None = None) -> QueuedMessageResponse:
    return QueuedMessageResponse(
        id=row.id,
        tenant_id=row.tenant_id,
        channel=row.channel,
        phone_number=row.phone_number,
        body=row.body,
        template_name=row.template_name,
        template_variables=row.template_variables_json or {},
        media_url=row.media_url,
        priority=row.priority,
        scheduled_for=row.scheduled_for,
        retry_count=row.retry_count,
        max_retries=row.max_retries,
        status=row.status,
        source=row.source,
        last_error=row.last_error,
        processed_at=row.processed_at,
        auto_response_rule_id=row.auto_response_rule_id,
        conversation_id=row.conversation_id,
        created_at=row.created_at,
        delivery=_serialize_delivery(delivery),
    )


def _to_send_request(
    payload: SendMessageRequest,
    context: RequestContext,
    source: MessageSource,
    default_priority: MessagePriority,
) -> SendRequest:
    return SendRequest(
        tenant_id=context.current_tenant_id,
        channel=payload.channel,
        phone_number=payload.phone_number,
        body=payload.body,
        template_name=payload.template_name,
        template_variables=payload.template_variables,
        media_url=payload.media_url,
        priority=payload.priority if payload.priority is not None else default_priority,
        scheduled_for=payload.scheduled_for,
        max_retries=payload.max_retries,
        source=source,
        requested_by_user_id=context.current_user_id,
    )


def _nudge_dispatcher(request: Request, channel: MessageChannel) -> None:
    engine = getattr(request.app.state, "messaging_engine", None)
    if engine is not None:
        engine.request_drain(channel)


@router.post("", response_model=EnqueueResponse, status_code=status.HTTP_202_ACCEPTED)
def enqueue(
    payload: SendMessageRequest,
    request: Request,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> EnqueueResponse:
    require_role(context, Role.AGENT)
    enforce_enqueue_quota(context.current_tenant_id, [payload.channel], settings.enqueue_messages_per_minute)
    message = enqueue_message(
        db,
        _to_send_request(payload, context, MessageSource.API, MessagePriority.NORMAL),
        default_max_retries=settings.default_max_retries,
    )
    db.commit()
    _nudge_dispatcher(request, message.channel)
    return EnqueueResponse(id=message.id, status=message.status)


@router.post("/bulk", response_model=BulkEnqueueResponse, status_code=status.HTTP_202_ACCEPTED)
def enqueue_many(
    payload: BulkSendRequest,
    request: Request,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> BulkEnqueueResponse:
    require_role(context, Role.ADMIN)
    enforce_enqueue_quota(
        context.current_tenant_id,
        [entry.channel for entry in payload.messages],
        settings.enqueue_messages_per_minute,
    )
    results = enqueue_bulk(
        db,
        [_to_send_request(entry, context, MessageSource.BULK, MessagePriority.LOW) for entry in payload.messages],
        default_max_retries=settings.default_max_retries,
    )
    accepted = sum(1 for result in results if result.ok)
    write_audit_log(
        db=db,
        context=context,
        action="messages.bulk_enqueue",
        target_type="queued_message",
        target_id="bulk",
        metadata_json={"accepted": accepted, "rejected": len(results) - accepted},
        risk_tier=RiskTier.TIER_2,
    )
    db.commit()
    for channel in {entry.channel for entry in payload.messages}:
        _nudge_dispatcher(request, channel)
    return BulkEnqueueResponse(
        accepted=accepted,
        rejected=len(results) - accepted,
        results=[
            BulkEnqueueEntryResponse(index=result.index, id=result.message_id, errors=result.errors) for result in results
        ],
    )


@router.get("/stats", response_model=QueueStatsResponse)
def stats(
    request: Request,
    channel: MessageChannel | None = Query(default=None),
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> QueueStatsResponse:
    counts = queue_stats(db, tenant_id=context.current_tenant_id, channel=channel)
    engine = getattr(request.app.state, "messaging_engine", None)
    return QueueStatsResponse(**counts, rate_limits=engine.rate_limit_status() if engine is not None else {})


@router.get("", response_model=list[QueuedMessageResponse])
def list_queue(
    status_filter: QueuedMessageStatus | None = Query(default=None, alias="status"),
    channel: MessageChannel | None = Query(default=None),
    phone_number: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> list[QueuedMessageResponse]:
    rows = list_messages(
        db,
        context.current_tenant_id,
        status=status_filter,
        channel=channel,
        phone_number=phone_number,
        limit=limit,
        offset=offset,
    )
    return [_serialize_message(row) for row in rows]


@router.get("/{message_id}", response_model=QueuedMessageResponse)
def get_one(
    message_id: uuid.UUID,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> QueuedMessageResponse:
    message = get_message(db, context.current_tenant_id, message_id)
    if message is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="message not found")
    return _serialize_message(message, get_delivery_record(db, message.id))


@router.post("/{message_id}/cancel", response_model=QueuedMessageResponse)
def cancel(
    message_id: uuid.UUID,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> QueuedMessageResponse:
    require_role(context, Role.AGENT)
    message = cancel_message(db, context.current_tenant_id, message_id)
    if message is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="message not found or not cancellable")
    write_audit_log(
        db=db,
        context=context,
        action="messages.cancel",
        target_type="queued_message",
        target_id=str(message.id),
    )
    db.commit()
    return _serialize_message(message)
