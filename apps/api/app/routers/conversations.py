from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from ..db import get_db
from ..models import Conversation, ConversationMessage, ConversationStatus, RiskTier, Role
from ..schemas import (
    ConversationAssignRequest,
    ConversationDetailResponse,
    ConversationMessageResponse,
    ConversationPatchRequest,
    ConversationResponse,
    ConversationStatsResponse,
)
from ..services.audit import write_audit_log
from ..services.conversations import (
    assign_to_user,
    close_conversation,
    conversation_stats,
    delete_conversation,
    get_conversation,
    get_conversation_messages,
    list_conversations,
    mark_as_read,
    recent_conversations,
    reopen_conversation,
    search_conversations,
    update_conversation,
)
from ..tenancy import RequestContext, get_request_context, require_role

router = APIRouter(prefix="/conversations", tags=["conversations"])


def _serialize_conversation(row: Conversation) -> ConversationResponse:
    return ConversationResponse(
        id=row.id,
        tenant_id=row.tenant_id,
        phone_number=row.phone_number,
        contact_name=row.contact_name,
        status=row.status,
        assigned_to_user_id=row.assigned_to_user_id,
        unread_count=row.unread_count,
        last_message_at=row.last_message_at,
        last_message_direction=row.last_message_direction,
        lead_id=row.lead_id,
        created_at=row.created_at,
    )


def _serialize_message(row: ConversationMessage) -> ConversationMessageResponse:
    return ConversationMessageResponse(
        id=row.id,
        conversation_id=row.conversation_id,
        channel=row.channel,
        direction=row.direction,
        message_type=row.message_type,
        body=row.body,
        media_ref=row.media_ref,
        provider_message_id=row.provider_message_id,
        status=row.status,
        occurred_at=row.occurred_at,
        delivered_at=row.delivered_at,
        read_at=row.read_at,
    )


def _load(db: Session, context: RequestContext, conversation_id: uuid.UUID) -> Conversation:
    conversation = get_conversation(db, context.current_tenant_id, conversation_id)
    if conversation is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="conversation not found")
    return conversation


@router.get("", response_model=list[ConversationResponse])
def list_all(
    status_filter: ConversationStatus | None = Query(default=None, alias="status"),
    assigned_to: uuid.UUID | None = Query(default=None),
    lead_id: uuid.UUID | None = Query(default=None),
    unassigned: bool = Query(default=False),
    unread: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> list[ConversationResponse]:
    rows = list_conversations(
        db,
        context.current_tenant_id,
        status=status_filter,
        assigned_to_user_id=assigned_to,
        lead_id=lead_id,
        unassigned_only=unassigned,
        unread_only=unread,
        limit=limit,
        offset=offset,
    )
    return [_serialize_conversation(row) for row in rows]


@router.get("/stats", response_model=ConversationStatsResponse)
def stats(
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> ConversationStatsResponse:
    return ConversationStatsResponse(**conversation_stats(db, context.current_tenant_id))


@router.get("/search", response_model=list[ConversationResponse])
def search(
    q: str = Query(min_length=2, max_length=100),
    limit: int = Query(default=20, ge=1, le=100),
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> list[ConversationResponse]:
    return [_serialize_conversation(row) for row in search_conversations(db, context.current_tenant_id, q, limit=limit)]


@router.get("/recent", response_model=list[ConversationResponse])
def recent(
    hours: int = Query(default=24, ge=1, le=720),
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> list[ConversationResponse]:
    return [_serialize_conversation(row) for row in recent_conversations(db, context.current_tenant_id, hours=hours)]


@router.get("/{conversation_id}", response_model=ConversationDetailResponse)
def get_one(
    conversation_id: uuid.UUID,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> ConversationDetailResponse:
    conversation = _load(db, context, conversation_id)
    messages = get_conversation_messages(db, conversation, limit=limit, offset=offset)
    return ConversationDetailResponse(
        conversation=_serialize_conversation(conversation),
        messages=[_serialize_message(row) for row in messages],
    )


@router.patch("/{conversation_id}", response_model=ConversationResponse)
def patch(
    conversation_id: uuid.UUID,
    payload: ConversationPatchRequest,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> ConversationResponse:
    require_role(context, Role.AGENT)
    conversation = _load(db, context, conversation_id)
    update_conversation(db, conversation, payload.model_dump(exclude_unset=True))
    db.commit()
    return _serialize_conversation(conversation)


@router.post("/{conversation_id}/read", response_model=ConversationResponse)
def read(
    conversation_id: uuid.UUID,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> ConversationResponse:
    conversation = mark_as_read(db, _load(db, context, conversation_id))
    db.commit()
    return _serialize_conversation(conversation)


@router.post("/{conversation_id}/assign", response_model=ConversationResponse)
def assign(
    conversation_id: uuid.UUID,
    payload: ConversationAssignRequest,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> ConversationResponse:
    require_role(context, Role.AGENT)
    conversation = assign_to_user(db, _load(db, context, conversation_id), payload.user_id)
    write_audit_log(
        db=db,
        context=context,
        action="conversations.assign",
        target_type="conversation",
        target_id=str(conversation.id),
        metadata_json={"assigned_to_user_id": str(payload.user_id) if payload.user_id else None},
        risk_tier=RiskTier.TIER_0,
    )
    db.commit()
    return _serialize_conversation(conversation)


@router.post("/{conversation_id}/close", response_model=ConversationResponse)
def close(
    conversation_id: uuid.UUID,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> ConversationResponse:
    require_role(context, Role.AGENT)
    conversation = close_conversation(db, _load(db, context, conversation_id))
    db.commit()
    return _serialize_conversation(conversation)


@router.post("/{conversation_id}/reopen", response_model=ConversationResponse)
def reopen(
    conversation_id: uuid.UUID,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> ConversationResponse:
    require_role(context, Role.AGENT)
    conversation = reopen_conversation(db, _load(db, context, conversation_id))
    db.commit()
    return _serialize_conversation(conversation)


@router.delete("/{conversation_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete(
    conversation_id: uuid.UUID,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> None:
    require_role(context, Role.ADMIN)
    conversation = _load(db, context, conversation_id)
    write_audit_log(
        db=db,
        context=context,
        action="conversations.delete",
        target_type="conversation",
        target_id=str(conversation.id),
        metadata_json={"phone_number": conversation.phone_number},
        risk_tier=RiskTier.TIER_2,
    )
    delete_conversation(db, conversation)
    db.commit()
