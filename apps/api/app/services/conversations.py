from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import case, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..db import utcnow
from ..models import Conversation, ConversationMessage, ConversationStatus, MessageDirection

logger = logging.getLogger(__name__)

PATCHABLE_FIELDS = frozenset({"contact_name", "status", "assigned_to_user_id", "lead_id"})


def get_conversation(db: Session, tenant_id: uuid.UUID, conversation_id: uuid.UUID) -> Conversation | None:
    return db.scalar(
        select(Conversation).where(Conversation.tenant_id == tenant_id, Conversation.id == conversation_id)
    )


def get_conversation_by_phone(db: Session, tenant_id: uuid.UUID, phone_number: str) -> Conversation | None:
    return db.scalar(
        select(Conversation).where(Conversation.tenant_id == tenant_id, Conversation.phone_number == phone_number)
    )


def get_or_create_conversation(
    db: Session,
    tenant_id: uuid.UUID,
    phone_number: str,
    contact_name: str | None = None,
) -> tuple[Conversation, bool]:
    """A lost insert race on (tenant_id, phone_number) falls back to the existing row."""
    existing = get_conversation_by_phone(db, tenant_id, phone_number)
    if existing is not None:
        if contact_name and not existing.contact_name:
            existing.contact_name = contact_name
            db.flush()
        return existing, False
    try:
        with db.begin_nested():
            conversation = Conversation(
                tenant_id=tenant_id,
                phone_number=phone_number,
                contact_name=contact_name,
                status=ConversationStatus.ACTIVE,
                unread_count=0,
            )
            db.add(conversation)
            db.flush()
    except IntegrityError:
        winner = get_conversation_by_phone(db, tenant_id, phone_number)
        if winner is None:
            raise
        logger.info("conversation create lost race", extra={"tenant_id": str(tenant_id)})
        return winner, False
    db.refresh(conversation)
    return conversation, True


def update_conversation(db: Session, conversation: Conversation, patch: dict[str, Any]) -> Conversation:
    unknown = set(patch) - PATCHABLE_FIELDS
    if unknown:
        raise ValueError(f"unsupported conversation fields: {', '.join(sorted(unknown))}")
    for key, value in patch.items():
        if key == "status" and value is not None:
            value = ConversationStatus(value)
        setattr(conversation, key, value)
    db.flush()
    return conversation


def mark_as_read(db: Session, conversation: Conversation) -> Conversation:
    conversation.unread_count = 0
    db.flush()
    return conversation


def assign_to_user(db: Session, conversation: Conversation, user_id: uuid.UUID | None) -> Conversation:
    conversation.assigned_to_user_id = user_id
    db.flush()
    return conversation


def close_conversation(db: Session, conversation: Conversation) -> Conversation:
    conversation.status = ConversationStatus.CLOSED
    db.flush()
    return conversation


def reopen_conversation(db: Session, conversation: Conversation) -> Conversation:
    conversation.status = ConversationStatus.ACTIVE
    db.flush()
    return conversation


def link_lead(db: Session, conversation: Conversation, lead_id: uuid.UUID | None) -> Conversation:
    conversation.lead_id = lead_id
    db.flush()
    return conversation


def record_inbound_activity(db: Session, conversation: Conversation, occurred_at: datetime) -> Conversation:
    """Count one unread inbound message. A customer writing in reopens a closed thread."""
    db.execute(
        update(Conversation)
        .where(Conversation.id == conversation.id)
        .values(
            unread_count=Conversation.unread_count + 1,
            last_message_at=occurred_at,
            last_message_direction=MessageDirection.INBOUND,
            status=ConversationStatus.ACTIVE,
        )
        .execution_options(synchronize_session=False)
    )
    db.refresh(conversation)
    return conversation


def record_outbound_activity(db: Session, conversation: Conversation, occurred_at: datetime) -> Conversation:
    conversation.last_message_at = occurred_at
    conversation.last_message_direction = MessageDirection.OUTBOUND
    if conversation.status == ConversationStatus.ACTIVE:
        conversation.status = ConversationStatus.WAITING
    db.flush()
    return conversation


def list_conversations(
    db: Session,
    tenant_id: uuid.UUID,
    status: ConversationStatus | None = None,
    assigned_to_user_id: uuid.UUID | None = None,
    lead_id: uuid.UUID | None = None,
    unassigned_only: bool = False,
    unread_only: bool = False,
    limit: int = 50,
    offset: int = 0,
) -> list[Conversation]:
    stmt = select(Conversation).where(Conversation.tenant_id == tenant_id)
    if status is not None:
        stmt = stmt.where(Conversation.status == status)
    if assigned_to_user_id is not None:
        stmt = stmt.where(Conversation.assigned_to_user_id == assigned_to_user_id)
    elif unassigned_only:
        stmt = stmt.where(Conversation.assigned_to_user_id.is_(None))
    if lead_id is not None:
        stmt = stmt.where(Conversation.lead_id == lead_id)
    if unread_only:
        stmt = stmt.where(Conversation.unread_count > 0)
    stmt = stmt.order_by(
        Conversation.last_message_at.is_(None),
        Conversation.last_message_at.desc(),
        Conversation.created_at.desc(),
    )
    return list(db.scalars(stmt.limit(limit).offset(offset)).all())


def get_conversation_messages(
    db: Session,
    conversation: Conversation,
    limit: int = 50,
    offset: int = 0,
) -> list[ConversationMessage]:
    """Page backwards from the newest message, returned oldest first."""
    rows = db.scalars(
        select(ConversationMessage)
        .where(ConversationMessage.conversation_id == conversation.id)
        .order_by(ConversationMessage.occurred_at.desc(), ConversationMessage.created_at.desc())
        .limit(limit)
        .offset(offset)
    ).all()
    return list(reversed(rows))


def search_conversations(db: Session, tenant_id: uuid.UUID, query: str, limit: int = 20) -> list[Conversation]:
    term = f"%{query.strip()}%"
    return list(
        db.scalars(
            select(Conversation)
            .where(
                Conversation.tenant_id == tenant_id,
                or_(Conversation.contact_name.ilike(term), Conversation.phone_number.ilike(term)),
            )
            .order_by(Conversation.last_message_at.desc())
            .limit(limit)
        ).all()
    )


def recent_conversations(db: Session, tenant_id: uuid.UUID, hours: int = 24) -> list[Conversation]:
    since = utcnow() - timedelta(hours=hours)
    return list(
        db.scalars(
            select(Conversation)
            .where(Conversation.tenant_id == tenant_id, Conversation.last_message_at >= since)
            .order_by(Conversation.last_message_at.desc())
        ).all()
    )


def conversation_stats(db: Session, tenant_id: uuid.UUID) -> dict[str, int]:
    row = db.execute(
        select(
            func.count(Conversation.id),
            func.sum(case((Conversation.status == ConversationStatus.ACTIVE, 1), else_=0)),
            func.sum(case((Conversation.status == ConversationStatus.WAITING, 1), else_=0)),
            func.sum(case((Conversation.status == ConversationStatus.CLOSED, 1), else_=0)),
            func.sum(case((Conversation.assigned_to_user_id.is_(None), 1), else_=0)),
            func.sum(case((Conversation.unread_count > 0, 1), else_=0)),
            func.sum(Conversation.unread_count),
        ).where(Conversation.tenant_id == tenant_id)
    ).one()
    total, active, waiting, closed, unassigned, with_unread, total_unread = (int(value or 0) for value in row)
    return {
        "total": total,
        "active": active,
        "waiting": waiting,
        "closed": closed,
        "unassigned": unassigned,
        "with_unread": with_unread,
        "total_unread": total_unread,
    }


def delete_conversation(db: Session, conversation: Conversation) -> None:
    db.execute(
        ConversationMessage.__table__.delete().where(ConversationMessage.conversation_id == conversation.id)
    )
    db.delete(conversation)
    db.flush()
