from __future__ import annotations

import enum
import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Enum, ForeignKey, Index, Integer, String, Text, UniqueConstraint, func
from sqlalchemy import JSON as JsonType
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import Uuid


class Base(DeclarativeBase):
    pass


class Role(str, enum.Enum):
    OWNER = "owner"
    ADMIN = "admin"
    AGENT = "agent"
    SERVICE = "service"


class RiskTier(str, enum.Enum):
    TIER_0 = "TIER_0"
    TIER_1 = "TIER_1"
    TIER_2 = "TIER_2"
    TIER_3 = "TIER_3"


class MessageChannel(str, enum.Enum):
    WHATSAPP = "whatsapp"
    SMS = "sms"


class MessagePriority(enum.IntEnum):
    LOW = 3
    NORMAL = 5
    HIGH = 8
    URGENT = 10


class QueuedMessageStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_QUEUE_STATUSES = frozenset(
    {QueuedMessageStatus.SENT, QueuedMessageStatus.FAILED, QueuedMessageStatus.CANCELLED}
)


class MessageSource(str, enum.Enum):
    API = "api"
    BULK = "bulk"
    AUTO_RESPONSE = "auto_response"
    SYSTEM = "system"


class DeliveryStatus(str, enum.Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


class ConversationStatus(str, enum.Enum):
    ACTIVE = "active"
    WAITING = "waiting"
    CLOSED = "closed"


class MessageDirection(str, enum.Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class AutoResponseTriggerType(str, enum.Enum):
    KEYWORD = "keyword"
    BUSINESS_HOURS = "business_hours"
    FIRST_CONTACT = "first_contact"
    ALL_MESSAGES = "all_messages"


class OptOutReason(str, enum.Enum):
    USER_REQUEST = "user_request"
    COMPLAINT = "complaint"
    BOUNCE = "bounce"
    ADMIN = "admin"


class TemplateStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


def _enum_type(enum_cls: type[enum.Enum], name: str) -> Enum:
    # Persist enum values ("pending") rather than member names ("PENDING").
    return Enum(enum_cls, name=name, values_callable=lambda members: [member.value for member in members])


class IdMixin:
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )


class QueuedMessage(Base, IdMixin, TimestampMixin):
    __tablename__ = "queued_messages"
    __table_args__ = (
        Index("ix_queued_messages_tenant_id", "tenant_id"),
        Index("ix_queued_messages_drain", "channel", "status", "scheduled_for"),
        Index("ix_queued_messages_phone_number", "phone_number"),
        Index("ix_queued_messages_created_at", "created_at"),
    )

    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    channel: Mapped[MessageChannel] = mapped_column(
        _enum_type(MessageChannel, "message_channel_enum"), nullable=False
    )
    phone_number: Mapped[str] = mapped_column(String(20), nullable=False)
    body: Mapped[str | None] = mapped_column(Text, nullable=True)
    template_name: Mapped[str | None] = mapped_column(String(120), nullable=True)
    template_variables_json: Mapped[dict[str, str]] = mapped_column(JsonType, nullable=False, default=dict)
    media_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=int(MessagePriority.NORMAL))
    scheduled_for: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    status: Mapped[QueuedMessageStatus] = mapped_column(
        _enum_type(QueuedMessageStatus, "queued_message_status_enum"),
        nullable=False,
        default=QueuedMessageStatus.PENDING,
    )
    source: Mapped[MessageSource] = mapped_column(
        _enum_type(MessageSource, "message_source_enum"), nullable=False, default=MessageSource.API
    )
    last_error: Mapped[str | None] = mapped_column(String(255), nullable=True)
    processing_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    auto_response_rule_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    conversation_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    requested_by_user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    compliance_notice: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class DeliveryRecord(Base, IdMixin, TimestampMixin):
    __tablename__ = "delivery_records"
    __table_args__ = (
        UniqueConstraint("queued_message_id", name="uq_delivery_records_queued_message_id"),
        UniqueConstraint("provider_message_id", name="uq_delivery_records_provider_message_id"),
        Index("ix_delivery_records_tenant_id", "tenant_id"),
        Index("ix_delivery_records_created_at", "created_at"),
    )

    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    queued_message_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("queued_messages.id", ondelete="CASCADE"), nullable=False
    )
    channel: Mapped[MessageChannel] = mapped_column(
        _enum_type(MessageChannel, "message_channel_enum"), nullable=False
    )
    provider_message_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    direction: Mapped[MessageDirection] = mapped_column(
        _enum_type(MessageDirection, "message_direction_enum"),
        nullable=False,
        default=MessageDirection.OUTBOUND,
    )
    status: Mapped[DeliveryStatus] = mapped_column(
        _enum_type(DeliveryStatus, "delivery_status_enum"), nullable=False
    )
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)


class Conversation(Base, IdMixin, TimestampMixin):
    __tablename__ = "conversations"
    __table_args__ = (
        UniqueConstraint("tenant_id", "phone_number", name="uq_conversations_tenant_phone"),
        Index("ix_conversations_tenant_id", "tenant_id"),
        Index("ix_conversations_last_message_at", "last_message_at"),
        Index("ix_conversations_created_at", "created_at"),
    )

    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    phone_number: Mapped[str] = mapped_column(String(20), nullable=False)
    contact_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[ConversationStatus] = mapped_column(
        _enum_type(ConversationStatus, "conversation_status_enum"),
        nullable=False,
        default=ConversationStatus.ACTIVE,
    )
    assigned_to_user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    unread_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_message_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_message_direction: Mapped[MessageDirection | None] = mapped_column(
        _enum_type(MessageDirection, "message_direction_enum"), nullable=True
    )
    lead_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)


class ConversationMessage(Base, IdMixin, TimestampMixin):
    __tablename__ = "conversation_messages"
    __table_args__ = (
        UniqueConstraint("tenant_id", "provider_message_id", name="uq_conversation_messages_tenant_provider_id"),
        Index("ix_conversation_messages_conversation_id", "conversation_id"),
        Index("ix_conversation_messages_created_at", "created_at"),
    )

    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    channel: Mapped[MessageChannel] = mapped_column(
        _enum_type(MessageChannel, "message_channel_enum"), nullable=False
    )
    direction: Mapped[MessageDirection] = mapped_column(
        _enum_type(MessageDirection, "message_direction_enum"), nullable=False
    )
    message_type: Mapped[str] = mapped_column(String(50), nullable=False, default="text")
    body: Mapped[str] = mapped_column(Text, nullable=False, default="")
    media_ref: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    provider_message_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    queued_message_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    status: Mapped[DeliveryStatus | None] = mapped_column(
        _enum_type(DeliveryStatus, "delivery_status_enum"), nullable=True
    )
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class AutoResponseRule(Base, IdMixin, TimestampMixin):
    __tablename__ = "auto_response_rules"
    __table_args__ = (
        Index("ix_auto_response_rules_tenant_id", "tenant_id"),
        Index("ix_auto_response_rules_created_at", "created_at"),
    )

    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    trigger_type: Mapped[AutoResponseTriggerType] = mapped_column(
        _enum_type(AutoResponseTriggerType, "auto_response_trigger_type_enum"), nullable=False
    )
    keywords_json: Mapped[list[str]] = mapped_column(JsonType, nullable=False, default=list)
    response_body: Mapped[str | None] = mapped_column(Text, nullable=True)
    template_name: Mapped[str | None] = mapped_column(String(120), nullable=True)
    template_variables_json: Mapped[dict[str, str]] = mapped_column(JsonType, nullable=False, default=dict)
    channel: Mapped[MessageChannel] = mapped_column(
        _enum_type(MessageChannel, "message_channel_enum"), nullable=False, default=MessageChannel.WHATSAPP
    )
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    business_hours_only: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class OptOutEntry(Base, IdMixin, TimestampMixin):
    __tablename__ = "opt_out_entries"
    __table_args__ = (
        UniqueConstraint("tenant_id", "phone_number", name="uq_opt_out_entries_tenant_phone"),
        Index("ix_opt_out_entries_tenant_id", "tenant_id"),
        Index("ix_opt_out_entries_created_at", "created_at"),
    )

    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    phone_number: Mapped[str] = mapped_column(String(20), nullable=False)
    opted_in: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reason: Mapped[OptOutReason] = mapped_column(
        _enum_type(OptOutReason, "opt_out_reason_enum"), nullable=False, default=OptOutReason.USER_REQUEST
    )
    source: Mapped[str] = mapped_column(String(50), nullable=False, default="admin")
    keyword_message: Mapped[str | None] = mapped_column(String(255), nullable=True)
    opted_out_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    opted_in_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class MessageTemplate(Base, IdMixin, TimestampMixin):
    __tablename__ = "message_templates"
    __table_args__ = (
        UniqueConstraint("tenant_id", "name", name="uq_message_templates_tenant_name"),
        Index("ix_message_templates_tenant_id", "tenant_id"),
        Index("ix_message_templates_created_at", "created_at"),
    )

    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False, default="general")
    language: Mapped[str] = mapped_column(String(20), nullable=False, default="pt_BR")
    body_text: Mapped[str] = mapped_column(Text, nullable=False)
    footer_text: Mapped[str | None] = mapped_column(String(255), nullable=True)
    variables_json: Mapped[list[str]] = mapped_column(JsonType, nullable=False, default=list)
    status: Mapped[TemplateStatus] = mapped_column(
        _enum_type(TemplateStatus, "template_status_enum"), nullable=False, default=TemplateStatus.PENDING
    )
    rejection_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    usage_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class TenantMessagingSettings(Base, IdMixin, TimestampMixin):
    __tablename__ = "tenant_messaging_settings"
    __table_args__ = (
        UniqueConstraint("tenant_id", name="uq_tenant_messaging_settings_tenant_id"),
        Index("ix_tenant_messaging_settings_created_at", "created_at"),
    )

    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    settings_json: Mapped[dict[str, object]] = mapped_column(JsonType, nullable=False, default=dict)


class AuditLog(Base, IdMixin, TimestampMixin):
    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("ix_audit_logs_tenant_id", "tenant_id"),
        Index("ix_audit_logs_created_at", "created_at"),
    )

    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    actor_user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    target_type: Mapped[str] = mapped_column(String(100), nullable=False)
    target_id: Mapped[str] = mapped_column(String(255), nullable=False)
    risk_tier: Mapped[RiskTier] = mapped_column(
        _enum_type(RiskTier, "risk_tier_enum"), nullable=False, default=RiskTier.TIER_1
    )
    metadata_json: Mapped[dict[str, object]] = mapped_column(JsonType, nullable=False, default=dict)
