from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from .models import (
    AutoResponseTriggerType,
    ConversationStatus,
    DeliveryStatus,
    MessageChannel,
    MessageDirection,
    MessageSource,
    OptOutReason,
    QueuedMessageStatus,
    TemplateStatus,
)


class SendMessageRequest(BaseModel):
    channel: MessageChannel
    phone_number: str = Field(min_length=1, max_length=32)
    body: str | None = None
    template_name: str | None = Field(default=None, max_length=120)
    template_variables: dict[str, str] = Field(default_factory=dict)
    media_url: str | None = Field(default=None, max_length=1024)
    priority: int | None = None
    scheduled_for: datetime | None = None
    max_retries: int | None = None


class BulkSendRequest(BaseModel):
    messages: list[SendMessageRequest] = Field(min_length=1, max_length=1000)


class EnqueueResponse(BaseModel):
    id: uuid.UUID
    status: QueuedMessageStatus


class BulkEnqueueEntryResponse(BaseModel):
    index: int
    id: uuid.UUID | None = None
    errors: list[str] = Field(default_factory=list)


class BulkEnqueueResponse(BaseModel):
    accepted: int
    rejected: int
    results: list[BulkEnqueueEntryResponse]


class DeliveryRecordResponse(BaseModel):
    provider_message_id: str | None
    status: DeliveryStatus
    sent_at: datetime | None
    delivered_at: datetime | None
    read_at: datetime | None
    failed_at: datetime | None
    error_code: str | None
    error_message: str | None


class QueuedMessageResponse(BaseModel):
    id: uuid.UUID
    tenant_id: uuid.UUID
    channel: MessageChannel
    phone_number: str
    body: str | None
    template_name: str | None
    template_variables: dict[str, str]
    media_url: str | None
    priority: int
    scheduled_for: datetime
    retry_count: int
    max_retries: int
    status: QueuedMessageStatus
    source: MessageSource
    last_error: str | None
    processed_at: datetime | None
    auto_response_rule_id: uuid.UUID | None
    conversation_id: uuid.UUID | None
    created_at: datetime
    delivery: DeliveryRecordResponse | None = None


class QueueStatsResponse(BaseModel):
    pending: int
    processing: int
    sent: int
    failed: int
    cancelled: int
    scheduled: int
    total: int
    rate_limits: dict[str, dict[str, int]] = Field(default_factory=dict)


class ConversationResponse(BaseModel):
    id: uuid.UUID
    tenant_id: uuid.UUID
    phone_number: str
    contact_name: str | None
    status: ConversationStatus
    assigned_to_user_id: uuid.UUID | None
    unread_count: int
    last_message_at: datetime | None
    last_message_direction: MessageDirection | None
    lead_id: uuid.UUID | None
    created_at: datetime


class ConversationMessageResponse(BaseModel):
    id: uuid.UUID
    conversation_id: uuid.UUID
    channel: MessageChannel
    direction: MessageDirection
    message_type: str
    body: str
    media_ref: str | None
    provider_message_id: str | None
    status: DeliveryStatus | None
    occurred_at: datetime
    delivered_at: datetime | None
    read_at: datetime | None


class ConversationDetailResponse(BaseModel):
    conversation: ConversationResponse
    messages: list[ConversationMessageResponse]


class ConversationPatchRequest(BaseModel):
    contact_name: str | None = Field(default=None, max_length=255)
    status: ConversationStatus | None = None
    lead_id: uuid.UUID | None = None


class ConversationAssignRequest(BaseModel):
    user_id: uuid.UUID | None = None


class ConversationStatsResponse(BaseModel):
    total: int
    active: int
    waiting: int
    closed: int
    unassigned: int
    with_unread: int
    total_unread: int


class OptOutRequest(BaseModel):
    phone_number: str = Field(min_length=1, max_length=32)
    reason: OptOutReason = OptOutReason.ADMIN


class BulkOptOutRequest(BaseModel):
    phone_numbers: list[str] = Field(min_length=1, max_length=5000)
    reason: OptOutReason = OptOutReason.ADMIN


class BulkOptOutResponse(BaseModel):
    processed: int
    invalid: list[str]


class OptOutEntryResponse(BaseModel):
    id: uuid.UUID
    phone_number: str
    opted_in: bool
    reason: OptOutReason
    source: str
    keyword_message: str | None
    opted_out_at: datetime | None
    opted_in_at: datetime | None


class OptOutStatusResponse(BaseModel):
    phone_number: str
    opted_out: bool


class OptOutStatsResponse(BaseModel):
    total_opted_out: int
    resubscribed: int
    by_reason: dict[str, int]


class AutoResponseRuleCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    trigger_type: AutoResponseTriggerType
    keywords: list[str] = Field(default_factory=list)
    response_body: str | None = None
    template_name: str | None = Field(default=None, max_length=120)
    template_variables: dict[str, str] = Field(default_factory=dict)
    channel: MessageChannel = MessageChannel.WHATSAPP
    priority: int = 0
    is_active: bool = True
    business_hours_only: bool = False


class AutoResponseRuleUpdateRequest(BaseModel):
    name: str | None = Field(default=None, max_length=255)
    trigger_type: AutoResponseTriggerType | None = None
    keywords: list[str] | None = None
    response_body: str | None = None
    template_name: str | None = Field(default=None, max_length=120)
    template_variables: dict[str, str] | None = None
    priority: int | None = None
    is_active: bool | None = None
    business_hours_only: bool | None = None


class AutoResponseRuleResponse(BaseModel):
    id: uuid.UUID
    name: str
    trigger_type: AutoResponseTriggerType
    keywords: list[str]
    response_body: str | None
    template_name: str | None
    template_variables: dict[str, str]
    channel: MessageChannel
    priority: int
    is_active: bool
    business_hours_only: bool
    created_at: datetime


class RuleToggleRequest(BaseModel):
    is_active: bool


class RuleTestRequest(BaseModel):
    text: str = Field(min_length=1, max_length=4096)
    within_business_hours: bool = True


class RuleTestResponse(BaseModel):
    rule_id: uuid.UUID
    matched: bool


class TemplateCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=120, pattern=r"^[a-z0-9_]+$")
    body_text: str = Field(min_length=1, max_length=4096)
    category: str = Field(default="general", max_length=100)
    language: str = Field(default="pt_BR", max_length=20)
    footer_text: str | None = Field(default=None, max_length=255)


class TemplateUpdateRequest(BaseModel):
    body_text: str | None = Field(default=None, max_length=4096)
    category: str | None = Field(default=None, max_length=100)
    language: str | None = Field(default=None, max_length=20)
    footer_text: str | None = Field(default=None, max_length=255)


class TemplateStatusRequest(BaseModel):
    status: TemplateStatus
    reason: str | None = Field(default=None, max_length=255)


class TemplateResponse(BaseModel):
    id: uuid.UUID
    name: str
    category: str
    language: str
    body_text: str
    footer_text: str | None
    variables: list[str]
    status: TemplateStatus
    rejection_reason: str | None
    usage_count: int
    created_at: datetime


class TemplatePreviewRequest(BaseModel):
    variables: dict[str, str] = Field(default_factory=dict)


class TemplatePreviewResponse(BaseModel):
    rendered: str
    sms_segments: int
    estimated_sms_cost: float


class TenantSettingsResponse(BaseModel):
    tenant_id: uuid.UUID
    settings: dict[str, Any]


class TenantSettingsUpdateRequest(BaseModel):
    auto_reply_enabled: bool | None = None
    send_opt_out_confirmation: bool | None = None
    default_channel: MessageChannel | None = None
    business_hours: dict[str, Any] | None = None


class WebhookAckResponse(BaseModel):
    status: str = "ok"
    inbound_created: int = 0
    duplicates: int = 0
    statuses_applied: int = 0
