"""messaging engine tables

Revision ID: 0001_messaging_engine
Revises:
Create Date: 2026-10-19 09:00:00
"""

from typing import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "0001_messaging_engine"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

ENUMS: dict[str, tuple[str, ...]] = {
    "message_channel_enum": ("whatsapp", "sms"),
    "queued_message_status_enum": ("pending", "processing", "sent", "failed", "cancelled"),
    "message_source_enum": ("api", "bulk", "auto_response", "system"),
    "delivery_status_enum": ("sent", "delivered", "read", "failed"),
    "message_direction_enum": ("inbound", "outbound"),
    "conversation_status_enum": ("active", "waiting", "closed"),
    "auto_response_trigger_type_enum": ("keyword", "business_hours", "first_contact", "all_messages"),
    "opt_out_reason_enum": ("user_request", "complaint", "bounce", "admin"),
    "template_status_enum": ("pending", "approved", "rejected"),
    "risk_tier_enum": ("TIER_0", "TIER_1", "TIER_2", "TIER_3"),
}


def _enum(name: str) -> postgresql.ENUM:
    # Types are created once up front; several tables share them.
    return postgresql.ENUM(*ENUMS[name], name=name, create_type=False)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    for name, values in ENUMS.items():
        postgresql.ENUM(*values, name=name).create(bind, checkfirst=True)

    op.create_table(
        "queued_messages",
        sa.Column("tenant_id", sa.Uuid(), nullable=False),
        sa.Column("channel", _enum("message_channel_enum"), nullable=False),
        sa.Column("phone_number", sa.String(length=20), nullable=False),
        sa.Column("body", sa.Text(), nullable=True),
        sa.Column("template_name", sa.String(length=120), nullable=True),
        sa.Column("template_variables_json", sa.JSON(), nullable=False),
        sa.Column("media_url", sa.String(length=1024), nullable=True),
        sa.Column("priority", sa.Integer(), nullable=False, server_default=sa.text("5")),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=False),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default=sa.text("3")),
        sa.Column("status", _enum("queued_message_status_enum"), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("source", _enum("message_source_enum"), nullable=False, server_default=sa.text("'api'")),
        sa.Column("last_error", sa.String(length=255), nullable=True),
        sa.Column("processing_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("auto_response_rule_id", sa.Uuid(), nullable=True),
        sa.Column("conversation_id", sa.Uuid(), nullable=True),
        sa.Column("requested_by_user_id", sa.Uuid(), nullable=True),
        sa.Column("compliance_notice", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_queued_messages_tenant_id", "queued_messages", ["tenant_id"], unique=False)
    op.create_index("ix_queued_messages_drain", "queued_messages", ["channel", "status", "scheduled_for"], unique=False)
    op.create_index("ix_queued_messages_phone_number", "queued_messages", ["phone_number"], unique=False)
    op.create_index("ix_queued_messages_created_at", "queued_messages", ["created_at"], unique=False)

    op.create_table(
        "delivery_records",
        sa.Column("tenant_id", sa.Uuid(), nullable=False),
        sa.Column("queued_message_id", sa.Uuid(), nullable=False),
        sa.Column("channel", _enum("message_channel_enum"), nullable=False),
        sa.Column("provider_message_id", sa.String(length=255), nullable=True),
        sa.Column("direction", _enum("message_direction_enum"), nullable=False, server_default=sa.text("'outbound'")),
        sa.Column("status", _enum("delivery_status_enum"), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_code", sa.String(length=100), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["queued_message_id"], ["queued_messages.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("queued_message_id", name="uq_delivery_records_queued_message_id"),
        sa.UniqueConstraint("provider_message_id", name="uq_delivery_records_provider_message_id"),
    )
    op.create_index("ix_delivery_records_tenant_id", "delivery_records", ["tenant_id"], unique=False)
    op.create_index("ix_delivery_records_created_at", "delivery_records", ["created_at"], unique=False)

    op.create_table(
        "conversations",
        sa.Column("tenant_id", sa.Uuid(), nullable=False),
        sa.Column("phone_number", sa.String(length=20), nullable=False),
        sa.Column("contact_name", sa.String(length=255), nullable=True),
        sa.Column("status", _enum("conversation_status_enum"), nullable=False, server_default=sa.text("'active'")),
        sa.Column("assigned_to_user_id", sa.Uuid(), nullable=True),
        sa.Column("unread_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_message_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_message_direction", _enum("message_direction_enum"), nullable=True),
        sa.Column("lead_id", sa.Uuid(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "phone_number", name="uq_conversations_tenant_phone"),
    )
    op.create_index("ix_conversations_tenant_id", "conversations", ["tenant_id"], unique=False)
    op.create_index("ix_conversations_last_message_at", "conversations", ["last_message_at"], unique=False)
    op.create_index("ix_conversations_created_at", "conversations", ["created_at"], unique=False)

    op.create_table(
        "conversation_messages",
        sa.Column("tenant_id", sa.Uuid(), nullable=False),
        sa.Column("conversation_id", sa.Uuid(), nullable=False),
        sa.Column("channel", _enum("message_channel_enum"), nullable=False),
        sa.Column("direction", _enum("message_direction_enum"), nullable=False),
        sa.Column("message_type", sa.String(length=50), nullable=False, server_default=sa.text("'text'")),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("media_ref", sa.String(length=1024), nullable=True),
        sa.Column("provider_message_id", sa.String(length=255), nullable=True),
        sa.Column("queued_message_id", sa.Uuid(), nullable=True),
        sa.Column("status", _enum("delivery_status_enum"), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["conversation_id"], ["conversations.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "provider_message_id", name="uq_conversation_messages_tenant_provider_id"),
    )
    op.create_index(
        "ix_conversation_messages_conversation_id", "conversation_messages", ["conversation_id"], unique=False
    )
    op.create_index("ix_conversation_messages_created_at", "conversation_messages", ["created_at"], unique=False)

    op.create_table(
        "auto_response_rules",
        sa.Column("tenant_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("trigger_type", _enum("auto_response_trigger_type_enum"), nullable=False),
        sa.Column("keywords_json", sa.JSON(), nullable=False),
        sa.Column("response_body", sa.Text(), nullable=True),
        sa.Column("template_name", sa.String(length=120), nullable=True),
        sa.Column("template_variables_json", sa.JSON(), nullable=False),
        sa.Column("channel", _enum("message_channel_enum"), nullable=False, server_default=sa.text("'whatsapp'")),
        sa.Column("priority", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("business_hours_only", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_auto_response_rules_tenant_id", "auto_response_rules", ["tenant_id"], unique=False)
    op.create_index("ix_auto_response_rules_created_at", "auto_response_rules", ["created_at"], unique=False)

    op.create_table(
        "opt_out_entries",
        sa.Column("tenant_id", sa.Uuid(), nullable=False),
        sa.Column("phone_number", sa.String(length=20), nullable=False),
        sa.Column("opted_in", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("reason", _enum("opt_out_reason_enum"), nullable=False, server_default=sa.text("'user_request'")),
        sa.Column("source", sa.String(length=50), nullable=False, server_default=sa.text("'admin'")),
        sa.Column("keyword_message", sa.String(length=255), nullable=True),
        sa.Column("opted_out_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("opted_in_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "phone_number", name="uq_opt_out_entries_tenant_phone"),
    )
    op.create_index("ix_opt_out_entries_tenant_id", "opt_out_entries", ["tenant_id"], unique=False)
    op.create_index("ix_opt_out_entries_created_at", "opt_out_entries", ["created_at"], unique=False)

    op.create_table(
        "message_templates",
        sa.Column("tenant_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("category", sa.String(length=100), nullable=False, server_default=sa.text("'general'")),
        sa.Column("language", sa.String(length=20), nullable=False, server_default=sa.text("'pt_BR'")),
        sa.Column("body_text", sa.Text(), nullable=False),
        sa.Column("footer_text", sa.String(length=255), nullable=True),
        sa.Column("variables_json", sa.JSON(), nullable=False),
        sa.Column("status", _enum("template_status_enum"), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("rejection_reason", sa.String(length=255), nullable=True),
        sa.Column("usage_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "name", name="uq_message_templates_tenant_name"),
    )
    op.create_index("ix_message_templates_tenant_id", "message_templates", ["tenant_id"], unique=False)
    op.create_index("ix_message_templates_created_at", "message_templates", ["created_at"], unique=False)

    op.create_table(
        "tenant_messaging_settings",
        sa.Column("tenant_id", sa.Uuid(), nullable=False),
        sa.Column("settings_json", sa.JSON(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", name="uq_tenant_messaging_settings_tenant_id"),
    )
    op.create_index(
        "ix_tenant_messaging_settings_created_at", "tenant_messaging_settings", ["created_at"], unique=False
    )

    op.create_table(
        "audit_logs",
        sa.Column("tenant_id", sa.Uuid(), nullable=False),
        sa.Column("actor_user_id", sa.Uuid(), nullable=True),
        sa.Column("action", sa.String(length=100), nullable=False),
        sa.Column("target_type", sa.String(length=100), nullable=False),
        sa.Column("target_id", sa.String(length=255), nullable=False),
        sa.Column("risk_tier", _enum("risk_tier_enum"), nullable=False, server_default=sa.text("'TIER_1'")),
        sa.Column("metadata_json", sa.JSON(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_audit_logs_tenant_id", "audit_logs", ["tenant_id"], unique=False)
    op.create_index("ix_audit_logs_created_at", "audit_logs", ["created_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_audit_logs_created_at", table_name="audit_logs")
    op.drop_index("ix_audit_logs_tenant_id", table_name="audit_logs")
    op.drop_table("audit_logs")

    op.drop_index("ix_tenant_messaging_settings_created_at", table_name="tenant_messaging_settings")
    op.drop_table("tenant_messaging_settings")

    op.drop_index("ix_message_templates_created_at", table_name="message_templates")
    op.drop_index("ix_message_templates_tenant_id", table_name="message_templates")
    op.drop_table("message_templates")

    op.drop_index("ix_opt_out_entries_created_at", table_name="opt_out_entries")
    op.drop_index("ix_opt_out_entries_tenant_id", table_name="opt_out_entries")
    op.drop_table("opt_out_entries")

    op.drop_index("ix_auto_response_rules_created_at", table_name="auto_response_rules")
    op.drop_index("ix_auto_response_rules_tenant_id", table_name="auto_response_rules")
    op.drop_table("auto_response_rules")

    op.drop_index("ix_conversation_messages_created_at", table_name="conversation_messages")
    op.drop_index("ix_conversation_messages_conversation_id", table_name="conversation_messages")
    op.drop_table("conversation_messages")

    op.drop_index("ix_conversations_created_at", table_name="conversations")
    op.drop_index("ix_conversations_last_message_at", table_name="conversations")
    op.drop_index("ix_conversations_tenant_id", table_name="conversations")
    op.drop_table("conversations")

    op.drop_index("ix_delivery_records_created_at", table_name="delivery_records")
    op.drop_index("ix_delivery_records_tenant_id", table_name="delivery_records")
    op.drop_table("delivery_records")

    op.drop_index("ix_queued_messages_created_at", table_name="queued_messages")
    op.drop_index("ix_queued_messages_phone_number", table_name="queued_messages")
    op.drop_index("ix_queued_messages_drain", table_name="queued_messages")
    op.drop_index("ix_queued_messages_tenant_id", table_name="queued_messages")
    op.drop_table("queued_messages")

    for name in reversed(list(ENUMS)):
        sa.Enum(name=name).drop(op.get_bind(), checkfirst=True)
