from __future__ import annotations

import uuid
from datetime import UTC, datetime

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.errors import MessageValidationError
from app.models import (
    AutoResponseRule,
    AutoResponseTriggerType,
    Conversation,
    ConversationStatus,
    MessageTemplate,
    OptOutEntry,
    OptOutReason,
    TemplateStatus,
)
from app.services import auto_responder, conversations, opt_out, templates, tenant_settings
from conftest import OTHER_TENANT_ID, TEST_TENANT_ID
from packages.messaging import KeywordAction

PHONE = "+5511999990000"


def test_opt_out_then_opt_in_keeps_one_entry(db_session: Session) -> None:
    opt_out.opt_out(db_session, TEST_TENANT_ID, "(11) 99999-0000", reason=OptOutReason.COMPLAINT)
    assert opt_out.is_opted_out(db_session, TEST_TENANT_ID, PHONE) is True
    assert opt_out.is_opted_out(db_session, OTHER_TENANT_ID, PHONE) is False

    entry = opt_out.opt_in(db_session, TEST_TENANT_ID, PHONE)

    assert entry is not None and entry.opted_in is True
    assert opt_out.is_opted_out(db_session, TEST_TENANT_ID, PHONE) is False
    count = db_session.scalar(select(func.count()).select_from(OptOutEntry))
    assert count == 1


def test_opt_in_without_history_returns_none(db_session: Session) -> None:
    assert opt_out.opt_in(db_session, TEST_TENANT_ID, PHONE) is None


def test_keyword_processing(db_session: Session) -> None:
    assert opt_out.process_keyword_message(db_session, TEST_TENANT_ID, PHONE, "quero uma visita") is None
    assert opt_out.process_keyword_message(db_session, TEST_TENANT_ID, PHONE, "sim") is None
    assert opt_out.process_keyword_message(db_session, TEST_TENANT_ID, PHONE, "Sair") == KeywordAction.OPT_OUT

    entry = opt_out.get_entry(db_session, TEST_TENANT_ID, PHONE)
    assert entry is not None
    assert entry.source == "keyword"
    assert entry.keyword_message == "Sair"
    assert entry.reason == OptOutReason.USER_REQUEST

    assert opt_out.process_keyword_message(db_session, TEST_TENANT_ID, PHONE, "SIM") == KeywordAction.OPT_IN


def test_bulk_operations_and_filter(db_session: Session) -> None:
    summary = opt_out.bulk_opt_out(db_session, TEST_TENANT_ID, [PHONE, "+5511988880000", "nope"])

    assert summary == {"processed": 2, "invalid": ["nope"]}
    assert opt_out.filter_opted_out(db_session, TEST_TENANT_ID, [PHONE, "+5511977770000"]) == ["+5511977770000"]

    restored = opt_out.bulk_opt_in(db_session, TEST_TENANT_ID, [PHONE, "+5511966660000"])
    assert restored == {"processed": 1, "invalid": []}

    stats = opt_out.opt_out_stats(db_session, TEST_TENANT_ID)
    assert stats["total_opted_out"] == 1
    assert stats["resubscribed"] == 1
    assert stats["by_reason"]["admin"] == 1
    assert [row["phone_number"] for row in opt_out.export_opt_outs(db_session, TEST_TENANT_ID)] == ["+5511988880000"]
    assert len(opt_out.list_opt_outs(db_session, TEST_TENANT_ID)) == 1
    assert len(opt_out.list_opt_outs(db_session, TEST_TENANT_ID, include_opted_in=True)) == 2


def test_get_or_create_conversation_is_single_row(db_session: Session) -> None:
    first, created = conversations.get_or_create_conversation(db_session, TEST_TENANT_ID, PHONE)
    second, created_again = conversations.get_or_create_conversation(db_session, TEST_TENANT_ID, PHONE, contact_name="Ana")
    other, _ = conversations.get_or_create_conversation(db_session, OTHER_TENANT_ID, PHONE)

    assert created is True and created_again is False
    assert first.id == second.id
    assert second.contact_name == "Ana"
    assert other.id != first.id


def test_conversation_create_race_returns_the_winner(db_session: Session, monkeypatch: pytest.MonkeyPatch) -> None:
    winner = Conversation(tenant_id=TEST_TENANT_ID, phone_number=PHONE, status=ConversationStatus.ACTIVE, unread_count=0)
    db_session.add(winner)
    db_session.flush()
    lookups = iter([None])
    original = conversations.get_conversation_by_phone

    def _stale_then_real(db: Session, tenant_id: uuid.UUID, phone_number: str) -> Conversation | None:
        # The first lookup misses, as if another worker inserted right after it.
        try:
            return next(lookups)
        except StopIteration:
            return original(db, tenant_id, phone_number)

    monkeypatch.setattr(conversations, "get_conversation_by_phone", _stale_then_real)

    conversation, created = conversations.get_or_create_conversation(db_session, TEST_TENANT_ID, PHONE)

    assert created is False
    assert conversation.id == winner.id
    count = db_session.scalar(select(func.count()).select_from(Conversation).where(Conversation.tenant_id == TEST_TENANT_ID))
    assert count == 1


def test_conversation_lifecycle(db_session: Session) -> None:
    conversation, _ = conversations.get_or_create_conversation(db_session, TEST_TENANT_ID, PHONE)
    conversations.record_inbound_activity(db_session, conversation, datetime.now(UTC))
    conversations.record_inbound_activity(db_session, conversation, datetime.now(UTC))
    assert conversation.unread_count == 2

    conversations.mark_as_read(db_session, conversation)
    assert conversation.unread_count == 0

    agent_id = uuid.uuid4()
    conversations.assign_to_user(db_session, conversation, agent_id)
    conversations.record_outbound_activity(db_session, conversation, datetime.now(UTC))
    assert conversation.status == ConversationStatus.WAITING

    conversations.close_conversation(db_session, conversation)
    assert conversation.status == ConversationStatus.CLOSED
    conversations.record_inbound_activity(db_session, conversation, datetime.now(UTC))
    assert conversation.status == ConversationStatus.ACTIVE

    stats = conversations.conversation_stats(db_session, TEST_TENANT_ID)
    assert stats["total"] == 1
    assert stats["active"] == 1
    assert stats["unassigned"] == 0
    assert stats["total_unread"] == 1

    assert conversations.list_conversations(db_session, TEST_TENANT_ID, assigned_to_user_id=agent_id)[0].id == conversation.id
    assert conversations.list_conversations(db_session, TEST_TENANT_ID, unassigned_only=True) == []
    assert conversations.search_conversations(db_session, TEST_TENANT_ID, "99999")[0].id == conversation.id

    with pytest.raises(ValueError):
        conversations.update_conversation(db_session, conversation, {"unread_count": 5})


def test_template_lifecycle(db_session: Session) -> None:
    template = templates.create_template(db_session, TEST_TENANT_ID, "follow_up", "Oi {{nome}}, tudo bem?")
    assert template.variables_json == ["nome"]
    assert template.status == TemplateStatus.PENDING

    with pytest.raises(templates.TemplateConflictError):
        templates.create_template(db_session, TEST_TENANT_ID, "follow_up", "duplicado")

    templates.set_template_status(db_session, template, TemplateStatus.APPROVED)
    _, errors = templates.validate_template_for_send(db_session, TEST_TENANT_ID, "follow_up", {"nome": "Ana"})
    assert errors == []
    assert templates.render_stored_template(template, {"nome": "Ana"}) == "Oi Ana, tudo bem?"

    templates.update_template(db_session, template, {"body_text": "Oi {{nome}}, posso ajudar com {{assunto}}?"})
    assert template.status == TemplateStatus.PENDING
    assert template.variables_json == ["nome", "assunto"]

    templates.set_template_status(db_session, template, TemplateStatus.REJECTED, reason="formatting")
    assert template.rejection_reason == "formatting"
    _, errors = templates.validate_template_for_send(db_session, TEST_TENANT_ID, "follow_up", {"nome": "Ana", "assunto": "x"})
    assert errors == ["template 'follow_up' is not approved (status=rejected)"]


def test_seed_default_templates_is_idempotent(db_session: Session) -> None:
    created = templates.seed_default_templates(db_session, TEST_TENANT_ID)

    assert created == 6
    assert templates.seed_default_templates(db_session, TEST_TENANT_ID) == 0
    stats = templates.template_stats(db_session, TEST_TENANT_ID)
    assert stats["approved"] == 6
    assert stats["by_category"]["visits"] == 2
    assert db_session.scalar(select(func.count()).select_from(MessageTemplate)) == 6


def test_footer_is_appended_when_rendering() -> None:
    template = MessageTemplate(
        name="promo",
        body_text="Oferta para {{nome}}",
        variables_json=["nome"],
        footer_text="Responda STOP para cancelar.",
    )
    assert templates.render_stored_template(template, {"nome": "Ana"}) == "Oferta para Ana\n\nResponda STOP para cancelar."


def test_rule_crud_and_validation(db_session: Session) -> None:
    rule = auto_responder.create_rule(
        db_session,
        TEST_TENANT_ID,
        {"name": "Preço", "trigger_type": "keyword", "keywords": ["Preço", "valor"], "response_body": "Qual imóvel?", "priority": 5},
    )
    assert rule.trigger_type == AutoResponseTriggerType.KEYWORD
    assert auto_responder.dry_run_rule(rule, "qual o valor?") is True
    assert auto_responder.dry_run_rule(rule, "bom dia") is False

    with pytest.raises(MessageValidationError) as exc_info:
        auto_responder.create_rule(db_session, TEST_TENANT_ID, {"name": "vazio", "trigger_type": "keyword", "keywords": []})
    assert "keyword rules need at least one keyword" in exc_info.value.errors
    assert "exactly one of response_body or template_name is required" in exc_info.value.errors

    auto_responder.update_rule(db_session, rule, {"keywords": ["custo"], "priority": 8})
    assert rule.keywords_json == ["custo"]
    assert rule.priority == 8

    auto_responder.toggle_rule(db_session, rule, False)
    assert auto_responder.load_active_rules(db_session, TEST_TENANT_ID) == []

    auto_responder.delete_rule(db_session, rule)
    assert auto_responder.get_rule(db_session, TEST_TENANT_ID, rule.id) is None


def test_business_hours_only_rule_dry_run(db_session: Session) -> None:
    rule = auto_responder.create_rule(
        db_session,
        TEST_TENANT_ID,
        {"name": "Todas", "trigger_type": "all_messages", "response_body": "Recebido!", "business_hours_only": True},
    )
    assert auto_responder.dry_run_rule(rule, "oi", within_business_hours=True) is True
    assert auto_responder.dry_run_rule(rule, "oi", within_business_hours=False) is False


def test_seed_default_rules_only_for_empty_tenant(db_session: Session) -> None:
    assert auto_responder.seed_default_rules(db_session, TEST_TENANT_ID) == 5
    assert auto_responder.seed_default_rules(db_session, TEST_TENANT_ID) == 0
    rules = auto_responder.list_rules(db_session, TEST_TENANT_ID)
    assert [rule.priority for rule in rules][:2] == [10, 9]


def test_malformed_stored_rule_is_skipped(db_session: Session) -> None:
    db_session.add(
        AutoResponseRule(
            tenant_id=TEST_TENANT_ID,
            name="quebrada",
            trigger_type=AutoResponseTriggerType.KEYWORD,
            keywords_json=[],
            response_body="x",
        )
    )
    db_session.flush()

    assert auto_responder.load_active_rules(db_session, TEST_TENANT_ID) == []


def test_tenant_settings_normalize_bad_values(db_session: Session) -> None:
    merged = tenant_settings.update_tenant_settings_payload(
        db_session,
        TEST_TENANT_ID,
        {"auto_reply_enabled": "yes", "default_channel": "fax", "business_hours": {"timezone": "Nowhere/Else"}},
    )

    assert merged["auto_reply_enabled"] is True
    assert merged["default_channel"] == "whatsapp"
    assert merged["business_hours"]["timezone"] == "America/Sao_Paulo"
    assert tenant_settings.business_hours_for_tenant(db_session, TEST_TENANT_ID).enabled is False
