from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from packages.autoresponse import TRIGGER_ADAPTER, InboundEvent, RuleDefinition, evaluate_rules, trigger_matches
from packages.messaging import is_within_business_hours

from ..db import ensure_utc, utcnow
from ..errors import MessageValidationError
from ..models import (
    AutoResponseRule,
    AutoResponseTriggerType,
    Conversation,
    MessageChannel,
    MessagePriority,
    MessageSource,
    QueuedMessage,
)
from .message_queue import AutoResponseContext, SendRequest, enqueue_message
from .tenant_settings import business_hours_for_tenant, get_tenant_settings_payload

logger = logging.getLogger(__name__)

DEFAULT_RULES: tuple[dict[str, Any], ...] = (
    {
        "name": "Resposta Fora do Horário",
        "trigger_type": AutoResponseTriggerType.BUSINESS_HOURS,
        "keywords": [],
        "response_body": (
            "Olá! No momento estamos fora do horário de atendimento. Nossa equipe retornará seu contato "
            "em breve. Horário de atendimento: Segunda a Sexta, 9h às 18h."
        ),
        "priority": 10,
    },
    {
        "name": "Primeiro Contato",
        "trigger_type": AutoResponseTriggerType.FIRST_CONTACT,
        "keywords": [],
        "response_body": "Olá! Bem-vindo(a)! Obrigado por entrar em contato. Como posso ajudá-lo hoje?",
        "priority": 9,
    },
    {
        "name": "Palavra-chave: Informações",
        "trigger_type": AutoResponseTriggerType.KEYWORD,
        "keywords": ["informação", "informações", "info", "detalhes"],
        "response_body": (
            "Ficarei feliz em fornecer mais informações! Sobre qual imóvel você gostaria de saber mais? "
            "Por favor, me informe o código ou endereço."
        ),
        "priority": 7,
    },
    {
        "name": "Palavra-chave: Visita",
        "trigger_type": AutoResponseTriggerType.KEYWORD,
        "keywords": ["visita", "visitar", "agendar", "agendamento"],
        "response_body": (
            "Ótimo! Vamos agendar uma visita. Qual imóvel você gostaria de visitar? "
            "E qual seria o melhor dia e horário para você?"
        ),
        "priority": 7,
    },
    {
        "name": "Palavra-chave: Preço",
        "trigger_type": AutoResponseTriggerType.KEYWORD,
        "keywords": ["preço", "valor", "quanto custa", "custo"],
        "response_body": (
            "Claro! Para informar o valor correto, qual imóvel você está interessado? "
            "Me informe o código ou endereço."
        ),
        "priority": 7,
    },
)


def rule_definition(rule: AutoResponseRule) -> RuleDefinition:
    trigger_payload: dict[str, Any] = {"type": rule.trigger_type.value}
    if rule.trigger_type == AutoResponseTriggerType.KEYWORD:
        trigger_payload["keywords"] = list(rule.keywords_json or [])
    return RuleDefinition(
        id=rule.id,
        name=rule.name,
        trigger=TRIGGER_ADAPTER.validate_python(trigger_payload),
        priority=rule.priority,
        business_hours_only=rule.business_hours_only,
        response_body=rule.response_body,
        template_name=rule.template_name,
        template_variables=dict(rule.template_variables_json or {}),
    )


def validate_rule_fields(
    trigger_type: AutoResponseTriggerType,
    keywords: list[str],
    response_body: str | None,
    template_name: str | None,
) -> list[str]:
    errors: list[str] = []
    if bool(response_body and response_body.strip()) == bool(template_name):
        errors.append("exactly one of response_body or template_name is required")
    try:
        payload: dict[str, Any] = {"type": trigger_type.value}
        if trigger_type == AutoResponseTriggerType.KEYWORD:
            payload["keywords"] = keywords
        TRIGGER_ADAPTER.validate_python(payload)
    except ValidationError:
        errors.append("keyword rules need at least one keyword")
    return errors


def load_active_rules(db: Session, tenant_id: uuid.UUID) -> list[RuleDefinition]:
    rows = db.scalars(
        select(AutoResponseRule)
        .where(AutoResponseRule.tenant_id == tenant_id, AutoResponseRule.is_active.is_(True))
        .order_by(AutoResponseRule.priority.desc(), AutoResponseRule.created_at.asc())
    ).all()
    definitions: list[RuleDefinition] = []
    for row in rows:
        try:
            definitions.append(rule_definition(row))
        except ValidationError:
            logger.warning("skipping malformed auto-response rule", extra={"rule_id": str(row.id)})
    return definitions


def process_inbound_message(
    db: Session,
    tenant_id: uuid.UUID,
    conversation: Conversation,
    channel: MessageChannel,
    text: str,
    first_contact_window: timedelta = timedelta(minutes=5),
    default_max_retries: int = 3,
    now: datetime | None = None,
) -> QueuedMessage | None:
    """Enqueue at most one automatic reply for an inbound message."""
    tenant_settings = get_tenant_settings_payload(db, tenant_id)
    if not tenant_settings["auto_reply_enabled"]:
        return None
    rules = load_active_rules(db, tenant_id)
    if not rules:
        return None

    current = now or utcnow()
    event = InboundEvent(
        tenant_id=tenant_id,
        conversation_id=conversation.id,
        phone_number=conversation.phone_number,
        text=text,
        conversation_created_at=ensure_utc(conversation.created_at) or current,
        within_business_hours=is_within_business_hours(business_hours_for_tenant(db, tenant_id), current),
        now=current,
    )
    match = evaluate_rules(rules, event, first_contact_window)
    if match is None:
        return None

    rule = match.rule
    request = SendRequest(
        tenant_id=tenant_id,
        channel=channel,
        phone_number=conversation.phone_number,
        body=rule.response_body,
        template_name=rule.template_name if not rule.response_body else None,
        template_variables=rule.template_variables,
        priority=MessagePriority.HIGH,
        source=MessageSource.AUTO_RESPONSE,
        auto_response=AutoResponseContext(rule_id=rule.id, conversation_id=conversation.id),
    )
    try:
        message = enqueue_message(db, request, default_max_retries=default_max_retries)
    except MessageValidationError as exc:
        logger.warning(
            "auto-response not enqueued",
            extra={"rule_id": str(rule.id), "conversation_id": str(conversation.id), "errors": exc.errors},
        )
        return None
    logger.info(
        "auto-response enqueued",
        extra={"rule_id": str(rule.id), "message_id": str(message.id), "reason": match.reason},
    )
    return message


def dry_run_rule(
    rule: AutoResponseRule,
    text: str,
    within_business_hours: bool = True,
    now: datetime | None = None,
) -> bool:
    """Dry-run one rule against a sample message on a brand new conversation."""
    current = now or utcnow()
    event = InboundEvent(
        tenant_id=rule.tenant_id,
        conversation_id=uuid.uuid4(),
        phone_number="+0000000000",
        text=text,
        conversation_created_at=current,
        within_business_hours=within_business_hours,
        now=current,
    )
    definition = rule_definition(rule)
    if definition.business_hours_only and not within_business_hours:
        return False
    return trigger_matches(definition.trigger, event)


def list_rules(db: Session, tenant_id: uuid.UUID) -> list[AutoResponseRule]:
    return list(
        db.scalars(
            select(AutoResponseRule)
            .where(AutoResponseRule.tenant_id == tenant_id)
            .order_by(AutoResponseRule.priority.desc(), AutoResponseRule.created_at.asc())
        ).all()
    )


def get_rule(db: Session, tenant_id: uuid.UUID, rule_id: uuid.UUID) -> AutoResponseRule | None:
    return db.scalar(
        select(AutoResponseRule).where(AutoResponseRule.tenant_id == tenant_id, AutoResponseRule.id == rule_id)
    )


def create_rule(db: Session, tenant_id: uuid.UUID, fields: dict[str, Any]) -> AutoResponseRule:
    trigger_type = AutoResponseTriggerType(fields["trigger_type"])
    keywords = [str(keyword) for keyword in fields.get("keywords") or []]
    errors = validate_rule_fields(trigger_type, keywords, fields.get("response_body"), fields.get("template_name"))
    if errors:
        raise MessageValidationError(errors)
    rule = AutoResponseRule(
        tenant_id=tenant_id,
        name=fields["name"],
        trigger_type=trigger_type,
        keywords_json=keywords,
        response_body=fields.get("response_body"),
        template_name=fields.get("template_name"),
        template_variables_json=dict(fields.get("template_variables") or {}),
        channel=MessageChannel(fields.get("channel") or MessageChannel.WHATSAPP.value),
        priority=int(fields.get("priority") or 0),
        is_active=bool(fields.get("is_active", True)),
        business_hours_only=bool(fields.get("business_hours_only", False)),
    )
    db.add(rule)
    db.flush()
    return rule


def update_rule(db: Session, rule: AutoResponseRule, patch: dict[str, Any]) -> AutoResponseRule:
    trigger_type = AutoResponseTriggerType(patch.get("trigger_type") or rule.trigger_type.value)
    keywords = [str(keyword) for keyword in patch["keywords"]] if patch.get("keywords") is not None else list(rule.keywords_json or [])
    response_body = patch["response_body"] if "response_body" in patch else rule.response_body
    template_name = patch["template_name"] if "template_name" in patch else rule.template_name
    errors = validate_rule_fields(trigger_type, keywords, response_body, template_name)
    if errors:
        raise MessageValidationError(errors)
    rule.trigger_type = trigger_type
    rule.keywords_json = keywords
    rule.response_body = response_body
    rule.template_name = template_name
    if patch.get("template_variables") is not None:
        rule.template_variables_json = dict(patch["template_variables"])
    for key in ("name", "priority", "is_active", "business_hours_only"):
        if patch.get(key) is not None:
            setattr(rule, key, patch[key])
    db.flush()
    return rule


def toggle_rule(db: Session, rule: AutoResponseRule, is_active: bool) -> AutoResponseRule:
    rule.is_active = is_active
    db.flush()
    return rule


def delete_rule(db: Session, rule: AutoResponseRule) -> None:
    db.delete(rule)
    db.flush()


def seed_default_rules(db: Session, tenant_id: uuid.UUID) -> int:
    if list_rules(db, tenant_id):
        return 0
    for definition in DEFAULT_RULES:
        create_rule(
            db,
            tenant_id,
            {
                "name": definition["name"],
                "trigger_type": definition["trigger_type"].value,
                "keywords": definition["keywords"],
                "response_body": definition["response_body"],
                "priority": definition["priority"],
            },
        )
    return len(DEFAULT_RULES)
