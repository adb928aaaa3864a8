from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from packages.messaging import DEFAULT_TEMPLATES, extract_variables, missing_variables, render_template

from ..models import MessageTemplate, TemplateStatus


class TemplateConflictError(ValueError):
    pass


def get_template(db: Session, tenant_id: uuid.UUID, name: str) -> MessageTemplate | None:
    return db.scalar(select(MessageTemplate).where(MessageTemplate.tenant_id == tenant_id, MessageTemplate.name == name))


def get_template_by_id(db: Session, tenant_id: uuid.UUID, template_id: uuid.UUID) -> MessageTemplate | None:
    return db.scalar(
        select(MessageTemplate).where(MessageTemplate.tenant_id == tenant_id, MessageTemplate.id == template_id)
    )


def list_templates(
    db: Session,
    tenant_id: uuid.UUID,
    status: TemplateStatus | None = None,
    category: str | None = None,
) -> list[MessageTemplate]:
    stmt = select(MessageTemplate).where(MessageTemplate.tenant_id == tenant_id)
    if status is not None:
        stmt = stmt.where(MessageTemplate.status == status)
    if category:
        stmt = stmt.where(MessageTemplate.category == category)
    return list(db.scalars(stmt.order_by(MessageTemplate.name.asc())).all())


def create_template(
    db: Session,
    tenant_id: uuid.UUID,
    name: str,
    body_text: str,
    category: str = "general",
    language: str = "pt_BR",
    footer_text: str | None = None,
    variables: list[str] | None = None,
    status: TemplateStatus = TemplateStatus.PENDING,
) -> MessageTemplate:
    if get_template(db, tenant_id, name) is not None:
        raise TemplateConflictError(f"template '{name}' already exists")
    template = MessageTemplate(
        tenant_id=tenant_id,
        name=name,
        body_text=body_text,
        category=category,
        language=language,
        footer_text=footer_text,
        variables_json=variables if variables is not None else extract_variables(body_text),
        status=status,
        usage_count=0,
    )
    db.add(template)
    db.flush()
    return template


def update_template(db: Session, template: MessageTemplate, patch: dict[str, Any]) -> MessageTemplate:
    """Apply a partial update. Editing the body sends the template back for approval."""
    for key in ("category", "language", "footer_text"):
        if key in patch and patch[key] is not None:
            setattr(template, key, patch[key])
    if patch.get("body_text") and patch["body_text"] != template.body_text:
        template.body_text = patch["body_text"]
        template.variables_json = extract_variables(template.body_text)
        template.status = TemplateStatus.PENDING
        template.rejection_reason = None
    db.flush()
    return template


def set_template_status(
    db: Session,
    template: MessageTemplate,
    status: TemplateStatus,
    reason: str | None = None,
) -> MessageTemplate:
    template.status = status
    template.rejection_reason = reason if status == TemplateStatus.REJECTED else None
    db.flush()
    return template


def delete_template(db: Session, template: MessageTemplate) -> None:
    db.delete(template)
    db.flush()


def validate_template_for_send(
    db: Session,
    tenant_id: uuid.UUID,
    name: str,
    variables: dict[str, Any] | None,
) -> tuple[MessageTemplate | None, list[str]]:
    template = get_template(db, tenant_id, name)
    if template is None:
        return None, [f"template '{name}' not found"]
    errors: list[str] = []
    if template.status != TemplateStatus.APPROVED:
        errors.append(f"template '{name}' is not approved (status={template.status.value})")
    missing = missing_variables(list(template.variables_json or []), variables)
    if missing:
        errors.append(f"template '{name}' is missing variables: {', '.join(missing)}")
    return template, errors


def render_stored_template(template: MessageTemplate, variables: dict[str, Any] | None) -> str:
    body = render_template(
        template.body_text,
        variables,
        required=list(template.variables_json or []),
        template_name=template.name,
    )
    if template.footer_text:
        body = f"{body}\n\n{template.footer_text}"
    return body


def template_parameters(template: MessageTemplate, variables: dict[str, Any] | None) -> list[str]:
    values = variables or {}
    return [str(values.get(name, "")) for name in template.variables_json or []]


def increment_usage(db: Session, template: MessageTemplate) -> None:
    db.execute(
        update(MessageTemplate)
        .where(MessageTemplate.id == template.id)
        .values(usage_count=MessageTemplate.usage_count + 1)
        .execution_options(synchronize_session=False)
    )


def template_stats(db: Session, tenant_id: uuid.UUID) -> dict[str, Any]:
    templates = list_templates(db, tenant_id)
    by_category: dict[str, int] = {}
    for template in templates:
        by_category[template.category] = by_category.get(template.category, 0) + 1
    return {
        "total": len(templates),
        "approved": sum(1 for row in templates if row.status == TemplateStatus.APPROVED),
        "pending": sum(1 for row in templates if row.status == TemplateStatus.PENDING),
        "rejected": sum(1 for row in templates if row.status == TemplateStatus.REJECTED),
        "total_usage": sum(int(row.usage_count or 0) for row in templates),
        "by_category": by_category,
    }


def seed_default_templates(db: Session, tenant_id: uuid.UUID) -> int:
    created = 0
    for definition in DEFAULT_TEMPLATES:
        if get_template(db, tenant_id, definition.name) is not None:
            continue
        create_template(
            db,
            tenant_id=tenant_id,
            name=definition.name,
            body_text=definition.body_text,
            category=definition.category,
            language=definition.language,
            footer_text=definition.footer_text,
            variables=list(definition.variables),
            status=TemplateStatus.APPROVED,
        )
        created += 1
    return created
