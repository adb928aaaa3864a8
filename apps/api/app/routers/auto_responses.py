from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from ..db import get_db
from ..models import AutoResponseRule, Role
from ..schemas import (
    AutoResponseRuleCreateRequest,
    AutoResponseRuleResponse,
    AutoResponseRuleUpdateRequest,
    RuleTestRequest,
    RuleTestResponse,
    RuleToggleRequest,
)
from ..services.audit import write_audit_log
from ..services.auto_responder import (
    create_rule,
    delete_rule,
    dry_run_rule,
    get_rule,
    list_rules,
    seed_default_rules,
    toggle_rule,
    update_rule,
)
from ..tenancy import RequestContext, get_request_context, require_role

router = APIRouter(prefix="/auto-responses", tags=["auto-responses"])


def _serialize(row: AutoResponseRule) -> AutoResponseRuleResponse:
    return AutoResponseRuleResponse(
        id=row.id,
        name=row.name,
        trigger_type=row.trigger_type,
        keywords=list(row.keywords_json or []),
        response_body=row.response_body,
        template_name=row.template_name,
        template_variables=row.template_variables_json or {},
        channel=row.channel,
        priority=row.priority,
        is_active=row.is_active,
        business_hours_only=row.business_hours_only,
        created_at=row.created_at,
    )


def _load(db: Session, context: RequestContext, rule_id: uuid.UUID) -> AutoResponseRule:
    rule = get_rule(db, context.current_tenant_id, rule_id)
    if rule is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="auto-response rule not found")
    return rule


@router.get("", response_model=list[AutoResponseRuleResponse])
def list_all(
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> list[AutoResponseRuleResponse]:
    return [_serialize(row) for row in list_rules(db, context.current_tenant_id)]


@router.post("", response_model=AutoResponseRuleResponse, status_code=status.HTTP_201_CREATED)
def create(
    payload: AutoResponseRuleCreateRequest,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> AutoResponseRuleResponse:
    require_role(context, Role.ADMIN)
    rule = create_rule(db, context.current_tenant_id, payload.model_dump(mode="json"))
    write_audit_log(
        db=db,
        context=context,
        action="auto_responses.create",
        target_type="auto_response_rule",
        target_id=str(rule.id),
        metadata_json={"trigger_type": rule.trigger_type.value, "priority": rule.priority},
    )
    db.commit()
    return _serialize(rule)


@router.post("/seed-defaults")
def seed_defaults(
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> dict[str, int]:
    require_role(context, Role.ADMIN)
    created = seed_default_rules(db, context.current_tenant_id)
    db.commit()
    return {"created": created}


@router.get("/{rule_id}", response_model=AutoResponseRuleResponse)
def get_one(
    rule_id: uuid.UUID,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> AutoResponseRuleResponse:
    return _serialize(_load(db, context, rule_id))


@router.patch("/{rule_id}", response_model=AutoResponseRuleResponse)
def patch(
    rule_id: uuid.UUID,
    payload: AutoResponseRuleUpdateRequest,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> AutoResponseRuleResponse:
    require_role(context, Role.ADMIN)
    rule = update_rule(db, _load(db, context, rule_id), payload.model_dump(mode="json", exclude_unset=True))
    write_audit_log(
        db=db,
        context=context,
        action="auto_responses.update",
        target_type="auto_response_rule",
        target_id=str(rule.id),
        metadata_json={"fields": sorted(payload.model_fields_set)},
    )
    db.commit()
    return _serialize(rule)


@router.post("/{rule_id}/toggle", response_model=AutoResponseRuleResponse)
def toggle(
    rule_id: uuid.UUID,
    payload: RuleToggleRequest,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> AutoResponseRuleResponse:
    require_role(context, Role.ADMIN)
    rule = toggle_rule(db, _load(db, context, rule_id), payload.is_active)
    db.commit()
    return _serialize(rule)


@router.post("/{rule_id}/test", response_model=RuleTestResponse)
def dry_run(
    rule_id: uuid.UUID,
    payload: RuleTestRequest,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> RuleTestResponse:
    rule = _load(db, context, rule_id)
    return RuleTestResponse(
        rule_id=rule.id,
        matched=dry_run_rule(rule, payload.text, within_business_hours=payload.within_business_hours),
    )


@router.delete("/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete(
    rule_id: uuid.UUID,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> None:
    require_role(context, Role.ADMIN)
    rule = _load(db, context, rule_id)
    write_audit_log(
        db=db,
        context=context,
        action="auto_responses.delete",
        target_type="auto_response_rule",
        target_id=str(rule.id),
    )
    delete_rule(db, rule)
    db.commit()
