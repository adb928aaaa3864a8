from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from packages.messaging import TemplateRenderError, estimate_sms_cost, sms_segments

from ..db import get_db
from ..models import MessageTemplate, RiskTier, Role, TemplateStatus
from ..schemas import (
    TemplateCreateRequest,
    TemplatePreviewRequest,
    TemplatePreviewResponse,
    TemplateResponse,
    TemplateStatusRequest,
    TemplateUpdateRequest,
)
from ..services.audit import write_audit_log
from ..services.templates import (
    TemplateConflictError,
    create_template,
    delete_template,
    get_template_by_id,
    list_templates,
    render_stored_template,
    seed_default_templates,
    set_template_status,
    template_stats,
    update_template,
)
from ..tenancy import RequestContext, get_request_context, require_role

router = APIRouter(prefix="/templates", tags=["templates"])


def _serialize(row: MessageTemplate) -> TemplateResponse:
    return TemplateResponse(
        id=row.id,
        name=row.name,
        category=row.category,
        language=row.language,
        body_text=row.body_text,
        footer_text=row.footer_text,
        variables=list(row.variables_json or []),
        status=row.status,
        rejection_reason=row.rejection_reason,
        usage_count=row.usage_count,
        created_at=row.created_at,
    )


def _load(db: Session, context: RequestContext, template_id: uuid.UUID) -> MessageTemplate:
    template = get_template_by_id(db, context.current_tenant_id, template_id)
    if template is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="template not found")
    return template


@router.get("", response_model=list[TemplateResponse])
def list_all(
    status_filter: TemplateStatus | None = Query(default=None, alias="status"),
    category: str | None = Query(default=None),
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> list[TemplateResponse]:
    rows = list_templates(db, context.current_tenant_id, status=status_filter, category=category)
    return [_serialize(row) for row in rows]


@router.get("/stats")
def stats(
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> dict[str, object]:
    return template_stats(db, context.current_tenant_id)


@router.post("", response_model=TemplateResponse, status_code=status.HTTP_201_CREATED)
def create(
    payload: TemplateCreateRequest,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> TemplateResponse:
    require_role(context, Role.ADMIN)
    try:
        template = create_template(
            db,
            tenant_id=context.current_tenant_id,
            name=payload.name,
            body_text=payload.body_text,
            category=payload.category,
            language=payload.language,
            footer_text=payload.footer_text,
        )
    except TemplateConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    write_audit_log(
        db=db,
        context=context,
        action="templates.create",
        target_type="message_template",
        target_id=str(template.id),
        metadata_json={"name": template.name},
    )
    db.commit()
    return _serialize(template)


@router.post("/seed-defaults")
def seed_defaults(
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> dict[str, int]:
    require_role(context, Role.ADMIN)
    created = seed_default_templates(db, context.current_tenant_id)
    db.commit()
    return {"created": created}


@router.get("/{template_id}", response_model=TemplateResponse)
def get_one(
    template_id: uuid.UUID,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> TemplateResponse:
    return _serialize(_load(db, context, template_id))


@router.patch("/{template_id}", response_model=TemplateResponse)
def patch(
    template_id: uuid.UUID,
    payload: TemplateUpdateRequest,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> TemplateResponse:
    require_role(context, Role.ADMIN)
    template = update_template(db, _load(db, context, template_id), payload.model_dump(exclude_unset=True))
    db.commit()
    return _serialize(template)


@router.post("/{template_id}/status", response_model=TemplateResponse)
def change_status(
    template_id: uuid.UUID,
    payload: TemplateStatusRequest,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> TemplateResponse:
    require_role(context, Role.OWNER)
    template = set_template_status(db, _load(db, context, template_id), payload.status, payload.reason)
    write_audit_log(
        db=db,
        context=context,
        action="templates.status",
        target_type="message_template",
        target_id=str(template.id),
        metadata_json={"status": payload.status.value, "reason": payload.reason},
        risk_tier=RiskTier.TIER_2,
    )
    db.commit()
    return _serialize(template)


@router.post("/{template_id}/preview", response_model=TemplatePreviewResponse)
def preview(
    template_id: uuid.UUID,
    payload: TemplatePreviewRequest,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> TemplatePreviewResponse:
    template = _load(db, context, template_id)
    try:
        rendered = render_stored_template(template, payload.variables)
    except TemplateRenderError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return TemplatePreviewResponse(
        rendered=rendered,
        sms_segments=sms_segments(rendered),
        estimated_sms_cost=estimate_sms_cost(rendered),
    )


@router.delete("/{template_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete(
    template_id: uuid.UUID,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> None:
    require_role(context, Role.ADMIN)
    template = _load(db, context, template_id)
    write_audit_log(
        db=db,
        context=context,
        action="templates.delete",
        target_type="message_template",
        target_id=str(template.id),
        metadata_json={"name": template.name},
    )
    delete_template(db, template)
    db.commit()
