from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import ValidationError
from sqlalchemy.orm import Session

from packages.messaging import BusinessHours

from ..db import get_db
from ..models import RiskTier, Role
from ..schemas import TenantSettingsResponse, TenantSettingsUpdateRequest
from ..services.audit import write_audit_log
from ..services.tenant_settings import get_tenant_settings_payload, update_tenant_settings_payload
from ..tenancy import RequestContext, get_request_context, require_role

router = APIRouter(prefix="/settings", tags=["settings"])


@router.get("", response_model=TenantSettingsResponse)
def get_settings(
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> TenantSettingsResponse:
    return TenantSettingsResponse(
        tenant_id=context.current_tenant_id,
        settings=get_tenant_settings_payload(db, context.current_tenant_id),
    )


@router.patch("", response_model=TenantSettingsResponse)
def patch_settings(
    payload: TenantSettingsUpdateRequest,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> TenantSettingsResponse:
    require_role(context, Role.ADMIN)
    patch = payload.model_dump(mode="json", exclude_none=True)
    if "business_hours" in patch:
        try:
            patch["business_hours"] = BusinessHours.model_validate(patch["business_hours"]).model_dump()
        except ValidationError as exc:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=[error["msg"] for error in exc.errors()],
            ) from exc
    merged = update_tenant_settings_payload(db, context.current_tenant_id, patch)
    write_audit_log(
        db=db,
        context=context,
        action="settings.update",
        target_type="tenant_messaging_settings",
        target_id=str(context.current_tenant_id),
        metadata_json={"fields": sorted(patch)},
        risk_tier=RiskTier.TIER_1,
    )
    db.commit()
    return TenantSettingsResponse(tenant_id=context.current_tenant_id, settings=merged)
