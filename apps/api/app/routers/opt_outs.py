from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from packages.messaging import InvalidPhoneNumberError, normalize_phone

from ..db import get_db
from ..errors import OptOutLookupError
from ..models import OptOutEntry, RiskTier, Role
from ..schemas import (
    BulkOptOutRequest,
    BulkOptOutResponse,
    OptOutEntryResponse,
    OptOutRequest,
    OptOutStatsResponse,
    OptOutStatusResponse,
)
from ..services.audit import write_audit_log
from ..services.opt_out import (
    bulk_opt_in,
    bulk_opt_out,
    export_opt_outs,
    is_opted_out,
    list_opt_outs,
    opt_in,
    opt_out,
    opt_out_stats,
)
from ..tenancy import RequestContext, get_request_context, require_role

router = APIRouter(prefix="/opt-outs", tags=["opt-outs"])


def _serialize(row: OptOutEntry) -> OptOutEntryResponse:
    return OptOutEntryResponse(
        id=row.id,
        phone_number=row.phone_number,
        opted_in=row.opted_in,
        reason=row.reason,
        source=row.source,
        keyword_message=row.keyword_message,
        opted_out_at=row.opted_out_at,
        opted_in_at=row.opted_in_at,
    )


def _normalize_or_422(raw: str) -> str:
    try:
        return normalize_phone(raw)
    except InvalidPhoneNumberError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc


@router.get("", response_model=list[OptOutEntryResponse])
def list_entries(
    include_opted_in: bool = Query(default=False),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> list[OptOutEntryResponse]:
    rows = list_opt_outs(db, context.current_tenant_id, include_opted_in=include_opted_in, limit=limit, offset=offset)
    return [_serialize(row) for row in rows]


@router.get("/stats", response_model=OptOutStatsResponse)
def stats(
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> OptOutStatsResponse:
    return OptOutStatsResponse(**opt_out_stats(db, context.current_tenant_id))


@router.get("/export")
def export(
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> list[dict[str, object]]:
    require_role(context, Role.ADMIN)
    return export_opt_outs(db, context.current_tenant_id)


@router.get("/check", response_model=OptOutStatusResponse)
def check(
    phone_number: str = Query(min_length=1),
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> OptOutStatusResponse:
    phone = _normalize_or_422(phone_number)
    try:
        opted_out = is_opted_out(db, context.current_tenant_id, phone)
    except OptOutLookupError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="opt-out registry unavailable") from exc
    return OptOutStatusResponse(phone_number=phone, opted_out=opted_out)


@router.post("", response_model=OptOutEntryResponse, status_code=status.HTTP_201_CREATED)
def add(
    payload: OptOutRequest,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> OptOutEntryResponse:
    require_role(context, Role.AGENT)
    phone = _normalize_or_422(payload.phone_number)
    entry = opt_out(db, context.current_tenant_id, phone, reason=payload.reason, source="admin")
    write_audit_log(
        db=db,
        context=context,
        action="opt_outs.add",
        target_type="opt_out_entry",
        target_id=str(entry.id),
        metadata_json={"reason": payload.reason.value},
        risk_tier=RiskTier.TIER_1,
    )
    db.commit()
    return _serialize(entry)


@router.post("/opt-in", response_model=OptOutEntryResponse)
def remove(
    payload: OptOutRequest,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> OptOutEntryResponse:
    require_role(context, Role.ADMIN)
    phone = _normalize_or_422(payload.phone_number)
    entry = opt_in(db, context.current_tenant_id, phone, source="admin")
    if entry is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="phone number is not in the opt-out registry")
    write_audit_log(
        db=db,
        context=context,
        action="opt_outs.opt_in",
        target_type="opt_out_entry",
        target_id=str(entry.id),
        risk_tier=RiskTier.TIER_2,
    )
    db.commit()
    return _serialize(entry)


@router.post("/bulk", response_model=BulkOptOutResponse)
def add_many(
    payload: BulkOptOutRequest,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> BulkOptOutResponse:
    require_role(context, Role.ADMIN)
    result = bulk_opt_out(db, context.current_tenant_id, payload.phone_numbers, reason=payload.reason)
    write_audit_log(
        db=db,
        context=context,
        action="opt_outs.bulk_add",
        target_type="opt_out_entry",
        target_id="bulk",
        metadata_json={"processed": result["processed"], "invalid": len(result["invalid"])},
        risk_tier=RiskTier.TIER_1,
    )
    db.commit()
    return BulkOptOutResponse(**result)


@router.post("/bulk/opt-in", response_model=BulkOptOutResponse)
def remove_many(
    payload: BulkOptOutRequest,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> BulkOptOutResponse:
    require_role(context, Role.OWNER)
    result = bulk_opt_in(db, context.current_tenant_id, payload.phone_numbers)
    write_audit_log(
        db=db,
        context=context,
        action="opt_outs.bulk_opt_in",
        target_type="opt_out_entry",
        target_id="bulk",
        metadata_json={"processed": result["processed"], "invalid": len(result["invalid"])},
        risk_tier=RiskTier.TIER_3,
    )
    db.commit()
    return BulkOptOutResponse(**result)
