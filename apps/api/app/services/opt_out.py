from __future__ import annotations

import logging
import uuid
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from packages.messaging import KeywordAction, detect_keyword_action, normalize_phone

from ..db import utcnow
from ..errors import OptOutLookupError
from ..models import OptOutEntry, OptOutReason

logger = logging.getLogger(__name__)


def is_opted_out(db: Session, tenant_id: uuid.UUID, phone_number: str) -> bool:
    """Raises OptOutLookupError when the registry cannot answer."""
    try:
        entry = db.scalar(
            select(OptOutEntry).where(OptOutEntry.tenant_id == tenant_id, OptOutEntry.phone_number == phone_number)
        )
    except SQLAlchemyError as exc:
        raise OptOutLookupError(f"opt-out lookup failed for tenant {tenant_id}") from exc
    return entry is not None and not entry.opted_in


def get_entry(db: Session, tenant_id: uuid.UUID, phone_number: str) -> OptOutEntry | None:
    return db.scalar(
        select(OptOutEntry).where(OptOutEntry.tenant_id == tenant_id, OptOutEntry.phone_number == phone_number)
    )


def _get_or_create_entry(db: Session, tenant_id: uuid.UUID, phone_number: str) -> OptOutEntry:
    entry = get_entry(db, tenant_id, phone_number)
    if entry is not None:
        return entry
    try:
        with db.begin_nested():
            entry = OptOutEntry(tenant_id=tenant_id, phone_number=phone_number, opted_in=True, source="system")
            db.add(entry)
            db.flush()
        return entry
    except IntegrityError:
        existing = get_entry(db, tenant_id, phone_number)
        if existing is None:
            raise
        return existing


def opt_out(
    db: Session,
    tenant_id: uuid.UUID,
    phone_number: str,
    reason: OptOutReason = OptOutReason.USER_REQUEST,
    source: str = "admin",
    keyword_message: str | None = None,
) -> OptOutEntry:
    phone = normalize_phone(phone_number)
    entry = _get_or_create_entry(db, tenant_id, phone)
    entry.opted_in = False
    entry.reason = reason
    entry.source = source
    entry.keyword_message = keyword_message[:255] if keyword_message else None
    entry.opted_out_at = utcnow()
    db.flush()
    logger.info("phone opted out", extra={"tenant_id": str(tenant_id), "reason": reason.value, "source": source})
    return entry


def opt_in(
    db: Session,
    tenant_id: uuid.UUID,
    phone_number: str,
    source: str = "admin",
    keyword_message: str | None = None,
) -> OptOutEntry | None:
    phone = normalize_phone(phone_number)
    entry = get_entry(db, tenant_id, phone)
    if entry is None:
        return None
    entry.opted_in = True
    entry.source = source
    entry.keyword_message = keyword_message[:255] if keyword_message else entry.keyword_message
    entry.opted_in_at = utcnow()
    db.flush()
    logger.info("phone opted in", extra={"tenant_id": str(tenant_id), "source": source})
    return entry


def process_keyword_message(
    db: Session,
    tenant_id: uuid.UUID,
    phone_number: str,
    body: str | None,
) -> KeywordAction | None:
    """START only counts for numbers that previously opted out."""
    action = detect_keyword_action(body)
    if action == KeywordAction.OPT_OUT:
        opt_out(
            db,
            tenant_id,
            phone_number,
            reason=OptOutReason.USER_REQUEST,
            source="keyword",
            keyword_message=body,
        )
        return action
    if action == KeywordAction.OPT_IN:
        entry = get_entry(db, tenant_id, normalize_phone(phone_number))
        if entry is None or entry.opted_in:
            return None
        opt_in(db, tenant_id, phone_number, source="keyword", keyword_message=body)
        return action
    return None


def filter_opted_out(db: Session, tenant_id: uuid.UUID, phone_numbers: list[str]) -> list[str]:
    """Return the subset of numbers that may be messaged, keeping input order."""
    if not phone_numbers:
        return []
    try:
        blocked = set(
            db.scalars(
                select(OptOutEntry.phone_number).where(
                    OptOutEntry.tenant_id == tenant_id,
                    OptOutEntry.phone_number.in_(phone_numbers),
                    OptOutEntry.opted_in.is_(False),
                )
            ).all()
        )
    except SQLAlchemyError as exc:
        raise OptOutLookupError("opt-out bulk lookup failed") from exc
    return [phone for phone in phone_numbers if phone not in blocked]


def bulk_opt_out(
    db: Session,
    tenant_id: uuid.UUID,
    phone_numbers: list[str],
    reason: OptOutReason = OptOutReason.ADMIN,
    source: str = "admin",
) -> dict[str, Any]:
    processed = 0
    invalid: list[str] = []
    for raw in phone_numbers:
        try:
            opt_out(db, tenant_id, raw, reason=reason, source=source)
        except ValueError:
            invalid.append(raw)
            continue
        processed += 1
    return {"processed": processed, "invalid": invalid}


def bulk_opt_in(db: Session, tenant_id: uuid.UUID, phone_numbers: list[str], source: str = "admin") -> dict[str, Any]:
    processed = 0
    invalid: list[str] = []
    for raw in phone_numbers:
        try:
            entry = opt_in(db, tenant_id, raw, source=source)
        except ValueError:
            invalid.append(raw)
            continue
        if entry is not None:
            processed += 1
    return {"processed": processed, "invalid": invalid}


def list_opt_outs(
    db: Session,
    tenant_id: uuid.UUID,
    include_opted_in: bool = False,
    limit: int = 100,
    offset: int = 0,
) -> list[OptOutEntry]:
    stmt = select(OptOutEntry).where(OptOutEntry.tenant_id == tenant_id)
    if not include_opted_in:
        stmt = stmt.where(OptOutEntry.opted_in.is_(False))
    stmt = stmt.order_by(OptOutEntry.updated_at.desc()).limit(limit).offset(offset)
    return list(db.scalars(stmt).all())


def opt_out_stats(db: Session, tenant_id: uuid.UUID) -> dict[str, Any]:
    rows = db.execute(
        select(OptOutEntry.reason, OptOutEntry.opted_in, func.count())
        .where(OptOutEntry.tenant_id == tenant_id)
        .group_by(OptOutEntry.reason, OptOutEntry.opted_in)
    ).all()
    by_reason: dict[str, int] = {reason.value: 0 for reason in OptOutReason}
    total_opted_out = 0
    resubscribed = 0
    for reason, opted_in, count in rows:
        if opted_in:
            resubscribed += int(count)
            continue
        total_opted_out += int(count)
        by_reason[OptOutReason(reason).value] += int(count)
    return {"total_opted_out": total_opted_out, "resubscribed": resubscribed, "by_reason": by_reason}


def export_opt_outs(db: Session, tenant_id: uuid.UUID) -> list[dict[str, Any]]:
    rows = db.scalars(
        select(OptOutEntry)
        .where(OptOutEntry.tenant_id == tenant_id, OptOutEntry.opted_in.is_(False))
        .order_by(OptOutEntry.opted_out_at.desc())
    ).all()
    return [
        {
            "phone_number": row.phone_number,
            "reason": row.reason.value,
            "source": row.source,
            "opted_out_at": row.opted_out_at.isoformat() if row.opted_out_at else None,
        }
        for row in rows
    ]
