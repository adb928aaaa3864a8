from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import Header, HTTPException, status

from .models import Role
from .settings import settings


ROLE_ORDER: dict[Role, int] = {
    Role.OWNER: 4,
    Role.ADMIN: 3,
    Role.SERVICE: 2,
    Role.AGENT: 1,
}


@dataclass(frozen=True)
class RequestContext:
    current_user_id: uuid.UUID
    current_tenant_id: uuid.UUID
    current_role: Role


def tenant_scoped(stmt: Any, tenant_id: uuid.UUID, model: Any) -> Any:
    return stmt.where(getattr(model, "tenant_id") == tenant_id)


def require_role(context: RequestContext, minimum_role: Role) -> None:
    if ROLE_ORDER[context.current_role] < ROLE_ORDER[minimum_role]:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="insufficient role")


def _parse_role(value: str) -> Role:
    try:
        return Role(value)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid role header") from exc


def get_request_context(
    x_courier_user_id: str | None = Header(default=None),
    x_courier_tenant_id: str | None = Header(default=None),
    x_courier_role: str | None = Header(default=None),
) -> RequestContext:
    """Identity is asserted by the CRM gateway in front of this service."""
    if settings.dev_auth_bypass:
        return RequestContext(
            current_user_id=uuid.UUID(settings.dev_user_id),
            current_tenant_id=uuid.UUID(settings.dev_tenant_id),
            current_role=_parse_role(settings.dev_role),
        )

    if not x_courier_user_id or not x_courier_tenant_id or not x_courier_role:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="missing auth context headers")

    try:
        user_id = uuid.UUID(x_courier_user_id)
        tenant_id = uuid.UUID(x_courier_tenant_id)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid auth context headers") from exc

    return RequestContext(current_user_id=user_id, current_tenant_id=tenant_id, current_role=_parse_role(x_courier_role))
