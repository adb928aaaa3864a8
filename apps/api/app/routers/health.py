from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request

from ..db import check_db_health
from ..redis_client import get_redis_client
from ..settings import settings

router = APIRouter(tags=["health"])


def _dispatcher_state(request: Request) -> str:
    if settings.dispatcher_mode != "embedded":
        return settings.dispatcher_mode
    engine = getattr(request.app.state, "messaging_engine", None)
    return "running" if engine is not None and engine.running else "stopped"


@router.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/ready")
def ready(request: Request) -> dict[str, object]:
    checks = {"db": "ok", "redis": "ok", "dispatcher": _dispatcher_state(request)}
    try:
        check_db_health()
    except Exception:
        checks["db"] = "down"
    try:
        get_redis_client().ping()
    except Exception:
        checks["redis"] = "down"
    # Redis only backs API request limiting, so it does not gate readiness.
    if checks["db"] != "ok" or checks["dispatcher"] == "stopped":
        raise HTTPException(status_code=503, detail={"status": "not_ready", "env": settings.app_env, "checks": checks})
    return {"status": "ready", "env": settings.app_env, "checks": checks}
