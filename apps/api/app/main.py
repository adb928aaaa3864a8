import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, status
from fastapi.responses import JSONResponse
from starlette.requests import Request
from starlette.responses import Response

from .db import SessionLocal
from .engine import build_engine
from .errors import MessageValidationError
from .logging_config import configure_logging
from .routers.auto_responses import router as auto_responses_router
from .routers.conversations import router as conversations_router
from .routers.health import router as health_router
from .routers.messages import router as messages_router
from .routers.messaging_settings import router as settings_router
from .routers.opt_outs import router as opt_outs_router
from .routers.templates import router as templates_router
from .routers.webhooks import router as webhooks_router
from .settings import settings


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    configure_logging(settings.log_level, settings.log_format)
    engine = None
    if settings.dispatcher_mode == "embedded":
        engine = build_engine(settings, SessionLocal)
        engine.start()
    app.state.messaging_engine = engine
    try:
        yield
    finally:
        if engine is not None:
            engine.stop()


app = FastAPI(title="Courier API", version="0.1.0", lifespan=lifespan)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next) -> Response:  # type: ignore[override]
    request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-Id"] = request_id
    return response


@app.exception_handler(MessageValidationError)
async def message_validation_handler(request: Request, exc: MessageValidationError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content={"detail": exc.errors})


app.include_router(health_router)
app.include_router(messages_router)
app.include_router(webhooks_router)
app.include_router(conversations_router)
app.include_router(opt_outs_router)
app.include_router(auto_responses_router)
app.include_router(templates_router)
app.include_router(settings_router)
