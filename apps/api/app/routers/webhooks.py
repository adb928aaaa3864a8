from __future__ import annotations

import json
import logging
import uuid
from datetime import timedelta
from urllib.parse import parse_qsl

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import PlainTextResponse, Response
from sqlalchemy.orm import Session

from packages.messaging import (
    NormalizedWebhook,
    parse_twilio_sms_webhook,
    parse_whatsapp_webhook,
    verify_twilio_signature,
    verify_whatsapp_signature,
)

from ..db import get_db
from ..models import MessageChannel
from ..schemas import WebhookAckResponse
from ..services.webhook_ingestion import IngestResult, ingest_webhook
from ..settings import settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks/{tenant_id}", tags=["webhooks"])

EMPTY_TWIML = '<?xml version="1.0" encoding="UTF-8"?><Response></Response>'


def _ingest_and_commit(db: Session, tenant_id: uuid.UUID, payload: NormalizedWebhook) -> IngestResult:
    result = ingest_webhook(
        db,
        tenant_id,
        payload,
        first_contact_window=timedelta(seconds=settings.first_contact_window_seconds),
        default_max_retries=settings.default_max_retries,
    )
    db.commit()
    return result


def _raise_for_failed_items(tenant_id: uuid.UUID, result: IngestResult) -> None:
    # Successful items are already committed; redelivery skips them as duplicates.
    if result.errors:
        logger.error(
            "webhook items failed, asking provider to redeliver",
            extra={"tenant_id": str(tenant_id), "errors": result.errors},
        )
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="webhook items failed; redeliver")


def _nudge_dispatchers(request: Request, result: IngestResult) -> None:
    if not (result.auto_responses or result.opt_outs or result.opt_ins):
        return
    engine = getattr(request.app.state, "messaging_engine", None)
    if engine is None:
        return
    for channel in MessageChannel:
        engine.request_drain(channel)


@router.get("/whatsapp", response_class=PlainTextResponse)
def verify_whatsapp_subscription(
    tenant_id: uuid.UUID,
    mode: str | None = Query(default=None, alias="hub.mode"),
    verify_token: str | None = Query(default=None, alias="hub.verify_token"),
    challenge: str | None = Query(default=None, alias="hub.challenge"),
) -> PlainTextResponse:
    if mode == "subscribe" and verify_token == settings.whatsapp_verify_token and challenge is not None:
        logger.info("whatsapp webhook verified", extra={"tenant_id": str(tenant_id)})
        return PlainTextResponse(challenge)
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="verification failed")


@router.post("/whatsapp", response_model=WebhookAckResponse)
async def receive_whatsapp(
    tenant_id: uuid.UUID,
    request: Request,
    db: Session = Depends(get_db),
) -> WebhookAckResponse:
    raw_body = await request.body()
    if settings.whatsapp_app_secret and not verify_whatsapp_signature(
        settings.whatsapp_app_secret, raw_body, request.headers.get("X-Hub-Signature-256")
    ):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid signature")
    try:
        payload = json.loads(raw_body or b"{}")
    except ValueError:
        logger.warning("whatsapp webhook body is not json", extra={"tenant_id": str(tenant_id)})
        return WebhookAckResponse()
    if not isinstance(payload, dict):
        return WebhookAckResponse()

    result = await run_in_threadpool(_ingest_and_commit, db, tenant_id, parse_whatsapp_webhook(payload))
    _nudge_dispatchers(request, result)
    _raise_for_failed_items(tenant_id, result)
    return WebhookAckResponse(
        inbound_created=result.inbound_created,
        duplicates=result.duplicates,
        statuses_applied=result.statuses_applied,
    )


async def _receive_twilio(tenant_id: uuid.UUID, request: Request, db: Session) -> Response:
    raw_body = await request.body()
    params = dict(parse_qsl(raw_body.decode("utf-8", errors="replace"), keep_blank_values=True))
    if settings.twilio_validate_signatures and not verify_twilio_signature(
        settings.twilio_auth_token or "", str(request.url), params, request.headers.get("X-Twilio-Signature")
    ):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid signature")
    result = await run_in_threadpool(_ingest_and_commit, db, tenant_id, parse_twilio_sms_webhook(params))
    _nudge_dispatchers(request, result)
    _raise_for_failed_items(tenant_id, result)
    return Response(content=EMPTY_TWIML, media_type="application/xml")


@router.post("/twilio/sms")
async def receive_twilio_sms(tenant_id: uuid.UUID, request: Request, db: Session = Depends(get_db)) -> Response:
    return await _receive_twilio(tenant_id, request, db)


@router.post("/twilio/status")
async def receive_twilio_status(tenant_id: uuid.UUID, request: Request, db: Session = Depends(get_db)) -> Response:
    return await _receive_twilio(tenant_id, request, db)
