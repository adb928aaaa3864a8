from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session, sessionmaker

from packages.messaging import TemplateRenderError, TokenBucket, mask_phone

from ..db import utcnow
from ..models import (
    ConversationMessage,
    DeliveryRecord,
    DeliveryStatus,
    MessageChannel,
    MessageDirection,
    QueuedMessage,
    QueuedMessageStatus,
    TemplateStatus,
)
from .conversations import get_or_create_conversation, record_outbound_activity
from .opt_out import is_opted_out
from .providers import OutboundSend, ProviderClient, ProviderError, ProviderErrorCategory
from .templates import get_template, increment_usage, render_stored_template, template_parameters

logger = logging.getLogger(__name__)

OPTED_OUT_ERROR = "opted_out"
STATE_CHANGED = "state_changed"


@dataclass
class CycleResult:
    channel: str
    selected: int = 0
    sent: int = 0
    retried: int = 0
    failed: int = 0
    opted_out: int = 0
    rate_limited: bool = False
    skipped: bool = False


def retry_delay(base_delay_seconds: float, retry_count: int) -> timedelta:
    return timedelta(seconds=base_delay_seconds * (2**retry_count))


class OutboundDispatcher:
    """Drains one channel's queue; overlapping run_cycle calls return skipped."""

    def __init__(
        self,
        channel: MessageChannel,
        session_factory: sessionmaker[Session] | Callable[[], Session],
        provider: ProviderClient,
        rate_limiter: TokenBucket,
        batch_size: int = 50,
        retry_base_delay_seconds: float = 5.0,
        stuck_processing_timeout_seconds: int = 300,
        clock: Callable[[], datetime] = utcnow,
        opt_out_check: Callable[[Session, uuid.UUID, str], bool] = is_opted_out,
        reject_landlines: bool = False,
    ) -> None:
        self.channel = channel
        self.session_factory = session_factory
        self.provider = provider
        self.rate_limiter = rate_limiter
        self.batch_size = batch_size
        self.retry_base_delay_seconds = retry_base_delay_seconds
        self.stuck_processing_timeout = timedelta(seconds=stuck_processing_timeout_seconds)
        self._clock = clock
        self._opt_out_check = opt_out_check
        self.reject_landlines = reject_landlines
        self._cycle_lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._cycle_lock.locked()

    def run_cycle(self) -> CycleResult:
        if not self._cycle_lock.acquire(blocking=False):
            return CycleResult(channel=self.channel.value, skipped=True)
        try:
            with self.session_factory() as db:
                return self._drain(db)
        finally:
            self._cycle_lock.release()

    def _select_batch(self, db: Session, now: datetime) -> list[QueuedMessage]:
        stuck_before = now - self.stuck_processing_timeout
        stmt = (
            select(QueuedMessage)
            .where(
                QueuedMessage.channel == self.channel,
                QueuedMessage.scheduled_for <= now,
                or_(
                    QueuedMessage.status == QueuedMessageStatus.PENDING,
                    (QueuedMessage.status == QueuedMessageStatus.PROCESSING)
                    & (QueuedMessage.processing_started_at < stuck_before),
                ),
            )
            .order_by(
                QueuedMessage.priority.desc(),
                QueuedMessage.scheduled_for.asc(),
                QueuedMessage.created_at.asc(),
            )
            .limit(self.batch_size)
            .with_for_update(skip_locked=True)
        )
        return list(db.scalars(stmt).all())

    def _claim(self, db: Session, message: QueuedMessage, now: datetime) -> bool:
        # Conditional update so a row is only ever claimed by one dispatcher.
        stuck_before = now - self.stuck_processing_timeout
        result = db.execute(
            update(QueuedMessage)
            .where(
                QueuedMessage.id == message.id,
                or_(
                    QueuedMessage.status == QueuedMessageStatus.PENDING,
                    (QueuedMessage.status == QueuedMessageStatus.PROCESSING)
                    & (QueuedMessage.processing_started_at < stuck_before),
                ),
            )
            .values(status=QueuedMessageStatus.PROCESSING, processing_started_at=now)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        if result.rowcount != 1:
            return False
        db.refresh(message)
        return True

    def _drain(self, db: Session) -> CycleResult:
        result = CycleResult(channel=self.channel.value)
        now = self._clock()
        batch = self._select_batch(db, now)
        result.selected = len(batch)
        for message in batch:
            if not self.rate_limiter.try_acquire():
                result.rate_limited = True
                break
            if not self._claim(db, message, self._clock()):
                self.rate_limiter.release()
                continue
            try:
                outcome = self._process(db, message)
            except Exception:
                db.rollback()
                logger.exception("dispatch failed unexpectedly", extra={"message_id": str(message.id)})
                continue
            db.commit()
            if outcome == "sent":
                result.sent += 1
            elif outcome == "retried":
                result.retried += 1
            elif outcome == OPTED_OUT_ERROR:
                result.opted_out += 1
            elif outcome == STATE_CHANGED:
                continue
            else:
                result.failed += 1
        db.commit()
        if result.selected:
            logger.info(
                "drain cycle finished",
                extra={
                    "channel": result.channel,
                    "selected": result.selected,
                    "sent": result.sent,
                    "retried": result.retried,
                    "failed": result.failed,
                    "opted_out": result.opted_out,
                    "rate_limited": result.rate_limited,
                },
            )
        return result

    def _recipient_blocked(self, db: Session, message: QueuedMessage) -> bool:
        if message.compliance_notice:
            return False
        try:
            return self._opt_out_check(db, message.tenant_id, message.phone_number)
        except Exception:
            # Fail closed: an unanswerable lookup blocks the send.
            logger.warning(
                "opt-out lookup failed, blocking send",
                extra={"message_id": str(message.id), "phone": mask_phone(message.phone_number)},
                exc_info=True,
            )
            db.rollback()
            db.refresh(message)
            return True

    def _check_line_type(self, message: QueuedMessage) -> None:
        if not self.reject_landlines or message.channel != MessageChannel.SMS:
            return
        if self.provider.fetch_number_type(message.phone_number) == "landline":
            raise ProviderError(
                ProviderErrorCategory.INVALID_DESTINATION,
                "recipient is a landline and cannot receive SMS",
                provider_code="landline",
            )

    def _build_send(self, db: Session, message: QueuedMessage) -> OutboundSend:
        if not message.template_name:
            return OutboundSend(
                channel=message.channel,
                to=message.phone_number,
                body=message.body or "",
                media_url=message.media_url,
            )
        template = get_template(db, message.tenant_id, message.template_name)
        if template is None or template.status != TemplateStatus.APPROVED:
            raise ProviderError(
                ProviderErrorCategory.TEMPLATE_REJECTED,
                f"template '{message.template_name}' is not approved",
                provider_code="template_unavailable",
            )
        try:
            body = render_stored_template(template, message.template_variables_json)
        except TemplateRenderError as exc:
            raise ProviderError(ProviderErrorCategory.VALIDATION, str(exc), provider_code="template_variables_missing") from exc
        increment_usage(db, template)
        return OutboundSend(
            channel=message.channel,
            to=message.phone_number,
            body=body,
            template_name=template.name if message.channel == MessageChannel.WHATSAPP else None,
            template_language=template.language,
            template_parameters=template_parameters(template, message.template_variables_json),
            media_url=message.media_url,
        )

    def _process(self, db: Session, message: QueuedMessage) -> str:
        if self._recipient_blocked(db, message):
            return self._fail(db, message, OPTED_OUT_ERROR, "recipient has opted out", outcome=OPTED_OUT_ERROR)

        try:
            self._check_line_type(message)
            send = self._build_send(db, message)
            sent = self.provider.send(send)
        except ProviderError as exc:
            return self._handle_failure(db, message, exc)
        except Exception as exc:
            logger.exception("provider raised unclassified error", extra={"message_id": str(message.id)})
            return self._handle_failure(db, message, ProviderError(ProviderErrorCategory.UNKNOWN, str(exc)))

        self._record_success(db, message, send, sent.provider_message_id)
        return "sent"

    def _record_success(self, db: Session, message: QueuedMessage, send: OutboundSend, provider_message_id: str) -> None:
        now = self._clock()
        # A cancel that landed mid-send keeps its status; the send itself is still recorded.
        self._transition(db, message, status=QueuedMessageStatus.SENT, processed_at=now, last_error=None)
        db.add(
            DeliveryRecord(
                tenant_id=message.tenant_id,
                queued_message_id=message.id,
                channel=message.channel,
                provider_message_id=provider_message_id,
                direction=MessageDirection.OUTBOUND,
                status=DeliveryStatus.SENT,
                sent_at=now,
            )
        )
        conversation, _ = get_or_create_conversation(db, message.tenant_id, message.phone_number)
        db.add(
            ConversationMessage(
                tenant_id=message.tenant_id,
                conversation_id=conversation.id,
                channel=message.channel,
                direction=MessageDirection.OUTBOUND,
                message_type="template" if message.template_name else ("media" if message.media_url else "text"),
                body=send.body,
                media_ref=message.media_url,
                provider_message_id=provider_message_id,
                queued_message_id=message.id,
                status=DeliveryStatus.SENT,
                occurred_at=now,
                sent_at=now,
            )
        )
        record_outbound_activity(db, conversation, now)
        db.flush()
        logger.info(
            "message sent",
            extra={"message_id": str(message.id), "channel": message.channel.value, "provider_message_id": provider_message_id},
        )

    def _transition(self, db: Session, message: QueuedMessage, **values: object) -> bool:
        # Only a row still in PROCESSING may be moved; a concurrent cancel wins.
        result = db.execute(
            update(QueuedMessage)
            .where(QueuedMessage.id == message.id, QueuedMessage.status == QueuedMessageStatus.PROCESSING)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        db.refresh(message)
        if result.rowcount != 1:
            logger.warning(
                "message changed state during send",
                extra={"message_id": str(message.id), "status": message.status.value},
            )
            return False
        return True

    def _handle_failure(self, db: Session, message: QueuedMessage, error: ProviderError) -> str:
        if not error.retryable:
            return self._fail(db, message, error.error_code, error.message)
        retry_count = message.retry_count + 1
        if retry_count >= message.max_retries:
            return self._fail(db, message, error.error_code, error.message, retry_count=retry_count)
        moved = self._transition(
            db,
            message,
            status=QueuedMessageStatus.PENDING,
            retry_count=retry_count,
            scheduled_for=self._clock() + retry_delay(self.retry_base_delay_seconds, retry_count),
            last_error=f"{error.error_code}: {error.message}"[:255],
            processing_started_at=None,
        )
        if not moved:
            return STATE_CHANGED
        logger.info(
            "message scheduled for retry",
            extra={
                "message_id": str(message.id),
                "retry_count": retry_count,
                "error_category": error.category.value,
            },
        )
        return "retried"

    def _fail(
        self,
        db: Session,
        message: QueuedMessage,
        error_code: str,
        error_message: str,
        outcome: str = "failed",
        **values: object,
    ) -> str:
        now = self._clock()
        moved = self._transition(
            db,
            message,
            status=QueuedMessageStatus.FAILED,
            processed_at=now,
            last_error=error_code[:255],
            **values,
        )
        if not moved:
            return STATE_CHANGED
        record = db.scalar(select(DeliveryRecord).where(DeliveryRecord.queued_message_id == message.id))
        if record is None:
            record = DeliveryRecord(
                tenant_id=message.tenant_id,
                queued_message_id=message.id,
                channel=message.channel,
                direction=MessageDirection.OUTBOUND,
                status=DeliveryStatus.FAILED,
            )
            db.add(record)
        record.status = DeliveryStatus.FAILED
        record.failed_at = now
        record.error_code = error_code[:100]
        record.error_message = error_message
        db.flush()
        logger.warning(
            "message failed",
            extra={"message_id": str(message.id), "channel": message.channel.value, "error_code": error_code},
        )
        return outcome
