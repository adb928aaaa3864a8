from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from fastapi import HTTPException, Request, status
from sqlalchemy.orm import Session

from packages.messaging import TokenBucket

from .db import utcnow
from .models import MessageChannel
from .services.dispatcher import CycleResult, OutboundDispatcher
from .services.message_queue import cleanup_queue
from .services.providers import ProviderClient, get_provider_client
from .services.scheduler import RecurringTask
from .settings import Settings

logger = logging.getLogger(__name__)

RETENTION_INTERVAL_SECONDS = 3600.0


class MessagingEngine:
    """Owns the per-channel dispatchers and their background loops.

    Built once by the API lifespan or the worker bootstrap and passed to
    whatever needs it; nothing here is a module-level singleton.
    """

    def __init__(
        self,
        dispatchers: dict[MessageChannel, OutboundDispatcher],
        session_factory: Callable[[], Session],
        drain_intervals: dict[MessageChannel, float],
        retention_days: int,
    ) -> None:
        self.dispatchers = dispatchers
        self.session_factory = session_factory
        self.retention_days = retention_days
        self.tasks: dict[str, RecurringTask] = {
            f"drain-{channel.value}": RecurringTask(
                f"drain-{channel.value}", dispatcher.run_cycle, drain_intervals[channel]
            )
            for channel, dispatcher in dispatchers.items()
        }
        self.tasks["retention"] = RecurringTask("retention", self.run_retention, RETENTION_INTERVAL_SECONDS)

    @property
    def running(self) -> bool:
        return any(task.running for task in self.tasks.values())

    def dispatcher(self, channel: MessageChannel) -> OutboundDispatcher:
        return self.dispatchers[channel]

    def start(self) -> None:
        for task in self.tasks.values():
            task.start()
        logger.info("messaging engine started", extra={"tasks": sorted(self.tasks)})

    def stop(self, timeout: float | None = 10.0) -> None:
        for task in self.tasks.values():
            task.stop(timeout=timeout)
        logger.info("messaging engine stopped")

    def drain(self, channel: MessageChannel) -> CycleResult:
        return self.dispatchers[channel].run_cycle()

    def request_drain(self, channel: MessageChannel) -> None:
        """Bring the next drain of ``channel`` forward when the loop is running here."""
        task = self.tasks.get(f"drain-{channel.value}")
        if task is not None and task.running:
            task.wake()

    def run_retention(self, now: datetime | None = None) -> int:
        with self.session_factory() as db:
            deleted = cleanup_queue(db, self.retention_days, now=now)
            db.commit()
        return deleted

    def rate_limit_status(self) -> dict[str, dict[str, int]]:
        return {
            channel.value: {
                "capacity": dispatcher.rate_limiter.capacity,
                "available": dispatcher.rate_limiter.available(),
            }
            for channel, dispatcher in self.dispatchers.items()
        }


def build_engine(
    config: Settings,
    session_factory: Callable[[], Session],
    providers: dict[MessageChannel, ProviderClient] | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> MessagingEngine:
    providers = providers or {}
    limits = {
        MessageChannel.WHATSAPP: (config.whatsapp_rate_limit_per_minute, config.whatsapp_batch_size),
        MessageChannel.SMS: (config.sms_rate_limit_per_minute, config.sms_batch_size),
    }
    dispatchers = {
        channel: OutboundDispatcher(
            channel=channel,
            session_factory=session_factory,
            provider=providers.get(channel) or get_provider_client(channel, config),
            rate_limiter=TokenBucket(capacity=per_minute, window_seconds=60.0),
            batch_size=batch_size,
            retry_base_delay_seconds=config.retry_base_delay_seconds,
            stuck_processing_timeout_seconds=config.stuck_processing_timeout_seconds,
            clock=clock,
            reject_landlines=channel == MessageChannel.SMS and config.sms_reject_landlines,
        )
        for channel, (per_minute, batch_size) in limits.items()
    }
    return MessagingEngine(
        dispatchers=dispatchers,
        session_factory=session_factory,
        drain_intervals={
            MessageChannel.WHATSAPP: config.whatsapp_drain_interval_seconds,
            MessageChannel.SMS: config.sms_drain_interval_seconds,
        },
        retention_days=config.queue_retention_days,
    )


def get_engine(request: Request) -> MessagingEngine:
    engine = getattr(request.app.state, "messaging_engine", None)
    if engine is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="messaging engine unavailable")
    return engine
