import logging
import os
from dataclasses import asdict

from celery import Celery
from celery.signals import worker_process_init, worker_process_shutdown

from app.db import SessionLocal
from app.engine import MessagingEngine, build_engine
from app.logging_config import configure_logging
from app.models import MessageChannel
from app.services.message_queue import cleanup_queue
from app.settings import settings

logger = logging.getLogger(__name__)

broker_url = os.getenv("REDIS_URL", "redis://localhost:6379/0")
app = Celery("courier-worker", broker=broker_url, backend=broker_url)
app.conf.task_routes = {"worker.messaging.drain": {"queue": "courier.dispatch"}}
app.conf.beat_schedule = {
    "drain-whatsapp": {
        "task": "worker.messaging.drain",
        "schedule": settings.whatsapp_drain_interval_seconds,
        "args": (MessageChannel.WHATSAPP.value,),
    },
    "drain-sms": {
        "task": "worker.messaging.drain",
        "schedule": settings.sms_drain_interval_seconds,
        "args": (MessageChannel.SMS.value,),
    },
    "queue-retention": {
        "task": "worker.messaging.retention_sweep",
        "schedule": 3600.0,
    },
}

# One engine per worker process; token buckets are process local, so the
# dispatch queue should run with a single consumer.
_engines: dict[int, MessagingEngine] = {}


def _engine() -> MessagingEngine:
    pid = os.getpid()
    if pid not in _engines:
        _engines[pid] = build_engine(settings, SessionLocal)
    return _engines[pid]


@worker_process_init.connect
def _init_process(**_kwargs: object) -> None:
    configure_logging(settings.log_level, settings.log_format)
    _engine()


@worker_process_shutdown.connect
def _shutdown_process(**_kwargs: object) -> None:
    _engines.pop(os.getpid(), None)


@app.task(name="worker.health.ping")
def ping() -> str:
    return "pong"


@app.task(name="worker.messaging.drain")
def drain(channel: str) -> dict[str, object]:
    try:
        selected = MessageChannel(channel)
    except ValueError:
        logger.warning("drain requested for unknown channel", extra={"channel": channel})
        return {"channel": channel, "skipped": True}
    return asdict(_engine().drain(selected))


@app.task(name="worker.messaging.retention_sweep")
def retention_sweep() -> int:
    with SessionLocal() as db:
        deleted = cleanup_queue(db, settings.queue_retention_days)
        db.commit()
    return deleted
