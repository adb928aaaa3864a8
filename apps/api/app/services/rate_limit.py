from __future__ import annotations

import logging
import uuid
from collections import Counter
from collections.abc import Iterable
from datetime import UTC, datetime

from fastapi import HTTPException, status
from redis.exceptions import RedisError

from ..models import MessageChannel
from ..redis_client import get_redis_client

logger = logging.getLogger(__name__)


def enqueue_quota_key(tenant_id: uuid.UUID, channel: MessageChannel, window_seconds: int) -> str:
    window = int(datetime.now(UTC).timestamp()) // window_seconds
    return f"courier:enqueue:{tenant_id}:{channel.value}:{window}"


def enforce_enqueue_quota(
    tenant_id: uuid.UUID,
    channels: Iterable[MessageChannel],
    max_messages: int,
    window_seconds: int = 60,
) -> None:
    """Fixed-window cap on messages a tenant may queue per channel; one entry per message."""
    if max_messages <= 0:
        return
    requested = Counter(channels)
    try:
        redis = get_redis_client()
        for channel, count in sorted(requested.items(), key=lambda item: item[0].value):
            key = enqueue_quota_key(tenant_id, channel, window_seconds)
            current = int(redis.incrby(key, count))
            if current == count:
                redis.expire(key, max(1, window_seconds))
            if current > max_messages:
                raise HTTPException(
                    status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                    detail=f"{channel.value} enqueue quota of {max_messages} messages per {window_seconds}s exceeded",
                )
    except HTTPException:
        raise
    except RedisError:
        # Degrade open; provider throughput is still bounded by the dispatcher buckets.
        logger.warning("enqueue quota unavailable", extra={"tenant_id": str(tenant_id)}, exc_info=True)
        return
