from __future__ import annotations

from functools import lru_cache

from redis import ConnectionPool, Redis

from .settings import settings

# Request paths only use Redis for the enqueue cap; fail fast when it is down.
SOCKET_TIMEOUT_SECONDS = 1.0


@lru_cache(maxsize=4)
def _pool(url: str) -> ConnectionPool:
    return ConnectionPool.from_url(
        url,
        decode_responses=True,
        socket_connect_timeout=SOCKET_TIMEOUT_SECONDS,
        socket_timeout=SOCKET_TIMEOUT_SECONDS,
    )


def get_redis_client() -> Redis:
    return Redis(connection_pool=_pool(settings.redis_url))
