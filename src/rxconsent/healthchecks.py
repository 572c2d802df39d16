"""Readiness probes for the configured backends, plus the shared Redis client factory."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import redis

__all__ = ["check_postgres", "check_redis", "get_redis_client"]

logger = logging.getLogger(__name__)

PROBE_TIMEOUT = 2  # seconds


def get_redis_client(url: str) -> redis.Redis:  # type: ignore[type-arg]
    """Client for the request/token stores (string responses)."""
    import redis as _redis

    return _redis.Redis.from_url(url, decode_responses=True)


def _audit_table_readable(dsn: str) -> None:
    import psycopg

    with psycopg.connect(dsn, connect_timeout=PROBE_TIMEOUT) as conn:
        conn.execute("SELECT 1 FROM access_events LIMIT 1")


def _redis_answers_ping(url: str) -> None:
    import redis as _redis

    client = _redis.Redis.from_url(
        url, socket_timeout=PROBE_TIMEOUT, socket_connect_timeout=PROBE_TIMEOUT
    )
    try:
        client.ping()
    finally:
        client.close()


async def _probe(name: str, blocking_check: Callable[[str], None], target: str) -> bool:
    """Run a blocking check off the event loop; any exception means not ready."""
    try:
        await asyncio.to_thread(blocking_check, target)
    except Exception:
        logger.warning("%s readiness probe failed", name, exc_info=True)
        return False
    return True


async def check_postgres(dsn: str) -> bool:
    return await _probe("postgres", _audit_table_readable, dsn)


async def check_redis(url: str) -> bool:
    return await _probe("redis", _redis_answers_ping, url)
