# ludus/core/cache_redis.py
"""
Async Redis client shared by the cache layer and the Redis event sink.

One client is kept per running event loop so that test loops and the
application loop never share a connection pool.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Optional
import weakref

from redis.asyncio import Redis as AsyncRedis

from ludus.core.config import settings

logger = logging.getLogger(__name__)

_clients_by_loop: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, AsyncRedis]" = (
    weakref.WeakKeyDictionary()
)
_locks_by_loop: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, asyncio.Lock]" = (
    weakref.WeakKeyDictionary()
)


async def get_async_cache_redis_client() -> Optional[AsyncRedis]:
    """
    Get or create the async Redis client for the running loop.

    Returns:
        AsyncRedis client instance, or None when Redis is not configured or
        unreachable. Callers fall back to in-memory storage on None.
    """
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        return None

    if not settings.redis_url:
        existing = _clients_by_loop.pop(loop, None)
        if existing is not None:
            with contextlib.suppress(Exception):
                await existing.aclose()
        return None

    existing = _clients_by_loop.get(loop)
    if existing is not None:
        return existing

    lock = _locks_by_loop.get(loop)
    if lock is None:
        lock = asyncio.Lock()
        _locks_by_loop[loop] = lock

    async with lock:
        existing = _clients_by_loop.get(loop)
        if existing is not None:
            return existing

        client = AsyncRedis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=5,
            health_check_interval=30,
        )
        try:
            await client.ping()
        except Exception as exc:
            logger.error("[REDIS-CACHE] Async Redis client FAILED to connect: %s", exc)
            with contextlib.suppress(Exception):
                await client.aclose()
            return None

        _clients_by_loop[loop] = client
        logger.info("[REDIS-CACHE] Async Redis client initialized and connected")
        return client


async def close_async_cache_redis_client() -> None:
    """Close the Redis client bound to the running loop."""
    loop = asyncio.get_running_loop()

    client = _clients_by_loop.pop(loop, None)
    if client is None:
        return

    try:
        await client.aclose()
    finally:
        logger.info("[REDIS-CACHE] Async Redis client closed")
