from __future__ import annotations

import asyncio
import logging

from redis.asyncio import Redis

from velosync.core.config import get_settings


logger = logging.getLogger(__name__)

_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()


async def get_redis() -> Redis:
    # Cache Redis connections per event loop to avoid reconnecting on every call.
    global _redis_pool, _redis_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_loop != current_loop:
        # Drop loop-bound pools to avoid cross-loop errors in tests and scripts.
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = Redis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            _redis_loop = current_loop
    return _redis_pool


def reset_redis_state() -> None:
    # Forget cached connections for deterministic test setup.
    global _redis_pool, _redis_loop
    _redis_pool = None
    _redis_loop = None
