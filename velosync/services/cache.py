"""Cache-aside storage for activity data with compliance-bound expiry.

Writes only accept a ttl class, never a free-form TTL: ``raw-stream`` entries
expire before the configured compliance ceiling (enforced when settings load)
and ``summary`` entries use the long summary TTL. Concurrent misses on the same
key share one in-flight fetch.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import json
import logging
import re
import time
from typing import Any, Awaitable, Callable

from redis.asyncio import Redis

from velosync.core.config import Settings, get_settings
from velosync.core.errors import TransientUpstreamFailure
from velosync.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

TTL_RAW_STREAM = "raw-stream"
TTL_SUMMARY = "summary"

RESOURCE_ACTIVITY = "activity"
RESOURCE_STREAMS = "streams"
RESOURCE_SUMMARY = "summary"

# Resource types derived from one upstream activity; all are dropped on mutation events.
ACTIVITY_RESOURCE_TYPES = (RESOURCE_ACTIVITY, RESOURCE_STREAMS, RESOURCE_SUMMARY)


def cache_key(resource_type: str, subject_id: str, resource_id: str) -> str:
    return f"{resource_type}:{subject_id}:{resource_id}"


def ttl_for_class(ttl_class: str, settings: Settings | None = None) -> int:
    settings = settings or get_settings()
    if ttl_class == TTL_RAW_STREAM:
        return settings.raw_stream_ttl_s
    if ttl_class == TTL_SUMMARY:
        return settings.summary_ttl_s
    raise ValueError(f"Unknown ttl class: {ttl_class}")


@dataclass(frozen=True)
class CacheEntry:
    key: str
    payload: Any
    cached_at: float
    ttl_class: str
    expires_at: float

    def ttl_remaining(self, now: float) -> int:
        return max(0, int(self.expires_at - now))


class ComplianceCache:
    def __init__(
        self,
        redis: Redis,
        *,
        prefix: str | None = None,
        settings: Settings | None = None,
        time_provider: Callable[[], float] | None = None,
    ) -> None:
        self._redis = redis
        self._settings = settings or get_settings()
        self._prefix = prefix if prefix is not None else f"{self._settings.redis_prefix}:cache"
        self._time = time_provider or time.time
        self._inflight: dict[str, asyncio.Future[CacheEntry]] = {}
        # In-flight keys invalidated mid-fetch; their result is returned but never stored.
        self._stale: set[str] = set()

    def _storage_key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    async def get(self, key: str) -> CacheEntry | None:
        raw = await self._redis.get(self._storage_key(key))
        if raw is None:
            return None
        try:
            envelope = json.loads(raw)
            return CacheEntry(
                key=key,
                payload=envelope["payload"],
                cached_at=float(envelope["cached_at"]),
                ttl_class=str(envelope["ttl_class"]),
                expires_at=float(envelope["expires_at"]),
            )
        except (TypeError, ValueError, KeyError):
            # Unreadable entries are treated as misses and dropped.
            logger.warning("cache_entry_corrupt key=%s", key)
            await self._redis.delete(self._storage_key(key))
            return None

    def _entry(self, key: str, payload: Any, ttl_class: str) -> CacheEntry:
        cached_at = self._time()
        return CacheEntry(
            key=key,
            payload=payload,
            cached_at=cached_at,
            ttl_class=ttl_class,
            expires_at=cached_at + ttl_for_class(ttl_class, self._settings),
        )

    async def _store(self, key: str, payload: Any, ttl_class: str) -> CacheEntry:
        ttl_s = ttl_for_class(ttl_class, self._settings)
        entry = self._entry(key, payload, ttl_class)
        body = json.dumps(
            {
                "payload": payload,
                "cached_at": entry.cached_at,
                "ttl_class": ttl_class,
                "expires_at": entry.expires_at,
            },
            separators=(",", ":"),
            ensure_ascii=False,
        )
        await self._redis.set(self._storage_key(key), body, ex=ttl_s)
        return entry

    async def put(self, key: str, payload: Any, ttl_class: str) -> CacheEntry:
        # Write-through for payloads the drain worker already fetched.
        return await self._store(key, payload, ttl_class)

    async def get_or_fetch_entry(
        self,
        key: str,
        ttl_class: str,
        fetch_fn: Callable[[], Awaitable[Any]],
    ) -> tuple[CacheEntry, bool]:
        # Return the entry and whether this caller avoided invoking fetch_fn.
        ttl_for_class(ttl_class, self._settings)
        pending = self._inflight.get(key)
        if pending is not None:
            return await asyncio.shield(pending), True

        entry = await self.get(key)
        if entry is not None:
            increment_counter("cache_hit_total")
            return entry, True

        # Another caller may have started the fetch while we were reading.
        pending = self._inflight.get(key)
        if pending is not None:
            return await asyncio.shield(pending), True

        increment_counter("cache_miss_total")
        future: asyncio.Future[CacheEntry] = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            payload = await fetch_fn()
            if key in self._stale:
                logger.info("cache_fill_discarded key=%s reason=invalidated", key)
                entry = self._entry(key, payload, ttl_class)
            else:
                entry = await self._store(key, payload, ttl_class)
        except asyncio.CancelledError:
            # Waiters were not cancelled themselves; they see a retryable failure.
            future.set_exception(TransientUpstreamFailure(f"cache fill for {key} was cancelled"))
            future.exception()
            raise
        except Exception as exc:
            future.set_exception(exc)
            # Mark the exception retrieved for the case where no one else was waiting.
            future.exception()
            raise
        else:
            future.set_result(entry)
            return entry, False
        finally:
            self._inflight.pop(key, None)
            self._stale.discard(key)

    async def get_or_fetch(
        self,
        key: str,
        ttl_class: str,
        fetch_fn: Callable[[], Awaitable[Any]],
    ) -> Any:
        entry, _hit = await self.get_or_fetch_entry(key, ttl_class, fetch_fn)
        return entry.payload

    async def invalidate(self, key: str) -> bool:
        if key in self._inflight:
            self._stale.add(key)
        deleted = await self._redis.delete(self._storage_key(key))
        if deleted:
            increment_counter("cache_invalidation_total")
        return bool(deleted)

    async def invalidate_activity(self, subject_id: str, activity_id: str) -> int:
        # Drop every cached view of an activity after an upstream mutation.
        removed = 0
        for resource_type in ACTIVITY_RESOURCE_TYPES:
            if await self.invalidate(cache_key(resource_type, subject_id, activity_id)):
                removed += 1
        return removed

    async def purge_subject(self, subject_id: str) -> int:
        # Remove everything cached for a subject, used on deauthorization.
        subject_part = f"{subject_id}:"
        for key in self._inflight:
            if key.partition(":")[2].startswith(subject_part):
                self._stale.add(key)
        removed = 0
        pattern = f"{self._prefix}:*:{_glob_escape(subject_id)}:*"
        async for storage_key in self._redis.scan_iter(match=pattern):
            removed += int(await self._redis.delete(storage_key))
        return removed


def _glob_escape(value: str) -> str:
    # SCAN MATCH treats these as pattern syntax unless backslash-escaped.
    return re.sub(r"([*?\[\]\\])", r"\\\1", value)
