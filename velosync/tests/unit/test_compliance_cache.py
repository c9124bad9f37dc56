from __future__ import annotations

import asyncio

import pytest
from pydantic import ValidationError

from velosync.core.config import DAY_S, Settings
from velosync.core.errors import TransientUpstreamFailure
from velosync.services.cache import (
    RESOURCE_ACTIVITY,
    RESOURCE_STREAMS,
    RESOURCE_SUMMARY,
    TTL_RAW_STREAM,
    TTL_SUMMARY,
    ComplianceCache,
    cache_key,
    ttl_for_class,
)
from velosync.tests.utils.fake_redis import FakeClock, FakeRedis
from velosync.tests.utils.harness import make_settings


def _cache(**overrides) -> tuple[ComplianceCache, FakeRedis, FakeClock]:
    clock = FakeClock()
    redis = FakeRedis(clock)
    cache = ComplianceCache(redis, settings=make_settings(**overrides), time_provider=clock)
    return cache, redis, clock


@pytest.mark.asyncio
async def test_concurrent_misses_share_one_fetch() -> None:
    cache, _redis, _clock = _cache()
    release = asyncio.Event()
    calls = {"count": 0}

    async def fetch() -> dict:
        calls["count"] += 1
        await release.wait()
        return {"time": [0, 1, 2], "watts": [200, 210, 220]}

    key = cache_key(RESOURCE_STREAMS, "athlete-1", "9001")
    tasks = [asyncio.create_task(cache.get_or_fetch_entry(key, TTL_RAW_STREAM, fetch)) for _ in range(10)]
    await asyncio.sleep(0)
    release.set()
    results = await asyncio.gather(*tasks)

    assert calls["count"] == 1
    assert all(entry.payload == {"time": [0, 1, 2], "watts": [200, 210, 220]} for entry, _ in results)
    # Exactly one caller performed the fetch; the rest shared it.
    assert sorted(avoided for _, avoided in results) == [False] + [True] * 9


@pytest.mark.asyncio
async def test_failed_fetch_reaches_every_waiter_and_is_not_cached() -> None:
    cache, _redis, _clock = _cache()
    release = asyncio.Event()
    calls = {"count": 0}

    async def failing_fetch() -> dict:
        calls["count"] += 1
        await release.wait()
        raise TransientUpstreamFailure("upstream 503", status_code=503)

    key = cache_key(RESOURCE_STREAMS, "athlete-1", "9002")
    tasks = [asyncio.create_task(cache.get_or_fetch(key, TTL_RAW_STREAM, failing_fetch)) for _ in range(3)]
    await asyncio.sleep(0)
    release.set()
    outcomes = await asyncio.gather(*tasks, return_exceptions=True)
    assert calls["count"] == 1
    assert all(isinstance(outcome, TransientUpstreamFailure) for outcome in outcomes)
    assert await cache.get(key) is None

    async def ok_fetch() -> dict:
        return {"time": [0]}

    assert await cache.get_or_fetch(key, TTL_RAW_STREAM, ok_fetch) == {"time": [0]}


@pytest.mark.asyncio
async def test_raw_stream_entries_expire_before_compliance_ceiling() -> None:
    cache, redis, clock = _cache(raw_stream_ttl_s=DAY_S)
    key = cache_key(RESOURCE_STREAMS, "athlete-1", "9003")
    entry = await cache.put(key, {"heartrate": [120, 130]}, TTL_RAW_STREAM)

    assert entry.expires_at - entry.cached_at == DAY_S
    assert await redis.ttl(f"test:cache:{key}") == DAY_S
    assert entry.ttl_remaining(clock.now) < 7 * DAY_S

    clock.advance(DAY_S)
    assert await cache.get(key) is None


@pytest.mark.asyncio
async def test_summary_entries_use_long_ttl() -> None:
    cache, redis, _clock = _cache()
    key = cache_key(RESOURCE_SUMMARY, "athlete-1", "9004")
    await cache.put(key, {"distance_m": 1000.0}, TTL_SUMMARY)
    assert await redis.ttl(f"test:cache:{key}") == 30 * DAY_S


@pytest.mark.asyncio
async def test_unknown_ttl_class_is_rejected() -> None:
    cache, _redis, _clock = _cache()

    async def fetch() -> dict:
        return {}

    with pytest.raises(ValueError):
        await cache.get_or_fetch("streams:a:b", "forever", fetch)
    with pytest.raises(ValueError):
        ttl_for_class("forever", make_settings())


def test_settings_refuse_raw_ttl_at_or_above_ceiling() -> None:
    with pytest.raises(ValidationError):
        Settings(_env_file=None, raw_stream_ttl_s=7 * DAY_S)
    with pytest.raises(ValidationError):
        Settings(_env_file=None, raw_stream_ttl_s=10 * DAY_S, compliance_ceiling_s=7 * DAY_S)
    settings = Settings(_env_file=None, raw_stream_ttl_s=6 * DAY_S)
    assert settings.raw_stream_ttl_s < settings.compliance_ceiling_s


@pytest.mark.asyncio
async def test_invalidate_activity_drops_every_view() -> None:
    cache, _redis, _clock = _cache()
    for resource_type in (RESOURCE_ACTIVITY, RESOURCE_STREAMS, RESOURCE_SUMMARY):
        await cache.put(cache_key(resource_type, "athlete-1", "77"), {"v": 1}, TTL_RAW_STREAM)
    await cache.put(cache_key(RESOURCE_STREAMS, "athlete-1", "78"), {"v": 2}, TTL_RAW_STREAM)

    removed = await cache.invalidate_activity("athlete-1", "77")

    assert removed == 3
    assert await cache.get(cache_key(RESOURCE_STREAMS, "athlete-1", "77")) is None
    assert await cache.get(cache_key(RESOURCE_STREAMS, "athlete-1", "78")) is not None


@pytest.mark.asyncio
async def test_purge_subject_leaves_other_subjects() -> None:
    cache, _redis, _clock = _cache()
    await cache.put(cache_key(RESOURCE_STREAMS, "athlete-1", "1"), {"v": 1}, TTL_RAW_STREAM)
    await cache.put(cache_key(RESOURCE_SUMMARY, "athlete-1", "2"), {"v": 1}, TTL_SUMMARY)
    await cache.put(cache_key(RESOURCE_STREAMS, "athlete-2", "3"), {"v": 1}, TTL_RAW_STREAM)

    assert await cache.purge_subject("athlete-1") == 2
    assert await cache.get(cache_key(RESOURCE_STREAMS, "athlete-2", "3")) is not None


@pytest.mark.asyncio
async def test_corrupt_entry_is_treated_as_miss() -> None:
    cache, redis, _clock = _cache()
    key = cache_key(RESOURCE_STREAMS, "athlete-1", "5")
    await redis.set(f"test:cache:{key}", "not-json", ex=60)
    assert await cache.get(key) is None
    assert await redis.get(f"test:cache:{key}") is None


@pytest.mark.asyncio
async def test_invalidation_during_fetch_keeps_old_payload_out_of_cache() -> None:
    cache, _redis, _clock = _cache()
    started = asyncio.Event()
    release = asyncio.Event()
    key = cache_key(RESOURCE_SUMMARY, "athlete-1", "61")

    async def slow_fetch() -> dict:
        started.set()
        await release.wait()
        return {"version": "old"}

    async def fresh_fetch() -> dict:
        return {"version": "new"}

    task = asyncio.create_task(cache.get_or_fetch(key, TTL_SUMMARY, slow_fetch))
    await started.wait()
    await cache.invalidate(key)
    release.set()

    assert await task == {"version": "old"}
    assert await cache.get(key) is None
    assert await cache.get_or_fetch(key, TTL_SUMMARY, fresh_fetch) == {"version": "new"}
    assert (await cache.get(key)).payload == {"version": "new"}


@pytest.mark.asyncio
async def test_purge_during_fetch_keeps_result_out_of_cache() -> None:
    cache, _redis, _clock = _cache()
    started = asyncio.Event()
    release = asyncio.Event()
    key = cache_key(RESOURCE_STREAMS, "athlete-1", "62")

    async def slow_fetch() -> dict:
        started.set()
        await release.wait()
        return {"time": [0]}

    task = asyncio.create_task(cache.get_or_fetch(key, TTL_RAW_STREAM, slow_fetch))
    await started.wait()
    await cache.purge_subject("athlete-1")
    release.set()

    await task
    assert await cache.get(key) is None


@pytest.mark.asyncio
async def test_cancelled_fetch_fails_waiters_as_transient() -> None:
    cache, _redis, _clock = _cache()
    started = asyncio.Event()
    key = cache_key(RESOURCE_STREAMS, "athlete-1", "63")

    async def hanging_fetch() -> dict:
        started.set()
        await asyncio.Event().wait()
        return {}

    async def unused_fetch() -> dict:
        raise AssertionError("waiter must share the in-flight fetch")

    owner = asyncio.create_task(cache.get_or_fetch(key, TTL_RAW_STREAM, hanging_fetch))
    await started.wait()
    waiter = asyncio.create_task(cache.get_or_fetch(key, TTL_RAW_STREAM, unused_fetch))
    await asyncio.sleep(0)
    owner.cancel()

    with pytest.raises(asyncio.CancelledError):
        await owner
    with pytest.raises(TransientUpstreamFailure):
        await waiter
    assert await cache.get(key) is None


@pytest.mark.asyncio
async def test_purge_subject_escapes_glob_characters() -> None:
    cache, _redis, _clock = _cache()
    await cache.put(cache_key(RESOURCE_STREAMS, "ath*", "1"), {"v": 1}, TTL_RAW_STREAM)
    await cache.put(cache_key(RESOURCE_STREAMS, "athlete-1", "2"), {"v": 1}, TTL_RAW_STREAM)
    await cache.put(cache_key(RESOURCE_STREAMS, "athlete-?", "3"), {"v": 1}, TTL_RAW_STREAM)

    assert await cache.purge_subject("ath*") == 1
    assert await cache.purge_subject("athlete-?") == 1
    assert await cache.get(cache_key(RESOURCE_STREAMS, "athlete-1", "2")) is not None
