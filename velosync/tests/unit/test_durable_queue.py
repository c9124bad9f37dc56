from __future__ import annotations

import pytest

from velosync.domain.jobs import (
    JOB_BACKFILL_ATHLETE,
    JOB_DELETE_ACTIVITY,
    JOB_SYNC_ACTIVITY,
    QUEUE_BACKFILL,
    QUEUE_LIVE,
    Job,
)
from velosync.services.ingest.queue import (
    RETRY_EXHAUSTED,
    RETRY_SCHEDULED,
    DurableQueue,
    get_worker_heartbeat,
    set_worker_heartbeat,
)
from velosync.services.resilience import RetryPolicy
from velosync.tests.utils.fake_redis import FakeClock, FakeRedis
from velosync.tests.utils.harness import make_settings


def _queue(**overrides) -> tuple[DurableQueue, FakeRedis, FakeClock]:
    clock = FakeClock()
    redis = FakeRedis(clock)
    settings = make_settings(**overrides)
    policy = RetryPolicy(
        retry_ceiling=settings.queue_retry_ceiling,
        backoff_base_s=settings.queue_backoff_base_s,
        backoff_max_s=settings.queue_backoff_max_s,
        jitter=False,
    )
    return DurableQueue(redis, settings=settings, retry_policy=policy, time_provider=clock), redis, clock


def _sync(resource_id: str, subject_id: str = "athlete-1") -> Job:
    return Job(kind=JOB_SYNC_ACTIVITY, subject_id=subject_id, resource_id=resource_id)


@pytest.mark.asyncio
async def test_jobs_drain_in_fifo_order_within_a_class() -> None:
    queue, _redis, _clock = _queue()
    for resource_id in ("1", "2", "3"):
        await queue.enqueue(_sync(resource_id))

    drained = await queue.drain_batch(10)
    assert [job.resource_id for job in drained] == ["1", "2", "3"]
    assert await queue.drain_batch(10) == []


@pytest.mark.asyncio
async def test_live_class_drains_before_backfill() -> None:
    queue, _redis, _clock = _queue()
    await queue.enqueue(Job(kind=JOB_BACKFILL_ATHLETE, subject_id="athlete-1", params={"after_epoch_s": 0}))
    await queue.enqueue(_sync("10"))
    await queue.enqueue(Job(kind=JOB_DELETE_ACTIVITY, subject_id="athlete-1", resource_id="11"))

    first = await queue.drain_batch(2)
    assert [job.queue_class for job in first] == [QUEUE_LIVE, QUEUE_LIVE]
    second = await queue.drain_batch(2)
    assert [job.queue_class for job in second] == [QUEUE_BACKFILL]


@pytest.mark.asyncio
async def test_requeue_puts_jobs_back_at_the_head_in_order() -> None:
    queue, _redis, _clock = _queue()
    for resource_id in ("1", "2", "3", "4"):
        await queue.enqueue(_sync(resource_id))
    batch = await queue.drain_batch(3)
    await queue.requeue(batch[1:])

    drained = await queue.drain_batch(10)
    assert [job.resource_id for job in drained] == ["2", "3", "4"]


@pytest.mark.asyncio
async def test_retry_ceiling_allows_exactly_n_retries_then_fails() -> None:
    queue, _redis, clock = _queue(queue_retry_ceiling=3)
    await queue.enqueue(_sync("42"))

    outcomes = []
    for _ in range(4):
        job = (await queue.drain_batch(1))[0]
        outcomes.append(await queue.retry(job, reason="upstream 503"))
        clock.advance(3600)
        await queue.promote_due()

    assert outcomes == [RETRY_SCHEDULED] * 3 + [RETRY_EXHAUSTED]
    depth = await queue.depth()
    assert depth == {QUEUE_LIVE: 0, QUEUE_BACKFILL: 0, "delayed": 0, "failed": 1}
    failed = await queue.failed()
    assert failed[0]["job"]["attempt"] == 3
    assert "retry ceiling reached" in failed[0]["reason"]


@pytest.mark.asyncio
async def test_delayed_retry_waits_for_backoff() -> None:
    queue, _redis, clock = _queue(queue_backoff_base_s=30)
    await queue.enqueue(_sync("7"))
    job = (await queue.drain_batch(1))[0]
    await queue.retry(job, reason="timeout")

    clock.advance(29)
    assert await queue.promote_due() == 0
    clock.advance(1)
    assert await queue.promote_due() == 1
    retried = await queue.drain_batch(1)
    assert retried[0].attempt == 1


@pytest.mark.asyncio
async def test_failed_sink_is_bounded_to_newest_entries() -> None:
    queue, _redis, _clock = _queue(queue_failed_max_len=3)
    for resource_id in ("1", "2", "3", "4", "5"):
        await queue.fail(_sync(resource_id), reason="permanent")

    failed = await queue.failed(limit=10)
    assert [record["job"]["resource_id"] for record in failed] == ["3", "4", "5"]


@pytest.mark.asyncio
async def test_malformed_descriptor_is_parked_not_dropped_silently() -> None:
    queue, redis, _clock = _queue()
    await redis.rpush(queue.key_for(QUEUE_LIVE), '{"kind": "sync-activity"}')
    await queue.enqueue(_sync("8"))

    drained = await queue.drain_batch(5)
    assert [job.resource_id for job in drained] == ["8"]
    failed = await queue.failed()
    assert failed[0]["raw"] == '{"kind": "sync-activity"}'


@pytest.mark.asyncio
async def test_worker_heartbeat_round_trip() -> None:
    redis = FakeRedis()
    assert await get_worker_heartbeat(redis) is None
    await set_worker_heartbeat(redis)
    assert await get_worker_heartbeat(redis) is not None


@pytest.mark.asyncio
async def test_deferred_jobs_wait_until_given_time_without_an_attempt() -> None:
    queue, _redis, clock = _queue()
    job = _sync("7").next_attempt()
    await queue.defer([job], until=clock.now + 600)

    assert await queue.promote_due() == 0
    assert (await queue.depth())["delayed"] == 1

    clock.advance(600)
    assert await queue.promote_due() == 1
    promoted = await queue.drain_batch(10)
    assert [item.attempt for item in promoted] == [1]
