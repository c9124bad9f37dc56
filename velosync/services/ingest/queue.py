from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
import time
from typing import Any, Callable, Sequence

from pydantic import ValidationError
from redis.asyncio import Redis

from velosync.core.config import Settings, get_settings
from velosync.domain.jobs import QUEUE_BACKFILL, QUEUE_LIVE, Job
from velosync.services.resilience import RetryPolicy, default_retry_policy
from velosync.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

RETRY_SCHEDULED = "retried"
RETRY_EXHAUSTED = "failed"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class DurableQueue:
    """Priority-classed job lists in Redis with delayed retries and a bounded failed sink."""

    def __init__(
        self,
        redis: Redis,
        *,
        settings: Settings | None = None,
        retry_policy: RetryPolicy | None = None,
        time_provider: Callable[[], float] | None = None,
    ) -> None:
        self._redis = redis
        self._settings = settings or get_settings()
        self._retry_policy = retry_policy or default_retry_policy(self._settings)
        self._time = time_provider or time.time
        prefix = self._settings.redis_prefix
        self._class_keys = {
            QUEUE_LIVE: f"{prefix}:{self._settings.queue_live_name}",
            QUEUE_BACKFILL: f"{prefix}:{self._settings.queue_backfill_name}",
        }
        self._delayed_key = f"{prefix}:{self._settings.queue_delayed_name}"
        self._failed_key = f"{prefix}:{self._settings.queue_failed_name}"

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    def key_for(self, queue_class: str) -> str:
        return self._class_keys[queue_class]

    async def enqueue(self, job: Job) -> int:
        # Append to the tail of the job's class; returns the new class depth.
        depth = await self._redis.rpush(self.key_for(job.queue_class), job.to_wire())
        increment_counter(f"queue_enqueued_total.{job.queue_class}")
        return int(depth)

    async def requeue(self, jobs: Sequence[Job]) -> None:
        # Return admission-denied jobs to the head of their class in original order.
        for job in reversed(list(jobs)):
            await self._redis.lpush(self.key_for(job.queue_class), job.to_wire())

    async def defer(self, jobs: Sequence[Job], *, until: float) -> None:
        # Park jobs in the delayed set until a given time without counting an attempt.
        if not jobs:
            return
        await self._redis.zadd(self._delayed_key, {job.to_wire(): until for job in jobs})
        increment_counter("queue_deferred_total", len(jobs))

    async def _pop(self, queue_class: str, count: int) -> list[Job]:
        if count <= 0:
            return []
        raw_items = await self._redis.lpop(self.key_for(queue_class), count)
        if not raw_items:
            return []
        if isinstance(raw_items, (str, bytes)):
            raw_items = [raw_items]
        jobs: list[Job] = []
        for raw in raw_items:
            try:
                jobs.append(Job.from_wire(raw))
            except ValidationError as exc:
                # Undecodable descriptors can never succeed; park them for inspection.
                logger.warning("queue_job_malformed queue=%s", queue_class)
                text = raw if isinstance(raw, str) else raw.decode("utf-8", "replace")
                await self._push_failed(
                    {"raw": text},
                    reason=f"malformed job descriptor: {exc.error_count()} errors",
                )
        return jobs

    async def drain_batch(self, max_jobs: int) -> list[Job]:
        # LPOP with a count is atomic per class; live always drains before backfill.
        live_jobs = await self._pop(QUEUE_LIVE, max_jobs)
        backfill_jobs = await self._pop(QUEUE_BACKFILL, max_jobs - len(live_jobs))
        return live_jobs + backfill_jobs

    async def retry(self, job: Job, *, reason: str) -> str:
        # Schedule the next attempt with backoff, or move the job to the failed sink at the ceiling.
        if self._retry_policy.exhausted(job.attempt):
            await self.fail(job, reason=f"retry ceiling reached: {reason}")
            return RETRY_EXHAUSTED
        next_job = job.next_attempt()
        ready_at = self._time() + self._retry_policy.backoff_s(next_job.attempt)
        await self._redis.zadd(self._delayed_key, {next_job.to_wire(): ready_at})
        increment_counter("queue_retry_scheduled_total")
        logger.info(
            "job_retry_scheduled kind=%s subject_id=%s resource_id=%s attempt=%s reason=%s",
            job.kind,
            job.subject_id,
            job.resource_id,
            next_job.attempt,
            reason,
        )
        return RETRY_SCHEDULED

    async def promote_due(self, limit: int = 100) -> int:
        # Move retries whose backoff has elapsed back into their class; ZREM decides the single winner.
        members = await self._redis.zrangebyscore(
            self._delayed_key, "-inf", self._time(), start=0, num=limit
        )
        promoted = 0
        for member in members:
            if not await self._redis.zrem(self._delayed_key, member):
                continue
            try:
                job = Job.from_wire(member)
            except ValidationError:
                await self._push_failed({"raw": member}, reason="malformed delayed job descriptor")
                continue
            await self._redis.rpush(self.key_for(job.queue_class), member)
            promoted += 1
        return promoted

    async def fail(self, job: Job, *, reason: str) -> None:
        increment_counter("queue_failed_total")
        logger.warning(
            "job_moved_to_failed_sink kind=%s subject_id=%s resource_id=%s attempt=%s reason=%s",
            job.kind,
            job.subject_id,
            job.resource_id,
            job.attempt,
            reason,
        )
        await self._push_failed({"job": job.model_dump(mode="json")}, reason=reason)

    async def _push_failed(self, record: dict[str, Any], *, reason: str) -> None:
        record = {**record, "reason": reason, "failed_at": _utc_now().isoformat()}
        await self._redis.rpush(self._failed_key, json.dumps(record, separators=(",", ":")))
        # Keep only the newest entries so the sink stays bounded.
        await self._redis.ltrim(self._failed_key, -self._settings.queue_failed_max_len, -1)

    async def failed(self, limit: int = 50) -> list[dict[str, Any]]:
        raw_items = await self._redis.lrange(self._failed_key, -limit, -1)
        records: list[dict[str, Any]] = []
        for raw in raw_items:
            try:
                records.append(json.loads(raw))
            except (TypeError, ValueError):
                records.append({"raw": raw})
        return records

    async def depth(self) -> dict[str, int]:
        return {
            QUEUE_LIVE: int(await self._redis.llen(self.key_for(QUEUE_LIVE))),
            QUEUE_BACKFILL: int(await self._redis.llen(self.key_for(QUEUE_BACKFILL))),
            "delayed": int(await self._redis.zcard(self._delayed_key)),
            "failed": int(await self._redis.llen(self._failed_key)),
        }


def worker_heartbeat_key(settings: Settings | None = None) -> str:
    # Keep the heartbeat key stable for ops endpoint lookups.
    settings = settings or get_settings()
    return f"{settings.redis_prefix}:worker:heartbeat"


async def set_worker_heartbeat(redis: Redis, *, timestamp: datetime | None = None) -> None:
    heartbeat_time = timestamp or _utc_now()
    await redis.set(worker_heartbeat_key(), heartbeat_time.isoformat())


async def get_worker_heartbeat(redis: Redis) -> datetime | None:
    # Return None when the heartbeat is missing or unreadable.
    raw_value = await redis.get(worker_heartbeat_key())
    if not raw_value:
        return None
    value = raw_value.decode("utf-8") if isinstance(raw_value, (bytes, bytearray)) else str(raw_value)
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None
