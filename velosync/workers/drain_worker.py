from __future__ import annotations

import asyncio
import logging

from arq import cron
from arq.connections import RedisSettings

from velosync.core.config import get_settings
from velosync.core.logging import configure_logging
from velosync.services.ingest.queue import set_worker_heartbeat
from velosync.services.kv import get_redis
from velosync.services.pipeline import get_pipeline


logger = logging.getLogger(__name__)


async def drain_queues(ctx) -> dict:
    # One logical drain cycle; overlapping cycles are tolerated through job idempotency.
    pipeline = await get_pipeline()
    report = await pipeline.drain.run_cycle()
    return report.as_dict()


async def _heartbeat_loop() -> None:
    # Emit heartbeats on a fixed interval for ops health reporting.
    settings = get_settings()
    while True:
        try:
            await set_worker_heartbeat(await get_redis())
        except Exception as exc:  # noqa: BLE001 - a missed heartbeat must not kill the worker
            logger.warning("worker_heartbeat_failed", exc_info=exc)
        await asyncio.sleep(settings.worker_heartbeat_interval_s)


async def _startup(ctx) -> None:
    configure_logging()
    ctx["heartbeat_task"] = asyncio.create_task(_heartbeat_loop())


async def _shutdown(ctx) -> None:
    # Cancel the heartbeat task to avoid dangling coroutines on exit.
    task = ctx.get("heartbeat_task")
    if task:
        task.cancel()


def _drain_minutes(interval: int) -> set[int]:
    interval = max(1, min(int(interval), 60))
    return set(range(0, 60, interval))


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    functions = [drain_queues]
    cron_jobs = [
        cron(
            drain_queues,
            minute=_drain_minutes(settings.drain_interval_minutes),
            run_at_startup=True,
            unique=True,
        )
    ]
    on_startup = _startup
    on_shutdown = _shutdown
