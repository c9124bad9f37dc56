from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from redis.asyncio import Redis

from velosync.core.config import Settings, get_settings
from velosync.persistence.db import SessionLocal
from velosync.services.cache import ComplianceCache
from velosync.services.collaborators import (
    CredentialStore,
    SqlCredentialStore,
    SqlSummaryStore,
    SqlTierLookup,
    SummaryStore,
    TierLookup,
)
from velosync.services.ingest.drain import DrainWorker
from velosync.services.ingest.intake import WebhookIntake
from velosync.services.ingest.queue import DurableQueue
from velosync.services.kv import get_redis
from velosync.services.rate_governor import AdmissionController, RateGovernor
from velosync.services.upstream import ActivityApi, UpstreamClient


@dataclass(frozen=True)
class Pipeline:
    # One bundle of components sharing a Redis client and collaborator set.
    settings: Settings
    redis: Redis
    queue: DurableQueue
    governor: RateGovernor
    admission: AdmissionController
    cache: ComplianceCache
    intake: WebhookIntake
    drain: DrainWorker
    upstream: ActivityApi
    credentials: CredentialStore
    summaries: SummaryStore


def build_pipeline(
    redis: Redis,
    *,
    credentials: CredentialStore,
    tiers: TierLookup,
    summaries: SummaryStore,
    upstream: ActivityApi,
    settings: Settings | None = None,
    time_provider: Callable[[], float] | None = None,
) -> Pipeline:
    settings = settings or get_settings()
    queue = DurableQueue(redis, settings=settings, time_provider=time_provider)
    governor = RateGovernor(
        redis, prefix=f"{settings.redis_prefix}:rl", time_provider=time_provider
    )
    admission = AdmissionController(governor, tiers, settings=settings)
    cache = ComplianceCache(redis, settings=settings, time_provider=time_provider)
    intake = WebhookIntake(queue=queue, cache=cache, credentials=credentials, settings=settings)
    drain = DrainWorker(
        queue=queue,
        admission=admission,
        cache=cache,
        upstream=upstream,
        credentials=credentials,
        summaries=summaries,
        settings=settings,
    )
    return Pipeline(
        settings=settings,
        redis=redis,
        queue=queue,
        governor=governor,
        admission=admission,
        cache=cache,
        intake=intake,
        drain=drain,
        upstream=upstream,
        credentials=credentials,
        summaries=summaries,
    )


_pipeline: Pipeline | None = None


async def get_pipeline() -> Pipeline:
    # Default production wiring: Redis from settings, SQL-backed collaborators, httpx upstream.
    # Reused per Redis client so concurrent requests share one single-flight map.
    global _pipeline
    settings = get_settings()
    redis = await get_redis()
    if _pipeline is not None and _pipeline.redis is redis:
        return _pipeline
    _pipeline = build_pipeline(
        redis,
        credentials=SqlCredentialStore(SessionLocal),
        tiers=SqlTierLookup(SessionLocal),
        summaries=SqlSummaryStore(SessionLocal),
        upstream=UpstreamClient(settings=settings),
        settings=settings,
    )
    return _pipeline
