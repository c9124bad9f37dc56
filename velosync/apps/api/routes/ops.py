from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from velosync.apps.api.deps import get_pipeline_dep, require_ops_token
from velosync.services.ingest.queue import get_worker_heartbeat
from velosync.services.pipeline import Pipeline
from velosync.services.telemetry import (
    counters_snapshot,
    external_latency_by_integration,
    gauges_snapshot,
    p95_latency,
)
from velosync.services.tiers import tier_limits


router = APIRouter(prefix="/ops", tags=["ops"], dependencies=[Depends(require_ops_token)])


class BackfillRequest(BaseModel):
    subject_id: str
    # Optional narrower window; never wider than the tier's history entitlement.
    history_days: int | None = Field(default=None, ge=1)


class ReconcileRequest(BaseModel):
    subject_id: str
    since: datetime


class EnqueuedJobResponse(BaseModel):
    kind: str
    subject_id: str
    queue_class: str
    params: dict[str, Any]


@router.get("/queues")
async def queues(pipeline: Pipeline = Depends(get_pipeline_dep)) -> dict:
    # Depth per class plus worker liveness for operators.
    depth = await pipeline.queue.depth()
    heartbeat = await get_worker_heartbeat(pipeline.redis)
    heartbeat_age_s = None
    if heartbeat is not None:
        heartbeat_age_s = max(0.0, datetime.now(timezone.utc).timestamp() - heartbeat.timestamp())
    return {
        "depth": depth,
        "worker_heartbeat_at": heartbeat.isoformat() if heartbeat else None,
        "worker_heartbeat_age_s": heartbeat_age_s,
    }


@router.get("/rate-usage")
async def rate_usage(
    subject_id: str | None = Query(default=None),
    pipeline: Pipeline = Depends(get_pipeline_dep),
) -> dict:
    usage = await pipeline.admission.usage_snapshot(subject_id)
    payload: dict[str, Any] = {"usage": usage, "global_remaining": await pipeline.admission.global_remaining()}
    if subject_id:
        tier = await pipeline.admission.resolve_tier(subject_id)
        limits = tier_limits(tier, settings=pipeline.settings)
        payload["subject"] = {
            "subject_id": subject_id,
            "tier": tier,
            "hourly_limit": limits.hourly_limit,
            "history_days": limits.history_days,
        }
    return payload


@router.get("/failed")
async def failed_jobs(
    limit: int = Query(default=50, ge=1, le=1000),
    pipeline: Pipeline = Depends(get_pipeline_dep),
) -> dict:
    items = await pipeline.queue.failed(limit)
    return {"items": items, "count": len(items)}


@router.post("/drain")
async def drain_now(pipeline: Pipeline = Depends(get_pipeline_dep)) -> dict:
    # Manual cycle; safe alongside the scheduled one because handlers are idempotent.
    report = await pipeline.drain.run_cycle()
    return report.as_dict()


@router.post("/backfill", response_model=EnqueuedJobResponse)
async def enqueue_backfill(
    payload: BackfillRequest,
    pipeline: Pipeline = Depends(get_pipeline_dep),
) -> EnqueuedJobResponse:
    tier = await pipeline.admission.resolve_tier(payload.subject_id)
    entitled_days = tier_limits(tier, settings=pipeline.settings).history_days
    history_days = min(payload.history_days or entitled_days, entitled_days)
    job = await pipeline.intake.request_backfill(payload.subject_id, history_days=history_days)
    return EnqueuedJobResponse(
        kind=job.kind, subject_id=job.subject_id, queue_class=job.queue_class, params=job.params
    )


@router.post("/reconcile", response_model=EnqueuedJobResponse)
async def enqueue_reconcile(
    payload: ReconcileRequest,
    pipeline: Pipeline = Depends(get_pipeline_dep),
) -> EnqueuedJobResponse:
    job = await pipeline.intake.request_reconcile(payload.subject_id, since=payload.since)
    return EnqueuedJobResponse(
        kind=job.kind, subject_id=job.subject_id, queue_class=job.queue_class, params=job.params
    )


@router.get("/metrics")
async def metrics(window_s: int = Query(default=300, ge=1)) -> dict:
    return {
        "counters": counters_snapshot(),
        "gauges": gauges_snapshot(),
        "p95_latency_ms": p95_latency(window_s),
        "external_latency": external_latency_by_integration(window_s),
    }
