from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status

from velosync.apps.api.deps import get_pipeline_dep, require_subject
from velosync.apps.api.rate_limit import enforce_tier_limit, throttle_exception
from velosync.apps.api.response import success_response
from velosync.core.errors import AdmissionDenied, PermanentJobFailure, TransientUpstreamFailure
from velosync.services.cache import (
    RESOURCE_STREAMS,
    RESOURCE_SUMMARY,
    TTL_RAW_STREAM,
    TTL_SUMMARY,
    cache_key,
)
from velosync.services.pipeline import Pipeline


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/activities", tags=["activities"])

# Tier-scope endpoint names for reads; distinct from the ones background jobs charge.
ENDPOINT_SUMMARY = "read-activity"
ENDPOINT_STREAMS = "read-streams"


def _cache_headers(response: Response, *, hit: bool, max_age: int) -> None:
    response.headers["X-Cache"] = "HIT" if hit else "MISS"
    # Clients must not hold a copy longer than the server-side entry lives.
    response.headers["Cache-Control"] = f"private, max-age={max_age}"


@router.get("/{activity_id}")
async def get_activity_summary(
    activity_id: str,
    request: Request,
    response: Response,
    subject_id: str = Depends(require_subject),
    pipeline: Pipeline = Depends(get_pipeline_dep),
) -> dict:
    await enforce_tier_limit(
        response=response, pipeline=pipeline, subject_id=subject_id, endpoint=ENDPOINT_SUMMARY
    )

    async def _load() -> dict[str, Any]:
        summary = await pipeline.summaries.get(subject_id, activity_id)
        if summary is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail={"code": "NOT_FOUND", "message": "Activity not found"},
            )
        return summary

    entry, hit = await pipeline.cache.get_or_fetch_entry(
        cache_key(RESOURCE_SUMMARY, subject_id, activity_id), TTL_SUMMARY, _load
    )
    _cache_headers(response, hit=hit, max_age=entry.ttl_remaining(pipeline.governor.now()))
    return success_response(request=request, data=entry.payload)


@router.get("/{activity_id}/streams")
async def get_activity_streams(
    activity_id: str,
    request: Request,
    response: Response,
    subject_id: str = Depends(require_subject),
    pipeline: Pipeline = Depends(get_pipeline_dep),
) -> dict:
    await enforce_tier_limit(
        response=response, pipeline=pipeline, subject_id=subject_id, endpoint=ENDPOINT_STREAMS
    )

    async def _fetch() -> dict[str, Any]:
        # Only a cache miss spends upstream budget; the tier hit was already counted.
        token = await pipeline.credentials.get_access_token(subject_id)
        if token is None:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail={"code": "CREDENTIALS_MISSING", "message": "Subject has no active authorization"},
            )
        result = await pipeline.admission.admit_upstream(subject_id, ENDPOINT_STREAMS, include_tier=False)
        result.raise_if_denied()
        return await pipeline.upstream.get_streams(token, activity_id)

    try:
        entry, hit = await pipeline.cache.get_or_fetch_entry(
            cache_key(RESOURCE_STREAMS, subject_id, activity_id), TTL_RAW_STREAM, _fetch
        )
    except AdmissionDenied as denied:
        raise throttle_exception(denied, now=pipeline.governor.now()) from denied
    except TransientUpstreamFailure as exc:
        logger.warning("streams_upstream_unavailable activity_id=%s error=%s", activity_id, exc)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "UPSTREAM_UNAVAILABLE", "message": "Upstream temporarily unavailable"},
            headers={"Retry-After": "30"},
        ) from exc
    except PermanentJobFailure as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"code": "UPSTREAM_ERROR", "message": str(exc)},
        ) from exc

    _cache_headers(response, hit=hit, max_age=entry.ttl_remaining(pipeline.governor.now()))
    return success_response(request=request, data=entry.payload)
