from __future__ import annotations

import logging
import math
import time

from fastapi import HTTPException, Response, status
from redis.exceptions import RedisError

from velosync.core.errors import AdmissionDenied
from velosync.services.pipeline import Pipeline
from velosync.services.rate_governor import AdmissionDecision
from velosync.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def apply_rate_limit_headers(response: Response, decision: AdmissionDecision) -> None:
    # Surface admission metadata on successful responses.
    response.headers["X-RateLimit-Limit"] = str(decision.limit)
    response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
    response.headers["X-RateLimit-Reset"] = str(int(decision.reset_at.timestamp()))


def throttle_exception(denied: AdmissionDenied, *, now: float | None = None) -> HTTPException:
    # Construct a stable 429 naming the exhausted scope, tier and precise reset time.
    now = now if now is not None else time.time()
    retry_after_s = max(0, int(math.ceil(denied.reset_at.timestamp() - now)))
    headers = {
        "Retry-After": str(retry_after_s),
        "X-RateLimit-Limit": str(denied.limit),
        "X-RateLimit-Remaining": "0",
        "X-RateLimit-Reset": str(int(denied.reset_at.timestamp())),
        "X-RateLimit-Scope": denied.scope,
    }
    tier_text = f" on the {denied.tier} tier" if denied.tier else ""
    return HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail={
            "code": "RATE_LIMITED",
            "message": f"Rate limit exceeded for {denied.scope}{tier_text}; retry in {retry_after_s}s",
            "scope": denied.scope,
            "tier": denied.tier,
            "limit": denied.limit,
            "reset_at": denied.reset_at.isoformat(),
            "retry_after_s": retry_after_s,
        },
        headers=headers,
    )


def _unavailable_exception() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={"code": "RATE_LIMIT_UNAVAILABLE", "message": "Rate limiting unavailable"},
    )


async def enforce_tier_limit(
    *,
    response: Response,
    pipeline: Pipeline,
    subject_id: str,
    endpoint: str,
) -> AdmissionDecision | None:
    # Gate a read request on the subject's hourly tier scope.
    settings = pipeline.settings
    if not settings.rate_limit_enabled:
        return None
    try:
        result = await pipeline.admission.check_request(subject_id, endpoint)
    except RedisError as exc:
        if settings.rl_fail_mode.lower() == "closed":
            raise _unavailable_exception() from exc
        response.headers["X-RateLimit-Status"] = "degraded"
        increment_counter("rate_limit_degraded_total")
        logger.warning("rate_limit_degraded subject_id=%s endpoint=%s", subject_id, endpoint)
        return None

    try:
        result.raise_if_denied()
    except AdmissionDenied as denied:
        raise throttle_exception(denied, now=pipeline.governor.now()) from denied
    decision = result.decisions[0]
    apply_rate_limit_headers(response, decision)
    return decision
