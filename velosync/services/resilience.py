from __future__ import annotations

import asyncio
from dataclasses import dataclass
import random
from typing import Any, Awaitable, Callable

from velosync.core.config import Settings, get_settings
from velosync.core.errors import PermanentJobFailure, TransientUpstreamFailure


TransientException = (TimeoutError, OSError, TransientUpstreamFailure)


@dataclass(frozen=True)
class RetryPolicy:
    # Bounded retry state machine; the attempt count itself lives on the job.
    retry_ceiling: int
    backoff_base_s: int
    backoff_max_s: int
    jitter: bool = True

    def exhausted(self, attempt: int) -> bool:
        return attempt >= self.retry_ceiling

    def backoff_s(self, attempt: int) -> float:
        # Exponential backoff for the given (1-based) retry attempt, capped.
        attempt = max(1, attempt)
        delay = min(float(self.backoff_max_s), float(self.backoff_base_s) * (2 ** (attempt - 1)))
        if self.jitter:
            delay *= random.uniform(0.8, 1.2)
            delay = min(delay, float(self.backoff_max_s))
        return delay


def default_retry_policy(settings: Settings | None = None) -> RetryPolicy:
    settings = settings or get_settings()
    return RetryPolicy(
        retry_ceiling=settings.queue_retry_ceiling,
        backoff_base_s=settings.queue_backoff_base_s,
        backoff_max_s=settings.queue_backoff_max_s,
    )


def is_transient(exc: BaseException) -> bool:
    # Permanent failures win; unknown errors are retried so a bug cannot silently drop work.
    if isinstance(exc, PermanentJobFailure):
        return False
    if isinstance(exc, TransientException):
        return True
    status = getattr(exc, "status_code", None)
    if isinstance(status, int):
        return status >= 500 or status == 429
    return True


async def call_with_timeout(func: Callable[[], Awaitable[Any]], *, timeout_ms: int) -> Any:
    # Exceeding the fixed per-call budget is reported as a transient upstream failure.
    try:
        return await asyncio.wait_for(func(), timeout=timeout_ms / 1000.0)
    except asyncio.TimeoutError as exc:
        raise TransientUpstreamFailure(f"Upstream call exceeded {timeout_ms}ms") from exc
