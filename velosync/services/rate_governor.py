"""Fixed-window admission control backed by Redis counters.

Two scope families are enforced independently: a per-subject tier scope
(hourly, per endpoint) and the global upstream scope (15-minute and daily
windows shared by every subject). Counters are created by ``INCR`` and expire
through a TTL set only on the increment that creates them.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import math
import time
from typing import Callable, Sequence

from redis.asyncio import Redis

from velosync.core.config import DAY_S, FIFTEEN_MINUTES_S, HOUR_S, Settings, get_settings
from velosync.core.errors import AdmissionDenied
from velosync.services.collaborators import TierLookup
from velosync.services.telemetry import increment_counter
from velosync.services.tiers import effective_tier, tier_limits


logger = logging.getLogger(__name__)

SCOPE_TIER = "tier"
SCOPE_UPSTREAM_15M = "upstream_15m"
SCOPE_UPSTREAM_DAILY = "upstream_daily"

_GLOBAL_ID = "global"

# Hand back hits from a denied admission; a counter that already expired is left gone.
RELEASE_COUNTERS_LUA = """
for _, key in ipairs(KEYS) do
  if redis.call('EXISTS', key) == 1 then
    redis.call('DECR', key)
  end
end
return 0
"""


@dataclass(frozen=True)
class ScopeLimit:
    # One counter family: which key, how many hits, over which window.
    name: str
    scope_key: str
    limit: int
    window_s: int


@dataclass(frozen=True)
class AdmissionDecision:
    # Outcome of one scope check, shaped for X-RateLimit-* headers.
    allowed: bool
    scope: str
    limit: int
    count: int
    remaining: int
    reset_at: datetime

    def retry_after_s(self, now: float) -> int:
        return max(0, int(math.ceil(self.reset_at.timestamp() - now)))


@dataclass(frozen=True)
class AdmissionResult:
    # Aggregate over every applicable scope; denied names the exhausted one.
    allowed: bool
    decisions: tuple[AdmissionDecision, ...]
    denied: AdmissionDecision | None = None
    tier: str | None = None

    def decision_for(self, scope: str) -> AdmissionDecision | None:
        for decision in self.decisions:
            if decision.scope == scope:
                return decision
        return None

    def raise_if_denied(self) -> None:
        if self.denied is not None:
            raise AdmissionDenied(
                self.denied.scope,
                self.denied.reset_at,
                limit=self.denied.limit,
                tier=self.tier,
            )


def tier_scope_key(subject_id: str, endpoint: str) -> str:
    return f"{SCOPE_TIER}:{subject_id}:{endpoint}"


def upstream_scope_key(provider: str, window_name: str) -> str:
    return f"upstream:{_GLOBAL_ID}:{provider}:{window_name}"


def usage_scope_key(provider: str, subject_id: str, window_name: str) -> str:
    # Per-subject upstream usage kept for ops visibility, separate from enforcement.
    return f"usage:{subject_id}:{provider}:{window_name}"


def upstream_scopes(settings: Settings | None = None) -> list[ScopeLimit]:
    settings = settings or get_settings()
    provider = settings.upstream_provider
    return [
        ScopeLimit(
            SCOPE_UPSTREAM_15M,
            upstream_scope_key(provider, "15m"),
            settings.upstream_limit_15m,
            FIFTEEN_MINUTES_S,
        ),
        ScopeLimit(
            SCOPE_UPSTREAM_DAILY,
            upstream_scope_key(provider, "day"),
            settings.upstream_limit_daily,
            DAY_S,
        ),
    ]


class RateGovernor:
    def __init__(
        self,
        redis: Redis,
        *,
        prefix: str | None = None,
        time_provider: Callable[[], float] | None = None,
    ) -> None:
        # Allow injecting time for deterministic window tests.
        self._redis = redis
        self._prefix = prefix if prefix is not None else f"{get_settings().redis_prefix}:rl"
        self._time = time_provider or time.time

    def now(self) -> float:
        return self._time()

    def _counter_key(self, scope_key: str, window_index: int) -> str:
        return f"{self._prefix}:{scope_key}:{window_index}"

    def _window(self, window_seconds: int) -> tuple[int, datetime]:
        window_index = int(self._time() // window_seconds)
        reset_at = datetime.fromtimestamp((window_index + 1) * window_seconds, tz=timezone.utc)
        return window_index, reset_at

    async def _hit(
        self, scope_key: str, limit: int, window_seconds: int, scope: str | None
    ) -> tuple[AdmissionDecision, str]:
        # Count this hit in the current fixed window; the TTL is only set when the key is born.
        window_index, reset_at = self._window(window_seconds)
        key = self._counter_key(scope_key, window_index)
        count = int(await self._redis.incr(key))
        if count == 1:
            await self._redis.expire(key, window_seconds)
        decision = AdmissionDecision(
            allowed=count <= limit,
            scope=scope or scope_key,
            limit=limit,
            count=count,
            remaining=max(0, limit - count),
            reset_at=reset_at,
        )
        return decision, key

    async def check_and_increment(
        self, scope_key: str, limit: int, window_seconds: int, *, scope: str | None = None
    ) -> AdmissionDecision:
        decision, _key = await self._hit(scope_key, limit, window_seconds, scope)
        return decision

    async def peek(
        self, scope_key: str, limit: int, window_seconds: int, *, scope: str | None = None
    ) -> AdmissionDecision:
        # Read the current window without consuming budget.
        window_index, reset_at = self._window(window_seconds)
        raw = await self._redis.get(self._counter_key(scope_key, window_index))
        count = int(raw or 0)
        return AdmissionDecision(
            allowed=count < limit,
            scope=scope or scope_key,
            limit=limit,
            count=count,
            remaining=max(0, limit - count),
            reset_at=reset_at,
        )

    async def release(self, counter_keys: Sequence[str]) -> None:
        # Atomic so a window boundary between check and rollback cannot recreate a key without TTL.
        if counter_keys:
            await self._redis.eval(RELEASE_COUNTERS_LUA, len(counter_keys), *counter_keys)

    async def admit(self, scopes: Sequence[ScopeLimit], *, tier: str | None = None) -> AdmissionResult:
        # Admit only when every scope passes; a denial hands back what this call consumed.
        decisions: list[AdmissionDecision] = []
        consumed: list[str] = []
        for scope in scopes:
            decision, key = await self._hit(scope.scope_key, scope.limit, scope.window_s, scope.name)
            consumed.append(key)
            decisions.append(decision)
            if not decision.allowed:
                await self.release(consumed)
                increment_counter(f"admission_denied_total.{scope.name}")
                logger.info(
                    "admission_denied scope=%s key=%s limit=%s reset_at=%s",
                    scope.name,
                    scope.scope_key,
                    scope.limit,
                    decision.reset_at.isoformat(),
                )
                return AdmissionResult(
                    allowed=False,
                    decisions=tuple(decisions),
                    denied=decision,
                    tier=tier,
                )
        return AdmissionResult(allowed=True, decisions=tuple(decisions), tier=tier)


class AdmissionController:
    """Builds the applicable scopes for a subject and runs them through the governor."""

    def __init__(
        self,
        governor: RateGovernor,
        tiers: TierLookup,
        *,
        settings: Settings | None = None,
    ) -> None:
        self._governor = governor
        self._tiers = tiers
        self._settings = settings or get_settings()

    @property
    def governor(self) -> RateGovernor:
        return self._governor

    async def resolve_tier(self, subject_id: str) -> str:
        info = await self._tiers.get_tier(subject_id)
        return effective_tier(info, now=datetime.fromtimestamp(self._governor.now(), tz=timezone.utc))

    def _tier_scope(self, subject_id: str, endpoint: str, tier: str) -> ScopeLimit:
        limits = tier_limits(tier, settings=self._settings)
        return ScopeLimit(SCOPE_TIER, tier_scope_key(subject_id, endpoint), limits.hourly_limit, HOUR_S)

    async def check_request(self, subject_id: str, endpoint: str) -> AdmissionResult:
        # Gate an inbound read request on the subject's tier scope only.
        tier = await self.resolve_tier(subject_id)
        return await self._governor.admit([self._tier_scope(subject_id, endpoint, tier)], tier=tier)

    async def admit_upstream(
        self, subject_id: str, endpoint: str, *, include_tier: bool = True
    ) -> AdmissionResult:
        # Tier scope first, then the shared upstream ceilings.
        tier = await self.resolve_tier(subject_id)
        scopes: list[ScopeLimit] = []
        if include_tier:
            scopes.append(self._tier_scope(subject_id, endpoint, tier))
        scopes.extend(upstream_scopes(self._settings))
        result = await self._governor.admit(scopes, tier=tier)
        if result.allowed:
            await self._record_usage(subject_id)
        return result

    async def _record_usage(self, subject_id: str) -> None:
        provider = self._settings.upstream_provider
        for window_name, window_s in (("15m", FIFTEEN_MINUTES_S), ("day", DAY_S)):
            await self._governor.check_and_increment(
                usage_scope_key(provider, subject_id, window_name),
                self._settings.upstream_limit_daily,
                window_s,
            )

    async def global_remaining(self) -> int:
        # Smallest remaining budget across the shared upstream windows.
        remaining = []
        for scope in upstream_scopes(self._settings):
            decision = await self._governor.peek(scope.scope_key, scope.limit, scope.window_s, scope=scope.name)
            remaining.append(decision.remaining)
        return min(remaining) if remaining else 0

    async def usage_snapshot(self, subject_id: str | None = None) -> dict[str, dict[str, int | str]]:
        # Current counts for ops dashboards; never consumes budget.
        snapshot: dict[str, dict[str, int | str]] = {}
        for scope in upstream_scopes(self._settings):
            decision = await self._governor.peek(scope.scope_key, scope.limit, scope.window_s, scope=scope.name)
            snapshot[scope.name] = _decision_view(decision)
        if subject_id:
            provider = self._settings.upstream_provider
            for window_name, window_s in (("15m", FIFTEEN_MINUTES_S), ("day", DAY_S)):
                decision = await self._governor.peek(
                    usage_scope_key(provider, subject_id, window_name),
                    self._settings.upstream_limit_daily,
                    window_s,
                )
                snapshot[f"subject_upstream_{window_name}"] = {
                    "count": decision.count,
                    "reset_at": decision.reset_at.isoformat(),
                }
        return snapshot


def _decision_view(decision: AdmissionDecision) -> dict[str, int | str]:
    return {
        "count": decision.count,
        "limit": decision.limit,
        "remaining": decision.remaining,
        "reset_at": decision.reset_at.isoformat(),
    }
