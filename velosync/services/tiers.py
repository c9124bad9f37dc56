from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from velosync.core.config import Settings, get_settings


TIER_FREE = "free"
TIER_TRIAL = "trial"
TIER_PRO = "pro"

KNOWN_TIERS = (TIER_FREE, TIER_TRIAL, TIER_PRO)
LOWEST_TIER = TIER_FREE


@dataclass(frozen=True)
class TierLimits:
    # Entitlements derived from a subject's subscription level.
    tier: str
    hourly_limit: int
    history_days: int


@dataclass(frozen=True)
class SubjectTierInfo:
    # Read-only view of the billing collaborator's record.
    subject_id: str
    tier: str
    tier_expires_at: datetime | None = None


def effective_tier(info: SubjectTierInfo | None, *, now: datetime | None = None) -> str:
    # Lazily downgrade expired or unknown tiers at read time; no background sweep exists.
    if info is None:
        return LOWEST_TIER
    tier = (info.tier or "").lower()
    if tier not in KNOWN_TIERS:
        return LOWEST_TIER
    if info.tier_expires_at is not None:
        now = now or datetime.now(timezone.utc)
        expires_at = info.tier_expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        if expires_at <= now:
            return LOWEST_TIER
    return tier


def tier_limits(tier: str, *, settings: Settings | None = None) -> TierLimits:
    settings = settings or get_settings()
    if tier == TIER_PRO:
        return TierLimits(TIER_PRO, settings.tier_pro_hourly_limit, settings.tier_pro_history_days)
    if tier == TIER_TRIAL:
        return TierLimits(TIER_TRIAL, settings.tier_trial_hourly_limit, settings.tier_trial_history_days)
    return TierLimits(TIER_FREE, settings.tier_free_hourly_limit, settings.tier_free_history_days)
