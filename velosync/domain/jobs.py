from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


JOB_SYNC_ACTIVITY = "sync-activity"
JOB_DELETE_ACTIVITY = "delete-activity"
JOB_DEAUTH = "deauth"
JOB_BACKFILL_ATHLETE = "backfill-athlete"
JOB_RECONCILE_SINCE = "reconcile-since"

QUEUE_LIVE = "live"
QUEUE_BACKFILL = "backfill"

QueueClass = Literal["live", "backfill"]

# Upstream calls a job of each kind may spend; used to size drain batches.
CALLS_PER_JOB: dict[str, int] = {
    JOB_SYNC_ACTIVITY: 1,
    JOB_DELETE_ACTIVITY: 0,
    JOB_DEAUTH: 0,
    JOB_BACKFILL_ATHLETE: 1,
    JOB_RECONCILE_SINCE: 1,
}

# Tier-scope endpoint charged for each job kind's upstream call.
JOB_ENDPOINTS: dict[str, str] = {
    JOB_SYNC_ACTIVITY: "activity",
    JOB_BACKFILL_ATHLETE: "activities",
    JOB_RECONCILE_SINCE: "activities",
}

_BACKFILL_KINDS = {JOB_BACKFILL_ATHLETE, JOB_RECONCILE_SINCE}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Job(BaseModel):
    # Jobs are immutable; retries produce a copy with a bumped attempt.
    model_config = ConfigDict(frozen=True)

    kind: str
    subject_id: str
    resource_id: str | None = None
    enqueued_at: datetime = Field(default_factory=_utc_now)
    attempt: int = 0
    # Kind-specific extras such as a backfill page cursor.
    params: dict[str, Any] = Field(default_factory=dict)

    @property
    def queue_class(self) -> QueueClass:
        return QUEUE_BACKFILL if self.kind in _BACKFILL_KINDS else QUEUE_LIVE

    @property
    def calls(self) -> int:
        return CALLS_PER_JOB.get(self.kind, 1)

    def next_attempt(self) -> "Job":
        return self.model_copy(update={"attempt": self.attempt + 1})

    def to_wire(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_wire(cls, raw: str | bytes) -> "Job":
        return cls.model_validate_json(raw)


def worst_case_calls(max_calls: int | None = None) -> int:
    # Budget sizing assumes the most expensive kind unless told otherwise.
    if max_calls is not None:
        return max(1, max_calls)
    return max(1, max(CALLS_PER_JOB.values()))
