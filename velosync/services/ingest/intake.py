"""Webhook intake: validate, normalize and enqueue without touching the upstream API.

Everything here must finish within the acknowledgment budget, so the only
shared-state calls are the queue push, cache invalidation and (for
deauthorization) the credential revocation.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import hmac
import logging
from typing import Any

from pydantic import BaseModel, Field

from velosync.core.config import DAY_S, Settings, get_settings
from velosync.core.errors import WebhookRejected
from velosync.domain.jobs import (
    JOB_BACKFILL_ATHLETE,
    JOB_DEAUTH,
    JOB_DELETE_ACTIVITY,
    JOB_RECONCILE_SINCE,
    JOB_SYNC_ACTIVITY,
    Job,
)
from velosync.services.cache import ComplianceCache
from velosync.services.collaborators import CredentialStore
from velosync.services.ingest.queue import DurableQueue
from velosync.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

EVENT_ACTIVITY_CREATE = "activity.create"
EVENT_ACTIVITY_UPDATE = "activity.update"
EVENT_ACTIVITY_DELETE = "activity.delete"
EVENT_DEAUTHORIZE = "athlete.deauthorize"

ACTION_ENQUEUED = "enqueued"
ACTION_REVOKED = "revoked"
ACTION_IGNORED = "ignored"

_EVENT_JOB_KINDS = {
    EVENT_ACTIVITY_CREATE: JOB_SYNC_ACTIVITY,
    EVENT_ACTIVITY_UPDATE: JOB_SYNC_ACTIVITY,
    EVENT_ACTIVITY_DELETE: JOB_DELETE_ACTIVITY,
    EVENT_DEAUTHORIZE: JOB_DEAUTH,
}

# Updates to any other field do not change what we store, so no refetch is queued.
MEANINGFUL_UPDATE_FIELDS = frozenset({"title", "type", "visibility", "private"})


class WebhookEvent(BaseModel):
    # Inbound push-subscription payload.
    object_type: str
    object_id: int | str
    aspect_type: str
    owner_id: int | str
    subscription_id: int | None = None
    event_time: int | None = None
    updates: dict[str, Any] = Field(default_factory=dict)

    def normalized_type(self) -> str:
        if self.object_type == "athlete" and str(self.updates.get("authorized", "")).lower() == "false":
            return EVENT_DEAUTHORIZE
        return f"{self.object_type}.{self.aspect_type}"


@dataclass(frozen=True)
class IntakeOutcome:
    action: str
    event_type: str
    job: Job | None = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class WebhookIntake:
    def __init__(
        self,
        *,
        queue: DurableQueue,
        cache: ComplianceCache,
        credentials: CredentialStore,
        settings: Settings | None = None,
    ) -> None:
        self._queue = queue
        self._cache = cache
        self._credentials = credentials
        self._settings = settings or get_settings()

    def verify_subscription(self, *, mode: str | None, verify_token: str | None, challenge: str | None) -> str:
        # Answer the subscription handshake only for our own verify token.
        if mode != "subscribe" or not challenge:
            raise WebhookRejected("Invalid subscription handshake")
        expected = self._settings.webhook_verify_token
        if not verify_token or not hmac.compare_digest(verify_token, expected):
            raise WebhookRejected("Verify token mismatch")
        return challenge

    def _check_subscription(self, event: WebhookEvent) -> None:
        expected = self._settings.webhook_subscription_id
        if expected is not None and event.subscription_id != expected:
            raise WebhookRejected("Event does not belong to this subscription")

    async def enqueue(self, event_type: str, subject_id: str, resource_id: str | None) -> Job:
        # Duplicates are enqueued as-is; the drain side is idempotent.
        kind = _EVENT_JOB_KINDS.get(event_type)
        if kind is None:
            raise WebhookRejected(f"Unsupported event type {event_type!r}")
        job = Job(kind=kind, subject_id=subject_id, resource_id=resource_id)
        await self._queue.enqueue(job)
        increment_counter(f"webhook_enqueued_total.{event_type}")
        return job

    async def handle(self, event: WebhookEvent) -> IntakeOutcome:
        self._check_subscription(event)
        event_type = event.normalized_type()
        subject_id = str(event.owner_id)
        resource_id = str(event.object_id)

        if event_type == EVENT_DEAUTHORIZE:
            # Revocation cannot wait for a drain cycle.
            await self._credentials.revoke(subject_id)
            job = await self.enqueue(event_type, subject_id, None)
            logger.info("webhook_deauthorization subject_id=%s", subject_id)
            return IntakeOutcome(ACTION_REVOKED, event_type, job)

        if event.object_type != "activity":
            return self._ignored(event_type)

        if event_type == EVENT_ACTIVITY_CREATE:
            job = await self.enqueue(event_type, subject_id, resource_id)
            return IntakeOutcome(ACTION_ENQUEUED, event_type, job)

        if event_type == EVENT_ACTIVITY_UPDATE:
            await self._cache.invalidate_activity(subject_id, resource_id)
            if not MEANINGFUL_UPDATE_FIELDS.intersection(event.updates):
                return self._ignored(event_type)
            job = await self.enqueue(event_type, subject_id, resource_id)
            return IntakeOutcome(ACTION_ENQUEUED, event_type, job)

        if event_type == EVENT_ACTIVITY_DELETE:
            await self._cache.invalidate_activity(subject_id, resource_id)
            job = await self.enqueue(event_type, subject_id, resource_id)
            return IntakeOutcome(ACTION_ENQUEUED, event_type, job)

        return self._ignored(event_type)

    def _ignored(self, event_type: str) -> IntakeOutcome:
        increment_counter("webhook_ignored_total")
        return IntakeOutcome(ACTION_IGNORED, event_type)

    async def request_backfill(
        self, subject_id: str, *, history_days: int, now: datetime | None = None
    ) -> Job:
        # Backfill windows follow the subject's tier entitlement.
        now = now or _utc_now()
        after_epoch_s = int(now.timestamp()) - history_days * DAY_S
        job = Job(
            kind=JOB_BACKFILL_ATHLETE,
            subject_id=subject_id,
            params={"after_epoch_s": after_epoch_s, "page": 1},
        )
        await self._queue.enqueue(job)
        return job

    async def request_reconcile(self, subject_id: str, *, since: datetime) -> Job:
        job = Job(
            kind=JOB_RECONCILE_SINCE,
            subject_id=subject_id,
            params={"since_epoch_s": int(since.timestamp())},
        )
        await self._queue.enqueue(job)
        return job
