from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
import logging
import time
from typing import Any

from velosync.core.config import Settings, get_settings
from velosync.core.errors import (
    AdmissionDenied,
    CredentialsMissingError,
    PermanentJobFailure,
    UnknownJobKindError,
)
from velosync.domain.jobs import (
    JOB_BACKFILL_ATHLETE,
    JOB_DEAUTH,
    JOB_DELETE_ACTIVITY,
    JOB_ENDPOINTS,
    JOB_RECONCILE_SINCE,
    JOB_SYNC_ACTIVITY,
    Job,
    worst_case_calls,
)
from velosync.services.cache import (
    RESOURCE_ACTIVITY,
    RESOURCE_SUMMARY,
    TTL_RAW_STREAM,
    ComplianceCache,
    cache_key,
)
from velosync.services.collaborators import CredentialStore, SummaryStore
from velosync.services.ingest.queue import RETRY_EXHAUSTED, DurableQueue
from velosync.services.ingest.summaries import summarize_activity
from velosync.services.rate_governor import SCOPE_TIER, AdmissionController
from velosync.services.resilience import is_transient
from velosync.services.telemetry import increment_counter, set_gauge
from velosync.services.upstream import ActivityApi


logger = logging.getLogger(__name__)


@dataclass
class DrainReport:
    # Outcome of one drain cycle for logs, ops responses and tests.
    budget: int = 0
    promoted: int = 0
    popped: int = 0
    processed: int = 0
    requeued: int = 0
    deferred: int = 0
    retried: int = 0
    failed: int = 0
    halted_scope: str | None = None
    halted_until: datetime | None = None
    duration_ms: float = 0.0

    def as_dict(self) -> dict[str, Any]:
        data = asdict(self)
        if self.halted_until is not None:
            data["halted_until"] = self.halted_until.isoformat()
        return data


class DrainWorker:
    """Pops bounded batches and applies each job under rate admission.

    Collaborators are injected so a cycle never depends on process-wide state.
    Every handler is an idempotent upsert or delete, which is what makes
    at-least-once delivery and overlapping cycles safe.
    """

    def __init__(
        self,
        *,
        queue: DurableQueue,
        admission: AdmissionController,
        cache: ComplianceCache,
        upstream: ActivityApi,
        credentials: CredentialStore,
        summaries: SummaryStore,
        settings: Settings | None = None,
    ) -> None:
        self._queue = queue
        self._admission = admission
        self._cache = cache
        self._upstream = upstream
        self._credentials = credentials
        self._summaries = summaries
        self._settings = settings or get_settings()
        self._handlers = {
            JOB_SYNC_ACTIVITY: self._sync_activity,
            JOB_DELETE_ACTIVITY: self._delete_activity,
            JOB_DEAUTH: self._deauth,
            JOB_BACKFILL_ATHLETE: self._backfill_athlete,
            JOB_RECONCILE_SINCE: self._reconcile_since,
        }

    async def batch_size(self) -> int:
        # Worst case batch_size * calls_per_job must fit in what is left of the global window.
        remaining = await self._admission.global_remaining()
        return max(0, min(self._settings.drain_max_batch, remaining // worst_case_calls()))

    async def run_cycle(self) -> DrainReport:
        start = time.monotonic()
        report = DrainReport()
        report.promoted = await self._queue.promote_due()
        report.budget = await self.batch_size()
        if report.budget <= 0:
            logger.info("drain_cycle_skipped reason=global_budget_exhausted")
            increment_counter("drain_cycle_skipped_total")
            return report

        jobs = await self._queue.drain_batch(report.budget)
        report.popped = len(jobs)
        for index, job in enumerate(jobs):
            try:
                await self.apply(job)
            except AdmissionDenied as denied:
                # Back-pressure: put this job and everything behind it back, then stop.
                pending = jobs[index:]
                if denied.scope == SCOPE_TIER:
                    # A tier scope belongs to one subject; its jobs wait out the window off the queue head.
                    scope = _tier_scope_of(job)
                    parked = [item for item in pending if _tier_scope_of(item) == scope]
                    pending = [item for item in pending if _tier_scope_of(item) != scope]
                    await self._queue.defer(parked, until=denied.reset_at.timestamp())
                    report.deferred = len(parked)
                await self._queue.requeue(pending)
                report.requeued = len(pending)
                report.halted_scope = denied.scope
                report.halted_until = denied.reset_at
                break
            except Exception as exc:  # noqa: BLE001 - every failure is classified, none escape the cycle
                await self._handle_failure(job, exc, report)
                continue
            report.processed += 1

        report.duration_ms = (time.monotonic() - start) * 1000.0
        self._record(report)
        return report

    async def _handle_failure(self, job: Job, exc: Exception, report: DrainReport) -> None:
        reason = f"{type(exc).__name__}: {exc}"
        if is_transient(exc):
            outcome = await self._queue.retry(job, reason=reason)
            if outcome == RETRY_EXHAUSTED:
                report.failed += 1
            else:
                report.retried += 1
            return
        await self._queue.fail(job, reason=reason)
        report.failed += 1

    def _record(self, report: DrainReport) -> None:
        increment_counter("drain_jobs_processed_total", report.processed)
        increment_counter("drain_jobs_requeued_total", report.requeued)
        increment_counter("drain_jobs_deferred_total", report.deferred)
        increment_counter("drain_jobs_retried_total", report.retried)
        increment_counter("drain_jobs_failed_total", report.failed)
        set_gauge("drain_last_cycle_ts", time.time())
        logger.info(
            "drain_cycle_complete budget=%s popped=%s processed=%s requeued=%s deferred=%s retried=%s failed=%s halted_scope=%s",
            report.budget,
            report.popped,
            report.processed,
            report.requeued,
            report.deferred,
            report.retried,
            report.failed,
            report.halted_scope,
        )

    async def apply(self, job: Job) -> None:
        handler = self._handlers.get(job.kind)
        if handler is None:
            raise UnknownJobKindError(f"No handler for job kind {job.kind!r}")
        await handler(job)

    async def _access_token(self, subject_id: str) -> str:
        token = await self._credentials.get_access_token(subject_id)
        if not token:
            raise CredentialsMissingError(f"No access token stored for subject {subject_id}")
        return token

    async def _admit(self, job: Job) -> None:
        result = await self._admission.admit_upstream(job.subject_id, JOB_ENDPOINTS[job.kind])
        result.raise_if_denied()

    async def _sync_activity(self, job: Job) -> None:
        if not job.resource_id:
            raise PermanentJobFailure("sync-activity job has no resource_id")
        token = await self._access_token(job.subject_id)
        await self._admit(job)
        payload = await self._upstream.get_activity(token, job.resource_id)
        await self._store_summary(job.subject_id, payload)
        # The raw payload only ever lives in the bounded cache class.
        await self._cache.put(
            cache_key(RESOURCE_ACTIVITY, job.subject_id, job.resource_id),
            payload,
            TTL_RAW_STREAM,
        )

    async def _delete_activity(self, job: Job) -> None:
        if not job.resource_id:
            raise PermanentJobFailure("delete-activity job has no resource_id")
        await self._summaries.delete(job.resource_id)
        await self._cache.invalidate_activity(job.subject_id, job.resource_id)

    async def _deauth(self, job: Job) -> None:
        # Intake already revoked credentials; repeat it so a redelivered job converges too.
        await self._credentials.revoke(job.subject_id)
        removed = await self._summaries.delete_for_subject(job.subject_id)
        purged = await self._cache.purge_subject(job.subject_id)
        logger.info(
            "subject_deauthorized subject_id=%s summaries_removed=%s cache_purged=%s",
            job.subject_id,
            removed,
            purged,
        )

    async def _list_and_store(self, job: Job, *, after_epoch_s: int, page: int) -> int:
        token = await self._access_token(job.subject_id)
        await self._admit(job)
        per_page = int(job.params.get("per_page") or self._settings.upstream_page_size)
        items = await self._upstream.list_activities(
            token, after_epoch_s=after_epoch_s, page=page, per_page=per_page
        )
        for item in items:
            await self._store_summary(job.subject_id, item)
        return len(items)

    async def _store_summary(self, subject_id: str, payload: dict[str, Any]) -> None:
        summary = summarize_activity(payload, subject_id=subject_id)
        await self._summaries.upsert(summary)
        # Drop any summary view cached from the previous row.
        await self._cache.invalidate(cache_key(RESOURCE_SUMMARY, subject_id, summary["id"]))

    async def _backfill_athlete(self, job: Job) -> None:
        after_epoch_s = _required_int(job, "after_epoch_s")
        page = int(job.params.get("page") or 1)
        per_page = int(job.params.get("per_page") or self._settings.upstream_page_size)
        count = await self._list_and_store(job, after_epoch_s=after_epoch_s, page=page)
        if count >= per_page:
            # One page per job keeps each unit small enough to fit a drain budget.
            await self._queue.enqueue(
                Job(
                    kind=JOB_BACKFILL_ATHLETE,
                    subject_id=job.subject_id,
                    params={**job.params, "page": page + 1},
                )
            )

    async def _reconcile_since(self, job: Job) -> None:
        since_epoch_s = _required_int(job, "since_epoch_s")
        await self._list_and_store(job, after_epoch_s=since_epoch_s, page=1)


def _required_int(job: Job, name: str) -> int:
    value = job.params.get(name)
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise PermanentJobFailure(f"{job.kind} job is missing {name}") from exc


def _tier_scope_of(job: Job) -> tuple[str, str | None]:
    return job.subject_id, JOB_ENDPOINTS.get(job.kind)
