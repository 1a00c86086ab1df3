from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from forumai.core.config import get_settings
from forumai.core.errors import (
    AuthError,
    IllegalTransitionError,
    InsufficientCreditsError,
    QueueBusyError,
    TransportError,
    ValidationError,
)
from forumai.domain.models import IndexingJob, IndexingJobItem
from forumai.domain.state import JOB_TRANSITIONS, ItemOutcome, JobStatus
from forumai.persistence.repos import items as items_repo
from forumai.persistence.repos import jobs as jobs_repo
from forumai.persistence.repos import options as options_repo
from forumai.providers.remote.base import ChunkParams, ContentRepository, IndexStore
from forumai.services.credits import record_consumption
from forumai.services.indexing.fingerprint import prepare_item
from forumai.services.indexing.planner import dedupe_ids, item_cost
from forumai.services.locks import acquire_scope_lock, release_scope_lock
from forumai.services.options import validate_chunk_params
from forumai.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)

INDEXING_LOCK_SCOPE = "indexing"
CLEARING_MARKER = "indexing.clearing"
CANCEL_MARKER = "indexing.cancel_requested"

FAILURE_CREDIT_CAP = "credit_cap"
FAILURE_UNAVAILABLE = "content_unavailable"


def _utc_now() -> datetime:
    # Use UTC timestamps when no clock is injected.
    return datetime.now(timezone.utc)


def transition_job(job: IndexingJob, target: JobStatus) -> None:
    # Enforce the job state machine; illegal moves raise instead of corrupting history.
    current = JobStatus(job.status)
    if target not in JOB_TRANSITIONS[current]:
        raise IllegalTransitionError(f"job {job.job_id} cannot move from {current.value} to {target.value}")
    job.status = target.value


@dataclass(frozen=True)
class JobHandle:
    job_id: str
    item_ids: list[int]
    status: JobStatus
    credits_reserved: int
    created_at: datetime
    # Items trimmed because the outstanding reservations left no room for them.
    deferred_ids: list[int] = field(default_factory=list)


@dataclass(frozen=True)
class BatchResult:
    job_id: str | None = None
    job_status: JobStatus | None = None
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    credits_consumed: int = 0
    # Another wake-up holds the queue lock; nothing was touched.
    skipped_lock: bool = False
    # A cancel request was observed and applied; the remaining items were cancelled.
    interrupted: bool = False
    failures: dict[int, str] = field(default_factory=dict)

    def as_dict(self) -> dict[str, object]:
        # Serialize for wake-up summaries and the admin API.
        return {
            "job_id": self.job_id,
            "job_status": self.job_status.value if self.job_status else None,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "credits_consumed": self.credits_consumed,
            "skipped_lock": self.skipped_lock,
            "interrupted": self.interrupted,
            "failures": {str(k): v for k, v in self.failures.items()},
        }


@dataclass(frozen=True)
class JobProgress:
    job_id: str
    status: JobStatus
    pending: int
    completed: int
    failed: int
    cancelled: int
    credits_reserved: int
    credits_consumed: int


@dataclass(frozen=True)
class CancelResult:
    jobs_cleared: int
    items_cleared: int
    # The lock stayed busy; the request is left for the next lock holder to apply.
    deferred: bool = False

    def as_dict(self) -> dict[str, object]:
        # Serialize for the admin API.
        return {"jobs_cleared": self.jobs_cleared, "items_cleared": self.items_cleared, "deferred": self.deferred}


def _cancel_reason(token: str | None) -> str:
    # Tag cancelled rows with the request that cancelled them.
    return f"cancel_request={token or 'unknown'}"


def _fit_reservation(item_ids: list[int], costs: dict[int, int], budget: int) -> tuple[list[int], list[int]]:
    # Keeps request order and stops at the first item the budget cannot cover.
    kept: list[int] = []
    spent = 0
    for position, item_id in enumerate(item_ids):
        cost = costs[item_id]
        if spent + cost > budget:
            return kept, item_ids[position:]
        kept.append(item_id)
        spent += cost
    return kept, []


class JobQueue:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        content: ContentRepository | None = None,
        index_store: IndexStore | None = None,
        tenant_id: str | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        # Collaborators are optional so planning-only callers can skip the remote store.
        self._sessions = session_factory
        self._content = content
        self._store = index_store
        self._tenant_id = tenant_id
        self._now = time_provider or _utc_now

    async def enqueue(
        self,
        item_ids: list[int],
        params: ChunkParams,
        *,
        credits_reserved: int | None = None,
        item_credits: dict[int, int] | None = None,
        credits_available: int | None = None,
        allow_partial: bool = False,
    ) -> JobHandle:
        """Create a queued job for ``item_ids``.

        When ``credits_available`` is given, the reservation must fit in that balance minus
        what live jobs already hold; ``allow_partial`` trims the tail instead of refusing.
        """
        ordered = dedupe_ids(item_ids)
        if not ordered:
            raise ValidationError("no items to enqueue", field="item_ids")
        validate_chunk_params(params.chunk_size, params.overlap_percent)
        # Without a plan every item is priced as if it carried an image.
        default_cost = 2 if params.include_images else 1
        costs = {item_id: int((item_credits or {}).get(item_id, default_cost)) for item_id in ordered}
        reserved = sum(costs.values()) if credits_reserved is None else int(credits_reserved)
        if reserved < 0:
            raise ValidationError("credits_reserved cannot be negative", field="credits_reserved")

        settings = get_settings()
        lock = await acquire_scope_lock(INDEXING_LOCK_SCOPE, wait_s=settings.queue_lock_wait_s)
        if lock is None:
            raise QueueBusyError("indexing queue is busy")
        deferred: list[int] = []
        try:
            async with self._sessions() as session:
                await self._apply_pending_cancel(session)
                now = self._now()
                if await options_repo.get_active_marker(session, CLEARING_MARKER, now=now) is not None:
                    raise QueueBusyError("index clearing in progress")
                # Check-then-act under the queue lock keeps each item in at most one live job.
                held = await jobs_repo.held_item_ids(session, ordered)
                if held:
                    conflicting = [item_id for item_id in ordered if item_id in held]
                    raise ValidationError(
                        f"items already queued: {', '.join(str(i) for i in conflicting[:20])}",
                        field="item_ids",
                    )
                if credits_available is not None:
                    # Live jobs keep their reservations until they finish, so count them against the balance.
                    outstanding = await jobs_repo.outstanding_reservation(session)
                    available = int(credits_available) - outstanding
                    if reserved > available:
                        kept, deferred = (
                            _fit_reservation(ordered, costs, available) if allow_partial and available > 0 else ([], ordered)
                        )
                        if not kept:
                            raise InsufficientCreditsError(
                                f"indexing needs {reserved} credits, {max(0, available)} available",
                                requested=reserved,
                                available=max(0, available),
                            )
                        ordered = kept
                        reserved = sum(costs[item_id] for item_id in kept)
                job = await jobs_repo.create_job(
                    session,
                    job_id=uuid4().hex,
                    item_ids=ordered,
                    chunk_size=params.chunk_size,
                    overlap_percent=params.overlap_percent,
                    credits_reserved=reserved,
                    include_images=params.include_images,
                    created_at=now,
                )
                await session.commit()
        finally:
            await release_scope_lock(lock)

        increment_counter("indexing_jobs_enqueued_total")
        logger.info(
            "indexing_job_enqueued job_id=%s items=%s reserved=%s deferred=%s",
            job.job_id,
            len(ordered),
            reserved,
            len(deferred),
        )
        return JobHandle(
            job_id=job.job_id,
            item_ids=ordered,
            status=JobStatus.QUEUED,
            credits_reserved=reserved,
            created_at=now,
            deferred_ids=deferred,
        )

    async def drain_next(self, max_items: int) -> tuple[BatchResult, bool]:
        """Process up to ``max_items`` pending items of the oldest live job."""
        if max_items <= 0:
            raise ValidationError("max_items must be positive", field="max_items")
        if self._content is None or self._store is None:
            raise ValidationError("draining requires a content repository and an index store")

        lock = await acquire_scope_lock(INDEXING_LOCK_SCOPE, wait_s=0)
        if lock is None:
            increment_counter("indexing_drain_lock_skipped_total")
            return BatchResult(skipped_lock=True), await self.has_pending_work()
        try:
            async with self._sessions() as session:
                if await self._apply_pending_cancel(session):
                    return BatchResult(interrupted=True), await jobs_repo.next_live_job(session) is not None
                job = await jobs_repo.next_live_job(session)
                if job is None:
                    return BatchResult(), False
                result = await self._drain_job(session, job, max_items)
                has_more = await jobs_repo.next_live_job(session) is not None
        finally:
            await release_scope_lock(lock)

        set_gauge("indexing_queue_has_more", 1.0 if has_more else 0.0)
        logger.info(
            "indexing_batch_drained job_id=%s processed=%s succeeded=%s failed=%s credits=%s has_more=%s",
            result.job_id,
            result.processed,
            result.succeeded,
            result.failed,
            result.credits_consumed,
            has_more,
        )
        return result, has_more

    async def _drain_job(self, session: AsyncSession, job: IndexingJob, max_items: int) -> BatchResult:
        # Process pending items in position order under the caller's lock.
        assert self._content is not None and self._store is not None
        if job.status == JobStatus.QUEUED.value:
            transition_job(job, JobStatus.PROCESSING)
            job.started_at = self._now()
            await session.commit()

        batch = await jobs_repo.pending_items(session, job.job_id, limit=max_items)
        contents = await self._content.get_items([row.item_id for row in batch]) if batch else {}
        params = ChunkParams(
            chunk_size=job.chunk_size,
            overlap_percent=job.overlap_percent,
            include_images=job.include_images,
        )

        processed = succeeded = failed = consumed_total = 0
        failures: dict[int, str] = {}
        interrupted = False
        for index, row in enumerate(batch):
            # Cancellation is observed between items; an in-flight submission always completes.
            if await options_repo.get_active_marker(session, CANCEL_MARKER, now=self._now()) is not None:
                interrupted = True
                break
            item = contents.get(row.item_id)
            if item is None or item.is_private or not item.is_approved:
                processed += 1
                self._fail_items([row], FAILURE_UNAVAILABLE)
                failures[row.item_id] = FAILURE_UNAVAILABLE
                failed += 1
                await session.commit()
                continue

            # Never start an item the reservation cannot cover; the rest of the batch is short-circuited.
            if job.credits_consumed + item_cost(item, include_images=job.include_images) > job.credits_reserved:
                rest = batch[index:]
                self._fail_items(rest, FAILURE_CREDIT_CAP)
                for skipped in rest:
                    failures[skipped.item_id] = FAILURE_CREDIT_CAP
                failed += len(rest)
                processed += len(rest)
                await session.commit()
                logger.warning("indexing_credit_cap_reached job_id=%s skipped=%s", job.job_id, len(rest))
                break

            processed += 1
            prepared = prepare_item(item, include_images=job.include_images)
            try:
                submit = await self._store.submit(prepared, params)
            except (TransportError, AuthError, InsufficientCreditsError) as exc:
                # Remote failures become item outcomes; the next enqueue may retry the item.
                self._fail_items([row], str(exc) or exc.__class__.__name__)
                failures[row.item_id] = str(exc) or exc.__class__.__name__
                failed += 1
                await session.commit()
                increment_counter("indexing_item_failures_total")
                continue

            remaining = max(0, job.credits_reserved - job.credits_consumed)
            charged = max(0, int(submit.credits_consumed))
            if charged > remaining:
                logger.warning(
                    "indexing_credit_overrun job_id=%s item_id=%s reported=%s remaining=%s",
                    job.job_id,
                    row.item_id,
                    charged,
                    remaining,
                )
                charged = remaining
            row.outcome = ItemOutcome.SUCCEEDED.value
            row.credits_consumed = charged
            row.processed_at = self._now()
            job.credits_consumed += charged
            await items_repo.mark_indexed(
                session,
                item_id=item.item_id,
                content_hash=prepared.content_hash,
                has_image=item.has_image,
                board_id=item.board_id,
                cloud=getattr(self._store, "mode", "cloud") == "cloud",
                indexed_at=self._now(),
            )
            await session.commit()
            if self._tenant_id and charged:
                record_consumption(self._tenant_id, charged)
            succeeded += 1
            consumed_total += charged

        if interrupted:
            await self._apply_pending_cancel(session)
        else:
            await self._finalize_if_resolved(session, job)
        return BatchResult(
            job_id=job.job_id,
            job_status=JobStatus(job.status),
            processed=processed,
            succeeded=succeeded,
            failed=failed,
            credits_consumed=consumed_total,
            interrupted=interrupted,
            failures=failures,
        )

    def _fail_items(self, rows: list[IndexingJobItem], reason: str) -> None:
        # Record a terminal failure on each row; the caller commits.
        now = self._now()
        for row in rows:
            row.outcome = ItemOutcome.FAILED.value
            row.error_message = reason[:500]
            row.processed_at = now

    async def _finalize_if_resolved(self, session: AsyncSession, job: IndexingJob) -> None:
        # Close the job once no item is pending.
        counts = await jobs_repo.item_outcome_counts(session, job.job_id)
        if counts.get(ItemOutcome.PENDING.value, 0):
            return
        succeeded = counts.get(ItemOutcome.SUCCEEDED.value, 0)
        total = sum(counts.values())
        # A job fails only when every item failed.
        if total and succeeded == 0 and counts.get(ItemOutcome.FAILED.value, 0) == total:
            transition_job(job, JobStatus.FAILED)
            job.failure_reason = "all items failed"
        else:
            transition_job(job, JobStatus.DONE)
        job.completed_at = self._now()
        await session.commit()
        increment_counter(f"indexing_jobs_{job.status}_total")
        logger.info("indexing_job_finished job_id=%s status=%s credits=%s", job.job_id, job.status, job.credits_consumed)

    async def _apply_pending_cancel(self, session: AsyncSession) -> bool:
        # Every queue lock holder settles an outstanding cancel request before touching jobs.
        marker = await options_repo.get_active_marker(session, CANCEL_MARKER, now=self._now())
        if marker is None:
            return False
        reason = _cancel_reason(marker.token)
        jobs = await jobs_repo.list_live_jobs(session)
        now = self._now()
        for job in jobs:
            transition_job(job, JobStatus.CANCELLED)
            job.completed_at = now
            job.failure_reason = reason
        items = await jobs_repo.cancel_pending_items(session, [job.job_id for job in jobs], reason=reason)
        await options_repo.clear_marker(session, CANCEL_MARKER)
        # Jobs, items and the marker change together so no half-cancelled state is visible.
        await session.commit()
        increment_counter("indexing_cancel_total")
        logger.info("indexing_cancelled jobs=%s items=%s request=%s", len(jobs), items, marker.token)
        return True

    async def cancel_all(self) -> CancelResult:
        """Cancel every live job and its pending items.

        The request is recorded first so an in-flight drain stops at the next item boundary.
        If the lock stays busy the request is left in place and the current holder applies it.
        """
        settings = get_settings()
        token = uuid4().hex
        async with self._sessions() as session:
            await options_repo.set_marker(
                session,
                CANCEL_MARKER,
                expires_at=self._now() + timedelta(seconds=settings.cancel_request_ttl_s),
                token=token,
            )
            await session.commit()
        lock = await acquire_scope_lock(INDEXING_LOCK_SCOPE, wait_s=settings.queue_lock_wait_s)
        if lock is None:
            increment_counter("indexing_cancel_deferred_total")
            logger.warning("indexing_cancel_deferred request=%s", token)
            return CancelResult(jobs_cleared=0, items_cleared=0, deferred=True)
        try:
            async with self._sessions() as session:
                await self._apply_pending_cancel(session)
                jobs_cleared, items_cleared = await jobs_repo.cancellation_counts(session, _cancel_reason(token))
        finally:
            await release_scope_lock(lock)
        return CancelResult(jobs_cleared=jobs_cleared, items_cleared=items_cleared)

    async def progress(self, job_id: str) -> JobProgress:
        # Report outcome counts for one job.
        async with self._sessions() as session:
            job = await jobs_repo.get_job(session, job_id)
            if job is None:
                raise ValidationError(f"unknown job {job_id}", field="job_id")
            counts = await jobs_repo.item_outcome_counts(session, job_id)
        return JobProgress(
            job_id=job.job_id,
            status=JobStatus(job.status),
            pending=counts.get(ItemOutcome.PENDING.value, 0),
            completed=counts.get(ItemOutcome.SUCCEEDED.value, 0),
            failed=counts.get(ItemOutcome.FAILED.value, 0),
            cancelled=counts.get(ItemOutcome.CANCELLED.value, 0),
            credits_reserved=job.credits_reserved,
            credits_consumed=job.credits_consumed,
        )

    async def has_pending_work(self) -> bool:
        # Report whether any job is still queued or processing.
        async with self._sessions() as session:
            return await jobs_repo.next_live_job(session) is not None

    async def is_running(self) -> bool:
        # Alias used by the admin state view.
        return await self.has_pending_work()

    async def clear_index(self) -> dict[str, int]:
        """Cancel queued work, wipe the store and forget every fingerprint."""
        if self._store is None:
            raise ValidationError("clearing requires an index store")
        settings = get_settings()
        async with self._sessions() as session:
            await options_repo.set_marker(
                session,
                CLEARING_MARKER,
                expires_at=self._now() + timedelta(seconds=settings.clear_index_marker_ttl_s),
            )
            await session.commit()
        try:
            cancelled = await self.cancel_all()
            if cancelled.deferred:
                raise QueueBusyError("indexing queue is busy; cancel left pending")
            removed = await self._store.clear_all()
            async with self._sessions() as session:
                reset = await items_repo.reset_all_items(session)
                await session.commit()
        finally:
            async with self._sessions() as session:
                await options_repo.clear_marker(session, CLEARING_MARKER)
                await session.commit()
        logger.info(
            "index_cleared jobs=%s items=%s removed=%s reset=%s",
            cancelled.jobs_cleared,
            cancelled.items_cleared,
            removed,
            reset,
        )
        return {
            "jobs_cleared": cancelled.jobs_cleared,
            "items_cleared": cancelled.items_cleared,
            "store_removed": int(removed),
            "items_reset": reset,
        }

    async def indexed_counts_by_board(self) -> dict[int, int]:
        # Ask the index store for per-board counts.
        if self._store is None:
            raise ValidationError("index counts require an index store")
        return await self._store.get_indexed_counts_by_forum()
