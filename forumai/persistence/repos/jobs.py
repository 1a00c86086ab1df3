from __future__ import annotations

from datetime import datetime
from typing import Iterable

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from forumai.domain.models import IndexingJob, IndexingJobItem
from forumai.domain.state import ItemOutcome, JobStatus


LIVE_JOB_STATUSES = (JobStatus.QUEUED.value, JobStatus.PROCESSING.value)


async def create_job(
    session: AsyncSession,
    *,
    job_id: str,
    item_ids: list[int],
    chunk_size: int,
    overlap_percent: int,
    credits_reserved: int,
    include_images: bool,
    created_at: datetime,
) -> IndexingJob:
    # Stage the job for the caller to commit.
    job = IndexingJob(
        job_id=job_id,
        item_ids=list(item_ids),
        chunk_size=chunk_size,
        overlap_percent=overlap_percent,
        status=JobStatus.QUEUED.value,
        credits_reserved=credits_reserved,
        credits_consumed=0,
        include_images=include_images,
        created_at=created_at,
    )
    session.add(job)
    # Item rows carry per-item outcomes so partial progress survives retries.
    for position, item_id in enumerate(item_ids):
        session.add(
            IndexingJobItem(
                job_id=job_id,
                item_id=item_id,
                position=position,
                outcome=ItemOutcome.PENDING.value,
            )
        )
    return job


async def get_job(session: AsyncSession, job_id: str) -> IndexingJob | None:
    return await session.get(IndexingJob, job_id)


async def held_item_ids(session: AsyncSession, item_ids: Iterable[int]) -> set[int]:
    # Items belonging to any non-terminal job are held until that job finishes.
    ids = list(item_ids)
    if not ids:
        return set()
    result = await session.execute(
        select(IndexingJobItem.item_id)
        .join(IndexingJob, IndexingJob.job_id == IndexingJobItem.job_id)
        .where(IndexingJob.status.in_(LIVE_JOB_STATUSES), IndexingJobItem.item_id.in_(ids))
    )
    return {int(value) for value in result.scalars().all()}


async def list_live_jobs(session: AsyncSession) -> list[IndexingJob]:
    result = await session.execute(
        select(IndexingJob)
        .where(IndexingJob.status.in_(LIVE_JOB_STATUSES))
        .order_by(IndexingJob.created_at, IndexingJob.job_id)
    )
    return list(result.scalars().all())


async def next_live_job(session: AsyncSession) -> IndexingJob | None:
    # FIFO by creation time; processing jobs are resumed before newer queued ones.
    result = await session.execute(
        select(IndexingJob)
        .where(IndexingJob.status.in_(LIVE_JOB_STATUSES))
        .order_by(IndexingJob.created_at, IndexingJob.job_id)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def pending_items(session: AsyncSession, job_id: str, *, limit: int) -> list[IndexingJobItem]:
    # Pending rows in submission order, one batch at most.
    result = await session.execute(
        select(IndexingJobItem)
        .where(
            IndexingJobItem.job_id == job_id,
            IndexingJobItem.outcome == ItemOutcome.PENDING.value,
        )
        .order_by(IndexingJobItem.position)
        .limit(limit)
    )
    return list(result.scalars().all())


async def item_outcome_counts(session: AsyncSession, job_id: str) -> dict[str, int]:
    # Item counts per outcome for one job.
    result = await session.execute(
        select(IndexingJobItem.outcome, func.count())
        .where(IndexingJobItem.job_id == job_id)
        .group_by(IndexingJobItem.outcome)
    )
    return {str(outcome): int(count) for outcome, count in result.all()}


async def count_pending_items(session: AsyncSession) -> int:
    # Pending items across every live job.
    result = await session.execute(
        select(func.count())
        .select_from(IndexingJobItem)
        .join(IndexingJob, IndexingJob.job_id == IndexingJobItem.job_id)
        .where(
            IndexingJob.status.in_(LIVE_JOB_STATUSES),
            IndexingJobItem.outcome == ItemOutcome.PENDING.value,
        )
    )
    return int(result.scalar() or 0)


async def cancel_pending_items(session: AsyncSession, job_ids: list[str], *, reason: str | None = None) -> int:
    # Mark pending items cancelled, tagging each with the reason.
    if not job_ids:
        return 0
    result = await session.execute(
        update(IndexingJobItem)
        .where(
            IndexingJobItem.job_id.in_(job_ids),
            IndexingJobItem.outcome == ItemOutcome.PENDING.value,
        )
        .values(outcome=ItemOutcome.CANCELLED.value, error_message=reason)
    )
    return int(result.rowcount or 0)


async def outstanding_reservation(session: AsyncSession) -> int:
    # Credits promised to live jobs but not yet charged.
    result = await session.execute(
        select(func.coalesce(func.sum(IndexingJob.credits_reserved - IndexingJob.credits_consumed), 0)).where(
            IndexingJob.status.in_(LIVE_JOB_STATUSES)
        )
    )
    return max(0, int(result.scalar() or 0))


async def cancellation_counts(session: AsyncSession, reason: str) -> tuple[int, int]:
    # Count jobs and items cancelled under one reason tag.
    jobs = await session.execute(
        select(func.count()).select_from(IndexingJob).where(IndexingJob.failure_reason == reason)
    )
    items = await session.execute(
        select(func.count())
        .select_from(IndexingJobItem)
        .where(
            IndexingJobItem.error_message == reason,
            IndexingJobItem.outcome == ItemOutcome.CANCELLED.value,
        )
    )
    return int(jobs.scalar() or 0), int(items.scalar() or 0)
