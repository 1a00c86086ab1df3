from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import case, delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from forumai.domain.models import GeneratedContent, ScheduledTask, TaskRunLog


async def get_task(session: AsyncSession, task_id: int) -> ScheduledTask | None:
    return await session.get(ScheduledTask, task_id)


async def get_tasks(session: AsyncSession, task_ids: list[int]) -> list[ScheduledTask]:
    # Fetch tasks by id; missing ids are simply absent.
    if not task_ids:
        return []
    result = await session.execute(select(ScheduledTask).where(ScheduledTask.task_id.in_(task_ids)))
    return list(result.scalars().all())


async def list_tasks(
    session: AsyncSession,
    *,
    status: str | None = None,
    task_type: str | None = None,
) -> list[ScheduledTask]:
    stmt = select(ScheduledTask)
    if status:
        stmt = stmt.where(ScheduledTask.status == status)
    if task_type:
        stmt = stmt.where(ScheduledTask.task_type == task_type)
    result = await session.execute(stmt.order_by(ScheduledTask.task_id))
    return list(result.scalars().all())


async def list_scheduled_candidates(session: AsyncSession, *, now: datetime) -> list[ScheduledTask]:
    # Coarse SQL filter; weekday and run-on-approval checks happen in the engine.
    result = await session.execute(
        select(ScheduledTask)
        .where(
            ScheduledTask.status == "active",
            (ScheduledTask.next_run_at.is_(None)) | (ScheduledTask.next_run_at <= now),
        )
        .order_by(ScheduledTask.next_run_at, ScheduledTask.task_id)
    )
    return list(result.scalars().all())


async def delete_task(session: AsyncSession, task_id: int) -> bool:
    await session.execute(delete(TaskRunLog).where(TaskRunLog.task_id == task_id))
    result = await session.execute(delete(ScheduledTask).where(ScheduledTask.task_id == task_id))
    return bool(result.rowcount)


async def add_run_log(session: AsyncSession, **fields: Any) -> TaskRunLog:
    log = TaskRunLog(**fields)
    session.add(log)
    return log


async def list_run_logs(session: AsyncSession, task_id: int, *, limit: int = 50) -> list[TaskRunLog]:
    # Newest runs first.
    result = await session.execute(
        select(TaskRunLog)
        .where(TaskRunLog.task_id == task_id)
        .order_by(TaskRunLog.executed_at.desc(), TaskRunLog.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def run_log_stats(session: AsyncSession, task_id: int) -> dict[str, int]:
    # Aggregates over the full log history, skipped runs included.
    def count_status(status: str):
        return func.coalesce(func.sum(case((TaskRunLog.status == status, 1), else_=0)), 0)

    result = await session.execute(
        select(
            func.count(TaskRunLog.id),
            count_status("success"),
            count_status("failure"),
            count_status("skipped"),
            func.coalesce(func.sum(TaskRunLog.items_created), 0),
            func.coalesce(func.sum(TaskRunLog.credits_used), 0),
        ).where(TaskRunLog.task_id == task_id)
    )
    logged, successful, failed, skipped, items_created, credits_used = result.one()
    return {
        "logged_runs": int(logged or 0),
        "successful_runs": int(successful or 0),
        "failed_runs": int(failed or 0),
        "skipped_runs": int(skipped or 0),
        "items_created": int(items_created or 0),
        "credits_used": int(credits_used or 0),
    }


async def credits_used_since(session: AsyncSession, task_id: int, *, since: datetime) -> int:
    # Credits spent by a task since the given instant.
    result = await session.execute(
        select(func.coalesce(func.sum(TaskRunLog.credits_used), 0)).where(
            TaskRunLog.task_id == task_id,
            TaskRunLog.executed_at >= since,
        )
    )
    return int(result.scalar() or 0)


async def add_generated_content(
    session: AsyncSession,
    *,
    scope: str,
    task_id: int | None,
    text: str,
    fingerprint: list[float],
    created_at: datetime,
) -> GeneratedContent:
    row = GeneratedContent(
        scope=scope,
        task_id=task_id,
        text=text,
        fingerprint=fingerprint,
        created_at=created_at,
    )
    session.add(row)
    return row


async def list_generated_content(
    session: AsyncSession,
    *,
    scope: str | None,
    since: datetime | None,
) -> list[GeneratedContent]:
    stmt = select(GeneratedContent)
    if scope is not None:
        stmt = stmt.where(GeneratedContent.scope == scope)
    if since is not None:
        stmt = stmt.where(GeneratedContent.created_at >= since)
    result = await session.execute(stmt.order_by(GeneratedContent.created_at.desc()))
    return list(result.scalars().all())
