from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from forumai.core.errors import ValidationError
from forumai.domain.models import ScheduledTask
from forumai.domain.state import Frequency, QualityTier, TaskStatus, TaskType
from forumai.persistence.repos import tasks as tasks_repo
from forumai.services.tasks.schedule import next_allowed_time, parse_active_days, parse_window


logger = logging.getLogger(__name__)


class TaskConfig(BaseModel):
    # Unknown keys (style, tone, prompts) pass through to the generation request.
    model_config = ConfigDict(extra="allow")

    frequency: Frequency = Frequency.DAILY
    active_days: list[str] = Field(default_factory=list)
    active_time_start: str = "00:00"
    active_time_end: str = "23:59"
    quality_tier: QualityTier = QualityTier.BALANCED
    items_per_run: int = Field(default=1, ge=1, le=50)
    target_board_ids: list[int] = Field(default_factory=list)
    credit_stop_threshold: int = Field(default=0, ge=0)
    auto_pause_on_limit: bool = False
    # Per-task daily spend cap; 0 disables it.
    max_daily_credits: int = Field(default=0, ge=0)
    duplicate_prevention: bool = False
    similarity_threshold: float = Field(default=75.0, ge=0, le=100)
    duplicate_check_days: int = Field(default=90, ge=0)
    duplicate_scope: Literal["all", "board"] = "all"
    run_on_approval: bool = False

    @model_validator(mode="before")
    @classmethod
    def _legacy_targets(cls, data: Any) -> Any:
        # Older configs keep targets under per-type keys.
        if isinstance(data, dict) and not data.get("target_board_ids"):
            for key in ("reply_target_forums", "tag_target_forum_ids"):
                if data.get(key):
                    data = {**data, "target_board_ids": data[key]}
                    data.pop(key)
                    break
        return data

    def generation_options(self) -> dict[str, Any]:
        return dict(self.model_extra or {})

    def targets_board(self, board_id: int) -> bool:
        # An empty target list means every board.
        return not self.target_board_ids or board_id <= 0 or board_id in self.target_board_ids


def parse_task_config(raw: dict[str, Any] | None) -> TaskConfig:
    # Validate raw config, including the day list and time window.
    try:
        config = TaskConfig.model_validate(raw or {})
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ())) or None
        raise ValidationError(f"invalid task config: {first['msg']}", field=field) from exc
    parse_active_days(config.active_days)
    parse_window(config.active_time_start, config.active_time_end)
    return config


def _parse_enum(enum_cls: type, value: Any, field: str) -> Any:
    try:
        return enum_cls(value)
    except ValueError as exc:
        raise ValidationError(f"invalid {field} {value!r}", field=field) from exc


def estimate_run_credits(task: ScheduledTask) -> int:
    # Worst-case credits for one run at the configured tier.
    config = parse_task_config(task.config)
    return config.quality_tier.credits * config.items_per_run


def initial_next_run(config: TaskConfig, now: datetime) -> datetime:
    # First run lands one period after activation, inside the allowed days and window.
    return next_allowed_time(
        now + config.frequency.duration,
        days=parse_active_days(config.active_days),
        window=parse_window(config.active_time_start, config.active_time_end),
    )


def _schedule(task: ScheduledTask, config: TaskConfig, now: datetime) -> None:
    # Only active tasks that do not wait for approval get a next run.
    if task.status == TaskStatus.ACTIVE.value and not config.run_on_approval:
        task.next_run_at = initial_next_run(config, now)
    else:
        task.next_run_at = None


async def create_task(
    session: AsyncSession,
    *,
    name: str,
    task_type: str,
    config: dict[str, Any] | None = None,
    status: str = TaskStatus.DRAFT.value,
    board_id: int = 0,
    now: datetime,
) -> ScheduledTask:
    kind = _parse_enum(TaskType, task_type, "task_type")
    state = _parse_enum(TaskStatus, status, "status")
    parsed = parse_task_config(config)
    task = ScheduledTask(
        name=name.strip(),
        task_type=kind.value,
        status=state.value,
        board_id=int(board_id),
        config=parsed.model_dump(mode="json"),
        total_runs=0,
        items_created=0,
        credits_used=0,
        created_at=now,
        updated_at=now,
    )
    _schedule(task, parsed, now)
    session.add(task)
    await session.commit()
    logger.info("task_created task_id=%s type=%s status=%s", task.task_id, task.task_type, task.status)
    return task


async def update_task(
    session: AsyncSession,
    task_id: int,
    *,
    now: datetime,
    name: str | None = None,
    status: str | None = None,
    board_id: int | None = None,
    config: dict[str, Any] | None = None,
) -> ScheduledTask:
    """Apply a validated partial update and reschedule when status or config changes."""
    task = await tasks_repo.get_task(session, task_id)
    if task is None:
        raise ValidationError(f"unknown task {task_id}", field="task_id")
    _apply_update(task, now=now, name=name, status=status, board_id=board_id, config=config)
    await session.commit()
    logger.info("task_updated task_id=%s status=%s", task.task_id, task.status)
    return task


def _apply_update(
    task: ScheduledTask,
    *,
    now: datetime,
    name: str | None = None,
    status: str | None = None,
    board_id: int | None = None,
    config: dict[str, Any] | None = None,
) -> None:
    # In-memory only; callers own the commit.
    new_status = _parse_enum(TaskStatus, status, "status") if status is not None else TaskStatus(task.status)
    parsed = parse_task_config(config if config is not None else task.config)

    was_active = task.status == TaskStatus.ACTIVE.value
    if name is not None:
        task.name = name.strip()
    if board_id is not None:
        task.board_id = int(board_id)
    if config is not None:
        task.config = parsed.model_dump(mode="json")
    task.status = new_status.value
    task.updated_at = now

    if new_status == TaskStatus.ACTIVE:
        if parsed.run_on_approval:
            task.next_run_at = None
        elif not was_active or config is not None:
            _schedule(task, parsed, now)
    elif was_active:
        task.next_run_at = None


async def set_task_status(session: AsyncSession, task_id: int, status: str, *, now: datetime) -> ScheduledTask:
    # Status-only shorthand for update_task.
    return await update_task(session, task_id, now=now, status=status)


async def delete_task(session: AsyncSession, task_id: int) -> bool:
    deleted = await tasks_repo.delete_task(session, task_id)
    await session.commit()
    if deleted:
        logger.info("task_deleted task_id=%s", task_id)
    return deleted


async def duplicate_task(session: AsyncSession, task_id: int, *, now: datetime) -> ScheduledTask:
    # Copies start as drafts with fresh counters so they never fire unexpectedly.
    source = await tasks_repo.get_task(session, task_id)
    if source is None:
        raise ValidationError(f"unknown task {task_id}", field="task_id")
    return await create_task(
        session,
        name=f"{source.name} (copy)",
        task_type=source.task_type,
        config=dict(source.config or {}),
        status=TaskStatus.DRAFT.value,
        board_id=source.board_id,
        now=now,
    )


BULK_ACTIONS = {"activate": TaskStatus.ACTIVE, "pause": TaskStatus.PAUSED, "delete": None}


async def apply_bulk_action(session: AsyncSession, task_ids: list[int], action: str, *, now: datetime) -> list[int]:
    """Activate, pause or delete several tasks; nothing changes unless every id and the action are valid."""
    if action not in BULK_ACTIONS:
        raise ValidationError(f"unknown bulk action {action}", field="action")
    ids = list(dict.fromkeys(int(task_id) for task_id in task_ids))
    if not ids:
        raise ValidationError("no tasks selected", field="task_ids")
    tasks = {task.task_id: task for task in await tasks_repo.get_tasks(session, ids)}
    missing = [task_id for task_id in ids if task_id not in tasks]
    if missing:
        raise ValidationError(f"unknown tasks: {', '.join(str(i) for i in missing)}", field="task_ids")

    target = BULK_ACTIONS[action]
    for task_id in ids:
        if target is None:
            await tasks_repo.delete_task(session, task_id)
        else:
            _apply_update(tasks[task_id], now=now, status=target.value)
    await session.commit()
    logger.info("task_bulk_action action=%s tasks=%s", action, len(ids))
    return ids
