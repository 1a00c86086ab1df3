from __future__ import annotations

import logging
import time as monotonic_clock
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from forumai.core.config import get_settings
from forumai.core.errors import AuthError, ForumAIError, InsufficientCreditsError, TransportError, ValidationError
from forumai.domain.models import ScheduledTask
from forumai.domain.state import RunStatus, TaskStatus, TaskType
from forumai.persistence.repos import tasks as tasks_repo
from forumai.providers.remote.base import (
    ContentPublisher,
    GeneratedCandidate,
    GenerationRequest,
    GenerationService,
)
from forumai.services.credits import CreditLedgerView
from forumai.services.locks import acquire_scope_lock, release_scope_lock
from forumai.services.tasks.definitions import TaskConfig, parse_task_config
from forumai.services.tasks.schedule import (
    is_active_day,
    next_run_after,
    parse_active_days,
    parse_window,
    site_timezone,
)
from forumai.services.tasks.similarity import ALL_SCOPES, SimilarityGuard
from forumai.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

TRIGGER_SCHEDULE = "schedule"
TRIGGER_MANUAL = "manual"
TRIGGER_APPROVAL = "on_approval"

TASKS_LOCK_SCOPE = "tasks"

REASON_CREDIT_THRESHOLD = "credit_threshold"
REASON_DAILY_CAP = "daily_credit_cap"
REASON_INSUFFICIENT = "insufficient_credits"
REASON_CREDIT_CHECK_FAILED = "credit_check_failed"
REASON_DUPLICATE = "duplicate"
REASON_NOT_ACTIVE = "not_active"


def _utc_now() -> datetime:
    # Use UTC timestamps when no clock is injected.
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TaskRunResult:
    task_id: int
    status: RunStatus
    started_at: datetime
    trigger: str = TRIGGER_SCHEDULE
    items_created: int = 0
    items_skipped: int = 0
    items_failed: int = 0
    credits_used: int = 0
    duration_s: float = 0.0
    reason: str | None = None
    error_message: str | None = None
    # False for credit-gate skips: those are logged but do not count as attempts.
    attempted: bool = True
    published_ids: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        # Serialize for wake-up summaries, logs and the admin API.
        return {
            "task_id": self.task_id,
            "status": self.status.value,
            "trigger": self.trigger,
            "items_created": self.items_created,
            "items_skipped": self.items_skipped,
            "items_failed": self.items_failed,
            "credits_used": self.credits_used,
            "duration_s": round(self.duration_s, 3),
            "reason": self.reason,
            "error_message": self.error_message,
            "attempted": self.attempted,
        }


@dataclass(frozen=True)
class ApprovalEvent:
    topic_id: int
    board_id: int
    # True for a new topic (its first post); False for a reply.
    is_topic: bool


def _start_of_day(moment: datetime) -> datetime:
    # Daily caps reset at local midnight in the site timezone.
    local = moment.astimezone(site_timezone())
    return local.replace(hour=0, minute=0, second=0, microsecond=0).astimezone(timezone.utc)


def apply_run_result(task: ScheduledTask, result: TaskRunResult) -> ScheduledTask:
    """Record one attempt on the task: counters, last run and the next slot."""
    config = parse_task_config(task.config)
    task.last_run_at = result.started_at
    # Duplicate-only runs completed normally; the guard did its job.
    task.last_run_status = (RunStatus.FAILURE if result.status == RunStatus.FAILURE else RunStatus.SUCCESS).value
    task.total_runs = (task.total_runs or 0) + 1
    task.items_created = (task.items_created or 0) + result.items_created
    task.credits_used = (task.credits_used or 0) + result.credits_used
    if config.run_on_approval or task.status != TaskStatus.ACTIVE.value:
        task.next_run_at = None
    else:
        task.next_run_at = next_run_after(
            result.started_at,
            config.frequency,
            days=parse_active_days(config.active_days),
            window=parse_window(config.active_time_start, config.active_time_end),
        )
    return task


async def select_due_tasks(session_factory: async_sessionmaker[AsyncSession], now: datetime) -> list[ScheduledTask]:
    # Apply the weekday and run-on-approval filters the SQL query cannot express.
    async with session_factory() as session:
        candidates = await tasks_repo.list_scheduled_candidates(session, now=now)
    due: list[ScheduledTask] = []
    for task in candidates:
        config = parse_task_config(task.config)
        # Run-on-approval tasks never fire from the clock.
        if config.run_on_approval:
            continue
        if not is_active_day(now, parse_active_days(config.active_days)):
            continue
        due.append(task)
    return due


class ScheduledTaskEngine:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        generator: GenerationService,
        publisher: ContentPublisher,
        ledger: CreditLedgerView,
        similarity: SimilarityGuard,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        # The ledger is bound to one tenant's credentials.
        self._sessions = session_factory
        self._generator = generator
        self._publisher = publisher
        self._ledger = ledger
        self._similarity = similarity
        self._now = time_provider or _utc_now

    async def due_tasks(self, now: datetime) -> list[ScheduledTask]:
        # List tasks due at now.
        return await select_due_tasks(self._sessions, now)

    async def run_on_approval_tasks(self, task_type: TaskType | str, board_id: int) -> list[ScheduledTask]:
        # Active tasks of this type that fire on approvals in the given board.
        kind = TaskType(task_type)
        async with self._sessions() as session:
            tasks = await tasks_repo.list_tasks(session, status=TaskStatus.ACTIVE.value, task_type=kind.value)
        matching = []
        for task in tasks:
            config = parse_task_config(task.config)
            if config.run_on_approval and config.targets_board(board_id):
                matching.append(task)
        return matching

    async def after_run(self, task: ScheduledTask, result: TaskRunResult) -> ScheduledTask:
        # Record a run result on the stored task and return the refreshed row.
        async with self._sessions() as session:
            current = await tasks_repo.get_task(session, task.task_id)
            if current is None:
                raise ValidationError(f"unknown task {task.task_id}", field="task_id")
            apply_run_result(current, result)
            await session.commit()
        logger.info(
            "task_after_run task_id=%s status=%s total_runs=%s next_run_at=%s",
            current.task_id,
            current.last_run_status,
            current.total_runs,
            current.next_run_at.isoformat() if current.next_run_at else None,
        )
        return current

    async def run_due_tasks(self, now: datetime, *, max_tasks: int | None = None) -> list[TaskRunResult]:
        # Run each due task once per pass, bounded by max_tasks.
        limit = max_tasks if max_tasks is not None else get_settings().wakeup_max_tasks
        # Overlapping wake-ups would both see the same next_run_at; only one pass runs at a time.
        lock = await acquire_scope_lock(TASKS_LOCK_SCOPE, wait_s=0)
        if lock is None:
            increment_counter("task_due_pass_lock_skipped_total")
            logger.info("task_due_pass_skipped reason=lock_held")
            return []
        results: list[TaskRunResult] = []
        try:
            # One run per due task per wake-up, however many periods were missed.
            for task in (await self.due_tasks(now))[:limit]:
                try:
                    results.append(await self.run_task(task.task_id, trigger=TRIGGER_SCHEDULE))
                except Exception as exc:  # noqa: BLE001 - one broken task must not stall the others
                    logger.exception("task_run_crashed task_id=%s", task.task_id, exc_info=exc)
                    increment_counter("task_run_crashes_total")
        finally:
            await release_scope_lock(lock)
        return results

    async def on_content_approved(self, event: ApprovalEvent) -> list[TaskRunResult]:
        # Topic approvals feed tag maintenance; reply approvals feed reply generation.
        kind = TaskType.TAG_MAINTENANCE if event.is_topic else TaskType.REPLY_GENERATOR
        results = []
        for task in await self.run_on_approval_tasks(kind, event.board_id):
            results.append(
                await self.run_task(task.task_id, trigger=TRIGGER_APPROVAL, topic_ids=(event.topic_id,), item_limit=1)
            )
        return results

    async def run_task(
        self,
        task_id: int,
        *,
        trigger: str = TRIGGER_MANUAL,
        topic_ids: tuple[int, ...] = (),
        item_limit: int | None = None,
    ) -> TaskRunResult:
        """Execute one task run behind the credit gate and the duplicate guard."""
        started_at = self._now()
        started = monotonic_clock.monotonic()
        async with self._sessions() as session:
            task = await tasks_repo.get_task(session, task_id)
        if task is None:
            raise ValidationError(f"unknown task {task_id}", field="task_id")
        config = parse_task_config(task.config)
        base = TaskRunResult(task_id=task_id, status=RunStatus.SKIPPED, started_at=started_at, trigger=trigger)

        if trigger != TRIGGER_MANUAL and task.status != TaskStatus.ACTIVE.value:
            return await self._finish(task, replace(base, reason=REASON_NOT_ACTIVE, attempted=False), started)

        count = min(config.items_per_run, item_limit) if item_limit else config.items_per_run
        gate = await self._credit_gate(task, config, base, count)
        if isinstance(gate, TaskRunResult):
            return await self._finish(task, gate, started)
        count = gate

        result = await self._execute(task, config, base, count=count, topic_ids=topic_ids)
        return await self._finish(task, result, started)

    async def _credit_gate(
        self,
        task: ScheduledTask,
        config: TaskConfig,
        base: TaskRunResult,
        count: int,
    ) -> TaskRunResult | int:
        # Return a skip or failure result, or the item count the balance can cover.
        settings = get_settings()
        try:
            balance = await self._ledger.balance(max_age_s=settings.credit_gate_max_age_s)
        except (TransportError, AuthError) as exc:
            return replace(base, status=RunStatus.FAILURE, reason=REASON_CREDIT_CHECK_FAILED, error_message=str(exc))

        if balance.remaining < config.credit_stop_threshold:
            if config.auto_pause_on_limit:
                await self._pause(task, REASON_CREDIT_THRESHOLD)
            return replace(base, reason=REASON_CREDIT_THRESHOLD, attempted=False)

        if config.max_daily_credits > 0:
            async with self._sessions() as session:
                spent = await tasks_repo.credits_used_since(
                    session,
                    task.task_id,
                    since=_start_of_day(base.started_at),
                )
            if spent >= config.max_daily_credits:
                if config.auto_pause_on_limit:
                    await self._pause(task, REASON_DAILY_CAP)
                return replace(base, reason=REASON_DAILY_CAP, attempted=False)

        # Scale the run down to what the balance covers instead of overspending.
        unit = config.quality_tier.credits
        affordable = balance.remaining // unit if unit else count
        if affordable <= 0:
            return replace(
                base,
                reason=REASON_INSUFFICIENT,
                attempted=False,
                error_message=str(
                    InsufficientCreditsError(
                        "not enough credits for one item",
                        requested=count * unit,
                        available=balance.remaining,
                    )
                ),
            )
        if affordable < count:
            logger.info("task_run_scaled task_id=%s requested=%s affordable=%s", task.task_id, count, affordable)
        return min(count, affordable)

    async def _pause(self, task: ScheduledTask, reason: str) -> None:
        # Pause an active task when a credit guard trips.
        async with self._sessions() as session:
            current = await tasks_repo.get_task(session, task.task_id)
            if current is not None and current.status == TaskStatus.ACTIVE.value:
                current.status = TaskStatus.PAUSED.value
                current.next_run_at = None
                await session.commit()
                task.status = current.status
                logger.warning("task_auto_paused task_id=%s reason=%s", task.task_id, reason)

    def _scope(self, config: TaskConfig, candidate: GeneratedCandidate) -> str:
        # Board-scoped duplicate checks compare only within the candidate's board.
        if config.duplicate_scope == "board" and candidate.board_id is not None:
            return str(candidate.board_id)
        return ALL_SCOPES

    async def _execute(
        self,
        task: ScheduledTask,
        config: TaskConfig,
        base: TaskRunResult,
        *,
        count: int,
        topic_ids: tuple[int, ...],
    ) -> TaskRunResult:
        # Generate, screen for duplicates and publish, retrying only for duplicates.
        settings = get_settings()
        request = GenerationRequest(
            task_type=task.task_type,
            quality=config.quality_tier.value,
            count=count,
            board_ids=tuple(config.target_board_ids),
            topic_ids=topic_ids,
            options=config.generation_options(),
        )
        attempts = 1 + (max(0, settings.duplicate_retry_attempts) if config.duplicate_prevention else 0)
        needed = count
        created = rejected = failed = credits = 0
        avoid: list[str] = []
        published: list[str] = []

        for attempt in range(1, attempts + 1):
            try:
                generated = await self._generator.generate(replace(request, count=needed, avoid=tuple(avoid)))
            except AuthError as exc:
                await self._mark_error(task)
                return self._failed(base, exc, created, rejected, failed, credits, published)
            except (TransportError, InsufficientCreditsError) as exc:
                return self._failed(base, exc, created, rejected, failed, credits, published)
            credits += max(0, int(generated.credits_used))

            rejected_this_round = 0
            for candidate in generated.candidates[:needed]:
                scope = self._scope(config, candidate)
                if config.duplicate_prevention:
                    verdict = await self._similarity.check(
                        candidate.title or candidate.text,
                        scope,
                        config.duplicate_check_days,
                        config.similarity_threshold,
                    )
                    if verdict.duplicate:
                        rejected_this_round += 1
                        avoid.append(candidate.title or candidate.text[:200])
                        continue
                try:
                    published_id = await self._publisher.publish(
                        task_type=task.task_type,
                        candidate=candidate,
                        config=task.config,
                    )
                except ForumAIError as exc:
                    failed += 1
                    logger.warning("task_publish_failed task_id=%s error=%s", task.task_id, exc)
                    continue
                if published_id is None:
                    failed += 1
                    continue
                published.append(published_id)
                created += 1
                needed -= 1
                await self._similarity.remember(candidate.title or candidate.text, scope, task_id=task.task_id)

            rejected += rejected_this_round
            # Regenerate only the slots lost to near duplicates.
            if needed <= 0 or rejected_this_round == 0:
                break
            logger.info(
                "task_regenerating_after_duplicates task_id=%s attempt=%s rejected=%s",
                task.task_id,
                attempt,
                rejected_this_round,
            )

        if created == 0 and rejected > 0:
            status, reason = RunStatus.SKIPPED, REASON_DUPLICATE
        elif created == 0 and failed > 0:
            status, reason = RunStatus.FAILURE, None
        else:
            status, reason = RunStatus.SUCCESS, (REASON_DUPLICATE if rejected else None)
        return replace(
            base,
            status=status,
            reason=reason,
            items_created=created,
            items_skipped=rejected,
            items_failed=failed,
            credits_used=credits,
            published_ids=published,
        )

    def _failed(
        self,
        base: TaskRunResult,
        exc: Exception,
        created: int,
        rejected: int,
        failed: int,
        credits: int,
        published: list[str],
    ) -> TaskRunResult:
        # Build a failure result that keeps whatever the run already produced.
        logger.warning("task_generation_failed task_id=%s error=%s", base.task_id, exc)
        return replace(
            base,
            status=RunStatus.FAILURE,
            error_message=str(exc) or exc.__class__.__name__,
            items_created=created,
            items_skipped=rejected,
            items_failed=failed,
            credits_used=credits,
            published_ids=published,
        )

    async def _mark_error(self, task: ScheduledTask) -> None:
        # Rejected credentials need an operator; stop scheduling until then.
        async with self._sessions() as session:
            current = await tasks_repo.get_task(session, task.task_id)
            if current is not None:
                current.status = TaskStatus.ERROR.value
                await session.commit()
                task.status = current.status

    async def _finish(self, task: ScheduledTask, result: TaskRunResult, started: float) -> TaskRunResult:
        # Write the run log and update the task counters in one commit.
        result = replace(result, duration_s=monotonic_clock.monotonic() - started)
        async with self._sessions() as session:
            await tasks_repo.add_run_log(
                session,
                task_id=task.task_id,
                trigger=result.trigger,
                status=result.status.value,
                items_created=result.items_created,
                items_skipped=result.items_skipped,
                items_failed=result.items_failed,
                credits_used=result.credits_used,
                duration_s=result.duration_s,
                reason=result.reason,
                error_message=result.error_message,
                result_json={"published_ids": result.published_ids} if result.published_ids else None,
                executed_at=result.started_at,
            )
            current = await tasks_repo.get_task(session, task.task_id)
            if current is not None:
                if result.attempted:
                    apply_run_result(current, result)
                elif result.trigger == TRIGGER_SCHEDULE and current.status == TaskStatus.ACTIVE.value:
                    # Skipped scheduled runs still move to the next slot so the gate is not re-hit every wake-up.
                    config = parse_task_config(current.config)
                    current.next_run_at = next_run_after(
                        result.started_at,
                        config.frequency,
                        days=parse_active_days(config.active_days),
                        window=parse_window(config.active_time_start, config.active_time_end),
                    )
            await session.commit()
        increment_counter(f"task_runs_{result.status.value}_total")
        logger.info(
            "task_run_finished task_id=%s trigger=%s status=%s created=%s skipped=%s failed=%s credits=%s reason=%s",
            result.task_id,
            result.trigger,
            result.status.value,
            result.items_created,
            result.items_skipped,
            result.items_failed,
            result.credits_used,
            result.reason,
        )
        if result.credits_used:
            self._ledger.record_consumption(result.credits_used)
        return result
