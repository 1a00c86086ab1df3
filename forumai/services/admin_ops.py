from __future__ import annotations

import functools
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

from forumai.core.config import get_settings
from forumai.core.errors import (
    AuthError,
    DuplicateContentError,
    ForumAIError,
    IllegalTransitionError,
    InsufficientCreditsError,
    QueueBusyError,
    ServiceUnavailableError,
    TransportError,
    ValidationError,
)
from forumai.domain.models import ScheduledTask
from forumai.domain.state import RunStatus
from forumai.persistence.repos import tasks as tasks_repo
from forumai.providers.remote.base import AccountStatus, ChunkParams
from forumai.services.credits import CreditLedgerView
from forumai.services.entitlements import FEATURE_MIN_PLAN, plan_allows
from forumai.services.indexing.planner import DeduplicatingIndexer, IndexingPlan
from forumai.services.indexing.queue import JobQueue
from forumai.services.options import load_indexing_options, save_indexing_options
from forumai.services.runtime import Collaborators, get_collaborators
from forumai.services.tasks import definitions
from forumai.services.tasks.engine import TRIGGER_MANUAL, ApprovalEvent, ScheduledTaskEngine, select_due_tasks
from forumai.services.tasks.similarity import SimilarityGuard
from forumai.services.tenant_state import StateResolution, TenantStateResolver


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OperationError:
    code: str
    message: str
    details: dict[str, Any] | None = None


@dataclass(frozen=True)
class OperationResult:
    ok: bool
    data: Any = None
    error: OperationError | None = None

    @classmethod
    def success(cls, data: Any = None) -> OperationResult:
        # Successful results carry only data.
        return cls(ok=True, data=data)

    @classmethod
    def failure(cls, code: str, message: str, *, details: dict[str, Any] | None = None, data: Any = None) -> OperationResult:
        # Failed results may still carry partial data, such as a run summary.
        return cls(ok=False, data=data, error=OperationError(code=code, message=message, details=details))

    def as_dict(self) -> dict[str, Any]:
        # Shape the result as the API envelope payload.
        payload: dict[str, Any] = {"ok": self.ok, "data": self.data}
        if self.error is not None:
            error: dict[str, Any] = {"code": self.error.code, "message": self.error.message}
            if self.error.details:
                error["details"] = self.error.details
            payload["error"] = error
        return payload


def error_result(exc: ForumAIError) -> OperationResult:
    """Translate a domain error into a failed OperationResult."""
    if isinstance(exc, InsufficientCreditsError):
        return OperationResult.failure(
            "insufficient_credits",
            str(exc),
            details={"requested": exc.requested, "available": exc.available},
        )
    if isinstance(exc, ValidationError):
        return OperationResult.failure("validation_error", str(exc), details={"field": exc.field} if exc.field else None)
    if isinstance(exc, DuplicateContentError):
        return OperationResult.failure("duplicate_content", str(exc), details={"best_score": exc.best_score})
    if isinstance(exc, AuthError):
        return OperationResult.failure("auth_error", str(exc))
    if isinstance(exc, TransportError):
        return OperationResult.failure("transport_error", str(exc))
    if isinstance(exc, QueueBusyError):
        return OperationResult.failure("queue_busy", str(exc))
    if isinstance(exc, IllegalTransitionError):
        return OperationResult.failure("illegal_transition", str(exc))
    if isinstance(exc, ServiceUnavailableError):
        return OperationResult.failure("service_unavailable", str(exc))
    return OperationResult.failure("error", str(exc))


def domain_operation(func: Callable[..., Awaitable[OperationResult]]) -> Callable[..., Awaitable[OperationResult]]:
    # Domain errors become failed results; anything else is a bug and propagates.
    @functools.wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> OperationResult:
        try:
            return await func(*args, **kwargs)
        except ForumAIError as exc:
            logger.warning("admin_operation_failed operation=%s error=%s", func.__name__, exc)
            return error_result(exc)

    return wrapper


def _utc_now() -> datetime:
    # Use UTC timestamps when no clock is injected.
    return datetime.now(timezone.utc)


def _now(collab: Collaborators) -> datetime:
    # Honour the injected clock so tests and wake-ups share one notion of now.
    return (collab.time_provider or _utc_now)()


def state_resolver(collab: Collaborators) -> TenantStateResolver:
    # Build a resolver bound to the runtime's session factory and account service.
    return TenantStateResolver(collab.session_factory, collab.accounts, time_provider=collab.time_provider)


def job_queue(collab: Collaborators, tenant_id: str | None = None) -> JobQueue:
    # Build a queue bound to the runtime; tenant_id enables balance cache updates on drain.
    return JobQueue(
        collab.session_factory,
        content=collab.content,
        index_store=collab.index_store,
        tenant_id=tenant_id,
        time_provider=collab.time_provider,
    )


def _allowed_features(status: AccountStatus | None) -> list[str]:
    # List the features the current plan and its enabled flags unlock.
    if status is None:
        return []
    return [
        feature
        for feature in FEATURE_MIN_PLAN
        if plan_allows(status.plan, feature, features_enabled=list(status.features_enabled))
    ]


def _resolution_data(resolution: StateResolution) -> dict[str, Any]:
    # Flatten a state resolution into the admin payload.
    status = resolution.status
    return {
        "state": resolution.state.value,
        "operable": resolution.operable,
        "subscription_status": status.subscription_status if status else None,
        "plan": status.plan if status else None,
        "features_enabled": list(status.features_enabled) if status else [],
        "features": _allowed_features(status),
        "credits_remaining": status.credits_remaining if status else None,
        "credits_total": status.credits_total if status else None,
        "error_code": resolution.error_code,
        "error_message": resolution.error_message,
        "marker_cleared": resolution.marker_cleared,
    }


async def operable_ledger(collab: Collaborators) -> tuple[StateResolution, CreditLedgerView]:
    # Resolve state and credentials before any metered operation.
    resolution = await state_resolver(collab).resolve()
    if not resolution.operable:
        raise ServiceUnavailableError(f"tenant state {resolution.state.value} does not allow metered operations")
    credentials = await state_resolver(collab).load_credentials()
    if credentials is None:
        raise ServiceUnavailableError("tenant is not connected")
    ledger = CreditLedgerView(collab.accounts, tenant_id=credentials.tenant_id, api_key=credentials.api_key)
    return resolution, ledger


def task_engine(collab: Collaborators, ledger: CreditLedgerView) -> ScheduledTaskEngine:
    # Wire the task engine with the runtime's generator, publisher and similarity guard.
    return ScheduledTaskEngine(
        collab.session_factory,
        generator=collab.generator,
        publisher=collab.publisher,
        ledger=ledger,
        similarity=SimilarityGuard(
            collab.session_factory,
            fingerprinter=collab.fingerprinter,
            time_provider=collab.time_provider,
        ),
        time_provider=collab.time_provider,
    )


def _plan_data(plan: IndexingPlan) -> dict[str, Any]:
    # Expose plan buckets both as counts and as id lists.
    return {
        **plan.counts(),
        "to_submit_ids": list(plan.to_submit),
        "unchanged_ids": list(plan.unchanged),
        "empty_ids": list(plan.empty),
        "emptied_ids": list(plan.emptied),
        "deferred_ids": list(plan.deferred),
    }


async def _chunk_params(
    collab: Collaborators,
    chunk_size: int | None,
    overlap_percent: int | None,
    include_images: bool | None,
) -> ChunkParams:
    # Fill unset chunk parameters from the stored indexing options.
    async with collab.session_factory() as session:
        options = await load_indexing_options(session)
    return ChunkParams(
        chunk_size=options.chunk_size if chunk_size is None else int(chunk_size),
        overlap_percent=options.overlap_percent if overlap_percent is None else int(overlap_percent),
        include_images=options.image_indexing if include_images is None else bool(include_images),
    )


def _task_data(task: ScheduledTask, *, now: datetime | None = None) -> dict[str, Any]:
    # Serialize a task for admin listings; overdue is computed only when a reference time is given.
    data = {
        "task_id": task.task_id,
        "name": task.name,
        "task_type": task.task_type,
        "status": task.status,
        "board_id": task.board_id,
        "config": dict(task.config or {}),
        "next_run_at": task.next_run_at.isoformat() if task.next_run_at else None,
        "last_run_at": task.last_run_at.isoformat() if task.last_run_at else None,
        "last_run_status": task.last_run_status,
        "total_runs": task.total_runs,
        "items_created": task.items_created,
        "credits_used": task.credits_used,
        "estimated_credits": definitions.estimate_run_credits(task),
    }
    if now is not None:
        grace = timedelta(seconds=get_settings().overdue_grace_s)
        data["overdue"] = task.next_run_at is not None and now - task.next_run_at > grace
    return data


@domain_operation
async def resolve_state(*, collaborators: Collaborators | None = None) -> OperationResult:
    # Resolve the tenant state and refresh the cached balance as a side effect.
    collab = collaborators or get_collaborators()
    resolution = await state_resolver(collab).resolve()
    return OperationResult.success(_resolution_data(resolution))


@domain_operation
async def plan_indexing(
    item_ids: list[int],
    *,
    chunk_size: int | None = None,
    overlap_percent: int | None = None,
    include_images: bool | None = None,
    collaborators: Collaborators | None = None,
) -> OperationResult:
    # Dry-run the planner without reserving anything.
    collab = collaborators or get_collaborators()
    params = await _chunk_params(collab, chunk_size, overlap_percent, include_images)
    plan = await DeduplicatingIndexer(collab.session_factory, collab.content).plan(
        item_ids,
        params.chunk_size,
        params.overlap_percent,
        include_images=params.include_images,
    )
    return OperationResult.success(_plan_data(plan))


@domain_operation
async def enqueue_indexing(
    item_ids: list[int],
    *,
    chunk_size: int | None = None,
    overlap_percent: int | None = None,
    include_images: bool | None = None,
    allow_partial: bool = False,
    collaborators: Collaborators | None = None,
) -> OperationResult:
    """Plan, price and enqueue items, trimming to the balance only when ``allow_partial`` is set."""
    collab = collaborators or get_collaborators()
    params = await _chunk_params(collab, chunk_size, overlap_percent, include_images)
    _, ledger = await operable_ledger(collab)
    plan = await DeduplicatingIndexer(collab.session_factory, collab.content).plan(
        item_ids,
        params.chunk_size,
        params.overlap_percent,
        include_images=params.include_images,
    )
    requested = len(plan.to_submit)
    if not plan.to_submit:
        return OperationResult.success({"job_id": None, "requested": 0, "planned": 0, **_plan_data(plan)})

    balance = await ledger.balance(max_age_s=get_settings().credit_gate_max_age_s)
    if balance.remaining <= 0:
        raise InsufficientCreditsError(
            "no credits remaining",
            requested=plan.estimated_credits,
            available=balance.remaining,
        )
    # The queue prices the job against the balance minus live reservations while holding its lock.
    handle = await job_queue(collab, balance.tenant_id).enqueue(
        plan.to_submit,
        params,
        item_credits=plan.item_credits,
        credits_available=balance.remaining,
        allow_partial=allow_partial,
    )
    if handle.deferred_ids:
        plan = plan.fit_to_budget(handle.credits_reserved)
    return OperationResult.success(
        {
            "job_id": handle.job_id,
            "status": handle.status.value,
            "requested": requested,
            "planned": len(plan.to_submit),
            "credits_reserved": handle.credits_reserved,
            **_plan_data(plan),
        }
    )


@domain_operation
async def cancel_indexing(*, collaborators: Collaborators | None = None) -> OperationResult:
    # Cancel all live indexing jobs; a busy lock leaves the request pending.
    collab = collaborators or get_collaborators()
    cancelled = await job_queue(collab).cancel_all()
    return OperationResult.success(cancelled.as_dict())


@domain_operation
async def drain_indexing(*, max_items: int | None = None, collaborators: Collaborators | None = None) -> OperationResult:
    # Drain one batch on demand, defaulting to the stored batch size.
    collab = collaborators or get_collaborators()
    if max_items is None:
        async with collab.session_factory() as session:
            max_items = (await load_indexing_options(session)).batch_size
    credentials = await state_resolver(collab).load_credentials()
    result, has_more = await job_queue(collab, credentials.tenant_id if credentials else None).drain_next(max_items)
    return OperationResult.success({**result.as_dict(), "has_more": has_more})


@domain_operation
async def indexing_progress(job_id: str, *, collaborators: Collaborators | None = None) -> OperationResult:
    # Report item outcome counts for one job.
    collab = collaborators or get_collaborators()
    progress = await job_queue(collab).progress(job_id)
    return OperationResult.success(
        {
            "job_id": progress.job_id,
            "status": progress.status.value,
            "pending": progress.pending,
            "completed": progress.completed,
            "failed": progress.failed,
            "cancelled": progress.cancelled,
            "credits_reserved": progress.credits_reserved,
            "credits_consumed": progress.credits_consumed,
        }
    )


@domain_operation
async def clear_index(*, collaborators: Collaborators | None = None) -> OperationResult:
    # Wipe the remote index and local fingerprints.
    collab = collaborators or get_collaborators()
    return OperationResult.success(await job_queue(collab).clear_index())


@domain_operation
async def indexed_counts(*, collaborators: Collaborators | None = None) -> OperationResult:
    # Report indexed item counts per board from the index store.
    collab = collaborators or get_collaborators()
    counts = await job_queue(collab).indexed_counts_by_board()
    return OperationResult.success({str(board_id): count for board_id, count in counts.items()})


@domain_operation
async def get_indexing_options(*, collaborators: Collaborators | None = None) -> OperationResult:
    # Return the stored indexing options with defaults applied.
    collab = collaborators or get_collaborators()
    async with collab.session_factory() as session:
        options = await load_indexing_options(session)
    return OperationResult.success(options.model_dump())


@domain_operation
async def update_indexing_options(changes: dict[str, Any], *, collaborators: Collaborators | None = None) -> OperationResult:
    # Validate and persist a partial update of the indexing options.
    collab = collaborators or get_collaborators()
    async with collab.session_factory() as session:
        options = await save_indexing_options(session, changes)
    return OperationResult.success(options.model_dump())


@domain_operation
async def list_due_tasks(now: datetime | None = None, *, collaborators: Collaborators | None = None) -> OperationResult:
    # List tasks whose next run is due, flagging the overdue ones.
    collab = collaborators or get_collaborators()
    moment = now or _now(collab)
    tasks = await select_due_tasks(collab.session_factory, moment)
    return OperationResult.success([_task_data(task, now=moment) for task in tasks])


@domain_operation
async def run_task(task_id: int, *, collaborators: Collaborators | None = None) -> OperationResult:
    # Run one task immediately, regardless of its schedule.
    collab = collaborators or get_collaborators()
    _, ledger = await operable_ledger(collab)
    result = await task_engine(collab, ledger).run_task(task_id, trigger=TRIGGER_MANUAL)
    data = result.as_dict()
    if result.status == RunStatus.FAILURE:
        return OperationResult.failure(
            "task_run_failed",
            result.error_message or result.reason or "task run failed",
            data=data,
        )
    return OperationResult.success(data)


@domain_operation
async def list_tasks(
    *,
    status: str | None = None,
    task_type: str | None = None,
    collaborators: Collaborators | None = None,
) -> OperationResult:
    # List tasks with optional status and type filters.
    collab = collaborators or get_collaborators()
    async with collab.session_factory() as session:
        tasks = await tasks_repo.list_tasks(session, status=status, task_type=task_type)
    return OperationResult.success([_task_data(task) for task in tasks])


@domain_operation
async def create_task(
    *,
    name: str,
    task_type: str,
    config: dict[str, Any] | None = None,
    status: str = "draft",
    board_id: int = 0,
    collaborators: Collaborators | None = None,
) -> OperationResult:
    # Create a task from validated config and schedule it when active.
    collab = collaborators or get_collaborators()
    async with collab.session_factory() as session:
        task = await definitions.create_task(
            session,
            name=name,
            task_type=task_type,
            config=config,
            status=status,
            board_id=board_id,
            now=_now(collab),
        )
    return OperationResult.success(_task_data(task))


@domain_operation
async def update_task(
    task_id: int,
    *,
    name: str | None = None,
    status: str | None = None,
    board_id: int | None = None,
    config: dict[str, Any] | None = None,
    collaborators: Collaborators | None = None,
) -> OperationResult:
    # Apply a partial task update; schedule changes are recomputed.
    collab = collaborators or get_collaborators()
    async with collab.session_factory() as session:
        task = await definitions.update_task(
            session,
            task_id,
            now=_now(collab),
            name=name,
            status=status,
            board_id=board_id,
            config=config,
        )
    return OperationResult.success(_task_data(task))


@domain_operation
async def delete_task(task_id: int, *, collaborators: Collaborators | None = None) -> OperationResult:
    # Delete a task with its run logs.
    collab = collaborators or get_collaborators()
    async with collab.session_factory() as session:
        deleted = await definitions.delete_task(session, task_id)
    if not deleted:
        raise ValidationError(f"unknown task {task_id}", field="task_id")
    return OperationResult.success({"task_id": task_id, "deleted": True})


@domain_operation
async def duplicate_task(task_id: int, *, collaborators: Collaborators | None = None) -> OperationResult:
    # Copy a task as a draft with fresh counters.
    collab = collaborators or get_collaborators()
    async with collab.session_factory() as session:
        task = await definitions.duplicate_task(session, task_id, now=_now(collab))
    return OperationResult.success(_task_data(task))


@domain_operation
async def task_run_logs(task_id: int, *, limit: int = 50, collaborators: Collaborators | None = None) -> OperationResult:
    # Return the most recent run logs, newest first.
    collab = collaborators or get_collaborators()
    async with collab.session_factory() as session:
        logs = await tasks_repo.list_run_logs(session, task_id, limit=limit)
    return OperationResult.success(
        [
            {
                "id": log.id,
                "trigger": log.trigger,
                "status": log.status,
                "items_created": log.items_created,
                "items_skipped": log.items_skipped,
                "items_failed": log.items_failed,
                "credits_used": log.credits_used,
                "duration_s": log.duration_s,
                "reason": log.reason,
                "error_message": log.error_message,
                "executed_at": log.executed_at.isoformat(),
            }
            for log in logs
        ]
    )


@domain_operation
async def task_stats(task_id: int, *, collaborators: Collaborators | None = None) -> OperationResult:
    """Per-task run statistics aggregated from the run logs."""
    collab = collaborators or get_collaborators()
    async with collab.session_factory() as session:
        task = await tasks_repo.get_task(session, task_id)
        if task is None:
            raise ValidationError(f"unknown task {task_id}", field="task_id")
        stats = await tasks_repo.run_log_stats(session, task_id)
    # Rates cover attempted runs; skipped runs are reported on their own.
    attempted = stats["successful_runs"] + stats["failed_runs"]
    return OperationResult.success(
        {
            "task_id": task.task_id,
            "status": task.status,
            "total_runs": attempted,
            **stats,
            "success_rate": round(stats["successful_runs"] * 100 / attempted) if attempted else 0,
            "avg_items_per_run": round(stats["items_created"] / attempted, 1) if attempted else 0.0,
            "last_run_at": task.last_run_at.isoformat() if task.last_run_at else None,
            "next_run_at": task.next_run_at.isoformat() if task.next_run_at else None,
        }
    )


@domain_operation
async def bulk_task_action(
    task_ids: list[int],
    action: str,
    *,
    collaborators: Collaborators | None = None,
) -> OperationResult:
    collab = collaborators or get_collaborators()
    async with collab.session_factory() as session:
        applied = await definitions.apply_bulk_action(session, task_ids, action, now=_now(collab))
    return OperationResult.success({"action": action, "task_ids": applied, "count": len(applied)})


@domain_operation
async def register_tenant(
    *,
    site_url: str,
    admin_email: str,
    collaborators: Collaborators | None = None,
) -> OperationResult:
    # Register the site with the remote account service and store the credentials.
    collab = collaborators or get_collaborators()
    if not site_url or "@" not in (admin_email or ""):
        raise ValidationError("site_url and a valid admin_email are required", field="admin_email")
    registration = await state_resolver(collab).register(site_url=site_url, admin_email=admin_email)
    return OperationResult.success(
        {
            "tenant_id": registration.tenant_id,
            "subscription_status": registration.subscription.subscription_status,
            "plan": registration.subscription.plan,
        }
    )


@domain_operation
async def disconnect_tenant(
    *,
    reason: str = "",
    confirm: bool = True,
    collaborators: Collaborators | None = None,
) -> OperationResult:
    # Stop live indexing, then drop the remote registration and local credentials.
    collab = collaborators or get_collaborators()
    cancelled = await job_queue(collab).cancel_all()
    remote_ok = await state_resolver(collab).disconnect(reason=reason, confirm=confirm)
    return OperationResult.success({"remote_ok": remote_ok, **cancelled.as_dict()})


@domain_operation
async def content_approved(
    *,
    topic_id: int,
    board_id: int,
    is_topic: bool,
    collaborators: Collaborators | None = None,
) -> OperationResult:
    # Fan an approval event out to the run-on-approval tasks.
    collab = collaborators or get_collaborators()
    _, ledger = await operable_ledger(collab)
    results = await task_engine(collab, ledger).on_content_approved(
        ApprovalEvent(topic_id=topic_id, board_id=board_id, is_topic=is_topic)
    )
    return OperationResult.success([result.as_dict() for result in results])
