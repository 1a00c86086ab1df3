from __future__ import annotations

from datetime import timedelta

import pytest

from forumai.core.errors import TransportError
from forumai.services import admin_ops
from forumai.tests.utils.factories import make_item


@pytest.mark.asyncio
async def test_resolve_state_before_and_after_connecting(collaborators) -> None:
    before = await admin_ops.resolve_state(collaborators=collaborators)
    registered = await admin_ops.register_tenant(
        site_url="https://forum.example",
        admin_email="admin@forum.example",
        collaborators=collaborators,
    )
    after = await admin_ops.resolve_state(collaborators=collaborators)

    assert before.ok and before.data["state"] == "not_connected"
    assert registered.data["tenant_id"] == "tenant-1"
    assert after.data["state"] == "paid_plan"
    assert after.data["operable"] is True
    assert after.data["credits_remaining"] == 100
    assert "ai_topic_generator" in after.data["features"]
    assert "vector_db_cloud_storage" not in after.data["features"]


@pytest.mark.asyncio
async def test_register_rejects_bad_email(collaborators) -> None:
    result = await admin_ops.register_tenant(site_url="https://forum.example", admin_email="nobody", collaborators=collaborators)
    assert result.error.code == "validation_error"
    assert result.error.details == {"field": "admin_email"}


@pytest.mark.asyncio
async def test_enqueue_requires_operable_state(collaborators) -> None:
    result = await admin_ops.enqueue_indexing([1, 2], collaborators=collaborators)

    assert result.ok is False
    assert result.error.code == "service_unavailable"


@pytest.mark.asyncio
async def test_enqueue_drain_then_replan_is_free(collaborators, connected) -> None:
    queued = await admin_ops.enqueue_indexing([1, 2, 3], collaborators=collaborators)
    progress = await admin_ops.indexing_progress(queued.data["job_id"], collaborators=collaborators)
    drained = await admin_ops.drain_indexing(collaborators=collaborators)
    replanned = await admin_ops.plan_indexing([1, 2, 3], collaborators=collaborators)

    assert queued.data["planned"] == 3
    assert queued.data["credits_reserved"] == 3
    assert progress.data["pending"] == 3
    assert drained.data["succeeded"] == 3
    assert drained.data["has_more"] is False
    assert replanned.data["to_submit"] == 0
    assert replanned.data["estimated_credits"] == 0


@pytest.mark.asyncio
async def test_enqueue_over_budget_is_rejected_without_partial(collaborators, connected, account_service) -> None:
    account_service.status = account_service.status.model_copy(update={"credits_remaining": 2})

    result = await admin_ops.enqueue_indexing([1, 2, 3], collaborators=collaborators)

    assert result.error.code == "insufficient_credits"
    assert result.error.details == {"requested": 3, "available": 2}


@pytest.mark.asyncio
async def test_enqueue_over_budget_is_trimmed_with_partial(collaborators, connected, account_service) -> None:
    account_service.status = account_service.status.model_copy(update={"credits_remaining": 2})

    result = await admin_ops.enqueue_indexing([1, 2, 3], allow_partial=True, collaborators=collaborators)

    assert result.ok is True
    assert result.data["requested"] == 3
    assert result.data["planned"] == 2
    assert result.data["credits_reserved"] == 2
    assert result.data["deferred_ids"] == [3]


@pytest.mark.asyncio
async def test_empty_balance_rejects_even_partial(collaborators, connected, account_service) -> None:
    account_service.status = account_service.status.model_copy(update={"credits_remaining": 0})

    result = await admin_ops.enqueue_indexing([1], allow_partial=True, collaborators=collaborators)

    assert result.error.code == "insufficient_credits"


@pytest.mark.asyncio
async def test_back_to_back_enqueues_cannot_overcommit_balance(collaborators, connected, account_service) -> None:
    account_service.status = account_service.status.model_copy(update={"credits_remaining": 3})

    first = await admin_ops.enqueue_indexing([1, 2, 3], collaborators=collaborators)
    second = await admin_ops.enqueue_indexing([4, 5], collaborators=collaborators)
    partial = await admin_ops.enqueue_indexing([4, 5], allow_partial=True, collaborators=collaborators)

    assert first.data["credits_reserved"] == 3
    assert second.error.code == "insufficient_credits"
    assert second.error.details == {"requested": 2, "available": 0}
    assert partial.error.code == "insufficient_credits"


@pytest.mark.asyncio
async def test_nothing_changed_enqueues_nothing(collaborators, connected) -> None:
    await admin_ops.enqueue_indexing([1], collaborators=collaborators)
    await admin_ops.drain_indexing(collaborators=collaborators)

    result = await admin_ops.enqueue_indexing([1], collaborators=collaborators)

    assert result.ok is True
    assert result.data["job_id"] is None
    assert result.data["unchanged"] == 1


@pytest.mark.asyncio
async def test_bad_chunk_params_are_rejected(collaborators, connected) -> None:
    result = await admin_ops.plan_indexing([1], chunk_size=5, collaborators=collaborators)
    assert result.error.code == "validation_error"
    assert result.error.details == {"field": "chunk_size"}


@pytest.mark.asyncio
async def test_stored_options_drive_defaults(collaborators, connected) -> None:
    updated = await admin_ops.update_indexing_options({"image_indexing": True}, collaborators=collaborators)
    rejected = await admin_ops.update_indexing_options({"batch_size": 500}, collaborators=collaborators)
    collaborators.content.put(make_item(1, image_count=1))

    plan = await admin_ops.plan_indexing([1], collaborators=collaborators)

    assert updated.data["image_indexing"] is True
    assert rejected.error.code == "validation_error"
    assert plan.data["estimated_credits"] == 2


@pytest.mark.asyncio
async def test_cancel_and_disconnect(collaborators, connected) -> None:
    await admin_ops.enqueue_indexing([1, 2], collaborators=collaborators)

    cancelled = await admin_ops.cancel_indexing(collaborators=collaborators)
    await admin_ops.enqueue_indexing([3], collaborators=collaborators)
    disconnected = await admin_ops.disconnect_tenant(reason="moving", collaborators=collaborators)
    state = await admin_ops.resolve_state(collaborators=collaborators)

    assert cancelled.data == {"jobs_cleared": 1, "items_cleared": 2, "deferred": False}
    assert disconnected.data == {"remote_ok": True, "jobs_cleared": 1, "items_cleared": 1, "deferred": False}
    assert state.data["state"] == "not_connected"


@pytest.mark.asyncio
async def test_clear_index_and_counts(collaborators, connected) -> None:
    await admin_ops.enqueue_indexing([1, 2], collaborators=collaborators)
    await admin_ops.drain_indexing(collaborators=collaborators)

    counts = await admin_ops.indexed_counts(collaborators=collaborators)
    cleared = await admin_ops.clear_index(collaborators=collaborators)
    replanned = await admin_ops.plan_indexing([1, 2], collaborators=collaborators)

    assert counts.data == {"1": 2}
    assert cleared.data["store_removed"] == 2
    assert replanned.data["to_submit"] == 2


@pytest.mark.asyncio
async def test_task_crud_and_manual_run(collaborators, connected) -> None:
    created = await admin_ops.create_task(
        name="Weekly topics",
        task_type="topic_generator",
        status="active",
        config={"frequency": "weekly", "quality_tier": "advanced", "items_per_run": 2},
        collaborators=collaborators,
    )
    task_id = created.data["task_id"]

    run = await admin_ops.run_task(task_id, collaborators=collaborators)
    copy = await admin_ops.duplicate_task(task_id, collaborators=collaborators)
    paused = await admin_ops.update_task(task_id, status="paused", collaborators=collaborators)
    logs = await admin_ops.task_run_logs(task_id, collaborators=collaborators)
    listed = await admin_ops.list_tasks(collaborators=collaborators)
    deleted = await admin_ops.delete_task(copy.data["task_id"], collaborators=collaborators)
    missing = await admin_ops.delete_task(999, collaborators=collaborators)

    assert created.data["estimated_credits"] == 6
    assert run.ok is True
    assert run.data["items_created"] == 1
    assert copy.data["status"] == "draft"
    assert copy.data["total_runs"] == 0
    assert paused.data["next_run_at"] is None
    assert [log["trigger"] for log in logs.data] == ["manual"]
    assert len(listed.data) == 2
    assert deleted.data == {"task_id": copy.data["task_id"], "deleted": True}
    assert missing.error.code == "validation_error"


@pytest.mark.asyncio
async def test_failed_manual_run_reports_counts(collaborators, connected, generator) -> None:
    generator.error = TransportError("generation timed out")
    created = await admin_ops.create_task(name="Replies", task_type="reply_generator", status="active", collaborators=collaborators)

    result = await admin_ops.run_task(created.data["task_id"], collaborators=collaborators)

    assert result.ok is False
    assert result.error.code == "task_run_failed"
    assert result.error.message == "generation timed out"
    assert result.data["status"] == "failure"
    assert result.data["items_created"] == 0


@pytest.mark.asyncio
async def test_invalid_task_config_is_rejected(collaborators) -> None:
    result = await admin_ops.create_task(
        name="Broken",
        task_type="topic_generator",
        config={"active_days": ["someday"]},
        collaborators=collaborators,
    )
    assert result.error.code == "validation_error"
    assert (await admin_ops.list_tasks(collaborators=collaborators)).data == []


@pytest.mark.asyncio
async def test_due_tasks_flag_overdue(collaborators, clock) -> None:
    await admin_ops.create_task(
        name="Daily",
        task_type="topic_generator",
        status="active",
        config={"frequency": "daily"},
        collaborators=collaborators,
    )

    not_yet = await admin_ops.list_due_tasks(clock.now, collaborators=collaborators)
    on_time = await admin_ops.list_due_tasks(clock.now + timedelta(days=1), collaborators=collaborators)
    late = await admin_ops.list_due_tasks(clock.now + timedelta(days=1, minutes=10), collaborators=collaborators)

    assert not_yet.data == []
    assert on_time.data[0]["overdue"] is False
    assert late.data[0]["overdue"] is True


@pytest.mark.asyncio
async def test_content_approval_requires_connection(collaborators) -> None:
    result = await admin_ops.content_approved(topic_id=1, board_id=1, is_topic=False, collaborators=collaborators)
    assert result.error.code == "service_unavailable"


@pytest.mark.asyncio
async def test_task_stats_aggregate_run_logs(collaborators, connected, generator) -> None:
    created = await admin_ops.create_task(
        name="Daily topics",
        task_type="topic_generator",
        status="active",
        config={"frequency": "daily"},
        collaborators=collaborators,
    )
    task_id = created.data["task_id"]
    await admin_ops.run_task(task_id, collaborators=collaborators)
    await admin_ops.run_task(task_id, collaborators=collaborators)
    generator.error = TransportError("generation timed out")
    await admin_ops.run_task(task_id, collaborators=collaborators)

    stats = await admin_ops.task_stats(task_id, collaborators=collaborators)
    missing = await admin_ops.task_stats(999, collaborators=collaborators)

    assert stats.data["total_runs"] == 3
    assert stats.data["successful_runs"] == 2
    assert stats.data["failed_runs"] == 1
    assert stats.data["success_rate"] == 67
    assert stats.data["avg_items_per_run"] == 0.7
    assert stats.data["items_created"] == 2
    assert stats.data["last_run_at"] is not None
    assert stats.data["next_run_at"] is not None
    assert missing.error.code == "validation_error"


@pytest.mark.asyncio
async def test_bulk_task_action_is_all_or_nothing(collaborators) -> None:
    ids = []
    for name in ("First", "Second"):
        created = await admin_ops.create_task(
            name=name,
            task_type="topic_generator",
            config={"frequency": "daily"},
            collaborators=collaborators,
        )
        ids.append(created.data["task_id"])

    rejected = await admin_ops.bulk_task_action([ids[0], 999], "activate", collaborators=collaborators)
    unknown = await admin_ops.bulk_task_action(ids, "archive", collaborators=collaborators)
    untouched = await admin_ops.list_tasks(collaborators=collaborators)
    activated = await admin_ops.bulk_task_action(ids, "activate", collaborators=collaborators)
    active = await admin_ops.list_tasks(status="active", collaborators=collaborators)
    deleted = await admin_ops.bulk_task_action(ids, "delete", collaborators=collaborators)
    remaining = await admin_ops.list_tasks(collaborators=collaborators)

    assert rejected.error.code == "validation_error"
    assert rejected.error.details == {"field": "task_ids"}
    assert unknown.error.details == {"field": "action"}
    assert [task["status"] for task in untouched.data] == ["draft", "draft"]
    assert activated.data == {"action": "activate", "task_ids": ids, "count": 2}
    assert [task["task_id"] for task in active.data] == ids
    assert all(task["next_run_at"] is not None for task in active.data)
    assert deleted.data["count"] == 2
    assert remaining.data == []
