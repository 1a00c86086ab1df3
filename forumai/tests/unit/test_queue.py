from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from forumai.core.config import get_settings
from forumai.core.errors import InsufficientCreditsError, QueueBusyError, TransportError, ValidationError
from forumai.domain.state import JobStatus
from forumai.persistence.repos import items as items_repo
from forumai.persistence.repos import options as options_repo
from forumai.providers.remote.base import AccountStatus, ChunkParams
from forumai.providers.remote.fake import FakeIndexStore
from forumai.services.credits import _credit_cache, prime_credit_cache
from forumai.services.indexing.queue import (
    CANCEL_MARKER,
    FAILURE_CREDIT_CAP,
    INDEXING_LOCK_SCOPE,
    JobQueue,
)
from forumai.services.locks import acquire_scope_lock, release_scope_lock
from forumai.tests.utils.factories import make_item


PARAMS = ChunkParams(chunk_size=512, overlap_percent=20)


class SlowIndexStore(FakeIndexStore):
    # Holds each submission open long enough for a concurrent caller to interleave.
    def __init__(self, delay_s: float) -> None:
        super().__init__()
        self.delay_s = delay_s
        self.started = asyncio.Event()

    async def submit(self, item, params):
        self.started.set()
        await asyncio.sleep(self.delay_s)
        return await super().submit(item, params)


def _queue(session_factory, content_repo, index_store, clock, **kwargs) -> JobQueue:
    return JobQueue(
        session_factory,
        content=content_repo,
        index_store=index_store,
        time_provider=clock,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_jobs_drain_in_creation_order(session_factory, content_repo, index_store, clock) -> None:
    queue = _queue(session_factory, content_repo, index_store, clock)
    first = await queue.enqueue([3, 1], PARAMS)
    clock.now += timedelta(seconds=1)
    second = await queue.enqueue([2], PARAMS)

    result, has_more = await queue.drain_next(10)

    assert result.job_id == first.job_id
    assert result.job_status == JobStatus.DONE
    assert [item_id for item_id, _ in index_store.submitted] == [3, 1]
    assert has_more is True

    result, has_more = await queue.drain_next(10)
    assert result.job_id == second.job_id
    assert has_more is False


@pytest.mark.asyncio
async def test_item_cannot_join_two_live_jobs(session_factory, content_repo, index_store, clock) -> None:
    queue = _queue(session_factory, content_repo, index_store, clock)
    await queue.enqueue([1, 2], PARAMS)

    with pytest.raises(ValidationError) as excinfo:
        await queue.enqueue([2, 3], PARAMS)
    assert excinfo.value.field == "item_ids"

    await queue.drain_next(10)
    handle = await queue.enqueue([2, 3], PARAMS)
    assert handle.status == JobStatus.QUEUED


@pytest.mark.asyncio
async def test_drain_respects_batch_size(session_factory, content_repo, index_store, clock) -> None:
    queue = _queue(session_factory, content_repo, index_store, clock)
    handle = await queue.enqueue([1, 2, 3, 4, 5], PARAMS)

    result, has_more = await queue.drain_next(2)
    progress = await queue.progress(handle.job_id)

    assert result.processed == 2
    assert result.job_status == JobStatus.PROCESSING
    assert has_more is True
    assert progress.pending == 3
    assert progress.completed == 2


@pytest.mark.asyncio
async def test_reservation_caps_consumption(session_factory, content_repo, index_store, clock) -> None:
    queue = _queue(session_factory, content_repo, index_store, clock)
    handle = await queue.enqueue([1, 2, 3], PARAMS, credits_reserved=2)

    result, _ = await queue.drain_next(10)
    progress = await queue.progress(handle.job_id)

    assert result.succeeded == 2
    assert result.failures == {3: FAILURE_CREDIT_CAP}
    assert progress.credits_consumed == 2
    assert progress.credits_consumed <= progress.credits_reserved
    assert result.job_status == JobStatus.DONE


@pytest.mark.asyncio
async def test_over_reported_charge_is_clamped(session_factory, content_repo, index_store, clock) -> None:
    index_store.charge_override = 5
    queue = _queue(session_factory, content_repo, index_store, clock)
    handle = await queue.enqueue([1, 2], PARAMS, credits_reserved=3)

    await queue.drain_next(10)
    progress = await queue.progress(handle.job_id)

    assert progress.credits_consumed == 3


@pytest.mark.asyncio
async def test_consumption_updates_cached_balance(session_factory, content_repo, index_store, clock) -> None:
    prime_credit_cache(AccountStatus(tenant_id="tenant-1", credits_remaining=10, credits_total=10))
    queue = _queue(session_factory, content_repo, index_store, clock, tenant_id="tenant-1")
    await queue.enqueue([1, 2], PARAMS)

    await queue.drain_next(10)

    assert _credit_cache["tenant-1"].remaining == 8


@pytest.mark.asyncio
async def test_per_item_failure_does_not_fail_job(session_factory, content_repo, clock) -> None:
    store = FakeIndexStore(failing={2: TransportError("timeout")})
    queue = _queue(session_factory, content_repo, store, clock)
    handle = await queue.enqueue([1, 2, 3], PARAMS)

    result, _ = await queue.drain_next(10)

    assert result.succeeded == 2
    assert result.failures == {2: "timeout"}
    assert result.job_status == JobStatus.DONE
    async with session_factory() as session:
        assert await items_repo.indexed_item_ids(session) == {1, 3}
    progress = await queue.progress(handle.job_id)
    assert progress.failed == 1


@pytest.mark.asyncio
async def test_job_fails_when_every_item_fails(session_factory, content_repo, clock) -> None:
    store = FakeIndexStore(failing={1: TransportError("down"), 2: TransportError("down")})
    queue = _queue(session_factory, content_repo, store, clock)
    await queue.enqueue([1, 2], PARAMS)

    result, _ = await queue.drain_next(10)

    assert result.job_status == JobStatus.FAILED


@pytest.mark.asyncio
async def test_vanished_item_is_reported_unavailable(session_factory, content_repo, index_store, clock) -> None:
    queue = _queue(session_factory, content_repo, index_store, clock)
    await queue.enqueue([1, 2], PARAMS)
    content_repo.put(make_item(2, is_private=True))

    result, _ = await queue.drain_next(10)

    assert result.succeeded == 1
    assert result.failures == {2: "content_unavailable"}


@pytest.mark.asyncio
async def test_cancel_clears_jobs_and_items_together(session_factory, content_repo, index_store, clock) -> None:
    queue = _queue(session_factory, content_repo, index_store, clock)
    first = await queue.enqueue([1, 2], PARAMS)
    clock.now += timedelta(seconds=1)
    second = await queue.enqueue([3], PARAMS)
    await queue.drain_next(1)

    cancelled = await queue.cancel_all()

    assert (cancelled.jobs_cleared, cancelled.items_cleared, cancelled.deferred) == (2, 2, False)
    first_progress = await queue.progress(first.job_id)
    assert first_progress.status == JobStatus.CANCELLED
    assert first_progress.completed == 1
    assert first_progress.cancelled == 1
    assert (await queue.progress(second.job_id)).status == JobStatus.CANCELLED
    assert await queue.is_running() is False
    async with session_factory() as session:
        assert await options_repo.get_active_marker(session, CANCEL_MARKER, now=clock.now) is None

    # Cancelled items are free to be queued again.
    await queue.enqueue([2, 3], PARAMS)


@pytest.mark.asyncio
async def test_cancel_left_pending_is_applied_by_next_drain(session_factory, content_repo, index_store, clock) -> None:
    queue = _queue(session_factory, content_repo, index_store, clock)
    handle = await queue.enqueue([1, 2], PARAMS)
    lock = await acquire_scope_lock(INDEXING_LOCK_SCOPE)
    try:
        cancelled = await queue.cancel_all()
    finally:
        await release_scope_lock(lock)

    result, has_more = await queue.drain_next(10)

    assert cancelled.deferred is True
    assert result.interrupted is True
    assert has_more is False
    assert index_store.submitted == []
    progress = await queue.progress(handle.job_id)
    assert (progress.status, progress.cancelled) == (JobStatus.CANCELLED, 2)
    async with session_factory() as session:
        assert await options_repo.get_active_marker(session, CANCEL_MARKER, now=clock.now) is None


@pytest.mark.asyncio
async def test_cancel_during_slow_submission_is_not_lost(session_factory, content_repo, clock) -> None:
    store = SlowIndexStore(delay_s=0.5)
    queue = _queue(session_factory, content_repo, store, clock)
    handle = await queue.enqueue([1, 2, 3, 4], PARAMS)

    async def cancel_mid_submission():
        await store.started.wait()
        return await queue.cancel_all()

    (result, has_more), cancelled = await asyncio.gather(queue.drain_next(10), cancel_mid_submission())

    # The lock wait ran out while the item was in flight; the drain applied the request itself.
    assert cancelled.deferred is True
    assert len(store.submitted) == 1
    assert result.interrupted is True
    assert result.job_status == JobStatus.CANCELLED
    assert has_more is False
    progress = await queue.progress(handle.job_id)
    assert (progress.completed, progress.cancelled, progress.pending) == (1, 3, 0)
    assert await queue.is_running() is False


@pytest.mark.asyncio
async def test_cancel_waiting_for_the_lock_reports_what_it_cleared(
    session_factory, content_repo, clock, monkeypatch
) -> None:
    monkeypatch.setenv("QUEUE_LOCK_WAIT_S", "5")
    get_settings.cache_clear()
    store = SlowIndexStore(delay_s=0.2)
    queue = _queue(session_factory, content_repo, store, clock)
    await queue.enqueue([1, 2, 3, 4], PARAMS)

    async def cancel_mid_submission():
        await store.started.wait()
        return await queue.cancel_all()

    (result, _), cancelled = await asyncio.gather(queue.drain_next(10), cancel_mid_submission())

    assert result.interrupted is True
    assert (cancelled.jobs_cleared, cancelled.items_cleared, cancelled.deferred) == (1, 3, False)
    assert len(store.submitted) == 1


@pytest.mark.asyncio
async def test_live_reservations_count_against_the_balance(session_factory, content_repo, index_store, clock) -> None:
    queue = _queue(session_factory, content_repo, index_store, clock)
    await queue.enqueue([1, 2, 3], PARAMS, credits_available=3)

    with pytest.raises(InsufficientCreditsError) as excinfo:
        await queue.enqueue([4, 5], PARAMS, credits_available=3)
    trimmed = await queue.enqueue([4, 5], PARAMS, credits_available=4, allow_partial=True)

    assert (excinfo.value.requested, excinfo.value.available) == (2, 0)
    assert trimmed.item_ids == [4]
    assert trimmed.deferred_ids == [5]
    assert trimmed.credits_reserved == 1


@pytest.mark.asyncio
async def test_drain_skips_when_lock_is_held(session_factory, content_repo, index_store, clock) -> None:
    queue = _queue(session_factory, content_repo, index_store, clock)
    await queue.enqueue([1], PARAMS)
    lock = await acquire_scope_lock(INDEXING_LOCK_SCOPE)
    try:
        result, has_more = await queue.drain_next(10)
        with pytest.raises(QueueBusyError):
            await queue.enqueue([2], PARAMS)
    finally:
        await release_scope_lock(lock)

    assert result.skipped_lock is True
    assert has_more is True
    assert index_store.submitted == []


@pytest.mark.asyncio
async def test_clear_index_resets_fingerprints(session_factory, content_repo, index_store, clock) -> None:
    queue = _queue(session_factory, content_repo, index_store, clock)
    await queue.enqueue([1, 2], PARAMS)
    await queue.drain_next(10)
    await queue.enqueue([3], PARAMS)

    summary = await queue.clear_index()

    assert summary == {"jobs_cleared": 1, "items_cleared": 1, "store_removed": 2, "items_reset": 2}
    assert index_store.indexed == {}
    async with session_factory() as session:
        assert await items_repo.indexed_item_ids(session) == set()


@pytest.mark.asyncio
async def test_enqueue_rejects_empty_and_bad_input(session_factory, content_repo, index_store, clock) -> None:
    queue = _queue(session_factory, content_repo, index_store, clock)
    with pytest.raises(ValidationError):
        await queue.enqueue([], PARAMS)
    with pytest.raises(ValidationError):
        await queue.enqueue([1], ChunkParams(chunk_size=10, overlap_percent=20))
    with pytest.raises(ValidationError):
        await queue.drain_next(0)
