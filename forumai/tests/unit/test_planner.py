from __future__ import annotations

import pytest

from forumai.core.config import get_settings
from forumai.core.errors import ValidationError
from forumai.persistence.repos import items as items_repo
from forumai.providers.remote.fake import FakeContentRepository
from forumai.services.indexing.fingerprint import prepare_item
from forumai.services.indexing.planner import DeduplicatingIndexer, IndexingPlan, dedupe_ids
from forumai.tests.utils.factories import make_item


async def _mark(session_factory, clock, item, *, content_hash: str | None = None) -> None:
    async with session_factory() as session:
        await items_repo.mark_indexed(
            session,
            item_id=item.item_id,
            content_hash=content_hash if content_hash is not None else prepare_item(item, include_images=False).content_hash,
            has_image=item.has_image,
            board_id=item.board_id,
            cloud=True,
            indexed_at=clock.now,
        )
        await session.commit()


@pytest.mark.asyncio
async def test_plan_classifies_new_changed_unchanged(session_factory, content_repo, clock) -> None:
    unchanged = content_repo.items[1]
    await _mark(session_factory, clock, unchanged)
    await _mark(session_factory, clock, content_repo.items[2], content_hash="stale-hash")

    plan = await DeduplicatingIndexer(session_factory, content_repo).plan([1, 2, 3], 512, 20)

    assert plan.unchanged == [1]
    assert plan.changed == [2]
    assert plan.new == [3]
    assert plan.to_submit == [2, 3]
    assert plan.estimated_credits == 2


@pytest.mark.asyncio
async def test_reindexing_unchanged_items_costs_nothing(session_factory, content_repo, clock) -> None:
    for item in content_repo.items.values():
        await _mark(session_factory, clock, item)

    plan = await DeduplicatingIndexer(session_factory, content_repo).plan([1, 2, 3, 4, 5], 512, 20)

    assert plan.to_submit == []
    assert plan.estimated_credits == 0
    assert len(plan.unchanged) == 5


@pytest.mark.asyncio
async def test_empty_prior_hash_counts_as_new(session_factory, content_repo, clock) -> None:
    await _mark(session_factory, clock, content_repo.items[4], content_hash="")

    plan = await DeduplicatingIndexer(session_factory, content_repo).plan([4], 512, 20)

    assert plan.new == [4]
    assert plan.changed == []


@pytest.mark.asyncio
async def test_plan_skips_private_empty_and_missing(session_factory, content_repo) -> None:
    content_repo.put(make_item(6, is_private=True))
    content_repo.put(make_item(7, body="<p> </p>"))
    content_repo.put(make_item(8, is_approved=False))

    plan = await DeduplicatingIndexer(session_factory, content_repo).plan([6, 7, 8, 99, 1], 512, 20)

    assert plan.skipped == [6, 8]
    assert plan.empty == [7]
    assert plan.missing == [99]
    assert plan.to_submit == [1]


@pytest.mark.asyncio
async def test_previously_indexed_item_that_became_empty_is_reported_separately(session_factory, content_repo, clock) -> None:
    await _mark(session_factory, clock, content_repo.items[2])
    content_repo.put(make_item(2, body="<p> </p>"))

    plan = await DeduplicatingIndexer(session_factory, content_repo).plan([2], 512, 20)

    assert plan.emptied == [2]
    assert plan.empty == []
    assert plan.changed == []
    assert plan.to_submit == []
    assert plan.counts()["emptied"] == 1


@pytest.mark.asyncio
async def test_images_add_cost_only_when_included(session_factory, content_repo) -> None:
    content_repo.put(make_item(6, image_count=2))
    indexer = DeduplicatingIndexer(session_factory, content_repo)

    without_images = await indexer.plan([6], 512, 20)
    with_images = await indexer.plan([6], 512, 20, include_images=True)

    assert without_images.estimated_credits == 1
    assert with_images.estimated_credits == 2


@pytest.mark.asyncio
async def test_plan_caps_requested_ids(session_factory, content_repo, monkeypatch) -> None:
    monkeypatch.setenv("PLAN_MAX_ITEMS", "2")
    get_settings.cache_clear()

    plan = await DeduplicatingIndexer(session_factory, content_repo).plan([3, 1, 3, 2, 5], 512, 20)

    assert plan.to_submit == [3, 1]
    assert plan.truncated == [2, 5]


@pytest.mark.asyncio
@pytest.mark.parametrize(("chunk_size", "overlap"), [(50, 20), (2048, 20), (512, 1), (512, 80)])
async def test_plan_rejects_out_of_range_chunk_params(session_factory, content_repo, chunk_size, overlap) -> None:
    with pytest.raises(ValidationError):
        await DeduplicatingIndexer(session_factory, content_repo).plan([1], chunk_size, overlap)


def test_fit_to_budget_keeps_order_and_defers_the_rest() -> None:
    plan = IndexingPlan(to_submit=[4, 2, 9], new=[4, 2, 9], item_credits={4: 1, 2: 2, 9: 1})

    fitted = plan.fit_to_budget(3)

    assert fitted.to_submit == [4, 2]
    assert fitted.deferred == [9]
    assert fitted.estimated_credits == 3


def test_dedupe_ids_preserves_first_occurrence() -> None:
    assert dedupe_ids([5, 1, 5, 2, 1]) == [5, 1, 2]


@pytest.mark.asyncio
async def test_plan_scenario_new_unchanged_changed(session_factory, clock) -> None:
    content = FakeContentRepository([make_item(101), make_item(102), make_item(103)])
    await _mark(session_factory, clock, content.items[102])
    await _mark(session_factory, clock, make_item(103, body="The original wording before the edit."))

    plan = await DeduplicatingIndexer(session_factory, content).plan([101, 102, 103], 512, 20)

    assert plan.to_submit == [101, 103]
    counts = plan.counts()
    assert (counts["unchanged"], counts["changed"], counts["new"]) == (1, 1, 1)
