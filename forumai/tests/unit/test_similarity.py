from __future__ import annotations

from datetime import timedelta

import pytest

from forumai.core.errors import DuplicateContentError, ValidationError
from forumai.ingestion.embeddings import embed_text
from forumai.services.tasks.similarity import ALL_SCOPES, SimilarityGuard


VECTORS = {
    "base": [1.0, 0.0],
    "close": [0.9, 0.4358898943540674],
    "far": [0.6, 0.8],
}


def table_fingerprint(text: str) -> list[float]:
    return VECTORS[text]


@pytest.fixture
def guard(session_factory, clock) -> SimilarityGuard:
    return SimilarityGuard(session_factory, fingerprinter=table_fingerprint, time_provider=clock)


@pytest.mark.asyncio
async def test_threshold_separates_close_and_far(guard) -> None:
    await guard.remember("base", ALL_SCOPES)

    close = await guard.check("close", ALL_SCOPES, 90, 75)
    far = await guard.check("far", ALL_SCOPES, 90, 75)

    assert close.duplicate is True
    assert close.best_score == pytest.approx(90.0)
    assert far.duplicate is False
    assert far.best_score == pytest.approx(60.0)


@pytest.mark.asyncio
async def test_threshold_is_inclusive(guard) -> None:
    await guard.remember("base", ALL_SCOPES)
    assert await guard.is_duplicate("base", ALL_SCOPES, 90, 100.0) is True


@pytest.mark.asyncio
async def test_lookback_window_excludes_old_content(guard, clock) -> None:
    await guard.remember("base", ALL_SCOPES)
    clock.now += timedelta(days=31)

    assert await guard.is_duplicate("close", ALL_SCOPES, 30, 75) is False
    assert await guard.is_duplicate("close", ALL_SCOPES, 0, 75) is True


@pytest.mark.asyncio
async def test_scope_limits_comparison(guard) -> None:
    await guard.remember("base", "12")

    assert await guard.is_duplicate("close", "7", 90, 75) is False
    assert await guard.is_duplicate("close", "12", 90, 75) is True
    assert await guard.is_duplicate("close", ALL_SCOPES, 90, 75) is True


@pytest.mark.asyncio
async def test_ensure_unique_raises_with_match(guard) -> None:
    matched_id = await guard.remember("base", ALL_SCOPES)

    with pytest.raises(DuplicateContentError) as excinfo:
        await guard.ensure_unique("close", ALL_SCOPES, 90, 75)
    assert excinfo.value.matched_id == matched_id


@pytest.mark.asyncio
async def test_empty_history_is_never_duplicate(guard) -> None:
    verdict = await guard.check("close", ALL_SCOPES, 90, 0)
    assert verdict.duplicate is False
    assert verdict.best_score == 0.0


@pytest.mark.asyncio
@pytest.mark.parametrize(("days", "threshold"), [(-1, 75), (30, 120), (30, -5)])
async def test_invalid_parameters_are_rejected(guard, days, threshold) -> None:
    with pytest.raises(ValidationError):
        await guard.check("close", ALL_SCOPES, days, threshold)


@pytest.mark.asyncio
async def test_default_fingerprint_flags_reworded_titles(session_factory, clock) -> None:
    guard = SimilarityGuard(session_factory, time_provider=clock)
    await guard.remember("How do you prune tomato plants in early spring?", ALL_SCOPES)

    same = await guard.check("How do you prune tomato plants in early spring?", ALL_SCOPES, 90, 75)
    unrelated = await guard.check("Best budget road bike for commuting", ALL_SCOPES, 90, 75)

    assert same.best_score == pytest.approx(100.0)
    assert unrelated.duplicate is False


def test_embed_text_is_normalised() -> None:
    vector = embed_text("prune tomato plants")
    assert sum(value * value for value in vector) == pytest.approx(1.0)
    assert embed_text("") == [0.0] * len(vector)
