from __future__ import annotations

import pytest

from forumai.ingestion.chunking import chunk_text, overlap_tokens
from forumai.services.indexing.fingerprint import build_embedding_text, clean_body, prepare_item
from forumai.tests.utils.factories import make_item


def test_clean_body_strips_markup_and_shortcodes() -> None:
    body = "<p>Prune <b>early</b> [quote]old[/quote]</p><p>Water &amp; feed</p>"
    assert clean_body(body) == "Prune early old\n\nWater & feed"


def test_embedding_text_frames_body_with_title_and_tags() -> None:
    item = make_item(1, body="Use sharp shears.", title="Pruning", tags=("garden", " "))
    assert build_embedding_text(item) == "Topic: Pruning\n\nUse sharp shears.\n\nTags: garden\n\nTopic: Pruning"


def test_empty_body_has_no_embedding_text() -> None:
    assert build_embedding_text(make_item(1, body="<div></div>")) == ""


def test_fingerprint_tracks_text_and_images() -> None:
    item = make_item(1, image_count=2)

    plain = prepare_item(item, include_images=False)
    with_images = prepare_item(item, include_images=True)
    edited = prepare_item(make_item(1, body="A different body entirely."), include_images=False)

    assert plain.content_hash == prepare_item(item, include_images=False).content_hash
    assert plain.content_hash != with_images.content_hash
    assert plain.content_hash != edited.content_hash
    assert with_images.image_count == 2


def test_embedding_text_is_truncated() -> None:
    item = make_item(1, body="word " * 100)
    assert len(prepare_item(item, include_images=False, max_chars=50).text) == 50


def test_chunks_respect_size_and_overlap() -> None:
    text = " ".join(f"w{i}" for i in range(25))

    chunks = chunk_text(text, chunk_size=10, overlap_percent=20)

    assert [len(chunk.split()) for chunk in chunks] == [10, 10, 9]
    assert chunks[1].split()[:2] == ["w8", "w9"]


def test_short_paragraphs_stay_whole() -> None:
    assert chunk_text("first one\n\nsecond one\n\n   ", chunk_size=100, overlap_percent=20) == [
        "first one",
        "second one",
    ]


@pytest.mark.parametrize(("size", "percent", "expected"), [(100, 20, 20), (10, 50, 5), (1, 50, 0)])
def test_overlap_tokens(size, percent, expected) -> None:
    assert overlap_tokens(size, percent) == expected
