from __future__ import annotations

from datetime import datetime, timezone

from forumai.providers.remote.base import ContentItem


class Clock:
    # Mutable clock shared by every component under test.
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def make_item(item_id: int, body: str = "", **overrides) -> ContentItem:
    fields = {
        "item_id": item_id,
        "title": f"Topic {item_id}",
        "body": body or f"Body text for topic {item_id} about forum gardening tips.",
        "board_id": 1,
        "created_at": datetime(2026, 1, 1, tzinfo=timezone.utc),
    }
    fields.update(overrides)
    return ContentItem(**fields)
