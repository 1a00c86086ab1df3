from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from forumai.core.config import get_settings
from forumai.ingestion.chunking import chunk_text
from forumai.persistence.repos import items as items_repo
from forumai.providers.remote.base import ContentItem, ContentRepository
from forumai.services.indexing.fingerprint import prepare_item
from forumai.services.options import validate_chunk_params


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IndexingPlan:
    to_submit: list[int]
    new: list[int] = field(default_factory=list)
    changed: list[int] = field(default_factory=list)
    unchanged: list[int] = field(default_factory=list)
    # Never-indexed items whose text is empty after chunking; they cannot be embedded.
    empty: list[int] = field(default_factory=list)
    # Previously indexed items that are now empty; their stored vectors are stale.
    emptied: list[int] = field(default_factory=list)
    # Private or unapproved items.
    skipped: list[int] = field(default_factory=list)
    # Ids the content repository does not know.
    missing: list[int] = field(default_factory=list)
    # Ids dropped by the per-call cap; callers page through them.
    truncated: list[int] = field(default_factory=list)
    item_credits: dict[int, int] = field(default_factory=dict)
    # Submitted ids dropped to fit the available balance.
    deferred: list[int] = field(default_factory=list)

    @property
    def estimated_credits(self) -> int:
        return sum(self.item_credits.get(item_id, 0) for item_id in self.to_submit)

    def counts(self) -> dict[str, int]:
        return {
            "to_submit": len(self.to_submit),
            "new": len(self.new),
            "changed": len(self.changed),
            "unchanged": len(self.unchanged),
            "empty": len(self.empty),
            "emptied": len(self.emptied),
            "skipped": len(self.skipped),
            "missing": len(self.missing),
            "truncated": len(self.truncated),
            "deferred": len(self.deferred),
            "estimated_credits": self.estimated_credits,
        }

    def fit_to_budget(self, available: int) -> IndexingPlan:
        # Keep submission order and stop at the first item that no longer fits.
        kept: list[int] = []
        spent = 0
        for item_id in self.to_submit:
            cost = self.item_credits.get(item_id, 0)
            if spent + cost > available:
                break
            kept.append(item_id)
            spent += cost
        deferred = self.to_submit[len(kept):]
        return replace(self, to_submit=kept, deferred=list(self.deferred) + deferred)


def dedupe_ids(item_ids: list[int]) -> list[int]:
    # Drop duplicate ids, keeping first-seen order.
    seen: set[int] = set()
    ordered: list[int] = []
    for item_id in item_ids:
        value = int(item_id)
        if value in seen:
            continue
        seen.add(value)
        ordered.append(value)
    return ordered


def item_cost(item: ContentItem, *, include_images: bool) -> int:
    # Images roughly double the embedding work.
    return 1 + (1 if include_images and item.has_image else 0)


class DeduplicatingIndexer:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        content: ContentRepository,
    ) -> None:
        self._sessions = session_factory
        self._content = content

    async def plan(
        self,
        item_ids: list[int],
        chunk_size: int,
        overlap_percent: int,
        *,
        include_images: bool = False,
    ) -> IndexingPlan:
        """Classify items against their last indexed fingerprint and price the new work."""
        validate_chunk_params(chunk_size, overlap_percent)
        settings = get_settings()
        ordered = dedupe_ids(item_ids)
        considered = ordered[: settings.plan_max_items]
        truncated = ordered[settings.plan_max_items:]

        contents = await self._content.get_items(considered)
        async with self._sessions() as session:
            prior = await items_repo.get_items(session, considered)

        to_submit: list[int] = []
        new: list[int] = []
        changed: list[int] = []
        unchanged: list[int] = []
        empty: list[int] = []
        emptied: list[int] = []
        skipped: list[int] = []
        missing: list[int] = []
        item_credits: dict[int, int] = {}

        for item_id in considered:
            item = contents.get(item_id)
            if item is None:
                missing.append(item_id)
                continue
            if item.is_private or not item.is_approved:
                skipped.append(item_id)
                continue
            prepared = prepare_item(item, include_images=include_images)
            record = prior.get(item_id)
            previous_hash = record.content_hash if record is not None else None
            if previous_hash is not None and previous_hash == prepared.content_hash:
                unchanged.append(item_id)
                continue
            if not chunk_text(prepared.text, chunk_size=chunk_size, overlap_percent=overlap_percent):
                (emptied if previous_hash else empty).append(item_id)
                continue
            if not previous_hash:
                new.append(item_id)
            else:
                changed.append(item_id)
            to_submit.append(item_id)
            item_credits[item_id] = item_cost(item, include_images=include_images)

        plan = IndexingPlan(
            to_submit=to_submit,
            new=new,
            changed=changed,
            unchanged=unchanged,
            empty=empty,
            emptied=emptied,
            skipped=skipped,
            missing=missing,
            truncated=truncated,
            item_credits=item_credits,
        )
        logger.info(
            "indexing_plan_built requested=%s to_submit=%s unchanged=%s estimated_credits=%s",
            len(ordered),
            len(to_submit),
            len(unchanged),
            plan.estimated_credits,
        )
        return plan
