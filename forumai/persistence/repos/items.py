from __future__ import annotations

from datetime import datetime
from typing import Iterable

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from forumai.domain.models import IndexableItem


async def get_items(session: AsyncSession, item_ids: Iterable[int]) -> dict[int, IndexableItem]:
    ids = list(item_ids)
    if not ids:
        return {}
    result = await session.execute(select(IndexableItem).where(IndexableItem.item_id.in_(ids)))
    return {row.item_id: row for row in result.scalars().all()}


async def mark_indexed(
    session: AsyncSession,
    *,
    item_id: int,
    content_hash: str,
    has_image: bool,
    board_id: int | None,
    cloud: bool,
    indexed_at: datetime,
) -> IndexableItem:
    # Record a successful submission for one item.
    item = await session.get(IndexableItem, item_id)
    if item is None:
        item = IndexableItem(item_id=item_id)
        session.add(item)
    item.content_hash = content_hash
    item.has_image = has_image
    item.board_id = board_id
    item.indexed_at = indexed_at
    # Storage mode decides which flag the submission satisfies.
    if cloud:
        item.cloud_indexed = True
    else:
        item.local_indexed = True
    return item


async def reset_all_items(session: AsyncSession) -> int:
    # Clearing the index forgets every fingerprint so the next plan resubmits all items.
    result = await session.execute(
        update(IndexableItem).values(
            content_hash=None,
            local_indexed=False,
            cloud_indexed=False,
            indexed_at=None,
        )
    )
    return int(result.rowcount or 0)


async def indexed_item_ids(session: AsyncSession) -> set[int]:
    result = await session.execute(
        select(IndexableItem.item_id).where(
            (IndexableItem.local_indexed.is_(True)) | (IndexableItem.cloud_indexed.is_(True))
        )
    )
    return {int(value) for value in result.scalars().all()}


async def count_indexed(session: AsyncSession) -> int:
    # Items indexed in either storage mode.
    result = await session.execute(
        select(func.count()).select_from(IndexableItem).where(
            (IndexableItem.local_indexed.is_(True)) | (IndexableItem.cloud_indexed.is_(True))
        )
    )
    return int(result.scalar() or 0)
