from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from forumai.domain.models import PendingApprovalMarker, TenantAccount


ACCOUNT_ROW_ID = "default"


async def get_account(session: AsyncSession) -> TenantAccount | None:
    result = await session.execute(select(TenantAccount).where(TenantAccount.id == ACCOUNT_ROW_ID))
    return result.scalar_one_or_none()


async def get_or_create_account(session: AsyncSession) -> TenantAccount:
    # The account is a single row keyed by ACCOUNT_ROW_ID.
    account = await get_account(session)
    if account is None:
        account = TenantAccount(id=ACCOUNT_ROW_ID, features_enabled=[])
        session.add(account)
    return account


async def delete_account(session: AsyncSession) -> None:
    await session.execute(delete(TenantAccount).where(TenantAccount.id == ACCOUNT_ROW_ID))


async def get_pending_marker(session: AsyncSession) -> PendingApprovalMarker | None:
    result = await session.execute(
        select(PendingApprovalMarker).where(PendingApprovalMarker.id == ACCOUNT_ROW_ID)
    )
    return result.scalar_one_or_none()


async def put_pending_marker(
    session: AsyncSession,
    *,
    credits_total: int,
    registered_at: datetime,
    expires_at: datetime,
) -> PendingApprovalMarker:
    # Overwrite any previous marker so only one registration window is tracked.
    marker = await get_pending_marker(session)
    if marker is None:
        marker = PendingApprovalMarker(id=ACCOUNT_ROW_ID)
        session.add(marker)
    marker.status = "pending_approval"
    marker.credits_total = credits_total
    marker.registered_at = registered_at
    marker.expires_at = expires_at
    return marker


async def delete_pending_marker(session: AsyncSession) -> int:
    # Returns the number of markers removed.
    result = await session.execute(
        delete(PendingApprovalMarker).where(PendingApprovalMarker.id == ACCOUNT_ROW_ID)
    )
    return int(result.rowcount or 0)
