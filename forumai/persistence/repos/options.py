from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from forumai.domain.models import ConfigOption, MaintenanceMarker


async def get_options(session: AsyncSession, keys: Iterable[str]) -> dict[str, Any]:
    # Missing keys are left out of the result.
    key_list = list(keys)
    if not key_list:
        return {}
    result = await session.execute(select(ConfigOption).where(ConfigOption.key.in_(key_list)))
    return {row.key: row.value for row in result.scalars().all()}


async def set_options(session: AsyncSession, values: dict[str, Any]) -> None:
    # Insert or update each key.
    existing = {
        row.key: row
        for row in (
            await session.execute(select(ConfigOption).where(ConfigOption.key.in_(list(values))))
        ).scalars()
    }
    for key, value in values.items():
        row = existing.get(key)
        if row is None:
            session.add(ConfigOption(key=key, value=value))
        else:
            row.value = value


async def delete_options(session: AsyncSession, keys: Iterable[str]) -> None:
    await session.execute(delete(ConfigOption).where(ConfigOption.key.in_(list(keys))))


async def get_active_marker(session: AsyncSession, name: str, *, now: datetime) -> MaintenanceMarker | None:
    # Expired markers read as absent and are purged lazily.
    marker = await session.get(MaintenanceMarker, name)
    if marker is None:
        return None
    if marker.expires_at <= now:
        await session.delete(marker)
        return None
    return marker


async def set_marker(
    session: AsyncSession, name: str, *, expires_at: datetime, token: str | None = None
) -> None:
    # Create or refresh a named marker.
    marker = await session.get(MaintenanceMarker, name)
    if marker is None:
        session.add(MaintenanceMarker(name=name, expires_at=expires_at, token=token))
    else:
        marker.expires_at = expires_at
        marker.token = token


async def clear_marker(session: AsyncSession, name: str) -> None:
    await session.execute(delete(MaintenanceMarker).where(MaintenanceMarker.name == name))
