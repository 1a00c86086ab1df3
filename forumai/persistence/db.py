from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from forumai.core.config import get_settings
from forumai.domain.models import Base


SessionFactory = async_sessionmaker[AsyncSession]


def build_engine(database_url: str | None = None) -> AsyncEngine:
    settings = get_settings()
    url = database_url or settings.database_url
    engine_kwargs: dict[str, Any] = {"pool_pre_ping": True}
    # Bounded pools only make sense for server databases.
    if not url.startswith("sqlite"):
        engine_kwargs["pool_size"] = max(1, int(settings.db_pool_size))
        engine_kwargs["max_overflow"] = max(0, int(settings.db_max_overflow))
        engine_kwargs["pool_recycle"] = 1800
    return create_async_engine(url, **engine_kwargs)


engine = build_engine()
SessionLocal: SessionFactory = async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    async with SessionLocal() as session:
        yield session


async def init_models(target: AsyncEngine | None = None) -> None:
    # Create tables in place; deployments without migrations rely on this at boot.
    async with (target or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
