from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker

from forumai.core.config import get_settings
from forumai.persistence.db import build_engine, init_models
from forumai.providers.remote.base import AccountStatus
from forumai.providers.remote.fake import (
    FakeAccountService,
    FakeContentRepository,
    FakeGenerationService,
    FakeIndexStore,
    FakePublisher,
)
from forumai.services.credits import reset_credit_cache
from forumai.services.locks import reset_local_locks
from forumai.services.resilience import reset_circuit_breakers
from forumai.services.runtime import Collaborators, reset_collaborators
from forumai.services.telemetry import reset_telemetry
from forumai.services.tenant_state import TenantStateResolver
from forumai.tests.utils.factories import Clock, make_item


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch) -> None:
    # No Redis in unit tests; locks and breakers stay in-process.
    monkeypatch.delenv("REDIS_URL", raising=False)
    monkeypatch.setenv("SECRET_KEY", "unit-test-secret")
    monkeypatch.setenv("SITE_TIMEZONE", "UTC")
    monkeypatch.setenv("QUEUE_LOCK_WAIT_S", "0.2")
    get_settings.cache_clear()
    reset_credit_cache()
    reset_local_locks()
    reset_circuit_breakers()
    reset_telemetry()
    reset_collaborators()
    yield
    get_settings.cache_clear()


@pytest.fixture
async def session_factory(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path}/forumai-test.db")
    await init_models(engine)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def clock() -> Clock:
    # Wednesday noon UTC.
    return Clock(datetime(2026, 3, 4, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def account_service() -> FakeAccountService:
    return FakeAccountService(
        AccountStatus(
            tenant_id="tenant-1",
            subscription_status="active",
            plan="professional",
            credits_remaining=100,
            credits_total=500,
        )
    )


@pytest.fixture
def content_repo() -> FakeContentRepository:
    return FakeContentRepository([make_item(item_id) for item_id in range(1, 6)])


@pytest.fixture
def index_store() -> FakeIndexStore:
    return FakeIndexStore()


@pytest.fixture
def generator() -> FakeGenerationService:
    return FakeGenerationService(batches=[["How do you prune tomato plants in early spring?"]])


@pytest.fixture
def publisher() -> FakePublisher:
    return FakePublisher()


@pytest.fixture
def collaborators(session_factory, account_service, content_repo, index_store, generator, publisher, clock) -> Collaborators:
    return Collaborators(
        session_factory=session_factory,
        accounts=account_service,
        index_store=index_store,
        content=content_repo,
        generator=generator,
        publisher=publisher,
        time_provider=clock,
    )


@pytest.fixture
async def connected(session_factory, account_service, clock) -> TenantStateResolver:
    resolver = TenantStateResolver(session_factory, account_service, time_provider=clock)
    await resolver.register(site_url="https://forum.example", admin_email="admin@forum.example")
    return resolver
