from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from forumai.providers.remote.base import (
    AccountService,
    ContentPublisher,
    ContentRepository,
    GenerationService,
    IndexStore,
)
from forumai.services.tasks.similarity import Fingerprinter


@dataclass
class Collaborators:
    session_factory: async_sessionmaker[AsyncSession]
    accounts: AccountService
    index_store: IndexStore
    content: ContentRepository
    generator: GenerationService
    publisher: ContentPublisher
    fingerprinter: Fingerprinter | None = None
    time_provider: Callable[[], datetime] | None = None


_collaborators: Collaborators | None = None


def configure_collaborators(collaborators: Collaborators) -> Collaborators:
    # Install collaborators explicitly, e.g. fakes in tests.
    global _collaborators
    _collaborators = collaborators
    return collaborators


def reset_collaborators() -> None:
    global _collaborators
    _collaborators = None


def build_default_collaborators(session_factory: async_sessionmaker[AsyncSession] | None = None) -> Collaborators:
    # Deferred imports keep the provider stack out of unit tests that inject fakes.
    from forumai.persistence.db import SessionLocal
    from forumai.providers.remote.factory import get_host_adapter, get_remote_services
    from forumai.services.tenant_state import TenantStateResolver

    sessions = session_factory or SessionLocal
    resolver: TenantStateResolver | None = None

    async def _credentials() -> tuple[str, str] | None:
        assert resolver is not None
        loaded = await resolver.load_credentials()
        return (loaded.tenant_id, loaded.api_key) if loaded else None

    accounts, index_store, generator = get_remote_services(_credentials)
    resolver = TenantStateResolver(sessions, accounts)
    content, publisher = get_host_adapter()
    return Collaborators(
        session_factory=sessions,
        accounts=accounts,
        index_store=index_store,
        content=content,
        generator=generator,
        publisher=publisher,
    )


def get_collaborators() -> Collaborators:
    # Build the default collaborators on first use.
    global _collaborators
    if _collaborators is None:
        _collaborators = build_default_collaborators()
    return _collaborators
