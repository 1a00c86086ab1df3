from __future__ import annotations

from importlib import import_module
from typing import Any

from forumai.core.config import get_settings
from forumai.core.errors import ServiceUnavailableError
from forumai.providers.remote.base import AccountService, ContentPublisher, ContentRepository
from forumai.providers.remote.fake import (
    FakeAccountService,
    FakeContentRepository,
    FakeGenerationService,
    FakeIndexStore,
    FakePublisher,
)
from forumai.providers.remote.http_client import (
    CredentialsLoader,
    HttpAccountService,
    HttpGenerationService,
    HttpIndexStore,
    RemoteClient,
)


def get_remote_services(credentials: CredentialsLoader) -> tuple[Any, Any, Any]:
    """Return (account service, index store, generation service) for the configured provider."""
    settings = get_settings()
    provider = (settings.remote_provider or "http").lower()
    if provider == "fake":
        return FakeAccountService(), FakeIndexStore(), FakeGenerationService(batches=[["Welcome thread"]])
    if provider == "http":
        client = RemoteClient(site_url=settings.site_url)
        account: AccountService = HttpAccountService(client)
        return account, HttpIndexStore(client, credentials), HttpGenerationService(client, credentials)
    raise ServiceUnavailableError(f"Unsupported remote provider: {provider}")


def get_host_adapter() -> tuple[ContentRepository, ContentPublisher]:
    # The forum host owns content storage; it plugs in through a "module:factory" path.
    settings = get_settings()
    if not settings.host_adapter:
        if (settings.remote_provider or "").lower() == "fake":
            return FakeContentRepository(), FakePublisher()
        raise ServiceUnavailableError("HOST_ADAPTER is required to read and publish forum content")
    module_name, _, attr = settings.host_adapter.partition(":")
    factory = getattr(import_module(module_name), attr or "build_host_adapter")
    content, publisher = factory()
    return content, publisher
