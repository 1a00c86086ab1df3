from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Callable

import httpx

from forumai.core.config import get_settings
from forumai.core.errors import AuthError, InsufficientCreditsError, TransportError, ValidationError
from forumai.providers.remote.base import (
    AccountStatus,
    ChunkParams,
    GeneratedCandidate,
    GenerationRequest,
    GenerationResult,
    PreparedItem,
    Registration,
    SubmitResult,
)
from forumai.services.resilience import CircuitBreaker, default_retry_policy, get_circuit_breaker, retry_async
from forumai.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

CredentialsLoader = Callable[[], Awaitable[tuple[str, str] | None]]


def _retryable(exc: Exception) -> bool:
    # Timeouts, network errors and 5xx responses are retried.
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError)):
        return True
    status = getattr(exc, "status_code", None)
    return isinstance(status, int) and status >= 500


class _ServerError(Exception):
    def __init__(self, status_code: int) -> None:
        super().__init__(f"remote service error: {status_code}")
        self.status_code = status_code


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return f"remote error: {response.status_code}"
    # FastAPI-style services nest the message under "detail".
    detail = data.get("detail") if isinstance(data, dict) else None
    if isinstance(detail, dict):
        detail = detail.get("message") or detail.get("error")
    if isinstance(detail, str) and detail:
        return detail
    if isinstance(data, dict):
        return str(data.get("message") or data.get("error") or f"remote error: {response.status_code}")
    return f"remote error: {response.status_code}"


class RemoteClient:
    """httpx transport shared by the remote account, index and generation services."""

    def __init__(
        self,
        *,
        base_url: str | None = None,
        site_url: str | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = get_settings()
        self._base_url = (base_url or self._settings.remote_api_base_url).rstrip("/")
        self._site_url = site_url
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # One pooled client per remote service instance.
        self._client = httpx.AsyncClient(timeout=self._settings.remote_timeout_s)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _headers(self, api_key: str | None) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._site_url:
            headers["Origin"] = self._site_url
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return headers

    async def request(
        self,
        method: str,
        path: str,
        *,
        integration: str,
        api_key: str | None = None,
        payload: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        timeout_s: float | None = None,
    ) -> dict[str, Any]:
        breaker: CircuitBreaker = await get_circuit_breaker(integration)
        client = self._get_client()
        url = f"{self._base_url}{path}"
        start = time.monotonic()

        async def _call() -> httpx.Response:
            response = await client.request(
                method,
                url,
                json=payload,
                params=params,
                headers=self._headers(api_key),
                timeout=timeout_s or self._settings.remote_timeout_s,
            )
            if response.status_code >= 500:
                raise _ServerError(response.status_code)
            return response

        try:
            await breaker.before_call()
            response = await retry_async(_call, policy=default_retry_policy(timeout_s), retryable=_retryable)
        except (httpx.HTTPError, _ServerError, TimeoutError) as exc:
            await breaker.record_failure()
            record_external_call(
                integration=integration,
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            logger.warning("remote_call_failed integration=%s path=%s error=%s", integration, path, exc)
            raise TransportError(f"{integration} request failed") from exc

        latency_ms = (time.monotonic() - start) * 1000.0
        if response.status_code in {401, 403}:
            record_external_call(integration=integration, latency_ms=latency_ms, success=False)
            raise AuthError(_error_message(response))
        if response.status_code == 402:
            record_external_call(integration=integration, latency_ms=latency_ms, success=False)
            data = _safe_json(response)
            raise InsufficientCreditsError(
                _error_message(response),
                requested=int(data.get("credits_required", 0) or 0),
                available=int(data.get("credits_remaining", 0) or 0),
            )
        if response.status_code == 422:
            record_external_call(integration=integration, latency_ms=latency_ms, success=False)
            raise ValidationError(_error_message(response))
        if response.status_code >= 400:
            record_external_call(integration=integration, latency_ms=latency_ms, success=False)
            raise TransportError(_error_message(response))

        await breaker.record_success()
        record_external_call(integration=integration, latency_ms=latency_ms, success=True)
        data = _safe_json(response)
        # Some endpoints answer 200 with an application-level failure flag.
        if data.get("success") is False:
            raise TransportError(str(data.get("message") or "remote operation failed"))
        return data


def _safe_json(response: httpx.Response) -> dict[str, Any]:
    # Non-object bodies are wrapped under "data".
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {"data": data}


def _account_status(data: dict[str, Any], tenant_id: str) -> AccountStatus:
    # Subscription fields may be nested or top-level.
    subscription = data.get("subscription") if isinstance(data.get("subscription"), dict) else data
    return AccountStatus(
        tenant_id=str(data.get("tenant_id") or tenant_id),
        subscription_status=str(subscription.get("status") or subscription.get("subscription_status") or "unknown"),
        plan=str(subscription.get("plan") or "free_trial"),
        features_enabled=list(data.get("features_enabled") or subscription.get("features_enabled") or []),
        credits_remaining=int(subscription.get("credits_remaining") or 0),
        credits_total=int(subscription.get("credits_total") or 0),
    )


class HttpAccountService:
    def __init__(self, client: RemoteClient) -> None:
        self._client = client

    async def register_tenant(self, *, site_url: str, admin_email: str) -> Registration:
        data = await self._client.request(
            "POST",
            "/tenant/register",
            integration="remote.account",
            payload={"site_url": site_url, "admin_email": admin_email},
        )
        api_key = data.get("api_key")
        tenant_id = data.get("tenant_id")
        if not api_key or not tenant_id:
            raise TransportError("registration response is missing credentials")
        return Registration(api_key=str(api_key), tenant_id=str(tenant_id), subscription=_account_status(data, str(tenant_id)))

    async def get_status(self, *, tenant_id: str, api_key: str) -> AccountStatus:
        data = await self._client.request("GET", "/tenant/status", integration="remote.account", api_key=api_key)
        return _account_status(data, tenant_id)

    async def disconnect(self, *, tenant_id: str, api_key: str, reason: str, confirm: bool) -> None:
        await self._client.request(
            "DELETE",
            "/tenant/disconnect",
            integration="remote.account",
            api_key=api_key,
            payload={"reason": reason, "confirm": bool(confirm)},
        )
        logger.info("remote_tenant_disconnected tenant_id=%s", tenant_id)


class HttpIndexStore:
    mode = "cloud"

    def __init__(self, client: RemoteClient, credentials: CredentialsLoader) -> None:
        self._client = client
        self._credentials = credentials

    async def _api_key(self) -> str:
        # Raise AuthError until the tenant is connected.
        loaded = await self._credentials()
        if loaded is None:
            raise AuthError("tenant is not connected")
        return loaded[1]

    async def submit(self, item: PreparedItem, params: ChunkParams) -> SubmitResult:
        # One item per request; credits come back in the response.
        data = await self._client.request(
            "POST",
            "/rag/ingest",
            integration="remote.index",
            api_key=await self._api_key(),
            payload={
                "threads": [
                    {
                        "topic_id": item.item_id,
                        "forum_id": item.board_id,
                        "content": item.text,
                        "content_hash": item.content_hash,
                        "image_count": item.image_count if params.include_images else 0,
                    }
                ],
                "chunk_size": params.chunk_size,
                "overlap_percent": params.overlap_percent,
            },
        )
        return SubmitResult(
            credits_consumed=int(data.get("credits_used") or data.get("credits_consumed") or 0),
            chunks=int(data.get("chunks") or data.get("total_chunks") or 0),
        )

    async def clear_all(self) -> int:
        data = await self._client.request(
            "DELETE",
            "/rag/clear",
            integration="remote.index",
            api_key=await self._api_key(),
            timeout_s=30,
        )
        return int(data.get("deleted") or data.get("deleted_count") or 0)

    async def get_indexed_counts_by_forum(self) -> dict[int, int]:
        # Remote indexed totals keyed by board id.
        data = await self._client.request(
            "GET",
            "/rag/indexed-stats/forums",
            integration="remote.index",
            api_key=await self._api_key(),
        )
        counts = data.get("forum_counts") or {}
        return {int(board_id): int(count) for board_id, count in counts.items()}


class HttpGenerationService:
    def __init__(self, client: RemoteClient, credentials: CredentialsLoader) -> None:
        self._client = client
        self._credentials = credentials

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        loaded = await self._credentials()
        if loaded is None:
            raise AuthError("tenant is not connected")
        data = await self._client.request(
            "POST",
            "/tasks/generate",
            integration="remote.generation",
            api_key=loaded[1],
            timeout_s=get_settings().remote_generate_timeout_s,
            payload={
                "task_type": request.task_type,
                "quality": request.quality,
                "count": request.count,
                "forum_ids": list(request.board_ids),
                "topic_ids": list(request.topic_ids),
                "options": request.options,
                "avoid": list(request.avoid),
            },
        )
        candidates = tuple(
            GeneratedCandidate(
                text=str(entry.get("content") or entry.get("text") or ""),
                title=entry.get("title"),
                board_id=entry.get("forum_id"),
                topic_id=entry.get("topic_id"),
                tags=tuple(entry.get("tags") or ()),
            )
            for entry in data.get("items") or []
            if isinstance(entry, dict)
        )
        return GenerationResult(candidates=candidates, credits_used=int(data.get("credits_used") or 0))
