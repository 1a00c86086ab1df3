from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from forumai.core.errors import AuthError, TransportError
from forumai.providers.remote.base import (
    AccountStatus,
    ChunkParams,
    ContentItem,
    GeneratedCandidate,
    GenerationRequest,
    GenerationResult,
    PreparedItem,
    Registration,
    SubmitResult,
)


class FakeAccountService:
    def __init__(
        self,
        status: AccountStatus | None = None,
        *,
        api_key: str = "fake-api-key",
        error: Exception | None = None,
    ) -> None:
        # Deterministic status keeps state resolution testable without the remote service.
        self.status = status or AccountStatus(
            tenant_id="tenant-1",
            subscription_status="active",
            plan="professional",
            credits_remaining=500,
            credits_total=500,
        )
        self.api_key = api_key
        self.error = error
        self.status_calls = 0
        self.disconnect_calls: list[dict[str, Any]] = []

    async def register_tenant(self, *, site_url: str, admin_email: str) -> Registration:
        _ = (site_url, admin_email)
        if self.error is not None:
            raise self.error
        return Registration(api_key=self.api_key, tenant_id=self.status.tenant_id, subscription=self.status)

    async def get_status(self, *, tenant_id: str, api_key: str) -> AccountStatus:
        self.status_calls += 1
        if self.error is not None:
            raise self.error
        if api_key != self.api_key:
            raise AuthError("api key rejected")
        return self.status.model_copy(update={"tenant_id": tenant_id})

    async def disconnect(self, *, tenant_id: str, api_key: str, reason: str, confirm: bool) -> None:
        self.disconnect_calls.append({"tenant_id": tenant_id, "reason": reason, "confirm": confirm})
        if self.error is not None:
            raise self.error


class FakeIndexStore:
    def __init__(self, mode: str = "cloud", *, failing: dict[int, Exception] | None = None) -> None:
        self.mode = mode
        # Item id -> error raised on submit, for per-item failure tests.
        self.failing = dict(failing or {})
        self.submitted: list[tuple[int, str]] = []
        self.indexed: dict[int, int] = {}
        # Overrides the computed charge when set, to simulate remote over-reporting.
        self.charge_override: int | None = None

    async def submit(self, item: PreparedItem, params: ChunkParams) -> SubmitResult:
        error = self.failing.get(item.item_id)
        if error is not None:
            raise error
        self.submitted.append((item.item_id, item.content_hash))
        self.indexed[item.item_id] = item.board_id
        charge = 1 + (1 if params.include_images and item.image_count else 0)
        if self.charge_override is not None:
            charge = self.charge_override
        return SubmitResult(credits_consumed=charge, chunks=1)

    async def clear_all(self) -> int:
        removed = len(self.indexed)
        self.indexed.clear()
        return removed

    async def get_indexed_counts_by_forum(self) -> dict[int, int]:
        counts: dict[int, int] = {}
        for board_id in self.indexed.values():
            counts[board_id] = counts.get(board_id, 0) + 1
        return counts


class FakeContentRepository:
    def __init__(self, items: list[ContentItem] | None = None) -> None:
        self.items = {item.item_id: item for item in items or []}

    def put(self, item: ContentItem) -> None:
        self.items[item.item_id] = item

    async def get_items(self, item_ids: list[int]) -> dict[int, ContentItem]:
        return {item_id: self.items[item_id] for item_id in item_ids if item_id in self.items}

    async def list_item_ids(self, *, exclude: set[int], limit: int) -> list[int]:
        return [item_id for item_id in sorted(self.items) if item_id not in exclude][:limit]


@dataclass
class FakeGenerationService:
    # Each generate call pops the next scripted batch; texts repeat the last batch once exhausted.
    batches: list[list[str]] = field(default_factory=list)
    credits_per_item: int = 2
    error: Exception | None = None
    requests: list[GenerationRequest] = field(default_factory=list)

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        if not self.batches:
            raise TransportError("no scripted generations left")
        texts = self.batches.pop(0) if len(self.batches) > 1 else self.batches[0]
        board_id = request.board_ids[0] if request.board_ids else None
        topic_id = request.topic_ids[0] if request.topic_ids else None
        candidates = tuple(
            GeneratedCandidate(text=text, title=text, board_id=board_id, topic_id=topic_id)
            for text in texts[: request.count]
        )
        return GenerationResult(candidates=candidates, credits_used=len(candidates) * self.credits_per_item)


class FakePublisher:
    def __init__(self, *, reject: set[str] | None = None) -> None:
        # Candidate texts in ``reject`` are refused, as a host would for moderation hits.
        self.reject = set(reject or ())
        self.published: list[tuple[str, GeneratedCandidate]] = []

    async def publish(self, *, task_type: str, candidate: GeneratedCandidate, config: dict[str, Any]) -> str | None:
        _ = config
        if candidate.text in self.reject:
            return None
        self.published.append((task_type, candidate))
        return f"{task_type}-{len(self.published)}"
