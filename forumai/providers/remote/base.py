from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from pydantic import BaseModel, Field


class AccountStatus(BaseModel):
    tenant_id: str
    subscription_status: str = "unknown"
    plan: str = "free_trial"
    features_enabled: list[str] = Field(default_factory=list)
    credits_remaining: int = 0
    credits_total: int = 0


class Registration(BaseModel):
    api_key: str
    tenant_id: str
    subscription: AccountStatus


class SubmitResult(BaseModel):
    credits_consumed: int = 0
    chunks: int = 0


@dataclass(frozen=True)
class ChunkParams:
    chunk_size: int
    overlap_percent: int
    include_images: bool = False


@dataclass(frozen=True)
class ContentItem:
    item_id: int
    title: str
    body: str
    board_id: int
    created_at: datetime
    tags: tuple[str, ...] = ()
    author_id: int | None = None
    image_count: int = 0
    is_private: bool = False
    is_approved: bool = True

    @property
    def has_image(self) -> bool:
        return self.image_count > 0


@dataclass(frozen=True)
class PreparedItem:
    item_id: int
    board_id: int
    text: str
    content_hash: str
    image_count: int = 0


@dataclass(frozen=True)
class GenerationRequest:
    task_type: str
    quality: str
    count: int
    board_ids: tuple[int, ...] = ()
    topic_ids: tuple[int, ...] = ()
    options: dict[str, Any] = field(default_factory=dict)
    # Texts already rejected as near duplicates, so the generator can steer away.
    avoid: tuple[str, ...] = ()


@dataclass(frozen=True)
class GeneratedCandidate:
    text: str
    title: str | None = None
    board_id: int | None = None
    topic_id: int | None = None
    tags: tuple[str, ...] = ()


@dataclass(frozen=True)
class GenerationResult:
    candidates: tuple[GeneratedCandidate, ...]
    credits_used: int = 0


class AccountService(Protocol):
    async def register_tenant(self, *, site_url: str, admin_email: str) -> Registration:
        ...

    async def get_status(self, *, tenant_id: str, api_key: str) -> AccountStatus:
        ...

    async def disconnect(self, *, tenant_id: str, api_key: str, reason: str, confirm: bool) -> None:
        ...


class IndexStore(Protocol):
    # "cloud" stores charge credits per submission; "local" stores do not.
    mode: str

    async def submit(self, item: PreparedItem, params: ChunkParams) -> SubmitResult:
        ...

    async def clear_all(self) -> int:
        ...

    async def get_indexed_counts_by_forum(self) -> dict[int, int]:
        ...


class ContentRepository(Protocol):
    async def get_items(self, item_ids: list[int]) -> dict[int, ContentItem]:
        ...

    async def list_item_ids(self, *, exclude: set[int], limit: int) -> list[int]:
        ...


class GenerationService(Protocol):
    async def generate(self, request: GenerationRequest) -> GenerationResult:
        ...


class ContentPublisher(Protocol):
    async def publish(self, *, task_type: str, candidate: GeneratedCandidate, config: dict[str, Any]) -> str | None:
        ...
