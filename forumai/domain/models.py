from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


# JSONB on Postgres, plain JSON elsewhere so sqlite-backed tests share the schema.
JsonType = JSON().with_variant(JSONB(), "postgresql")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid4().hex


class UtcDateTime(TypeDecorator):
    # sqlite drops tzinfo on read; normalize every value to aware UTC.
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    pass


class TenantAccount(Base):
    __tablename__ = "tenant_accounts"

    # Single installation row; the id is fixed so upserts stay trivial.
    id: Mapped[str] = mapped_column(String, primary_key=True, default="default")
    tenant_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # AES-GCM ciphertext of the remote api key, base64 encoded.
    api_key_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    subscription_status: Mapped[str] = mapped_column(String, default="unknown")
    plan: Mapped[str] = mapped_column(String, default="free_trial")
    features_enabled: Mapped[list[str]] = mapped_column(JsonType, default=list)
    # Last snapshot of credits reported by the remote status call.
    credits_remaining: Mapped[int | None] = mapped_column(Integer, nullable=True)
    credits_total: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now)


class PendingApprovalMarker(Base):
    __tablename__ = "pending_approval_markers"

    id: Mapped[str] = mapped_column(String, primary_key=True, default="default")
    status: Mapped[str] = mapped_column(String, default="pending_approval")
    credits_total: Mapped[int] = mapped_column(Integer, default=0)
    registered_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now)
    # Marker is ignored and purged once this passes.
    expires_at: Mapped[datetime] = mapped_column(UtcDateTime)


class ConfigOption(Base):
    __tablename__ = "config_options"

    key: Mapped[str] = mapped_column(String, primary_key=True)
    value: Mapped[Any] = mapped_column(JsonType, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now, onupdate=_utc_now)


class MaintenanceMarker(Base):
    __tablename__ = "maintenance_markers"

    # Short-lived named flags such as the clear-index guard.
    name: Mapped[str] = mapped_column(String, primary_key=True)
    expires_at: Mapped[datetime] = mapped_column(UtcDateTime)
    # Identifies the request that set the marker, e.g. one cancel call.
    token: Mapped[str | None] = mapped_column(String, nullable=True)


class IndexableItem(Base):
    __tablename__ = "indexable_items"

    item_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    # Fingerprint recorded at the last successful submission.
    content_hash: Mapped[str | None] = mapped_column(String, nullable=True)
    local_indexed: Mapped[bool] = mapped_column(Boolean, default=False)
    cloud_indexed: Mapped[bool] = mapped_column(Boolean, default=False)
    has_image: Mapped[bool] = mapped_column(Boolean, default=False)
    board_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    indexed_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)


class IndexingJob(Base):
    __tablename__ = "indexing_jobs"

    job_id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    # Ordered, de-duplicated item ids exactly as enqueued.
    item_ids: Mapped[list[int]] = mapped_column(JsonType, default=list)
    chunk_size: Mapped[int] = mapped_column(Integer)
    overlap_percent: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String, default="queued", index=True)
    credits_reserved: Mapped[int] = mapped_column(Integer, default=0)
    credits_consumed: Mapped[int] = mapped_column(Integer, default=0)
    # Image indexing toggle captured at enqueue time so reservations stay consistent.
    include_images: Mapped[bool] = mapped_column(Boolean, default=False)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now)
    started_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)


class IndexingJobItem(Base):
    __tablename__ = "indexing_job_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String, ForeignKey("indexing_jobs.job_id"), index=True)
    item_id: Mapped[int] = mapped_column(Integer, index=True)
    position: Mapped[int] = mapped_column(Integer)
    outcome: Mapped[str] = mapped_column(String, default="pending")
    credits_consumed: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)

    __table_args__ = (UniqueConstraint("job_id", "item_id", name="uq_indexing_job_items_job_item"),)


class ScheduledTask(Base):
    __tablename__ = "scheduled_tasks"

    task_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String, default="")
    task_type: Mapped[str] = mapped_column(String, index=True)
    status: Mapped[str] = mapped_column(String, default="draft", index=True)
    board_id: Mapped[int] = mapped_column(Integer, default=0)
    # Type-specific parameters; always carries frequency, active_days and guard settings.
    config: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)
    next_run_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    last_run_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    last_run_status: Mapped[str | None] = mapped_column(String, nullable=True)
    # Monotonic counters; only deleting the task resets them.
    total_runs: Mapped[int] = mapped_column(Integer, default=0)
    items_created: Mapped[int] = mapped_column(Integer, default=0)
    credits_used: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now, onupdate=_utc_now)


class TaskRunLog(Base):
    __tablename__ = "task_run_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    task_id: Mapped[int] = mapped_column(Integer, ForeignKey("scheduled_tasks.task_id", ondelete="CASCADE"))
    trigger: Mapped[str] = mapped_column(String, default="schedule")
    status: Mapped[str] = mapped_column(String)
    items_created: Mapped[int] = mapped_column(Integer, default=0)
    items_skipped: Mapped[int] = mapped_column(Integer, default=0)
    items_failed: Mapped[int] = mapped_column(Integer, default=0)
    credits_used: Mapped[int] = mapped_column(Integer, default=0)
    duration_s: Mapped[float] = mapped_column(Float, default=0.0)
    reason: Mapped[str | None] = mapped_column(String, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    result_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    executed_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now)


class GeneratedContent(Base):
    __tablename__ = "generated_content"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    # Board id as text, or "*" for tasks spanning every board.
    scope: Mapped[str] = mapped_column(String, default="*")
    task_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    text: Mapped[str] = mapped_column(Text)
    fingerprint: Mapped[list[float]] = mapped_column(JsonType)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now)


Index("ix_indexing_job_items_job_outcome", IndexingJobItem.job_id, IndexingJobItem.outcome)
Index("ix_indexing_jobs_status_created", IndexingJob.status, IndexingJob.created_at)
Index("ix_task_run_logs_task_executed", TaskRunLog.task_id, TaskRunLog.executed_at)
Index("ix_generated_content_scope_created", GeneratedContent.scope, GeneratedContent.created_at)
