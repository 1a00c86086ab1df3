from __future__ import annotations

from datetime import timedelta
from enum import Enum


class ConnectionState(str, Enum):
    NOT_CONNECTED = "not_connected"
    PENDING_APPROVAL = "pending_approval"
    ERROR = "error"
    INACTIVE = "inactive"
    EXPIRED = "expired"
    FREE_TRIAL = "free_trial"
    PAID_PLAN = "paid_plan"

    @property
    def operable(self) -> bool:
        # Only resolved subscriptions may spend credits.
        return self in (ConnectionState.FREE_TRIAL, ConnectionState.PAID_PLAN)


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    TRIAL = "trial"
    PENDING_APPROVAL = "pending_approval"
    INACTIVE = "inactive"
    EXPIRED = "expired"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: str | None) -> SubscriptionStatus:
        # Remote payloads may carry statuses this build does not know about.
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            return cls.UNKNOWN


class Plan(str, Enum):
    FREE_TRIAL = "free_trial"
    STARTER = "starter"
    PROFESSIONAL = "professional"
    BUSINESS = "business"
    ENTERPRISE = "enterprise"

    @classmethod
    def parse(cls, value: str | None, default: Plan | None = None) -> Plan:
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            return default or cls.FREE_TRIAL


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_JOB_STATUSES


TERMINAL_JOB_STATUSES = frozenset({JobStatus.DONE, JobStatus.FAILED, JobStatus.CANCELLED})

# Forward-only job lifecycle; cancellation is reachable from any live state.
JOB_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.PROCESSING, JobStatus.CANCELLED}),
    JobStatus.PROCESSING: frozenset({JobStatus.DONE, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.DONE: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


class ItemOutcome(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TaskType(str, Enum):
    TOPIC_GENERATOR = "topic_generator"
    REPLY_GENERATOR = "reply_generator"
    TAG_MAINTENANCE = "tag_maintenance"


class TaskStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    ERROR = "error"


class RunStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


class Frequency(str, Enum):
    HOURLY = "hourly"
    THREE_HOURS = "3hours"
    SIX_HOURS = "6hours"
    DAILY = "daily"
    THREE_DAYS = "3days"
    WEEKLY = "weekly"

    @property
    def duration(self) -> timedelta:
        return FREQUENCY_DURATIONS[self]


FREQUENCY_DURATIONS: dict[Frequency, timedelta] = {
    Frequency.HOURLY: timedelta(hours=1),
    Frequency.THREE_HOURS: timedelta(hours=3),
    Frequency.SIX_HOURS: timedelta(hours=6),
    Frequency.DAILY: timedelta(days=1),
    Frequency.THREE_DAYS: timedelta(days=3),
    Frequency.WEEKLY: timedelta(weeks=1),
}


# Weekday abbreviations indexed like datetime.weekday() (Monday == 0).
WEEKDAYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")


class QualityTier(str, Enum):
    FAST = "fast"
    BALANCED = "balanced"
    ADVANCED = "advanced"
    PREMIUM = "premium"

    @property
    def credits(self) -> int:
        return QUALITY_TIER_CREDITS[self]


QUALITY_TIER_CREDITS: dict[QualityTier, int] = {
    QualityTier.FAST: 1,
    QualityTier.BALANCED: 2,
    QualityTier.ADVANCED: 3,
    QualityTier.PREMIUM: 4,
}
