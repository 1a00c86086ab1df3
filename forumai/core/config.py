from __future__ import annotations

from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


# Keep fingerprint dimension centralized so stored similarity vectors stay comparable.
EMBED_DIM = 256


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    app_name: str = "forumai"
    log_level: str = "INFO"
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    database_url: str = "sqlite+aiosqlite:///./forumai.db"
    # Pool sizing applies to server databases only; sqlite ignores it.
    db_pool_size: int = 5
    db_max_overflow: int = 5

    # Optional Redis for advisory locks and the arq wake-up worker; empty keeps locks in-process.
    redis_url: str | None = None
    # Queue name isolates wake-up jobs per environment.
    wakeup_queue_name: str = "forumai:wakeup"
    # Cadence of the periodic wake-up cron, in minutes.
    wakeup_interval_minutes: int = 5

    # "http" talks to the remote AI service; "fake" runs deterministic in-memory collaborators.
    remote_provider: str = "http"
    # Public URL of the forum, sent as Origin and used at registration.
    site_url: str | None = None
    # "module:factory" returning the host content repository and publisher.
    host_adapter: str | None = None
    # Remote AI account/index/generation service base URL.
    remote_api_base_url: str = "https://api.forumai.example/v1"
    # Per-call timeout for status/registration calls.
    remote_timeout_s: float = 15.0
    # Generation requests are slow; give them a longer budget.
    remote_generate_timeout_s: float = 60.0
    # Retry policy owned by the HTTP client collaborator.
    ext_retry_max_attempts: int = 2
    ext_retry_backoff_ms: int = 200
    # Circuit breaker thresholds for remote calls.
    cb_failure_threshold: int = 5
    cb_open_seconds: int = 30
    cb_half_open_trials: int = 1
    cb_redis_prefix: str = "forumai:cb"

    # Secret used to derive the AES-GCM key protecting the stored api key.
    secret_key: str = "change-me"
    # Bearer token guarding the admin HTTP API; empty disables the check for local use.
    admin_api_token: str | None = None

    # Pending-approval marker lifetime after registration.
    pending_marker_ttl_s: int = 86400
    # Credits assumed for a fresh registration until the account is approved.
    pending_default_credits: int = 500
    # Default plan when registration does not report one.
    default_plan: str = "free_trial"

    # Tenant status/credit snapshot cache window.
    credit_cache_ttl_s: int = 300
    # Staleness bound for the task credit gate; 0 forces a live balance check.
    credit_gate_max_age_s: int = 60

    # Indexing option defaults used when the option store has no value.
    chunk_size_default: int = 512
    chunk_size_min: int = 100
    chunk_size_max: int = 1024
    overlap_percent_default: int = 20
    overlap_percent_min: int = 5
    overlap_percent_max: int = 50
    batch_size_default: int = 20
    batch_size_min: int = 1
    batch_size_max: int = 50
    image_indexing_default: bool = False
    auto_indexing_default: bool = True
    # Cap item ids considered per planning call.
    plan_max_items: int = 500
    # Daily auto-indexing limit for never-indexed items.
    auto_index_daily_limit: int = 500
    # Longest text submitted for embedding.
    max_embedding_chars: int = 45000

    # How long enqueue/cancel wait for the indexing lock; must outlast one remote submission with retries.
    queue_lock_wait_s: float = 45.0
    # A cancel request that could not take the lock stays pending this long for the next drain.
    cancel_request_ttl_s: int = 86400
    # Lock expiry protects against crashed holders when Redis backs the lock.
    queue_lock_ttl_s: int = 300
    # Clear-index marker blocks new indexing while the store is wiped.
    clear_index_marker_ttl_s: int = 300

    # Bounded regeneration attempts when a generated item is a near duplicate.
    duplicate_retry_attempts: int = 3
    # Due tasks later than this grace are reported as overdue.
    overdue_grace_s: int = 300
    # Max tasks executed by a single wake-up.
    wakeup_max_tasks: int = 5
    # Timezone used for active_days and active time windows.
    site_timezone: str = "UTC"


@lru_cache
def get_settings() -> Settings:
    return Settings()
