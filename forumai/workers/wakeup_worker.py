from __future__ import annotations

import logging

from arq import cron
from arq.connections import RedisSettings

from forumai.core.config import get_settings
from forumai.core.logging import configure_logging
from forumai.persistence.db import init_models
from forumai.services.runtime import get_collaborators
from forumai.services.wakeup import enqueue_pending_items, run_wakeup_cycle


logger = logging.getLogger(__name__)


async def wakeup(ctx) -> dict:
    # Each cron tick is one bounded pass; backlog carries over to the next tick.
    return await run_wakeup_cycle(collaborators=ctx["collaborators"])


async def auto_index(ctx) -> dict:
    # Queue any approved items that are not indexed yet.
    result = await enqueue_pending_items(collaborators=ctx["collaborators"])
    return result.as_dict()


async def _startup(ctx) -> None:
    configure_logging()
    await init_models()
    ctx["collaborators"] = get_collaborators()
    logger.info("wakeup_worker_started")


async def _shutdown(ctx) -> None:
    logger.info("wakeup_worker_stopped")


def _wakeup_minutes() -> set[int]:
    # Cron minutes spaced by the configured wakeup interval.
    interval = max(1, min(60, int(get_settings().wakeup_interval_minutes)))
    return set(range(0, 60, interval))


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url or "redis://localhost:6379/0")
    queue_name = settings.wakeup_queue_name
    functions = [wakeup, auto_index]
    cron_jobs = [
        cron(wakeup, minute=_wakeup_minutes(), unique=True),
        cron(auto_index, hour={3}, minute={15}, unique=True),
    ]
    on_startup = _startup
    on_shutdown = _shutdown
