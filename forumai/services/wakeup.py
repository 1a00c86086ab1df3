from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from forumai.core.config import get_settings
from forumai.core.errors import ForumAIError
from forumai.persistence.repos import items as items_repo
from forumai.persistence.repos import jobs as jobs_repo
from forumai.services import admin_ops
from forumai.services.credits import CreditLedgerView
from forumai.services.options import load_indexing_options
from forumai.services.runtime import Collaborators, get_collaborators
from forumai.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


async def run_wakeup_cycle(
    now: datetime | None = None,
    *,
    collaborators: Collaborators | None = None,
    max_items: int | None = None,
    max_tasks: int | None = None,
) -> dict[str, Any]:
    """One bounded background pass: drain one indexing batch, then run due tasks."""
    collab = collaborators or get_collaborators()
    moment = now or (collab.time_provider or (lambda: datetime.now(timezone.utc)))()
    summary: dict[str, Any] = {"at": moment.isoformat(), "indexing": None, "tasks": []}

    resolver = admin_ops.state_resolver(collab)
    resolution = await resolver.resolve()
    summary["state"] = resolution.state.value
    credentials = await resolver.load_credentials() if resolution.operable else None
    if credentials is None:
        # Nothing metered may run until the subscription resolves.
        logger.info("wakeup_skipped state=%s", resolution.state.value)
        increment_counter("wakeup_skipped_total")
        return summary

    if max_items is None:
        async with collab.session_factory() as session:
            max_items = (await load_indexing_options(session)).batch_size
    try:
        batch, has_more = await admin_ops.job_queue(collab, credentials.tenant_id).drain_next(max_items)
        summary["indexing"] = {**batch.as_dict(), "has_more": has_more}
    except ForumAIError as exc:
        logger.warning("wakeup_drain_failed error=%s", exc)
        summary["indexing"] = {"error": str(exc)}

    ledger = CreditLedgerView(collab.accounts, tenant_id=credentials.tenant_id, api_key=credentials.api_key)
    results = await admin_ops.task_engine(collab, ledger).run_due_tasks(moment, max_tasks=max_tasks)
    summary["tasks"] = [result.as_dict() for result in results]

    increment_counter("wakeup_cycles_total")
    logger.info(
        "wakeup_cycle_finished state=%s drained=%s tasks=%s",
        resolution.state.value,
        summary["indexing"].get("processed"),
        len(summary["tasks"]),
    )
    return summary


async def enqueue_pending_items(
    *,
    limit: int | None = None,
    collaborators: Collaborators | None = None,
) -> admin_ops.OperationResult:
    """Queue never-indexed items for the daily auto-indexing pass."""
    collab = collaborators or get_collaborators()
    async with collab.session_factory() as session:
        options = await load_indexing_options(session)
        if not options.auto_indexing:
            return admin_ops.OperationResult.success({"skipped": "auto_indexing_disabled", "job_id": None})
        indexed = await items_repo.indexed_item_ids(session)
    cap = limit if limit is not None else get_settings().auto_index_daily_limit
    candidates = await collab.content.list_item_ids(exclude=indexed, limit=cap)
    async with collab.session_factory() as session:
        held = await jobs_repo.held_item_ids(session, candidates)
    pending = [item_id for item_id in candidates if item_id not in held]
    if not pending:
        return admin_ops.OperationResult.success({"job_id": None, "requested": 0, "planned": 0})
    logger.info("auto_indexing_candidates count=%s", len(pending))
    return await admin_ops.enqueue_indexing(pending, allow_partial=True, collaborators=collab)
