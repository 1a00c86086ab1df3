from __future__ import annotations

import argparse
import asyncio
import json
import sys

from forumai.core.logging import configure_logging
from forumai.persistence.db import init_models
from forumai.services.wakeup import enqueue_pending_items, run_wakeup_cycle


def _build_parser() -> argparse.ArgumentParser:
    # System cron invokes this on a fixed cadence when no arq worker runs.
    parser = argparse.ArgumentParser(description="Run one forumai background wake-up")
    parser.add_argument("--max-items", type=int, default=None, help="Indexing items to drain this pass")
    parser.add_argument("--max-tasks", type=int, default=None, help="Scheduled tasks to run this pass")
    parser.add_argument("--auto-index", action="store_true", help="Also queue never-indexed items")
    return parser


async def _run(args: argparse.Namespace) -> int:
    configure_logging()
    await init_models()
    summary = await run_wakeup_cycle(max_items=args.max_items, max_tasks=args.max_tasks)
    if args.auto_index:
        summary["auto_index"] = (await enqueue_pending_items()).as_dict()
    print(json.dumps(summary, default=str))
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    return asyncio.run(_run(args))


if __name__ == "__main__":
    sys.exit(main())
