"""
Run sync engine routines on demand.

Examples:
    python scripts/run_sync.py queue --policy smart
    python scripts/run_sync.py work --max-tasks 20
    python scripts/run_sync.py deferred
    python scripts/run_sync.py repair
    python scripts/run_sync.py reset-stuck --hours 2
    python scripts/run_sync.py backlog
    python scripts/run_sync.py check-formats
"""

import argparse
import asyncio
import json
import sys
import os
import logging

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.database import async_session_maker
from core.exceptions import SyncException
from core.logging import setup_logging
from catalog_sync.client import MedipimClient
from catalog_sync.dispatcher import SyncDispatcher
from catalog_sync.recovery import RecoverySupervisor
from catalog_sync.requests import check_sorting_formats
from catalog_sync.resolver import RelationshipResolver
from catalog_sync.worker import SyncWorker

setup_logging()
logger = logging.getLogger(__name__)


async def run(args) -> object:
    async with async_session_maker() as session:
        if args.command == "queue":
            dispatcher = SyncDispatcher(session)
            policies = {
                "smart": dispatcher.smart_sync_requester,
                "steady": dispatcher.queue_sync_tasks,
                "aggressive": dispatcher.queue_sync_tasks_aggressive,
            }
            if args.policy == "products":
                result = await dispatcher.queue_products_aggressively()
            else:
                result = await policies[args.policy](args.entity_type or None)
            return result.model_dump(mode="json")

        if args.command == "work":
            return await SyncWorker(session).process_sync_tasks_batch(args.max_tasks, timeout=args.timeout)

        if args.command == "deferred":
            return {"resolved": await RelationshipResolver(session).process_until_fixpoint()}

        if args.command == "repair":
            resolver = RelationshipResolver(session)
            summaries = [
                await resolver.repair_product_relationships(),
                await resolver.repair_brand_relationships(),
                await resolver.repair_category_parent_relationships(),
            ]
            return [summary.model_dump(mode="json") for summary in summaries]

        if args.command == "report":
            entries = await RelationshipResolver(session).repair_report()
            return [entry.model_dump(mode="json") for entry in entries]

        if args.command == "reset-stuck":
            reports = await RecoverySupervisor(session).reset_stuck_syncs(args.hours)
            return [report.model_dump(mode="json") for report in reports]

        if args.command == "backlog":
            return (await RecoverySupervisor(session).clear_response_backlog()).model_dump()

        if args.command == "check-formats":
            checks = await check_sorting_formats(MedipimClient())
            return [check.model_dump(mode="json") for check in checks]

    raise ValueError(f"Unknown command: {args.command}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Catalog sync maintenance routines")
    sub = parser.add_subparsers(dest="command", required=True)

    queue = sub.add_parser("queue", help="Queue sync tasks")
    queue.add_argument("--policy", choices=["smart", "steady", "aggressive", "products"], default="smart")
    queue.add_argument("--entity-type", action="append", help="Restrict to an entity type (repeatable)")

    work = sub.add_parser("work", help="Process queued tasks")
    work.add_argument("--max-tasks", type=int, default=None)
    work.add_argument("--timeout", type=float, default=5.0, help="Seconds to wait for a task")

    sub.add_parser("deferred", help="Process deferred relationships until fixpoint")
    sub.add_parser("repair", help="Recompute relationships from raw_data")
    sub.add_parser("report", help="List unresolved deferred relationships")

    reset = sub.add_parser("reset-stuck", help="Reset syncs stuck in fetching/processing")
    reset.add_argument("--hours", type=float, default=None)

    sub.add_parser("backlog", help="Process staged responses")
    sub.add_parser("check-formats", help="Probe simple and nested payload formats")
    return parser


def main():
    args = build_parser().parse_args()
    try:
        result = asyncio.run(run(args))
    except SyncException as e:
        logger.error(f"{args.command} failed: {e}", extra={"error_context": e.to_dict()})
        sys.exit(1)

    print(json.dumps(result, indent=2, default=str))


if __name__ == "__main__":
    main()
