"""Feed sync job entry points and command line interface.

Usage::

    python -m app.jobs.sync --mode once
    python -m app.jobs.sync --mode all
    python -m app.jobs.sync --mode single --feed FEED_ID
    python -m app.jobs.sync --mode single --tenant TENANT_SLUG
    python -m app.jobs.sync --stats
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

from dotenv import load_dotenv

from app.config import SyncSettings
from app.ingest.models import FeedSyncResult, SyncSummary
from app.ingest.sync import FeedSyncService, build_service
from app.utils.log import configure_logging

logger = logging.getLogger(__name__)


async def run_due(service: FeedSyncService | None = None) -> SyncSummary:
    return await _with_service(service, lambda svc: svc.sync_all_due())


async def run_all(service: FeedSyncService | None = None) -> SyncSummary:
    return await _with_service(service, lambda svc: svc.sync_all())


async def run_feed(feed_id: str, service: FeedSyncService | None = None) -> FeedSyncResult:
    return await _with_service(service, lambda svc: svc.sync_by_feed_id(feed_id))


async def run_tenant(slug: str, service: FeedSyncService | None = None) -> FeedSyncResult:
    return await _with_service(service, lambda svc: svc.sync_by_tenant_slug(slug))


async def run_stats(service: FeedSyncService | None = None) -> dict[str, Any]:
    return await _with_service(service, lambda svc: svc.get_stats())


async def _with_service(service: FeedSyncService | None, call):
    if service is not None:
        return await call(service)
    load_dotenv()
    owned = build_service(SyncSettings.from_env())
    try:
        return await call(owned)
    finally:
        await owned.close()


def print_summary(summary: SyncSummary) -> None:
    print(f"Feeds processed: {summary.feeds_processed}")
    print(f"Succeeded:       {summary.success_count}")
    print(f"Failed:          {summary.error_count}")
    print(f"Products:        {summary.total_products}")
    print(f"Duration:        {summary.duration_ms}ms")
    if summary.error:
        print(f"Error:           {summary.error}")
    for result in summary.results:
        if not result.success:
            print(f"  ! {result.feed_id}: {result.error}")


def print_result(result: FeedSyncResult) -> None:
    if result.success:
        print(
            f"Feed {result.feed_id} synced: {result.product_count} products "
            f"({result.created} created, {result.updated} updated, "
            f"{result.deactivated_count} deactivated) in {result.duration_ms}ms"
        )
    else:
        label = result.feed_id or "(none)"
        print(f"Feed {label} failed: {result.error}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="app.jobs.sync", description="Synchronize XML product feeds")
    parser.add_argument("--mode", choices=["once", "all", "single"], default="once", help="which feeds to sync")
    parser.add_argument("--feed", help="feed id for --mode single")
    parser.add_argument("--tenant", help="tenant slug for --mode single")
    parser.add_argument("--stats", action="store_true", help="print sync statistics and exit")
    parser.add_argument("--log-level", default=None)
    return parser


async def main_async(args: argparse.Namespace, service: FeedSyncService | None = None) -> int:
    if args.stats:
        stats = await run_stats(service)
        print(json.dumps(stats, indent=2, default=str))
        return 0
    if args.mode == "single":
        if args.feed:
            result = await run_feed(args.feed, service)
        else:
            result = await run_tenant(args.tenant, service)
        print_result(result)
        return 0 if result.success else 1
    summary = await (run_all(service) if args.mode == "all" else run_due(service))
    print_summary(summary)
    return 0 if summary.success else 1


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.mode == "single" and not (args.feed or args.tenant) and not args.stats:
        parser.error("--mode single requires --feed or --tenant")
    load_dotenv()
    configure_logging(args.log_level)
    try:
        return asyncio.run(main_async(args))
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
