"""Main entry point for the listing dedup engine."""

import argparse
import asyncio
import json
import logging
import sys

from listing_dedup.config import Settings
from listing_dedup.db import DedupStorage
from listing_dedup.dedup import DeduplicationService, DedupWorkerPool
from listing_dedup.errors import DedupError
from listing_dedup.logging import configure_logging, get_logger
from listing_dedup.models import DedupStats

logger = get_logger(__name__)


def _format_stats(stats: DedupStats) -> str:
    """Render stats as the JSON printed by the CLI."""
    return json.dumps(
        {
            "listings": {str(k): v for k, v in sorted(stats.listings.items())},
            "groups": {str(k): v for k, v in sorted(stats.groups.items())},
        },
        indent=2,
    )


async def _open(settings: Settings) -> tuple[DedupStorage, DeduplicationService]:
    storage = DedupStorage(settings.database_path)
    await storage.initialize()
    return storage, DeduplicationService(storage, settings.get_matching_config())


async def run_process(
    settings: Settings,
    *,
    listing_id: int | None = None,
    limit: int | None = None,
    concurrency: int | None = None,
) -> None:
    """Process one listing, or one batch of pending listings, then print stats."""
    storage, service = await _open(settings)
    try:
        if listing_id is not None:
            result = await service.process_listing(listing_id)
            print(f"Listing {result.listing_id}: {result.outcome}", end="")
            print(f" (group {result.group_id})" if result.group_id else "")
        else:
            pool = DedupWorkerPool(
                service,
                storage,
                concurrency=concurrency or settings.worker_concurrency,
                batch_size=limit or settings.batch_size,
            )
            batch = await pool.run_batch()
            print(
                f"Processed {batch.processed}, skipped {batch.skipped}, failed {batch.failed}"
            )
        print(_format_stats(await service.get_stats()))
    finally:
        await storage.close()


async def run_stats(settings: Settings) -> None:
    storage, service = await _open(settings)
    try:
        print(_format_stats(await service.get_stats()))
    finally:
        await storage.close()


async def run_reset_stale(settings: Settings, *, minutes: int | None = None) -> None:
    storage, service = await _open(settings)
    try:
        listings_reset, groups_reset = await service.reset_stale_processing(
            minutes or settings.stale_processing_minutes
        )
        print(f"Reset {listings_reset} listings and {groups_reset} groups")
    finally:
        await storage.close()


async def run_review(
    settings: Settings, *, group_id: int, approve: bool, reason: str | None = None
) -> None:
    """Apply a human review decision to a PendingReview group."""
    storage, service = await _open(settings)
    try:
        if approve:
            await service.approve_group(group_id)
            print(f"Group {group_id} approved")
        else:
            await service.reject_group(group_id, reason)
            print(f"Group {group_id} rejected")
    finally:
        await storage.close()


async def run_serve(settings: Settings, *, interval: float | None = None) -> None:
    """Run the worker pool until interrupted, resetting stale work on startup."""
    storage, service = await _open(settings)
    try:
        await service.reset_stale_processing(settings.stale_processing_minutes)
        pool = DedupWorkerPool(
            service,
            storage,
            concurrency=settings.worker_concurrency,
            batch_size=settings.batch_size,
        )
        await pool.run_forever(interval or settings.worker_interval_seconds)
    finally:
        await storage.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Listing Dedup - group listings that describe the same property"
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug-level logging for troubleshooting",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit JSON log lines (for production workers)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    process = subparsers.add_parser("process", help="Process pending listings once")
    process.add_argument("--listing", type=int, default=None, help="Process a single listing")
    process.add_argument("--limit", type=int, default=None, help="Maximum listings in the batch")
    process.add_argument(
        "--concurrency", type=int, default=None, help="Number of concurrent workers"
    )

    subparsers.add_parser("stats", help="Print listing and group counts by status")

    reset = subparsers.add_parser("reset-stale", help="Requeue abandoned processing rows")
    reset.add_argument(
        "--minutes", type=int, default=None, help="Age after which processing is stale"
    )

    approve = subparsers.add_parser("approve", help="Approve a group pending review")
    approve.add_argument("group_id", type=int)

    reject = subparsers.add_parser("reject", help="Reject a group pending review")
    reject.add_argument("group_id", type=int)
    reject.add_argument("--reason", default=None, help="Why the listings are different")

    serve = subparsers.add_parser("serve", help="Run the worker pool continuously")
    serve.add_argument(
        "--interval", type=float, default=None, help="Seconds to sleep between batches"
    )
    return parser


def main() -> None:
    """Main entry point."""
    args = build_parser().parse_args()

    configure_logging(
        json_output=args.json_logs, level=logging.DEBUG if args.debug else logging.INFO
    )

    try:
        settings = Settings()
    except Exception as e:
        logger.error("failed_to_load_settings", error=str(e))
        print(f"Error: Failed to load settings. {e}")
        print("Settings are read from LISTING_DEDUP_* environment variables or a .env file.")
        sys.exit(1)

    if not settings.enabled and args.command in ("process", "serve"):
        logger.info("dedup_disabled")
        return

    logger.info("starting_listing_dedup", command=args.command, db_path=settings.database_path)

    try:
        if args.command == "process":
            asyncio.run(
                run_process(
                    settings,
                    listing_id=args.listing,
                    limit=args.limit,
                    concurrency=args.concurrency,
                )
            )
        elif args.command == "stats":
            asyncio.run(run_stats(settings))
        elif args.command == "reset-stale":
            asyncio.run(run_reset_stale(settings, minutes=args.minutes))
        elif args.command in ("approve", "reject"):
            asyncio.run(
                run_review(
                    settings,
                    group_id=args.group_id,
                    approve=args.command == "approve",
                    reason=getattr(args, "reason", None),
                )
            )
        elif args.command == "serve":
            asyncio.run(run_serve(settings, interval=args.interval))
    except DedupError as e:
        print(f"Error: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("listing_dedup_interrupted")


if __name__ == "__main__":
    main()
