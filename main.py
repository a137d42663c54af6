#!/usr/bin/env python3
"""
Price Watch - Main Entry Point

Periodically fetches the configured product pages, records price changes
and removes price history older than the retention window.
"""
import asyncio
import logging
import sys

from sqlalchemy.exc import SQLAlchemyError

from config import settings
from database import PriceStore
from exceptions import PriceWatchError
from scheduler import JobTrigger
from services.history_service import get_product_summaries, format_freshness_string
from tracker import run_check, cleanup_old_prices

logger = logging.getLogger(__name__)

USAGE = "Usage: python main.py [run|once|cleanup|init|status]"


def setup_logging():
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(settings.log_file, encoding="utf-8")
        ]
    )
    # APScheduler logs every job submission at INFO
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


def open_store() -> PriceStore:
    """Connect to the database and create tables. Exits the process if the database is unreachable."""
    store = PriceStore(settings.resolved_database_url)
    try:
        store.init_db()
    except SQLAlchemyError as e:
        logger.critical(f"Could not connect to the database: {e}")
        sys.exit(1)
    logger.info("Database initialized")
    return store


async def run_service(store: PriceStore):
    """Run the scheduler until interrupted."""
    trigger = JobTrigger(store)
    await trigger.run_forever()


def run_once(store: PriceStore) -> dict:
    """Run a single price check (useful for testing selectors)."""
    return asyncio.run(run_check(store))


def print_status(store: PriceStore):
    summaries = get_product_summaries(store)
    print(f"Tracked products: {len(summaries)}\n")
    print(f"{'Product':<40} | {'Price':>10} | {'Changed':<12} | {'Records':>7}")
    print("-" * 80)
    for s in summaries:
        price = f"{s['latest_price']:.2f}" if s["latest_price"] is not None else "-"
        print(
            f"{s['name'][:40]:<40} | {price:>10} | "
            f"{format_freshness_string(s['last_changed']):<12} | {s['observations']:>7}"
        )


def main():
    """Main entry point."""
    command = sys.argv[1] if len(sys.argv) > 1 else "run"
    if command not in ("run", "once", "cleanup", "init", "status"):
        print(f"Unknown command: {command}")
        print(USAGE)
        sys.exit(1)

    setup_logging()
    store = open_store()

    try:
        if command == "once":
            print("Running single check...")
            stats = run_once(store)
            print(f"Done: {stats['recorded']} recorded, {stats['unchanged']} unchanged, {stats['failed']} failed")
        elif command == "cleanup":
            print(f"Removing price records older than {settings.retention_days} days...")
            try:
                count = cleanup_old_prices(store)
            except PriceWatchError as e:
                print(f"Cleanup failed: {e}")
                sys.exit(1)
            print(f"Done! Removed {count} records.")
        elif command == "init":
            print("Done!")
        elif command == "status":
            print_status(store)
        else:
            print("Starting Price Watch...")
            print(f"Price check: '{settings.check_cron}', cleanup: '{settings.cleanup_cron}'")
            print("-" * 40)
            asyncio.run(run_service(store))
    finally:
        store.dispose()


if __name__ == "__main__":
    main()
