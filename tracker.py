import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from config import settings, load_targets, Target
from database import PriceStore, utcnow
from exceptions import PriceWatchError, ConfigError, StorageError
from scraper import Fetcher, PageFetcher, scrape_product

logger = logging.getLogger(__name__)


def should_record(last_known_price: Optional[float], observed_price: float) -> bool:
    """
    Decide whether an observed price warrants a new history entry.

    True for a product with no history, or when the price differs from the
    most recent entry. Prices are compared exactly: they are already rounded
    to monetary units by the page.
    """
    if last_known_price is None:
        return True
    return observed_price != last_known_price


def _new_stats(total: int = 0) -> dict:
    return {
        "total": total,
        "recorded": 0,
        "unchanged": 0,
        "new_products": 0,
        "failed": 0,
        "errors": [],
    }


def _record_failure(stats: dict, target: Target, kind: str, detail: str):
    logger.error(f"Could not process {target.url} [{kind}]: {detail}")
    stats["failed"] += 1
    stats["errors"].append({"url": target.url, "kind": kind, "detail": detail})


def record_observation(store: PriceStore, url: str, name: str, price: float,
                       observed_at: Optional[datetime] = None) -> tuple[bool, bool]:
    """
    Persist one observation in a single transaction.

    Returns (is_new_product, price_recorded).
    """
    with store.session_scope() as session:
        product, is_new = store.get_or_create_product(url, name, session=session)
        last_price = store.get_latest_price(product.id, session=session)
        last_value = last_price.price if last_price else None

        if not should_record(last_value, price):
            logger.info(f"   -> Price unchanged for {name} ({price:.2f}). Skipping.")
            return is_new, False

        if last_value is None:
            logger.info(f"   -> First price for {name}: {price:.2f}. Recording.")
        else:
            logger.info(f"   -> Price changed for {name}: {last_value:.2f} -> {price:.2f}. Recording.")
        store.add_price(product.id, price, recorded_at=observed_at, session=session)
        return is_new, True


async def process_target(target: Target, store: PriceStore, fetcher: Fetcher, stats: dict):
    """Fetch, parse and persist one target. Failures are logged and counted, never raised."""
    try:
        name, price = await scrape_product(target, fetcher)
    except PriceWatchError as e:
        _record_failure(stats, target, e.kind, str(e))
        return

    # A zero or negative price is treated as a failed read, not a free product
    if price <= 0:
        _record_failure(stats, target, "invalid_price", f"price must be > 0, got {price}")
        return

    logger.info(f"   Product: {name}, current price: {price:.2f}")

    try:
        is_new, recorded = await asyncio.to_thread(record_observation, store, target.url, name, price)
    except StorageError as e:
        _record_failure(stats, target, e.kind, str(e))
        return

    if is_new:
        stats["new_products"] += 1
    if recorded:
        stats["recorded"] += 1
    else:
        stats["unchanged"] += 1


async def run_check(store: PriceStore, fetcher: Optional[Fetcher] = None,
                    targets: Optional[list[Target]] = None,
                    max_concurrency: Optional[int] = None) -> dict:
    """
    Run one full price check over all targets.

    Targets are read from the targets file when not given. Each target is an
    independent unit: a failure in one never stops the others.
    """
    logger.info(f"--- Price check started ({utcnow():%Y-%m-%d %H:%M:%S} UTC) ---")

    if targets is None:
        try:
            targets = load_targets()
        except ConfigError as e:
            logger.error(f"Price check aborted: {e}")
            stats = _new_stats()
            stats["errors"].append({"url": None, "kind": e.kind, "detail": str(e)})
            return stats

    stats = _new_stats(len(targets))
    semaphore = asyncio.Semaphore(max_concurrency or settings.max_concurrent_targets)

    async def worker(target: Target, page_fetcher: Fetcher):
        async with semaphore:
            await process_target(target, store, page_fetcher, stats)

    async def run_all(page_fetcher: Fetcher):
        # return_exceptions keeps one unexpected error from cancelling sibling targets
        results = await asyncio.gather(*[worker(t, page_fetcher) for t in targets], return_exceptions=True)
        for target, result in zip(targets, results):
            if isinstance(result, Exception):
                _record_failure(stats, target, "unexpected", repr(result))

    if fetcher is None:
        async with PageFetcher() as page_fetcher:
            await run_all(page_fetcher)
    else:
        await run_all(fetcher)

    logger.info(
        f"--- Price check complete: {stats['total']} targets, {stats['recorded']} recorded, "
        f"{stats['unchanged']} unchanged, {stats['new_products']} new products, "
        f"{stats['failed']} failed ---"
    )
    return stats


def cleanup_old_prices(store: PriceStore, days_retention: Optional[int] = None,
                       now: Optional[datetime] = None) -> int:
    """Delete PriceHistory records older than the retention window. Returns the number deleted."""
    if days_retention is None:
        days_retention = settings.retention_days
    cutoff = (now or utcnow()) - timedelta(days=days_retention)

    logger.info(f"--- Cleanup started: removing price records older than {cutoff:%Y-%m-%d %H:%M:%S} ---")
    try:
        deleted_count = store.delete_prices_older_than(cutoff)
    except StorageError as e:
        logger.error(f"Cleanup failed: {e}")
        raise

    if deleted_count > 0:
        logger.info(f"Cleanup: Deleted {deleted_count} old price records (< {cutoff.date()})")
    else:
        logger.info("Cleanup: No old price records to delete")
    return deleted_count
