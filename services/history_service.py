import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func

from database import PriceStore, Product, PriceHistory, utcnow

logger = logging.getLogger(__name__)


def get_product_summaries(store: PriceStore) -> list[dict]:
    """
    Every tracked product with its latest price.

    Returns dicts with id, name, url, latest_price, last_changed and
    observations (number of stored price records), sorted by name.
    Products whose whole history has been cleaned up have latest_price None.
    """
    session = store.get_session()
    try:
        # Subquery to get the latest PriceHistory timestamp and record count for each product
        latest_price_subq = session.query(
            PriceHistory.product_id,
            func.max(PriceHistory.recorded_at).label("max_recorded"),
            func.count(PriceHistory.id).label("observations"),
        ).group_by(PriceHistory.product_id).subquery()

        rows = session.query(
            Product, PriceHistory.price, latest_price_subq.c.max_recorded, latest_price_subq.c.observations
        ).outerjoin(
            latest_price_subq, Product.id == latest_price_subq.c.product_id
        ).outerjoin(
            PriceHistory,
            (PriceHistory.product_id == latest_price_subq.c.product_id) &
            (PriceHistory.recorded_at == latest_price_subq.c.max_recorded)
        ).order_by(Product.name).all()

        summaries = {}
        for product, price, last_changed, observations in rows:
            # Two records sharing the latest timestamp would yield two rows; keep the first
            if product.id in summaries:
                continue
            summaries[product.id] = {
                "id": product.id,
                "name": product.name,
                "url": product.url,
                "latest_price": price,
                "last_changed": last_changed,
                "observations": observations or 0,
            }
        return list(summaries.values())
    finally:
        session.close()


def get_price_history(store: PriceStore, product_id: int, limit: Optional[int] = None) -> list[PriceHistory]:
    """Price records of one product, newest first."""
    session = store.get_session()
    try:
        query = session.query(PriceHistory).filter(
            PriceHistory.product_id == product_id
        ).order_by(PriceHistory.recorded_at.desc(), PriceHistory.id.desc())
        if limit:
            query = query.limit(limit)
        return query.all()
    finally:
        session.close()


def format_freshness_string(last_updated: Optional[datetime], now: Optional[datetime] = None) -> str:
    """Format a freshness indicator string."""
    if not last_updated:
        return "no data yet"

    delta = (now or utcnow()) - last_updated
    if delta < timedelta(minutes=1):
        return "just now"
    elif delta < timedelta(hours=1):
        minutes = int(delta.total_seconds() / 60)
        return f"{minutes} min ago"
    elif delta < timedelta(hours=24):
        hours = int(delta.total_seconds() / 3600)
        return f"{hours}h ago"
    else:
        days = delta.days
        return f"{days}d ago"
