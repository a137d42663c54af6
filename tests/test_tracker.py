"""Tests for change detection, the observation pipeline and the retention sweep."""

import json
from datetime import timedelta

import pytest

from config import Target
from database import Product, PriceHistory, utcnow
from exceptions import StorageError
from tracker import should_record, record_observation, run_check, cleanup_old_prices

from conftest import FakeFetcher, product_page

URL = "https://example/item"
TARGET = Target(url=URL, name_selector=".title", price_selector=".price")


def _prices(store, url=URL):
    session = store.get_session()
    try:
        return [
            p.price for p in session.query(PriceHistory).join(Product)
            .filter(Product.url == url)
            .order_by(PriceHistory.recorded_at, PriceHistory.id)
        ]
    finally:
        session.close()


def _product_count(store):
    session = store.get_session()
    try:
        return session.query(Product).count()
    finally:
        session.close()


def test_should_record():
    assert should_record(None, 10.0) is True
    assert should_record(10.0, 10.0) is False
    assert should_record(10.0, 10.01) is True
    assert should_record(10.01, 10.0) is True


@pytest.mark.asyncio
async def test_end_to_end_price_change(store):
    fetcher = FakeFetcher({URL: product_page("Widget", "₺50,00")})

    stats = await run_check(store, fetcher=fetcher, targets=[TARGET])

    assert stats["recorded"] == 1
    assert stats["new_products"] == 1
    assert _prices(store) == [50.0]

    fetcher.pages[URL] = product_page("Widget", "₺55,00")
    stats = await run_check(store, fetcher=fetcher, targets=[TARGET])

    assert stats["recorded"] == 1
    assert stats["new_products"] == 0
    assert _prices(store) == [50.0, 55.0]
    assert _product_count(store) == 1

    session = store.get_session()
    try:
        product = session.query(Product).one()
        assert product.name == "Widget"
        assert product.url == URL
    finally:
        session.close()


@pytest.mark.asyncio
async def test_unchanged_price_is_not_recorded_twice(store):
    fetcher = FakeFetcher({URL: product_page("Widget", "₺50,00")})

    await run_check(store, fetcher=fetcher, targets=[TARGET])
    stats = await run_check(store, fetcher=fetcher, targets=[TARGET])

    assert stats["recorded"] == 0
    assert stats["unchanged"] == 1
    assert _prices(store) == [50.0]


@pytest.mark.asyncio
async def test_price_returning_to_earlier_value_is_recorded(store):
    fetcher = FakeFetcher({URL: product_page("Widget", "₺50,00")})
    await run_check(store, fetcher=fetcher, targets=[TARGET])
    fetcher.pages[URL] = product_page("Widget", "₺45,00")
    await run_check(store, fetcher=fetcher, targets=[TARGET])
    fetcher.pages[URL] = product_page("Widget", "₺50,00")
    await run_check(store, fetcher=fetcher, targets=[TARGET])

    assert _prices(store) == [50.0, 45.0, 50.0]


@pytest.mark.asyncio
async def test_failing_targets_do_not_stop_others(store):
    targets = [
        Target(url="https://example/down", name_selector=".title", price_selector=".price"),
        Target(url="https://example/no-price", name_selector=".title", price_selector=".price"),
        Target(url="https://example/garbage", name_selector=".title", price_selector=".price"),
        Target(url="https://example/free", name_selector=".title", price_selector=".price"),
        TARGET,
    ]
    fetcher = FakeFetcher({
        "https://example/no-price": product_page("Gadget"),
        "https://example/garbage": product_page("Gizmo", "call for price"),
        "https://example/free": product_page("Freebie", "₺0,00"),
        URL: product_page("Widget", "₺50,00"),
    })

    stats = await run_check(store, fetcher=fetcher, targets=targets)

    assert stats["total"] == 5
    assert stats["failed"] == 4
    assert stats["recorded"] == 1
    kinds = {e["url"]: e["kind"] for e in stats["errors"]}
    assert kinds == {
        "https://example/down": "fetch",
        "https://example/no-price": "extraction",
        "https://example/garbage": "normalization",
        "https://example/free": "invalid_price",
    }
    assert _prices(store) == [50.0]
    assert _product_count(store) == 1


@pytest.mark.asyncio
async def test_storage_error_is_reported_per_target(store):
    other_url = "https://example/other-listing"
    targets = [TARGET, Target(url=other_url, name_selector=".title", price_selector=".price")]
    # Same product name at two URLs violates the unique name constraint
    fetcher = FakeFetcher({
        URL: product_page("Widget", "₺50,00"),
        other_url: product_page("Widget", "₺49,00"),
    })

    stats = await run_check(store, fetcher=fetcher, targets=targets, max_concurrency=1)

    assert stats["recorded"] == 1
    assert stats["failed"] == 1
    assert stats["errors"][0]["url"] == other_url
    assert stats["errors"][0]["kind"] == "storage"
    assert _product_count(store) == 1


@pytest.mark.asyncio
async def test_run_check_reads_targets_file(store, tmp_path, monkeypatch):
    targets_file = tmp_path / "targets.json"
    targets_file.write_text(json.dumps({"targets": [TARGET.model_dump()]}), encoding="utf-8")
    monkeypatch.setattr("config.settings.targets_file", str(targets_file))
    fetcher = FakeFetcher({URL: product_page("Widget", "₺50,00")})

    stats = await run_check(store, fetcher=fetcher)

    assert stats["total"] == 1
    assert stats["recorded"] == 1


@pytest.mark.asyncio
async def test_run_check_with_missing_targets_file(store, tmp_path, monkeypatch):
    monkeypatch.setattr("config.settings.targets_file", str(tmp_path / "missing.json"))
    fetcher = FakeFetcher()

    stats = await run_check(store, fetcher=fetcher)

    assert stats["total"] == 0
    assert stats["errors"][0]["kind"] == "config"
    assert fetcher.requested == []


def test_record_observation_renames_product(store):
    record_observation(store, URL, "Widget", 50.0)
    is_new, recorded = record_observation(store, URL, "Widget v2", 50.0)

    assert is_new is False
    assert recorded is False
    session = store.get_session()
    try:
        assert session.query(Product).one().name == "Widget v2"
    finally:
        session.close()


def test_cleanup_removes_only_records_outside_window(store):
    now = utcnow()
    product, _ = store.get_or_create_product(URL, "Widget")
    store.add_price(product.id, 40.0, recorded_at=now - timedelta(days=91))
    store.add_price(product.id, 45.0, recorded_at=now - timedelta(days=89))

    deleted = cleanup_old_prices(store, days_retention=90, now=now)

    assert deleted == 1
    assert _prices(store) == [45.0]


def test_cleanup_with_nothing_to_delete(store):
    product, _ = store.get_or_create_product(URL, "Widget")
    store.add_price(product.id, 45.0)

    assert cleanup_old_prices(store, days_retention=90) == 0
    assert _prices(store) == [45.0]


def test_cleanup_keeps_products(store):
    now = utcnow()
    product, _ = store.get_or_create_product(URL, "Widget")
    store.add_price(product.id, 40.0, recorded_at=now - timedelta(days=200))

    assert cleanup_old_prices(store, days_retention=90, now=now) == 1
    assert _product_count(store) == 1


def test_cleanup_reports_storage_failure(store, monkeypatch):
    def broken_delete(cutoff):
        raise StorageError("database is locked")

    monkeypatch.setattr(store, "delete_prices_older_than", broken_delete)

    with pytest.raises(StorageError):
        cleanup_old_prices(store, days_retention=90)
