"""Shared fixtures: a throwaway SQLite store and an in-memory page fetcher."""

import pytest

from database import PriceStore
from exceptions import FetchError


class FakeFetcher:
    """Serves canned HTML per URL; unknown URLs fail like a network error."""

    def __init__(self, pages=None):
        self.pages = dict(pages or {})
        self.requested = []

    async def fetch(self, url: str) -> str:
        self.requested.append(url)
        if url not in self.pages:
            raise FetchError(f"Failed to fetch {url}: connection refused")
        return self.pages[url]


def product_page(name: str, *prices: str) -> str:
    price_html = "".join(f'<span class="price">{p}</span>' for p in prices)
    return f"""
    <html><body>
      <div class="product">
        <h1 class="title">  {name}  </h1>
        <div class="prices">{price_html}</div>
      </div>
    </body></html>
    """


@pytest.fixture
def store(tmp_path):
    store = PriceStore(f"sqlite:///{tmp_path / 'pricewatch.db'}")
    store.init_db()
    yield store
    store.dispose()


@pytest.fixture
def fetcher():
    return FakeFetcher()
