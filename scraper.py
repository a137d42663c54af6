import math
import re
import logging
import unicodedata
from typing import Optional, Protocol

import httpx
from bs4 import BeautifulSoup
from soupsieve import SelectorSyntaxError

from config import settings, Target
from exceptions import FetchError, ExtractionError, NormalizationError

logger = logging.getLogger(__name__)

# Currency code token at either end of the price text, e.g. "99,90 TL" or "TRY 99,90"
_CURRENCY_CODE_RE = re.compile(r"^[A-Z]{2,3}\.?(?=\s|\d|$)|(?<=[\s\d])[A-Z]{2,3}\.?$", re.IGNORECASE)


class Fetcher(Protocol):
    async def fetch(self, url: str) -> str: ...


class PageFetcher:
    """
    Fetches product pages over plain HTTP.

    Use as an async context manager so the underlying connection pool is
    opened once per pipeline run and closed afterwards.
    """

    def __init__(self, timeout: Optional[float] = None, user_agent: Optional[str] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.timeout = timeout if timeout is not None else settings.request_timeout_seconds
        self.user_agent = user_agent or settings.user_agent
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "PageFetcher":
        self._client = httpx.AsyncClient(
            timeout=self.timeout,
            follow_redirects=True,
            headers={
                "User-Agent": self.user_agent,
                "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            },
            transport=self._transport,
        )
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def close(self):
        if self._client:
            await self._client.aclose()
            self._client = None

    async def fetch(self, url: str) -> str:
        """Fetch a page and return its HTML. Raises FetchError on any network or HTTP error."""
        if self._client is None:
            raise FetchError("PageFetcher used outside of 'async with'")

        logger.info(f"Visiting: {url}")
        try:
            response = await self._client.get(url)
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise FetchError(f"Timed out after {self.timeout}s fetching {url}") from e
        except httpx.HTTPStatusError as e:
            raise FetchError(f"HTTP {e.response.status_code} fetching {url}") from e
        except httpx.HTTPError as e:
            raise FetchError(f"Failed to fetch {url}: {e}") from e
        return response.text


def extract_product(html: str, name_selector: str, price_selector: str) -> tuple[str, str]:
    """
    Apply the name and price selectors to a page.

    Returns (name, raw_price_text). Only the first price element with
    non-empty text is used: pages often repeat the price (e.g. a struck-through
    list price before the real one) and the first occurrence is the one trusted.
    """
    soup = BeautifulSoup(html, "lxml")

    try:
        name_elem = soup.select_one(name_selector)
        price_elems = soup.select(price_selector)
    except SelectorSyntaxError as e:
        raise ExtractionError(f"Invalid selector: {e}") from e

    if name_elem is None:
        raise ExtractionError(f"Name selector {name_selector!r} matched nothing")
    name = name_elem.get_text(strip=True)
    if not name:
        raise ExtractionError(f"Name selector {name_selector!r} matched only empty text")

    for elem in price_elems:
        text = elem.get_text(strip=True)
        if text:
            return name, text

    raise ExtractionError(f"Price selector {price_selector!r} matched no non-empty element")


def parse_price(price_str: str) -> float:
    """
    Parse a localized price (e.g. '₺1.234,56' or '99,90 TL') into a float.

    '.' is the thousands separator and ',' the decimal separator. The sign and
    magnitude are not checked here.
    """
    if not price_str:
        raise NormalizationError("Empty price text")

    # 1. Currency symbols and currency code
    cleaned = "".join(ch for ch in price_str if unicodedata.category(ch) != "Sc").strip()
    cleaned = _CURRENCY_CODE_RE.sub("", cleaned)
    cleaned = re.sub(r"\s+", "", cleaned)
    # 2. Thousands separator
    cleaned = cleaned.replace(".", "")
    # 3. Decimal separator
    cleaned = cleaned.replace(",", ".")

    try:
        value = float(cleaned)
    except ValueError as e:
        raise NormalizationError(f"Unparseable price text: {price_str!r}") from e

    if not math.isfinite(value):
        raise NormalizationError(f"Non-finite price: {price_str!r}")
    return value


async def scrape_product(target: Target, fetcher: Fetcher) -> tuple[str, float]:
    """Fetch a target page and return its (name, price)."""
    html = await fetcher.fetch(target.url)
    name, raw_price = extract_product(html, target.name_selector, target.price_selector)
    price = parse_price(raw_price)
    return name, price
