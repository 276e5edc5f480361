"""Fetchers for Bandcamp fan collections and "also collected by" listings.

:class:`Fetcher` is the contract the orchestrator depends on. Its only
production implementation, :class:`BandcampFetcher`, reads the JSON blobs that
Bandcamp embeds in fan and release pages and follows the two paginated JSON
APIs behind them.

Every page returned carries the token needed to resume its listing; the token
is None once the listing is exhausted.
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
from bs4 import BeautifulSoup
from pydantic import BaseModel, ValidationError

from bandrec.api.exceptions import (
    BandRecException,
    EntityGone,
    PageFormatError,
    RateLimited,
    TransientFetchError,
    UnknownUser,
)
from bandrec.config import CrawlerConfig
from bandrec.crawler.rate_limiter import RateLimiter
from bandrec.crawler.types import (
    ITEM_TYPES,
    Collector,
    CollectionPage,
    CollectorsPage,
    Item,
)

# Configure module logger
logger = logging.getLogger(__name__)

BANDCAMP_URL = "https://bandcamp.com"
COLLECTION_ITEMS_URL = f"{BANDCAMP_URL}/api/fancollection/1/collection_items"
COLLECTORS_URL = f"{BANDCAMP_URL}/api/tralbumcollectors/2/thumbs"

USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0 Safari/537.36 BandRec/0.1"
)

# Release pages live on artist subdomains
BANDCAMP_ITEM_RE = re.compile(r"^https?://[a-z0-9-]+\.bandcamp\.com")

CURSOR_SEPARATOR = ":"


# ----- embedded blob models -----


class CollectorEntry(BaseModel):
    fan_id: int
    username: str
    name: Optional[str] = None
    token: Optional[str] = None

    def to_collector(self) -> Collector:
        return Collector(
            fan_id=self.fan_id,
            username=self.username,
            name=self.name or self.username,
        )


class CollectionEntry(BaseModel):
    item_id: int
    item_type: str
    item_title: Optional[str] = None
    item_url: Optional[str] = None
    album_id: Optional[int] = None
    album_title: Optional[str] = None
    band_id: int
    band_name: Optional[str] = None
    token: Optional[str] = None

    def to_item(self) -> Item:
        """Convert to an Item; tracks on an album are stored as the album."""
        if self.album_id is not None:
            item_id = self.album_id
            item_type = "album"
            title = self.album_title or self.item_title or ""
        else:
            item_id = self.item_id
            item_type = self.item_type
            title = self.item_title or ""
        return Item(
            item_id=item_id,
            item_type=item_type,
            item_title=title,
            item_url=self.item_url or "",
            band_id=self.band_id,
            band_name=self.band_name or "",
        )


class CollectionData(BaseModel):
    last_token: Optional[str] = None
    item_count: int = 0
    batch_size: int = 0


class ItemCache(BaseModel):
    collection: Dict[str, CollectionEntry] = {}


class FanPageBlob(BaseModel):
    fan_data: CollectorEntry
    collection_data: CollectionData
    item_cache: ItemCache


class CollectionItemsResponse(BaseModel):
    items: List[CollectionEntry] = []
    more_available: bool = False


class CollectorsBlob(BaseModel):
    thumbs: List[CollectorEntry] = []
    more_thumbs_available: bool = False


class PageProperties(BaseModel):
    item_type: str
    item_id: int


class CollectorsResponse(BaseModel):
    results: List[CollectorEntry] = []
    more_available: bool = False


def _to_items(entries: List[CollectionEntry]) -> List[Item]:
    items = []
    for entry in entries:
        if entry.item_type not in ITEM_TYPES:
            logger.warning(
                f"Skipping collection entry of unknown type {entry.item_type!r}",
                extra={"item_id": entry.item_id},
            )
            continue
        items.append(entry.to_item())
    return items


def _last_token(entries: List[Any]) -> Optional[str]:
    for entry in reversed(entries):
        if entry.token:
            return entry.token
    return None


def encode_cursor(tralbum_type: str, tralbum_id: int, token: str) -> str:
    """Pack everything the collectors API needs to resume into one token."""
    return CURSOR_SEPARATOR.join((tralbum_type, str(tralbum_id), token))


def decode_cursor(cursor: str) -> Tuple[str, int, str]:
    """Inverse of :func:`encode_cursor`.

    Raises:
        ValueError: If the cursor was not produced by encode_cursor.
    """
    tralbum_type, tralbum_id, token = cursor.split(CURSOR_SEPARATOR, 2)
    return tralbum_type, int(tralbum_id), token


class Fetcher(ABC):
    """Contract for reading the Bandcamp collection graph."""

    @abstractmethod
    def fetch_fan(self, username: str) -> CollectionPage:
        """Resolve a fan and read the first page of their collection.

        Raises:
            UnknownUser: If the username does not exist.
        """

    @abstractmethod
    def fetch_collection_page(self, fan_id: int, token: str) -> CollectionPage:
        """Read the collection page that follows ``token``."""

    @abstractmethod
    def fetch_collectors_page(
        self, item: Item, token: Optional[str] = None
    ) -> CollectorsPage:
        """Read a page of an item's "also collected by" listing.

        ``token=None`` reads the item's own page, i.e. the first listing page.
        """

    def close(self) -> None:
        """Release network resources."""


class BandcampFetcher(Fetcher):
    """Fetcher backed by bandcamp.com.

    Args:
        config: Supplies the request timeout, page size and request budget.
        client: Optional preconfigured httpx client (tests pass one with a
            mock transport).
        rate_limiter: Optional shared limiter; one is created from the config
            otherwise.

    Example:
        >>> fetcher = BandcampFetcher(CrawlerConfig())
        >>> page = fetcher.fetch_fan("somefan")
        >>> page.collector.fan_id
    """

    def __init__(
        self,
        config: CrawlerConfig,
        client: Optional[httpx.Client] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        self.page_size = config.page_size
        self.rate_limiter = rate_limiter or RateLimiter(config.requests_per_minute)
        self.client = client or httpx.Client(
            timeout=config.fetch_timeout,
            headers={"User-Agent": USER_AGENT},
            follow_redirects=True,
        )

    def close(self) -> None:
        self.client.close()

    def _request(
        self,
        method: str,
        url: str,
        not_found: Callable[[], BandRecException],
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a rate-limited request and map failures to the taxonomy."""
        self.rate_limiter.acquire()
        logger.debug(f"{method} {url}")
        try:
            response = self.client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientFetchError(
                f"Timed out fetching {url}", details={"url": url}
            ) from e
        except httpx.TransportError as e:
            raise TransientFetchError(
                f"Network error fetching {url}",
                details={"url": url, "error": str(e)},
            ) from e

        status = response.status_code
        if status == 429:
            logger.warning(f"Rate limited by Bandcamp on {url}")
            raise RateLimited(url)
        if status in (404, 410):
            raise not_found()
        if status >= 500:
            raise TransientFetchError(
                f"Bandcamp returned HTTP {status}",
                details={"url": url, "status_code": status},
            )
        if status >= 400:
            raise PageFormatError(url, RuntimeError(f"HTTP {status}"))
        return response

    @staticmethod
    def _parse_json(response: httpx.Response, model: Any) -> Any:
        try:
            return model.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise PageFormatError(str(response.request.url), e) from e

    @staticmethod
    def _parse_blob(url: str, raw: Optional[str], model: Any) -> Any:
        if raw is None:
            raise PageFormatError(url, RuntimeError("Missing data-blob attribute"))
        try:
            return model.model_validate(json.loads(raw))
        except (ValueError, ValidationError) as e:
            raise PageFormatError(url, e) from e

    def fetch_fan(self, username: str) -> CollectionPage:
        url = f"{BANDCAMP_URL}/{username}"
        logger.info(f"Reading fan page for {username}")
        response = self._request("GET", url, lambda: UnknownUser(username))

        soup = BeautifulSoup(response.text, "html.parser")
        node = soup.find(id="pagedata")
        if node is None:
            raise PageFormatError(url, RuntimeError("Missing #pagedata"))
        blob = self._parse_blob(url, node.get("data-blob"), FanPageBlob)

        data = blob.collection_data
        more_available = data.item_count > data.batch_size and data.last_token
        return CollectionPage(
            items=_to_items(list(blob.item_cache.collection.values())),
            token=data.last_token if more_available else None,
            collector=blob.fan_data.to_collector(),
            total_count=data.item_count,
        )

    def fetch_collection_page(self, fan_id: int, token: str) -> CollectionPage:
        logger.debug(f"Reading next collection page for fan {fan_id}")
        response = self._request(
            "POST",
            COLLECTION_ITEMS_URL,
            lambda: EntityGone(COLLECTION_ITEMS_URL, "Collection not found"),
            json={
                "fan_id": fan_id,
                "older_than_token": token,
                "count": self.page_size,
            },
        )
        result = self._parse_json(response, CollectionItemsResponse)
        next_token = _last_token(result.items) if result.more_available else None
        return CollectionPage(items=_to_items(result.items), token=next_token)

    def fetch_collectors_page(
        self, item: Item, token: Optional[str] = None
    ) -> CollectorsPage:
        if token is None:
            return self._fetch_item_page(item)

        try:
            tralbum_type, tralbum_id, api_token = decode_cursor(token)
        except ValueError as e:
            raise PageFormatError(item.item_url, e) from e

        response = self._request(
            "POST",
            COLLECTORS_URL,
            lambda: EntityGone(item.item_url),
            json={
                "tralbum_type": tralbum_type,
                "tralbum_id": tralbum_id,
                "token": api_token,
                "count": self.page_size,
            },
        )
        result = self._parse_json(response, CollectorsResponse)

        next_token = None
        last = _last_token(result.results) if result.more_available else None
        if last:
            next_token = encode_cursor(tralbum_type, tralbum_id, last)
        return CollectorsPage(
            collectors=[entry.to_collector() for entry in result.results],
            token=next_token,
        )

    def _fetch_item_page(self, item: Item) -> CollectorsPage:
        url = item.item_url
        if not BANDCAMP_ITEM_RE.match(url):
            raise EntityGone(url, "Not a Bandcamp release page")

        logger.info(f"Fetching collectors for {item.item_title}")
        response = self._request("GET", url, lambda: EntityGone(url))

        soup = BeautifulSoup(response.text, "html.parser")
        node = soup.find(id="collectors-data")
        if node is None:
            if soup.find(id="subscription-collectors-data") is not None:
                raise EntityGone(url, "Subscription pages are not supported")
            raise PageFormatError(url, RuntimeError("Missing #collectors-data"))
        blob = self._parse_blob(url, node.get("data-blob"), CollectorsBlob)

        next_token = None
        last = _last_token(blob.thumbs) if blob.more_thumbs_available else None
        if last:
            meta = soup.find("meta", attrs={"name": "bc-page-properties"})
            if meta is None:
                raise PageFormatError(url, RuntimeError("Missing bc-page-properties"))
            properties = self._parse_blob(url, meta.get("content"), PageProperties)
            next_token = encode_cursor(properties.item_type, properties.item_id, last)

        return CollectorsPage(
            collectors=[entry.to_collector() for entry in blob.thumbs],
            token=next_token,
        )
