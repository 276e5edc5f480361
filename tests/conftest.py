"""Shared fixtures for the BandRec tests.

Provides a temporary graph store, a fast test configuration and
:class:`FakeFetcher`, an in-memory Bandcamp that serves paginated fan
collections and "also collected by" listings.
"""

import sys
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pytest
from fastapi.testclient import TestClient

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from bandrec.api.exceptions import UnknownUser
from bandrec.api.main import create_app
from bandrec.config import CrawlerConfig
from bandrec.crawler.fetcher import Fetcher
from bandrec.crawler.orchestrator import CrawlOrchestrator
from bandrec.crawler.store import GraphStore
from bandrec.crawler.types import Collector, CollectionPage, CollectorsPage, Item

ALICE, BOB, CAROL, DAVE = 1, 2, 3, 4
ITEM_A, ITEM_B, ITEM_C, ITEM_D = 101, 102, 103, 104

TTL = 30 * 86400


def make_item(item_id: int, title: Optional[str] = None) -> Item:
    return Item(
        item_id=item_id,
        item_type="album",
        item_title=title or f"Album {item_id}",
        item_url=f"https://band{item_id}.bandcamp.com/album/a{item_id}",
        band_id=item_id * 10,
        band_name=f"Band {item_id}",
    )


def make_collector(fan_id: int, username: Optional[str] = None) -> Collector:
    username = username or f"fan{fan_id}"
    return Collector(fan_id=fan_id, username=username, name=username.title())


class FakeFetcher(Fetcher):
    """In-memory Bandcamp.

    Collections are listed newest first. ``fail(key, *errors)`` makes the next
    calls for ``key`` raise the given errors in order; keys are
    ``("fan", username)``, ``("collection", fan_id)`` and
    ``("collectors", item_id)``.
    """

    def __init__(self, page_size: int = 2):
        self.page_size = page_size
        self.fans: Dict[str, Collector] = {}
        self.collections: Dict[int, List[Item]] = {}
        self.listings: Dict[int, List[Collector]] = {}
        self.calls: List[Tuple[str, object]] = []
        self.gate: Optional[threading.Event] = None
        self._errors: Dict[Tuple[str, object], List[Exception]] = {}
        self._lock = threading.Lock()

    def add_fan(self, fan_id: int, username: str, item_ids: List[int]) -> Collector:
        collector = make_collector(fan_id, username)
        self.fans[username] = collector
        self.collections[fan_id] = [make_item(item_id) for item_id in item_ids]
        for item_id in item_ids:
            self.listings.setdefault(item_id, []).append(collector)
        return collector

    def fail(self, key: Tuple[str, object], *errors: Exception) -> None:
        self._errors.setdefault(key, []).extend(errors)

    def _record(self, key: Tuple[str, object]) -> None:
        with self._lock:
            self.calls.append(key)
            errors = self._errors.get(key)
            error = errors.pop(0) if errors else None
        if error is not None:
            raise error

    def _page(self, entries: list, offset: int) -> Tuple[list, Optional[str]]:
        end = offset + self.page_size
        token = str(end) if end < len(entries) else None
        return entries[offset:end], token

    def fetch_fan(self, username: str) -> CollectionPage:
        self._record(("fan", username))
        collector = self.fans.get(username)
        if collector is None:
            raise UnknownUser(username)
        entries = self.collections[collector.fan_id]
        items, token = self._page(entries, 0)
        return CollectionPage(
            items=list(items),
            token=token,
            collector=collector,
            total_count=len(entries),
        )

    def fetch_collection_page(self, fan_id: int, token: str) -> CollectionPage:
        self._record(("collection", fan_id))
        items, next_token = self._page(self.collections[fan_id], int(token))
        return CollectionPage(items=list(items), token=next_token)

    def fetch_collectors_page(
        self, item: Item, token: Optional[str] = None
    ) -> CollectorsPage:
        if self.gate is not None:
            self.gate.wait(timeout=10)
        self._record(("collectors", item.item_id))
        collectors, next_token = self._page(
            self.listings.get(item.item_id, []), int(token or 0)
        )
        return CollectorsPage(collectors=list(collectors), token=next_token)


def seed_graph(
    store: GraphStore,
    collections: Dict[int, List[int]],
    listings: Dict[int, List[int]],
) -> None:
    """Write a finished crawl straight into the store.

    Args:
        store: Initialized store.
        collections: fan_id -> item ids published as ``collects`` rows.
        listings: item_id -> fan ids written as ``collected_by`` rows.
    """
    fan_ids = set(collections) | {f for fans in listings.values() for f in fans}
    for fan_id in sorted(fan_ids):
        store.upsert_collector(make_collector(fan_id))
    for fan_id, item_ids in collections.items():
        store.replace_collection(fan_id, [make_item(i) for i in item_ids])
    for item_id, fans in listings.items():
        store.upsert_item(make_item(item_id))
        store.add_collected_by(item_id, [make_collector(f) for f in fans])


@pytest.fixture
def config(tmp_path) -> CrawlerConfig:
    """Configuration with tiny delays so crawl tests finish quickly."""
    return CrawlerConfig(
        database=str(tmp_path / "bandrec.sqlite3"),
        workers=2,
        max_jobs=2,
        max_fetch_retries=3,
        retry_backoff_base=0.01,
        retry_backoff_max=0.02,
        rate_limit_pause=0.05,
        poll_interval=0.01,
        sweep_interval=0.05,
    )


@pytest.fixture
def store(config) -> GraphStore:
    graph_store = GraphStore(config.database, config.staleness_ttl)
    graph_store.initialize()
    return graph_store


@pytest.fixture
def fetcher() -> FakeFetcher:
    """The alice/bob/carol graph.

    alice collected A and B, bob collected A and C, carol collected C only
    and dave collected D only.
    """
    fake = FakeFetcher()
    fake.add_fan(ALICE, "alice", [ITEM_A, ITEM_B])
    fake.add_fan(BOB, "bob", [ITEM_C, ITEM_A])
    fake.add_fan(CAROL, "carol", [ITEM_C])
    fake.add_fan(DAVE, "dave", [ITEM_D])
    return fake


@pytest.fixture
def orchestrator(store, fetcher, config):
    crawl = CrawlOrchestrator(store, fetcher, config)
    yield crawl
    crawl.shutdown()


@pytest.fixture
def client(config, fetcher):
    """API client over the alice/bob/carol graph, without the sweeper."""
    app = create_app(config, fetcher=fetcher, background=False)
    with TestClient(app) as test_client:
        yield test_client


def wait_for_stage(client, username: str, stage: int = 3, timeout: float = 10.0) -> dict:
    """Poll ``/api/get_status`` until the crawl reaches ``stage``."""
    deadline = time.monotonic() + timeout
    while True:
        response = client.get("/api/get_status", params={"username": username})
        if response.status_code == 200 and response.json()["stage"] >= stage:
            return response.json()
        if time.monotonic() > deadline:
            raise AssertionError(f"{username} did not reach stage {stage}: {response.text}")
        time.sleep(0.02)
