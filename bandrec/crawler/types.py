"""Data types shared by the graph store, fetcher and orchestrator."""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import List, Optional

ITEM_TYPES = ("album", "track", "package", "lepledge", "subscription")


class Stage(IntEnum):
    """Crawl stage as persisted in ``collection_target.stage``."""

    ITEMS = 1
    COLLECTORS = 2
    DONE = 3


@dataclass
class Item:
    """A collectible Bandcamp release."""

    item_id: int
    item_type: str
    item_title: str
    item_url: str
    band_id: int
    band_name: str
    token: Optional[str] = None
    also_collected_count: int = 0
    last_updated: int = 0

    def __post_init__(self) -> None:
        if self.item_type not in ITEM_TYPES:
            raise ValueError(f"Unknown item type: {self.item_type!r}")


@dataclass
class Collector:
    """A Bandcamp fan."""

    fan_id: int
    username: str
    name: str
    token: Optional[str] = None
    last_updated: int = 0


@dataclass
class Target:
    """Progress record of a user's crawl job."""

    fan_id: int
    stage: int
    count_left: int
    count_total: int
    eta: int

    def to_dict(self) -> dict:
        return {
            "stage": self.stage,
            "count_left": self.count_left,
            "count_total": self.count_total,
            "eta": self.eta,
        }


@dataclass
class CollectionPage:
    """One page of a fan's collection.

    ``collector`` is only set on the first page, which is read from the fan's
    profile. ``token`` resumes the listing and is None once it is exhausted.
    """

    items: List[Item] = field(default_factory=list)
    token: Optional[str] = None
    collector: Optional[Collector] = None
    total_count: Optional[int] = None

    @property
    def more_available(self) -> bool:
        return self.token is not None


@dataclass
class CollectorsPage:
    """One page of an item's "also collected by" listing."""

    collectors: List[Collector] = field(default_factory=list)
    token: Optional[str] = None

    @property
    def more_available(self) -> bool:
        return self.token is not None
