"""Generate a synthetic Bandcamp collection graph for development.

Seeds a BandRec database with fake collectors, releases and both edge
relations, and marks every collector's crawl as complete, so the API can
serve recommendations without touching bandcamp.com.

Example:
    Run the script directly to seed the default database:
        $ python scripts/generate_fake_graph.py --database dev.sqlite3

    Then ask for recommendations:
        $ curl 'localhost:8000/api/get_recommendations?username=fan1'
"""

import argparse
import random
import sys
from pathlib import Path
from typing import Optional

import pandas as pd

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from bandrec.config import DEFAULT_STALENESS_TTL
from bandrec.crawler.store import GraphStore
from bandrec.crawler.types import Collector, Item, Stage

# Default configuration constants
DEFAULT_NUM_FANS = 50
DEFAULT_NUM_ITEMS = 200
DEFAULT_ITEMS_PER_FAN = 12
DEFAULT_LISTING_SIZE = 40


def generate_fake_collections(
    num_fans: int = DEFAULT_NUM_FANS,
    num_items: int = DEFAULT_NUM_ITEMS,
    items_per_fan: int = DEFAULT_ITEMS_PER_FAN,
    seed: Optional[int] = None,
) -> pd.DataFrame:
    """Generate random fan collections with a skewed item popularity.

    Args:
        num_fans: Number of fans. Must be positive.
        num_items: Number of releases. Must be positive.
        items_per_fan: Average collection size. Must be positive.
        seed: Optional random seed for reproducible graphs.

    Returns:
        DataFrame with fan_id and item_id columns, one row per collected
        release, without duplicates.

    Raises:
        ValueError: If any parameter is non-positive.
    """
    if num_fans <= 0 or num_items <= 0 or items_per_fan <= 0:
        raise ValueError("num_fans, num_items and items_per_fan must be positive")

    rng = random.Random(seed)
    # Lower item ids are more popular
    weights = [1.0 / (rank + 1) for rank in range(num_items)]

    rows = []
    for fan_id in range(1, num_fans + 1):
        size = max(2, int(rng.gauss(items_per_fan, items_per_fan / 3)))
        picked = set(rng.choices(range(1, num_items + 1), weights=weights, k=size))
        rows.extend({"fan_id": fan_id, "item_id": item_id} for item_id in picked)

    return pd.DataFrame(rows).drop_duplicates().reset_index(drop=True)


def seed_store(
    store: GraphStore,
    collections: pd.DataFrame,
    listing_size: int = DEFAULT_LISTING_SIZE,
) -> None:
    """Write fake collections to the store as a finished crawl.

    Every fan's collection is published as ``collects`` rows; each item's
    "also collected by" listing is a sample of at most ``listing_size`` of its
    collectors, mimicking the sampled listing on Bandcamp.
    """
    store.initialize()

    fan_ids = sorted(collections["fan_id"].unique())
    for fan_id in fan_ids:
        store.upsert_collector(
            Collector(fan_id=int(fan_id), username=f"fan{fan_id}", name=f"Fan {fan_id}")
        )

    for fan_id, group in collections.groupby("fan_id"):
        items = [
            Item(
                item_id=int(item_id),
                item_type="album",
                item_title=f"Album {item_id}",
                item_url=f"https://band{item_id % 17}.bandcamp.com/album/album-{item_id}",
                band_id=int(item_id % 17),
                band_name=f"Band {item_id % 17}",
            )
            for item_id in group["item_id"]
        ]
        store.replace_collection(int(fan_id), items)

    for item_id, group in collections.groupby("item_id"):
        collectors = [
            Collector(fan_id=int(fan_id), username=f"fan{fan_id}", name=f"Fan {fan_id}")
            for fan_id in group["fan_id"].head(listing_size)
        ]
        store.add_collected_by(int(item_id), collectors)
        store.mark_item_done(int(item_id))

    for fan_id in fan_ids:
        store.update_target(int(fan_id), Stage.DONE, 0, 0, 0)


def main() -> None:
    """Main entry point for the graph generation script."""
    parser = argparse.ArgumentParser(
        description="Seed a BandRec database with a synthetic collection graph",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/generate_fake_graph.py
  python scripts/generate_fake_graph.py --fans 200 --items 1000 --seed 7
        """,
    )
    parser.add_argument("--database", "-d", default="data/fake_graph.sqlite3")
    parser.add_argument("--fans", type=int, default=DEFAULT_NUM_FANS)
    parser.add_argument("--items", type=int, default=DEFAULT_NUM_ITEMS)
    parser.add_argument("--items-per-fan", type=int, default=DEFAULT_ITEMS_PER_FAN)
    parser.add_argument("--seed", type=int, help="Random seed")
    args = parser.parse_args()

    print(f"Generating collections for {args.fans} fans over {args.items} releases...")
    try:
        collections = generate_fake_collections(
            num_fans=args.fans,
            num_items=args.items,
            items_per_fan=args.items_per_fan,
            seed=args.seed,
        )
    except ValueError as e:
        print(f"Error generating data: {e}")
        return

    store = GraphStore(args.database, DEFAULT_STALENESS_TTL)
    seed_store(store, collections)

    print(f"\nGraph written to: {args.database}")
    print(f"  Collected releases: {len(collections)}")
    print(f"  Unique fans: {collections['fan_id'].nunique()}")
    print(f"  Unique releases: {collections['item_id'].nunique()}")
    print(f"  Largest collection: {collections.groupby('fan_id').size().max()}")


if __name__ == "__main__":
    main()
