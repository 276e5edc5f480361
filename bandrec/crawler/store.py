"""SQLite-backed graph store for items, collectors and crawl bookkeeping.

The store owns every persisted entity: items, collectors, the two edge
relations (``collected_by`` and ``collects``), the two crawl queues and the
per-user ``collection_target`` progress rows.

Two edge tables are kept on purpose. ``collected_by`` rows come from an item's
"also collected by" listing, which Bandcamp samples and paginates, so they are
written page by page and never imply completeness. A ``collects`` row for a
fan is only written once the fan's whole collection has been enumerated, and
readers rely on that: presence in ``collects`` means all of the fan's earlier
collection is known.

Connections are opened per operation in WAL mode with a busy timeout, so the
store can be shared by many worker threads. Writes are idempotent upserts.
Queue units are claimed atomically; claims are held in process memory, so a
crash simply leaves every unit claimable again.
"""

import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterable, Iterator, List, Optional, Sequence, Set

from bandrec.crawler.types import Collector, CollectorsPage, Item, Stage, Target

# Configure module logger
logger = logging.getLogger(__name__)

BUSY_TIMEOUT_SECONDS = 30.0

# SQLite SQLITE_MAX_VARIABLE_NUMBER default (conservative)
MAX_SQL_VARIABLES = 999

SCHEMA = """
create table if not exists item (
    item_id integer not null primary key,
    item_type text not null,
    item_title text not null,
    item_url text not null,
    band_id integer not null,
    band_name text not null,
    token text,
    also_collected_count integer not null default 0,
    last_updated integer not null default 0
);

create index if not exists item_last_updated on item(last_updated);

create table if not exists collector (
    fan_id integer not null primary key,
    username text not null unique,
    name text not null,
    token text,
    last_updated integer not null default 0
);

create index if not exists collector_last_updated on collector(last_updated);

create table if not exists collected_by (
    item_id integer not null references item on delete cascade,
    fan_id integer not null references collector on delete cascade,
    primary key (item_id, fan_id)
);

create index if not exists collected_by_fan on collected_by(fan_id);

create table if not exists collects (
    fan_id integer not null references collector on delete cascade,
    item_id integer not null references item on delete cascade,
    primary key (fan_id, item_id)
);

create index if not exists collects_item on collects(item_id);

create table if not exists item_collected_by_queue (
    item_id integer not null primary key references item on delete cascade
);

create table if not exists collector_collection_queue (
    fan_id integer not null primary key references collector on delete cascade
);

create table if not exists collection_target (
    fan_id integer not null primary key references collector on delete cascade,
    stage integer not null,
    count_left integer not null,
    count_total integer not null,
    eta integer not null
);
"""

UPSERT_ITEM = """
insert into item (
    item_id, item_type, item_title, item_url, band_id, band_name,
    token, also_collected_count, last_updated
) values (?, ?, ?, ?, ?, ?, ?, 0, 0)
on conflict(item_id) do update set
    token = coalesce(item.token, excluded.token)
"""

# A username freed by one fan can be taken by another; the old holder keeps
# its row under a placeholder until it is crawled again.
RELEASE_USERNAME = """
update collector set username = username || '~' || fan_id
where username = ? and fan_id != ?
"""

UPSERT_COLLECTOR = """
insert into collector (fan_id, username, name, token, last_updated)
values (?, ?, ?, ?, 0)
on conflict(fan_id) do update set
    username = excluded.username,
    name = excluded.name,
    token = coalesce(collector.token, excluded.token)
"""

INSERT_COLLECTED_BY = """
insert or ignore into collected_by (item_id, fan_id) values (?, ?)
"""

REFRESH_ALSO_COLLECTED_COUNT = """
update item
set also_collected_count = max(
    also_collected_count,
    (select count(*) from collected_by where item_id = ?)
)
where item_id = ?
"""

INSERT_COLLECTS = """
insert or ignore into collects (fan_id, item_id) values (?, ?)
"""

SELECT_PENDING_STAGE_1 = """
select c.item_id from collects c
join item i on i.item_id = c.item_id
where c.fan_id = ? and i.last_updated < ?
order by c.item_id
"""

SELECT_PENDING_STAGE_2 = """
select cb.fan_id from collected_by cb
join collector co on co.fan_id = cb.fan_id
where cb.item_id in (select item_id from collects where fan_id = ?)
  and cb.fan_id != ?
  and co.last_updated < ?
group by cb.fan_id
having count(*) >= ?
order by cb.fan_id
"""

UPSERT_TARGET = """
insert into collection_target (fan_id, stage, count_left, count_total, eta)
values (?, ?, ?, ?, ?)
on conflict(fan_id) do update set
    stage = excluded.stage,
    count_left = excluded.count_left,
    count_total = excluded.count_total,
    eta = excluded.eta
"""


def _chunks(values: Sequence[int], size: int = MAX_SQL_VARIABLES) -> Iterator[Sequence[int]]:
    for start in range(0, len(values), size):
        yield values[start:start + size]


class GraphStore:
    """Persistent store for the Bandcamp collection graph.

    Args:
        db_path: Path to the SQLite database file.
        staleness_ttl: Age in seconds after which an entity counts as stale.
        clock: Returns the current unix time; injectable for tests.
    """

    def __init__(
        self,
        db_path: str,
        staleness_ttl: int,
        clock: Callable[[], float] = time.time,
    ):
        self.db_path = Path(db_path)
        self.staleness_ttl = staleness_ttl
        self.clock = clock

        self._claim_lock = threading.Lock()
        self._in_flight = {
            "item_collected_by_queue": set(),
            "collector_collection_queue": set(),
        }

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    # ----- connection handling -----

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """Open a connection for a single operation and close it afterwards."""
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=BUSY_TIMEOUT_SECONDS,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON;")
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block inside an immediate (write-locking) transaction."""
        with self.connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def initialize(self) -> None:
        """Create the schema and switch the database to WAL mode."""
        with self.connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
            conn.executescript(SCHEMA)
        logger.info(f"Graph store initialized at {self.db_path}")

    def now(self) -> int:
        return int(self.clock())

    def stale_cutoff(self) -> int:
        """Entities last updated before this timestamp are stale."""
        return self.now() - self.staleness_ttl

    # ----- items and collectors -----

    @staticmethod
    def _upsert_items(conn: sqlite3.Connection, items: Iterable[Item]) -> None:
        conn.executemany(
            UPSERT_ITEM,
            [
                (
                    item.item_id,
                    item.item_type,
                    item.item_title,
                    item.item_url,
                    item.band_id,
                    item.band_name,
                    item.token,
                )
                for item in items
            ],
        )

    @staticmethod
    def _upsert_collectors(
        conn: sqlite3.Connection, collectors: Iterable[Collector]
    ) -> None:
        for collector in collectors:
            conn.execute(RELEASE_USERNAME, (collector.username, collector.fan_id))
            conn.execute(
                UPSERT_COLLECTOR,
                (collector.fan_id, collector.username, collector.name, collector.token),
            )

    def upsert_item(self, item: Item) -> None:
        with self.transaction() as conn:
            self._upsert_items(conn, [item])

    def upsert_collector(self, collector: Collector) -> None:
        with self.transaction() as conn:
            self._upsert_collectors(conn, [collector])

    def get_item(self, item_id: int) -> Optional[Item]:
        with self.connect() as conn:
            row = conn.execute(
                "select * from item where item_id = ?", (item_id,)
            ).fetchone()
        return Item(**dict(row)) if row else None

    def get_collector(self, fan_id: int) -> Optional[Collector]:
        with self.connect() as conn:
            row = conn.execute(
                "select * from collector where fan_id = ?", (fan_id,)
            ).fetchone()
        return Collector(**dict(row)) if row else None

    def get_collector_by_username(self, username: str) -> Optional[Collector]:
        with self.connect() as conn:
            row = conn.execute(
                "select * from collector where username = ?", (username,)
            ).fetchone()
        return Collector(**dict(row)) if row else None

    def get_fan_id(self, username: str) -> Optional[int]:
        collector = self.get_collector_by_username(username)
        return collector.fan_id if collector else None

    def is_item_stale(self, item_id: int) -> bool:
        """Missing items count as stale."""
        item = self.get_item(item_id)
        return item is None or item.last_updated < self.stale_cutoff()

    def is_collector_stale(self, fan_id: int) -> bool:
        """Missing collectors count as stale."""
        collector = self.get_collector(fan_id)
        return collector is None or collector.last_updated < self.stale_cutoff()

    def mark_item_done(self, item_id: int) -> None:
        with self.transaction() as conn:
            conn.execute(
                "update item set last_updated = ?, token = null where item_id = ?",
                (self.now(), item_id),
            )

    def mark_collector_done(self, fan_id: int) -> None:
        with self.transaction() as conn:
            conn.execute(
                "update collector set last_updated = ?, token = null where fan_id = ?",
                (self.now(), fan_id),
            )

    def purge_item(self, item_id: int) -> None:
        """Delete an item; its edges and queue entry go with it."""
        with self.transaction() as conn:
            conn.execute("delete from item where item_id = ?", (item_id,))

    def purge_collector(self, fan_id: int) -> None:
        """Delete a collector; its edges, queue entry and target go with it."""
        with self.transaction() as conn:
            conn.execute("delete from collector where fan_id = ?", (fan_id,))

    # ----- edges -----

    def add_collected_by(self, item_id: int, collectors: Sequence[Collector]) -> int:
        """Record collectors seen in an item's "also collected by" listing.

        Upserts the collectors, inserts the edges idempotently and refreshes
        the item's ``also_collected_count`` from the edge table.

        Args:
            item_id: Item whose listing was read.
            collectors: Collectors on the listing page.

        Returns:
            Number of edges that were not recorded before.
        """
        with self.transaction() as conn:
            return self._insert_collected_by(conn, item_id, collectors)

    def add_listing_page(self, item_id: int, page: CollectorsPage) -> bool:
        """Record one page of an item's listing and where the listing stands.

        The edges and either the next resume token or the done mark are
        written in one transaction, so a page is never stored without its
        cursor. The listing ends when the page is the last one or holds an
        edge recorded before; listings are newest first.

        Args:
            item_id: Item whose listing was read.
            page: The listing page.

        Returns:
            True if the listing is finished and the item marked done.
        """
        with self.transaction() as conn:
            new_edges = self._insert_collected_by(conn, item_id, page.collectors)
            finished = not page.more_available or new_edges < len(page.collectors)
            if finished:
                conn.execute(
                    "update item set last_updated = ?, token = null where item_id = ?",
                    (self.now(), item_id),
                )
            else:
                conn.execute(
                    "update item set token = ? where item_id = ?", (page.token, item_id)
                )
        return finished

    def _insert_collected_by(
        self, conn: sqlite3.Connection, item_id: int, collectors: Sequence[Collector]
    ) -> int:
        new_edges = 0
        self._upsert_collectors(conn, collectors)
        for collector in collectors:
            cursor = conn.execute(INSERT_COLLECTED_BY, (item_id, collector.fan_id))
            new_edges += cursor.rowcount
        conn.execute(REFRESH_ALSO_COLLECTED_COUNT, (item_id, item_id))
        return new_edges

    def collected_by_fan_ids(self, item_id: int) -> List[int]:
        with self.connect() as conn:
            rows = conn.execute(
                "select fan_id from collected_by where item_id = ? order by fan_id",
                (item_id,),
            ).fetchall()
        return [row[0] for row in rows]

    def publish_collection(
        self, fan_id: int, items: Sequence[Item], replace: bool = True
    ) -> None:
        """Write a fully enumerated collection as ``collects`` rows.

        Everything happens in one transaction, together with marking the
        collector as freshly crawled, so readers never see a partial
        collection.

        Args:
            fan_id: Collector whose collection was read.
            items: Every item of the collection (``replace=True``) or the items
                newer than the already known collection (``replace=False``).
            replace: Drop the collector's previous ``collects`` rows first.
        """
        with self.transaction() as conn:
            self._upsert_items(conn, items)
            if replace:
                conn.execute("delete from collects where fan_id = ?", (fan_id,))
            conn.executemany(
                INSERT_COLLECTS, [(fan_id, item.item_id) for item in items]
            )
            conn.execute(
                "update collector set last_updated = ?, token = null where fan_id = ?",
                (self.now(), fan_id),
            )

    def replace_collection(self, fan_id: int, items: Sequence[Item]) -> None:
        """Publish a fully enumerated collection, dropping earlier rows."""
        self.publish_collection(fan_id, items, replace=True)

    def extend_collection(self, fan_id: int, items: Sequence[Item]) -> None:
        """Publish items newer than the already complete collection."""
        self.publish_collection(fan_id, items, replace=False)

    def collection_item_ids(self, fan_id: int) -> Set[int]:
        with self.connect() as conn:
            rows = conn.execute(
                "select item_id from collects where fan_id = ?", (fan_id,)
            ).fetchall()
        return {row[0] for row in rows}

    def collection_size(self, fan_id: int) -> int:
        with self.connect() as conn:
            row = conn.execute(
                "select count(*) from collects where fan_id = ?", (fan_id,)
            ).fetchone()
        return row[0]

    # ----- queues -----

    def _enqueue(
        self, table: str, entity_table: str, key: str, ids: Iterable[int], only_stale: bool
    ) -> int:
        ids = list(dict.fromkeys(ids))
        added = 0
        with self.transaction() as conn:
            for chunk in _chunks(ids, MAX_SQL_VARIABLES - 1):
                placeholders = ",".join("?" * len(chunk))
                query = (
                    f"insert or ignore into {table} ({key}) "
                    f"select {key} from {entity_table} where {key} in ({placeholders})"
                )
                params: List[int] = list(chunk)
                if only_stale:
                    query += " and last_updated < ?"
                    params.append(self.stale_cutoff())
                added += conn.execute(query, params).rowcount
        return added

    def enqueue_items(self, item_ids: Iterable[int], only_stale: bool = True) -> int:
        """Add known items to the collected-by queue unless already queued.

        Returns:
            Number of newly queued items.
        """
        return self._enqueue(
            "item_collected_by_queue", "item", "item_id", item_ids, only_stale
        )

    def enqueue_collectors(self, fan_ids: Iterable[int], only_stale: bool = True) -> int:
        """Add known collectors to the collection queue unless already queued.

        Returns:
            Number of newly queued collectors.
        """
        return self._enqueue(
            "collector_collection_queue", "collector", "fan_id", fan_ids, only_stale
        )

    def _queued(self, table: str, key: str) -> List[int]:
        with self.connect() as conn:
            rows = conn.execute(f"select {key} from {table} order by {key}").fetchall()
        return [row[0] for row in rows]

    def queued_item_ids(self) -> List[int]:
        return self._queued("item_collected_by_queue", "item_id")

    def queued_collector_ids(self) -> List[int]:
        return self._queued("collector_collection_queue", "fan_id")

    def _claim(
        self, table: str, key: str, limit: int, candidates: Optional[Iterable[int]]
    ) -> List[int]:
        with self._claim_lock:
            queued = self._queued(table, key)
            if candidates is not None:
                wanted = set(candidates)
                queued = [unit for unit in queued if unit in wanted]
            in_flight = self._in_flight[table]
            claimed = [unit for unit in queued if unit not in in_flight][:limit]
            in_flight.update(claimed)
        return claimed

    def claim_items(
        self, limit: int = 1, candidates: Optional[Iterable[int]] = None
    ) -> List[int]:
        """Atomically claim queued items that no worker is processing.

        Args:
            limit: Maximum number of units to claim.
            candidates: Restrict the claim to these item ids.

        Returns:
            Claimed item ids, each marked in flight until released or completed.
        """
        return self._claim("item_collected_by_queue", "item_id", limit, candidates)

    def claim_collectors(
        self, limit: int = 1, candidates: Optional[Iterable[int]] = None
    ) -> List[int]:
        """Atomically claim queued collectors that no worker is processing."""
        return self._claim("collector_collection_queue", "fan_id", limit, candidates)

    def claim_item(self, candidates: Optional[Iterable[int]] = None) -> Optional[int]:
        claimed = self.claim_items(1, candidates)
        return claimed[0] if claimed else None

    def claim_collector(
        self, candidates: Optional[Iterable[int]] = None
    ) -> Optional[int]:
        claimed = self.claim_collectors(1, candidates)
        return claimed[0] if claimed else None

    def release_item(self, item_id: int) -> None:
        """Give a claimed item back; it stays queued."""
        with self._claim_lock:
            self._in_flight["item_collected_by_queue"].discard(item_id)

    def release_collector(self, fan_id: int) -> None:
        """Give a claimed collector back; it stays queued."""
        with self._claim_lock:
            self._in_flight["collector_collection_queue"].discard(fan_id)

    def complete_item(self, item_id: int) -> None:
        """Remove a processed item from the queue and drop its claim."""
        with self.transaction() as conn:
            conn.execute(
                "delete from item_collected_by_queue where item_id = ?", (item_id,)
            )
        self.release_item(item_id)

    def complete_collector(self, fan_id: int) -> None:
        """Remove a processed collector from the queue and drop its claim."""
        with self.transaction() as conn:
            conn.execute(
                "delete from collector_collection_queue where fan_id = ?", (fan_id,)
            )
        self.release_collector(fan_id)

    def items_in_flight(self) -> Set[int]:
        with self._claim_lock:
            return set(self._in_flight["item_collected_by_queue"])

    # ----- stage requirements -----

    def pending_stage1_item_ids(self, fan_id: int) -> List[int]:
        """Items in the fan's collection whose collectors still need crawling."""
        with self.connect() as conn:
            rows = conn.execute(
                SELECT_PENDING_STAGE_1, (fan_id, self.stale_cutoff())
            ).fetchall()
        return [row[0] for row in rows]

    def pending_stage2_fan_ids(self, fan_id: int, min_shared: int = 1) -> List[int]:
        """Stale collectors sharing at least ``min_shared`` items with the fan."""
        with self.connect() as conn:
            rows = conn.execute(
                SELECT_PENDING_STAGE_2,
                (fan_id, fan_id, self.stale_cutoff(), min_shared),
            ).fetchall()
        return [row[0] for row in rows]

    def stalest_item_id(self) -> Optional[int]:
        with self.connect() as conn:
            row = conn.execute(
                "select item_id from item where last_updated < ? "
                "order by last_updated, item_id limit 1",
                (self.stale_cutoff(),),
            ).fetchone()
        return row[0] if row else None

    def stalest_fan_id(self) -> Optional[int]:
        with self.connect() as conn:
            row = conn.execute(
                "select fan_id from collector where last_updated < ? "
                "order by last_updated, fan_id limit 1",
                (self.stale_cutoff(),),
            ).fetchone()
        return row[0] if row else None

    # ----- collection targets -----

    def get_target(self, fan_id: int) -> Optional[Target]:
        with self.connect() as conn:
            row = conn.execute(
                "select * from collection_target where fan_id = ?", (fan_id,)
            ).fetchone()
        return Target(**dict(row)) if row else None

    def update_target(
        self, fan_id: int, stage: int, count_left: int, count_total: int, eta: int
    ) -> Target:
        """Atomically update a job's progress counters.

        Within one stage ``count_total`` only grows; entering a new stage
        starts from the given total.

        Returns:
            The stored target.
        """
        with self.transaction() as conn:
            row = conn.execute(
                "select stage, count_total from collection_target where fan_id = ?",
                (fan_id,),
            ).fetchone()
            if row is not None and row["stage"] == stage:
                count_total = max(row["count_total"], count_total)
            count_total = max(count_total, count_left)
            conn.execute(
                UPSERT_TARGET, (fan_id, stage, count_left, count_total, eta)
            )
        return Target(fan_id, stage, count_left, count_total, eta)

    def reset_target(self, fan_id: int) -> None:
        with self.transaction() as conn:
            conn.execute("delete from collection_target where fan_id = ?", (fan_id,))

    def active_targets(self) -> List[int]:
        """Fan ids whose jobs stopped in stage 1 or 2."""
        with self.connect() as conn:
            rows = conn.execute(
                "select fan_id from collection_target where stage in (?, ?) order by fan_id",
                (int(Stage.ITEMS), int(Stage.COLLECTORS)),
            ).fetchall()
        return [row[0] for row in rows]
