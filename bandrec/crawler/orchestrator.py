"""Crawl orchestration: per-user jobs driven through a two-stage state machine.

A job walks ``NEW -> STAGE1 -> STAGE2 -> DONE``:

* ``NEW`` resolves the user, reads their full collection and writes the
  collection target. It runs synchronously in the requesting thread.
* ``STAGE1`` reads the "also collected by" listing of every stale item in the
  user's collection.
* ``STAGE2`` reads the full collection of every stale collector sharing an
  item with the user.
* ``DONE`` leaves the target at stage 3 and drops the job from the registry.

Work is split into units (one item or one collector) that live in the store's
queues. Jobs run on a bounded job pool and hand their units to a shared unit
pool; all outbound requests pass through the fetcher's rate limiter. Pending
work is always recomputed from persisted state, so a job can be resumed after
a restart from the store alone.
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterator, List, Optional, Set, TypeVar

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    stop_when_event_set,
    wait_exponential,
)

from bandrec.api.exceptions import (
    BandRecException,
    CollectionTooSmall,
    EntityGone,
    PageFormatError,
    RateLimited,
    TransientFetchError,
    UnknownUser,
)
from bandrec.api.metrics import CrawlMetrics
from bandrec.config import CrawlerConfig
from bandrec.crawler.fetcher import Fetcher
from bandrec.crawler.store import GraphStore
from bandrec.crawler.types import CollectionPage, Item, Stage

# Configure module logger
logger = logging.getLogger(__name__)

T = TypeVar("T")

# Errors after which a unit is dropped instead of retried
DROP_ERRORS = (EntityGone, PageFormatError, UnknownUser)


def is_retryable(exception: BaseException) -> bool:
    """Transient fetch failures are retried in place, rate limits are not."""
    return isinstance(exception, TransientFetchError) and not isinstance(
        exception, RateLimited
    )


class JobState(str, Enum):
    NEW = "new"
    STAGE1 = "stage1"
    STAGE2 = "stage2"
    DONE = "done"
    FAILED = "failed"


STAGE_STATES = {Stage.ITEMS: JobState.STAGE1, Stage.COLLECTORS: JobState.STAGE2}


@dataclass
class CrawlJob:
    """A live crawl job for one collector.

    ``failure`` holds the last retryable error while the job is in the
    ``FAILED`` side-state; it is cleared by the next successful unit.
    """

    fan_id: int
    username: str
    phase: JobState = JobState.NEW
    failure: Optional[TransientFetchError] = None
    paused_until: float = 0.0
    future: Optional[Future] = field(default=None, repr=False)

    @property
    def state(self) -> JobState:
        if self.failure is not None and self.phase != JobState.DONE:
            return JobState.FAILED
        return self.phase

    def record_failure(self, error: TransientFetchError) -> None:
        self.failure = error

    def clear_failure(self) -> None:
        self.failure = None

    def pause(self, seconds: float) -> None:
        self.paused_until = max(self.paused_until, time.monotonic() + seconds)


class JobRegistry:
    """Live jobs keyed by fan id; at most one job per fan."""

    def __init__(self):
        self._lock = threading.Lock()
        self._jobs: Dict[int, CrawlJob] = {}

    def get(self, fan_id: int) -> Optional[CrawlJob]:
        with self._lock:
            return self._jobs.get(fan_id)

    def add(self, job: CrawlJob) -> CrawlJob:
        """Register ``job`` unless the fan already has one; return the live job."""
        with self._lock:
            return self._jobs.setdefault(job.fan_id, job)

    def remove(self, job: CrawlJob) -> None:
        with self._lock:
            if self._jobs.get(job.fan_id) is job:
                del self._jobs[job.fan_id]

    def jobs(self) -> List[CrawlJob]:
        with self._lock:
            return list(self._jobs.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)


@dataclass
class _UserLock:
    lock: threading.Lock = field(default_factory=threading.Lock)
    waiters: int = 0


class _CollectionBuffer:
    """Collection items read so far, held until the listing is exhausted."""

    def __init__(self):
        self.items: List[Item] = []
        self.token: Optional[str] = None
        self._seen: Set[int] = set()

    def reset(self) -> None:
        self.items = []
        self._seen = set()

    def extend(self, items: List[Item], known: Set[int]) -> bool:
        """Append a page of items; return True once an already known item shows up."""
        for item in items:
            if item.item_id in known:
                return True
            if item.item_id not in self._seen:
                self._seen.add(item.item_id)
                self.items.append(item)
        return False


class CrawlOrchestrator:
    """Runs crawl jobs against a graph store and a fetcher.

    Args:
        store: Graph store holding entities, queues and targets.
        fetcher: Source of Bandcamp pages.
        config: Pool sizes, retry policy and crawl tunables.
        metrics: Unit latency tracker used for ETAs; a fresh one by default.
    """

    def __init__(
        self,
        store: GraphStore,
        fetcher: Fetcher,
        config: CrawlerConfig,
        metrics: Optional[CrawlMetrics] = None,
    ):
        self.store = store
        self.fetcher = fetcher
        self.config = config
        self.metrics = metrics or CrawlMetrics()
        self.registry = JobRegistry()

        self._job_pool = ThreadPoolExecutor(
            max_workers=config.max_jobs, thread_name_prefix="bandrec-job"
        )
        self._unit_pool = ThreadPoolExecutor(
            max_workers=config.workers, thread_name_prefix="bandrec-unit"
        )
        self._stop = threading.Event()
        self._sweeper: Optional[threading.Thread] = None

        self._user_locks: Dict[str, _UserLock] = {}
        self._user_locks_lock = threading.Lock()

        self._buffers: Dict[int, _CollectionBuffer] = {}
        self._buffers_lock = threading.Lock()

    # ----- public API -----

    def request_user(self, username: str) -> Optional[CrawlJob]:
        """Make sure a crawl for ``username`` is running or already complete.

        Attaches to the live job if there is one and does nothing when the
        user's crawl is complete and fresh. Otherwise runs ``NEW`` in the
        calling thread and schedules the remaining stages.

        Args:
            username: Bandcamp username.

        Returns:
            The live job, or None when the existing crawl is still fresh.

        Raises:
            UnknownUser: If the username does not resolve.
            CollectionTooSmall: If the user collected too few items.
            TransientFetchError: If Bandcamp could not be reached.
        """
        if self._stop.is_set():
            raise BandRecException("Crawler is shutting down", status_code=503)

        with self._user_lock(username):
            collector = self.store.get_collector_by_username(username)
            if collector is not None:
                job = self.registry.get(collector.fan_id)
                if job is not None:
                    logger.info(f"Attaching to live crawl for {username}")
                    return job
                target = self.store.get_target(collector.fan_id)
                fresh = not self.store.is_collector_stale(collector.fan_id)
                if fresh and target is not None and target.stage == Stage.DONE:
                    logger.info(f"Crawl for {username} is complete and fresh")
                    return None

            return self._run_new(username)

    def job_for(self, fan_id: int) -> Optional[CrawlJob]:
        return self.registry.get(fan_id)

    def wait(self, job: Optional[CrawlJob], timeout: Optional[float] = None) -> None:
        """Block until ``job`` finished (no-op for None)."""
        if job is not None and job.future is not None:
            job.future.result(timeout=timeout)

    def resume_jobs(self) -> List[CrawlJob]:
        """Restart jobs whose targets were left in stage 1 or 2."""
        resumed = []
        for fan_id in self.store.active_targets():
            collector = self.store.get_collector(fan_id)
            if collector is None:
                continue
            logger.info(
                f"Resuming crawl for {collector.username}",
                extra={"fan_id": fan_id},
            )
            resumed.append(self._start_job(fan_id, collector.username))
        return resumed

    def sweep_once(self) -> bool:
        """Process leftover queue units while no job is live.

        With ``crawl_all`` and both queues empty, the stalest known item and
        collector are queued first.

        Returns:
            True if any unit was processed.
        """
        if len(self.registry) > 0 or self._stop.is_set():
            return False

        item_ids = self.store.claim_items(1)
        fan_ids = self.store.claim_collectors(1)

        if not item_ids and not fan_ids and self.config.crawl_all:
            stale_item = self.store.stalest_item_id()
            stale_fan = self.store.stalest_fan_id()
            if stale_item is not None:
                self.store.enqueue_items([stale_item])
                item_ids = self.store.claim_items(1, [stale_item])
            if stale_fan is not None:
                self.store.enqueue_collectors([stale_fan])
                fan_ids = self.store.claim_collectors(1, [stale_fan])

        for item_id in item_ids:
            self._run_unit(None, Stage.ITEMS, item_id)
        for fan_id in fan_ids:
            self._run_unit(None, Stage.COLLECTORS, fan_id)
        return bool(item_ids or fan_ids)

    def start_sweeper(self) -> None:
        if self._sweeper is not None:
            return
        self._sweeper = threading.Thread(
            target=self._sweep_loop, name="bandrec-sweeper", daemon=True
        )
        self._sweeper.start()

    def shutdown(self, wait: bool = True) -> None:
        """Stop the sweeper and all jobs between units."""
        logger.info("Shutting down crawl orchestrator")
        self._stop.set()
        if self._sweeper is not None and wait:
            self._sweeper.join()
        self._job_pool.shutdown(wait=wait)
        self._unit_pool.shutdown(wait=wait)

    # ----- NEW -----

    @contextmanager
    def _user_lock(self, username: str) -> Iterator[None]:
        """Serialize requests for one username; the entry goes once nobody holds it."""
        with self._user_locks_lock:
            entry = self._user_locks.setdefault(username, _UserLock())
            entry.waiters += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._user_locks_lock:
                entry.waiters -= 1
                if entry.waiters == 0:
                    del self._user_locks[username]

    def _run_new(self, username: str) -> CrawlJob:
        collector = self.store.get_collector_by_username(username)

        if collector is None or self.store.is_collector_stale(collector.fan_id):
            first = self._fetch(lambda: self.fetcher.fetch_fan(username))
            fan_id = first.collector.fan_id
            live = self.registry.get(fan_id)
            if live is not None:
                return live

            self.store.upsert_collector(first.collector)
            self._advance_collection(
                fan_id, username, _CollectionBuffer(), max_pages=None, first_page=first
            )
        else:
            fan_id = collector.fan_id

        size = self.store.collection_size(fan_id)
        if size < self.config.min_collection_size:
            logger.info(
                f"Rejecting {username}: collection too small",
                extra={"fan_id": fan_id, "size": size},
            )
            raise CollectionTooSmall(username, size, self.config.min_collection_size)

        pending = self.store.pending_stage1_item_ids(fan_id)
        self.store.enqueue_items(pending)
        self.store.update_target(
            fan_id,
            Stage.ITEMS,
            len(pending),
            len(pending),
            self.metrics.eta(Stage.ITEMS, len(pending)),
        )
        logger.info(
            f"Starting crawl for {username}",
            extra={"fan_id": fan_id, "collection_size": size, "pending": len(pending)},
        )
        return self._start_job(fan_id, username)

    def _start_job(self, fan_id: int, username: str) -> CrawlJob:
        job = CrawlJob(fan_id=fan_id, username=username, phase=JobState.STAGE1)
        live = self.registry.add(job)
        if live is job:
            job.future = self._job_pool.submit(self._run_job, job)
        return live

    # ----- stages -----

    def _run_job(self, job: CrawlJob) -> None:
        try:
            for stage in (Stage.ITEMS, Stage.COLLECTORS):
                self._run_stage(job, stage)
            if self._stop.is_set():
                return
            self.store.update_target(job.fan_id, Stage.DONE, 0, 0, 0)
            job.phase = JobState.DONE
            job.clear_failure()
            logger.info(
                f"Crawl for {job.username} complete", extra={"fan_id": job.fan_id}
            )
        except Exception:
            logger.exception(
                f"Crawl job for {job.username} crashed", extra={"fan_id": job.fan_id}
            )
            raise
        finally:
            self.registry.remove(job)

    def _pending(self, job: CrawlJob, stage: Stage) -> List[int]:
        if stage == Stage.ITEMS:
            return self.store.pending_stage1_item_ids(job.fan_id)
        return self.store.pending_stage2_fan_ids(
            job.fan_id, self.config.min_shared_items
        )

    def _run_stage(self, job: CrawlJob, stage: Stage) -> None:
        job.phase = STAGE_STATES[stage]
        logger.info(
            f"Crawl for {job.username} entering stage {int(stage)}",
            extra={"fan_id": job.fan_id},
        )

        while not self._stop.is_set():
            delay = job.paused_until - time.monotonic()
            if delay > 0:
                self._stop.wait(delay)
                continue

            pending = self._pending(job, stage)
            self.store.update_target(
                job.fan_id,
                stage,
                len(pending),
                len(pending),
                self.metrics.eta(stage, len(pending)),
            )
            if not pending:
                return

            if stage == Stage.ITEMS:
                self.store.enqueue_items(pending, only_stale=False)
                claimed = self.store.claim_items(self.config.workers, pending)
            else:
                self.store.enqueue_collectors(pending, only_stale=False)
                claimed = self.store.claim_collectors(self.config.workers, pending)

            if not claimed:
                # Every pending unit is being processed elsewhere
                self._stop.wait(self.config.poll_interval)
                continue

            futures = [
                self._unit_pool.submit(self._run_unit, job, stage, unit)
                for unit in claimed
            ]
            for future in as_completed(futures):
                future.result()

            if job.failure is not None and job.paused_until <= time.monotonic():
                self._stop.wait(self.config.retry_backoff_max)

    # ----- units -----

    def _run_unit(self, job: Optional[CrawlJob], stage: Stage, unit: int) -> None:
        if stage == Stage.ITEMS:
            process, release, drop = self.process_item, self.store.release_item, self._drop_item
        else:
            process, release, drop = (
                self.process_collector,
                self.store.release_collector,
                self._drop_collector,
            )

        start = time.monotonic()
        try:
            process(unit)
        except RateLimited as e:
            release(unit)
            self.metrics.record_rate_limit()
            self.metrics.record_unit(stage, time.monotonic() - start, failed=True)
            logger.warning(
                f"Rate limited, pausing for {self.config.rate_limit_pause}s",
                extra={"stage": int(stage), "unit": unit},
            )
            if job is not None:
                job.record_failure(e)
                job.pause(self.config.rate_limit_pause)
            else:
                self._stop.wait(self.config.rate_limit_pause)
        except TransientFetchError as e:
            release(unit)
            self.metrics.record_unit(stage, time.monotonic() - start, failed=True)
            logger.warning(
                f"Giving up on unit for now: {e.message}",
                extra={"stage": int(stage), "unit": unit, **e.details},
            )
            if job is not None:
                job.record_failure(e)
        except DROP_ERRORS as e:
            logger.warning(
                f"Dropping unit: {e.message}",
                extra={"stage": int(stage), "unit": unit, **e.details},
            )
            drop(unit)
            self.metrics.record_unit(stage, time.monotonic() - start, failed=True)
        except Exception:
            release(unit)
            logger.exception(
                "Unexpected error while processing unit",
                extra={"stage": int(stage), "unit": unit},
            )
            if job is not None:
                job.record_failure(TransientFetchError("Internal crawler error"))
        else:
            self.metrics.record_unit(stage, time.monotonic() - start)
            if job is not None:
                job.clear_failure()

    def _drop_item(self, item_id: int) -> None:
        self.store.mark_item_done(item_id)
        self.store.complete_item(item_id)

    def _drop_collector(self, fan_id: int) -> None:
        with self._buffers_lock:
            self._buffers.pop(fan_id, None)
        self.store.mark_collector_done(fan_id)
        self.store.complete_collector(fan_id)

    def _fetch(self, call: Callable[[], T]) -> T:
        """Call the fetcher, retrying transient failures with exponential backoff.

        Rate limits are not retried here; they pause the whole job instead.
        Shutdown ends the retries and re-raises the last error.
        """
        retrying = Retrying(
            stop=(
                stop_after_attempt(self.config.max_fetch_retries)
                | stop_when_event_set(self._stop)
            ),
            wait=wait_exponential(
                multiplier=self.config.retry_backoff_base,
                max=self.config.retry_backoff_max,
            ),
            retry=retry_if_exception(is_retryable),
            before_sleep=before_sleep_log(logger, logging.INFO),
            sleep=self._stop.wait,
            reraise=True,
        )
        return retrying(call)

    def process_item(self, item_id: int) -> None:
        """Read up to ``pages_per_unit`` pages of an item's collectors listing.

        Each page is written together with its resume token or the done mark.
        The item is done once the listing is exhausted or reaches an already
        recorded edge; otherwise the unit is released to resume later.
        """
        item = self.store.get_item(item_id)
        if item is None:
            self.store.complete_item(item_id)
            return

        token = item.token
        for _ in range(self.config.pages_per_unit):
            page = self._fetch(lambda: self.fetcher.fetch_collectors_page(item, token))
            finished = self.store.add_listing_page(item_id, page)
            self.store.enqueue_collectors(c.fan_id for c in page.collectors)
            logger.debug(
                f"Read {len(page.collectors)} collectors of {item.item_title}",
                extra={"item_id": item_id, "finished": finished},
            )

            if finished:
                self.store.complete_item(item_id)
                return
            token = page.token

        self.store.release_item(item_id)

    def process_collector(self, fan_id: int) -> None:
        """Read up to ``pages_per_unit`` pages of a collector's collection.

        Pages are buffered in memory; ``collects`` rows are only written when
        the listing is exhausted or reaches an already collected item.
        """
        collector = self.store.get_collector(fan_id)
        if collector is None:
            self.store.complete_collector(fan_id)
            return

        with self._buffers_lock:
            buffer = self._buffers.setdefault(fan_id, _CollectionBuffer())

        done = self._advance_collection(
            fan_id, collector.username, buffer, max_pages=self.config.pages_per_unit
        )
        if done:
            with self._buffers_lock:
                self._buffers.pop(fan_id, None)
            self.store.complete_collector(fan_id)
        else:
            self.store.release_collector(fan_id)

    def _advance_collection(
        self,
        fan_id: int,
        username: str,
        buffer: _CollectionBuffer,
        max_pages: Optional[int],
        first_page: Optional[CollectionPage] = None,
    ) -> bool:
        """Read collection pages into ``buffer``, publishing once complete.

        Returns:
            True if the collection was published.
        """
        known = self.store.collection_item_ids(fan_id)
        pages = 0

        while max_pages is None or pages < max_pages:
            if buffer.token is None:
                page = first_page or self._fetch(lambda: self.fetcher.fetch_fan(username))
                first_page = None
                buffer.reset()
                if page.collector is not None:
                    self.store.upsert_collector(page.collector)
            else:
                page = self._fetch(
                    lambda: self.fetcher.fetch_collection_page(fan_id, buffer.token)
                )
            pages += 1

            reached_known = buffer.extend(page.items, known)
            if reached_known:
                self.store.extend_collection(fan_id, buffer.items)
            elif not page.more_available:
                self.store.replace_collection(fan_id, buffer.items)
            else:
                buffer.token = page.token
                continue

            logger.info(
                f"Published collection of {username}",
                extra={
                    "fan_id": fan_id,
                    "items": len(buffer.items),
                    "incremental": reached_known,
                },
            )
            buffer.token = None
            return True

        return False

    def _sweep_loop(self) -> None:
        while not self._stop.is_set():
            try:
                worked = self.sweep_once()
            except Exception:
                logger.exception("Background sweep failed")
                worked = False
            if not worked:
                self._stop.wait(self.config.sweep_interval)
