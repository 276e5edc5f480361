"""Tests for the crawl orchestrator state machine.

Crawls run against :class:`FakeFetcher` with a temporary store. Unit-level
behaviour (partial listings, buffering, error handling) is driven through
``process_item``, ``process_collector`` and ``_run_unit`` directly so it does
not depend on thread timing.
"""

import logging
import sqlite3
import threading
import time

import pytest

from bandrec.api.exceptions import (
    CollectionTooSmall,
    EntityGone,
    PageFormatError,
    RateLimited,
    TransientFetchError,
    UnknownUser,
)
from bandrec.crawler.orchestrator import (
    CrawlJob,
    CrawlOrchestrator,
    JobRegistry,
    JobState,
    is_retryable,
)
from bandrec.crawler.types import Stage
from tests.conftest import (
    ALICE,
    BOB,
    CAROL,
    ITEM_A,
    ITEM_B,
    ITEM_C,
    FakeFetcher,
    make_collector,
    make_item,
)

JOB_TIMEOUT = 10


def crawl(orchestrator, username):
    job = orchestrator.request_user(username)
    orchestrator.wait(job, timeout=JOB_TIMEOUT)
    return job


def test_full_crawl_reaches_stage_three(orchestrator, store):
    job = crawl(orchestrator, "alice")

    assert job.state == JobState.DONE
    target = store.get_target(ALICE)
    assert (target.stage, target.count_left, target.eta) == (3, 0, 0)
    assert orchestrator.job_for(ALICE) is None


def test_full_crawl_writes_graph(orchestrator, store):
    crawl(orchestrator, "alice")

    assert store.collection_item_ids(ALICE) == {ITEM_A, ITEM_B}
    assert store.collection_item_ids(BOB) == {ITEM_A, ITEM_C}
    assert store.collected_by_fan_ids(ITEM_A) == [ALICE, BOB]
    assert store.get_item(ITEM_A).also_collected_count == 2
    assert store.get_item(ITEM_B).also_collected_count == 1
    # carol shares nothing with alice and is never crawled
    assert store.get_collector(CAROL) is None
    assert store.queued_item_ids() == []
    assert store.queued_collector_ids() == []


def test_stage_one_drains_before_stage_two(orchestrator, fetcher):
    crawl(orchestrator, "alice")

    listing_calls = [i for i, call in enumerate(fetcher.calls) if call[0] == "collectors"]
    neighbour_calls = [
        i for i, call in enumerate(fetcher.calls) if call in (("fan", "bob"), ("collection", BOB))
    ]
    assert listing_calls and neighbour_calls
    assert max(listing_calls) < min(neighbour_calls)


def test_unknown_user_is_rejected(orchestrator, store):
    with pytest.raises(UnknownUser):
        orchestrator.request_user("nobody")

    assert store.get_fan_id("nobody") is None
    assert len(orchestrator.registry) == 0


def test_small_collection_is_rejected(store, config):
    fake = FakeFetcher()
    fake.add_fan(ALICE, "alice", [ITEM_A])
    orchestrator = CrawlOrchestrator(store, fake, config)
    try:
        with pytest.raises(CollectionTooSmall) as exc_info:
            orchestrator.request_user("alice")
    finally:
        orchestrator.shutdown()

    assert exc_info.value.status_code == 404
    assert "at least 2 required" in exc_info.value.message
    assert store.get_target(ALICE) is None


def test_collection_of_minimum_size_is_accepted(orchestrator, store, config):
    assert config.min_collection_size == 2

    crawl(orchestrator, "alice")

    assert store.collection_size(ALICE) == 2
    assert store.get_target(ALICE).stage == Stage.DONE


def test_user_locks_are_dropped_after_requests(orchestrator):
    with pytest.raises(UnknownUser):
        orchestrator.request_user("nobody")
    crawl(orchestrator, "alice")
    orchestrator.request_user("alice")

    assert orchestrator._user_locks == {}


def test_concurrent_requests_share_one_user_lock(orchestrator, fetcher):
    fetcher.gate = threading.Event()
    jobs = []
    threads = [
        threading.Thread(target=lambda: jobs.append(orchestrator.request_user("alice")))
        for _ in range(3)
    ]
    try:
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=JOB_TIMEOUT)
    finally:
        fetcher.gate.set()

    assert len({id(job) for job in jobs}) == 1
    orchestrator.wait(jobs[0], timeout=JOB_TIMEOUT)
    assert orchestrator._user_locks == {}


def test_request_for_fresh_finished_user_is_a_no_op(orchestrator, store, fetcher):
    crawl(orchestrator, "alice")
    calls = list(fetcher.calls)
    edges = store.collected_by_fan_ids(ITEM_A)

    assert orchestrator.request_user("alice") is None

    assert fetcher.calls == calls
    assert store.queued_item_ids() == []
    assert store.queued_collector_ids() == []
    assert store.collected_by_fan_ids(ITEM_A) == edges
    assert store.get_target(ALICE).stage == Stage.DONE


def test_second_request_attaches_to_live_job(orchestrator, fetcher):
    fetcher.gate = threading.Event()
    try:
        first = orchestrator.request_user("alice")
        second = orchestrator.request_user("alice")
        assert second is first
        assert len(orchestrator.registry) == 1
    finally:
        fetcher.gate.set()
    orchestrator.wait(first, timeout=JOB_TIMEOUT)

    assert fetcher.calls.count(("fan", "alice")) == 1


def test_resume_jobs_finishes_interrupted_crawl(store, fetcher, config):
    store.upsert_collector(make_collector(ALICE, "alice"))
    store.replace_collection(ALICE, [make_item(ITEM_A), make_item(ITEM_B)])
    store.update_target(ALICE, Stage.ITEMS, 2, 2, 4)
    store.enqueue_items([ITEM_A])

    orchestrator = CrawlOrchestrator(store, fetcher, config)
    try:
        jobs = orchestrator.resume_jobs()
        assert [job.fan_id for job in jobs] == [ALICE]
        orchestrator.wait(jobs[0], timeout=JOB_TIMEOUT)
    finally:
        orchestrator.shutdown()

    assert store.get_target(ALICE).stage == Stage.DONE
    assert store.collection_item_ids(BOB) == {ITEM_A, ITEM_C}
    # resumed from the store alone; alice's profile was not read again
    assert ("fan", "alice") not in fetcher.calls


def test_stale_user_is_crawled_again(orchestrator, store, fetcher):
    crawl(orchestrator, "alice")
    store.staleness_ttl = -1

    job = orchestrator.request_user("alice")
    assert job is not None
    store.staleness_ttl = 30 * 86400
    orchestrator.wait(job, timeout=JOB_TIMEOUT)

    assert fetcher.calls.count(("fan", "alice")) == 2
    assert store.get_target(ALICE).stage == Stage.DONE


def test_partial_listing_keeps_item_queued(store, config):
    fake = FakeFetcher(page_size=1)
    fake.add_fan(ALICE, "alice", [ITEM_A])
    fake.add_fan(BOB, "bob", [ITEM_A])
    config.pages_per_unit = 1
    orchestrator = CrawlOrchestrator(store, fake, config)

    store.upsert_item(make_item(ITEM_A))
    store.enqueue_items([ITEM_A])
    try:
        assert store.claim_item() == ITEM_A
        orchestrator.process_item(ITEM_A)

        assert store.queued_item_ids() == [ITEM_A]
        assert store.get_item(ITEM_A).token == "1"
        assert store.is_item_stale(ITEM_A)
        assert ITEM_A not in store.items_in_flight()

        assert store.claim_item() == ITEM_A
        orchestrator.process_item(ITEM_A)
    finally:
        orchestrator.shutdown()

    assert store.queued_item_ids() == []
    assert not store.is_item_stale(ITEM_A)
    assert store.get_item(ITEM_A).token is None
    assert store.collected_by_fan_ids(ITEM_A) == [ALICE, BOB]
    assert fake.calls == [("collectors", ITEM_A), ("collectors", ITEM_A)]


def test_partial_listing_leaves_count_left_unchanged(store, config):
    fake = FakeFetcher(page_size=1)
    fake.add_fan(ALICE, "alice", [ITEM_A, ITEM_B])
    fake.add_fan(BOB, "bob", [ITEM_A])
    config.pages_per_unit = 1
    orchestrator = CrawlOrchestrator(store, fake, config)

    store.upsert_collector(make_collector(ALICE, "alice"))
    store.replace_collection(ALICE, [make_item(ITEM_A), make_item(ITEM_B)])
    before = store.pending_stage1_item_ids(ALICE)
    try:
        store.enqueue_items(before)
        store.claim_item([ITEM_A])
        orchestrator.process_item(ITEM_A)
    finally:
        orchestrator.shutdown()

    assert store.pending_stage1_item_ids(ALICE) == before


def test_known_edge_stops_listing(store, config):
    fake = FakeFetcher(page_size=1)
    fake.add_fan(BOB, "bob", [ITEM_A])
    fake.add_fan(ALICE, "alice", [ITEM_A])
    orchestrator = CrawlOrchestrator(store, fake, config)

    store.upsert_item(make_item(ITEM_A))
    store.add_collected_by(ITEM_A, [make_collector(BOB, "bob")])
    try:
        orchestrator.process_item(ITEM_A)
    finally:
        orchestrator.shutdown()

    assert fake.calls == [("collectors", ITEM_A)]
    assert not store.is_item_stale(ITEM_A)


def test_interrupted_unit_resumes_listing_after_stored_page(store, config, monkeypatch):
    fake = FakeFetcher(page_size=1)
    for fan_id, username in ((ALICE, "alice"), (BOB, "bob"), (CAROL, "carol")):
        fake.add_fan(fan_id, username, [ITEM_A])
    orchestrator = CrawlOrchestrator(store, fake, config)

    enqueue = store.enqueue_collectors
    enqueue_calls = []

    def enqueue_then_fail_once(fan_ids, only_stale=True):
        enqueue_calls.append(fan_ids)
        if len(enqueue_calls) == 2:
            raise sqlite3.OperationalError("database is locked")
        return enqueue(fan_ids, only_stale)

    monkeypatch.setattr(store, "enqueue_collectors", enqueue_then_fail_once)

    store.upsert_item(make_item(ITEM_A))
    store.enqueue_items([ITEM_A])
    try:
        store.claim_item()
        orchestrator._run_unit(None, Stage.ITEMS, ITEM_A)

        assert store.collected_by_fan_ids(ITEM_A) == [ALICE, BOB]
        assert store.get_item(ITEM_A).token == "2"
        assert store.is_item_stale(ITEM_A)
        assert store.queued_item_ids() == [ITEM_A]

        store.claim_item()
        orchestrator._run_unit(None, Stage.ITEMS, ITEM_A)
    finally:
        orchestrator.shutdown()

    assert store.collected_by_fan_ids(ITEM_A) == [ALICE, BOB, CAROL]
    assert not store.is_item_stale(ITEM_A)
    assert store.queued_item_ids() == []


def test_collection_is_buffered_until_complete(store, config):
    fake = FakeFetcher(page_size=1)
    fake.add_fan(BOB, "bob", [ITEM_C, ITEM_A])
    config.pages_per_unit = 1
    orchestrator = CrawlOrchestrator(store, fake, config)

    store.upsert_collector(make_collector(BOB, "bob"))
    store.enqueue_collectors([BOB])
    try:
        store.claim_collector()
        orchestrator.process_collector(BOB)

        assert store.collection_item_ids(BOB) == set()
        assert store.queued_collector_ids() == [BOB]
        assert store.is_collector_stale(BOB)

        store.claim_collector()
        orchestrator.process_collector(BOB)
    finally:
        orchestrator.shutdown()

    assert store.collection_item_ids(BOB) == {ITEM_A, ITEM_C}
    assert store.queued_collector_ids() == []
    assert not store.is_collector_stale(BOB)
    assert fake.calls == [("fan", "bob"), ("collection", BOB)]


def test_known_item_extends_collection(store, config):
    fake = FakeFetcher(page_size=1)
    fake.add_fan(BOB, "bob", [ITEM_C, ITEM_A, ITEM_B])
    orchestrator = CrawlOrchestrator(store, fake, config)

    store.upsert_collector(make_collector(BOB, "bob"))
    store.replace_collection(BOB, [make_item(ITEM_A)])
    store.mark_collector_done(BOB)
    store.staleness_ttl = -1
    try:
        orchestrator.process_collector(BOB)
    finally:
        orchestrator.shutdown()

    assert store.collection_item_ids(BOB) == {ITEM_A, ITEM_C}
    assert fake.calls == [("fan", "bob"), ("collection", BOB)]


def test_full_enumeration_replaces_collection(store, config, fetcher):
    orchestrator = CrawlOrchestrator(store, fetcher, config)
    store.upsert_collector(make_collector(CAROL, "carol"))
    store.replace_collection(CAROL, [make_item(ITEM_B)])
    try:
        orchestrator.process_collector(CAROL)
    finally:
        orchestrator.shutdown()

    assert store.collection_item_ids(CAROL) == {ITEM_C}


def test_transient_failure_releases_unit_and_flags_job(store, config):
    fake = FakeFetcher()
    fake.add_fan(ALICE, "alice", [ITEM_A])
    fake.fail(("collectors", ITEM_A), *[TransientFetchError("Bandcamp returned HTTP 503")] * 3)
    orchestrator = CrawlOrchestrator(store, fake, config)
    job = CrawlJob(fan_id=ALICE, username="alice", phase=JobState.STAGE1)

    store.upsert_item(make_item(ITEM_A))
    store.enqueue_items([ITEM_A])
    try:
        store.claim_item()
        orchestrator._run_unit(job, Stage.ITEMS, ITEM_A)

        assert job.state == JobState.FAILED
        assert job.failure.message == "Bandcamp returned HTTP 503"
        assert store.queued_item_ids() == [ITEM_A]
        assert ITEM_A not in store.items_in_flight()
        assert fake.calls.count(("collectors", ITEM_A)) == config.max_fetch_retries

        store.claim_item()
        orchestrator._run_unit(job, Stage.ITEMS, ITEM_A)
    finally:
        orchestrator.shutdown()

    assert job.state == JobState.STAGE1
    assert store.queued_item_ids() == []


def test_transient_failure_is_retried_within_unit(store, config):
    fake = FakeFetcher()
    fake.add_fan(ALICE, "alice", [ITEM_A])
    fake.fail(("collectors", ITEM_A), TransientFetchError("timeout"))
    orchestrator = CrawlOrchestrator(store, fake, config)
    job = CrawlJob(fan_id=ALICE, username="alice", phase=JobState.STAGE1)

    store.upsert_item(make_item(ITEM_A))
    store.enqueue_items([ITEM_A])
    try:
        store.claim_item()
        orchestrator._run_unit(job, Stage.ITEMS, ITEM_A)
    finally:
        orchestrator.shutdown()

    assert job.failure is None
    assert store.queued_item_ids() == []
    assert fake.calls.count(("collectors", ITEM_A)) == 2


def test_rate_limit_pauses_job(store, config):
    fake = FakeFetcher()
    fake.add_fan(ALICE, "alice", [ITEM_A])
    fake.fail(("collectors", ITEM_A), RateLimited("https://bandcamp.com"))
    orchestrator = CrawlOrchestrator(store, fake, config)
    job = CrawlJob(fan_id=ALICE, username="alice", phase=JobState.STAGE1)

    store.upsert_item(make_item(ITEM_A))
    store.enqueue_items([ITEM_A])
    try:
        store.claim_item()
        orchestrator._run_unit(job, Stage.ITEMS, ITEM_A)
    finally:
        orchestrator.shutdown()

    assert job.state == JobState.FAILED
    assert job.paused_until > time.monotonic() - 1
    assert fake.calls.count(("collectors", ITEM_A)) == 1
    assert store.queued_item_ids() == [ITEM_A]
    assert orchestrator.metrics.get_metrics()["rate_limited"] == 1


@pytest.mark.parametrize(
    "error, retryable",
    [
        (TransientFetchError("timeout"), True),
        (RateLimited("https://bandcamp.com"), False),
        (EntityGone("https://x.bandcamp.com"), False),
        (RuntimeError("boom"), False),
    ],
)
def test_is_retryable(error, retryable):
    assert is_retryable(error) is retryable


def test_fetch_backs_off_exponentially_up_to_the_cap(store, config, caplog):
    config.max_fetch_retries = 4
    fake = FakeFetcher()
    fake.add_fan(ALICE, "alice", [ITEM_A])
    fake.fail(("collectors", ITEM_A), *[TransientFetchError("timeout")] * 3)
    orchestrator = CrawlOrchestrator(store, fake, config)
    caplog.set_level(logging.INFO, logger="bandrec.crawler.orchestrator")

    try:
        page = orchestrator._fetch(
            lambda: fake.fetch_collectors_page(make_item(ITEM_A))
        )
    finally:
        orchestrator.shutdown()

    assert [c.fan_id for c in page.collectors] == [ALICE]
    retries = [
        r.getMessage() for r in caplog.records if r.getMessage().startswith("Retrying")
    ]
    assert len(retries) == 3
    assert "in 0.01 seconds" in retries[0]
    assert "in 0.02 seconds" in retries[1]
    assert "in 0.02 seconds" in retries[2]


def test_fetch_gives_up_after_max_attempts(store, config):
    fake = FakeFetcher()
    fake.add_fan(ALICE, "alice", [ITEM_A])
    fake.fail(("collectors", ITEM_A), *[TransientFetchError("timeout")] * 10)
    orchestrator = CrawlOrchestrator(store, fake, config)

    try:
        with pytest.raises(TransientFetchError, match="timeout"):
            orchestrator._fetch(lambda: fake.fetch_collectors_page(make_item(ITEM_A)))
    finally:
        orchestrator.shutdown()

    assert fake.calls.count(("collectors", ITEM_A)) == config.max_fetch_retries


def test_fetch_stops_retrying_on_shutdown(store, config):
    config.max_fetch_retries = 10
    fake = FakeFetcher()
    fake.add_fan(ALICE, "alice", [ITEM_A])
    fake.fail(("collectors", ITEM_A), *[TransientFetchError("timeout")] * 10)
    orchestrator = CrawlOrchestrator(store, fake, config)
    orchestrator.shutdown()

    with pytest.raises(TransientFetchError):
        orchestrator._fetch(lambda: fake.fetch_collectors_page(make_item(ITEM_A)))

    assert fake.calls.count(("collectors", ITEM_A)) == 1


@pytest.mark.parametrize(
    "error",
    [EntityGone("https://x.bandcamp.com"), PageFormatError("https://x.bandcamp.com")],
)
def test_non_retryable_errors_drop_the_unit(store, config, error):
    fake = FakeFetcher()
    fake.add_fan(ALICE, "alice", [ITEM_A])
    fake.fail(("collectors", ITEM_A), error)
    orchestrator = CrawlOrchestrator(store, fake, config)
    job = CrawlJob(fan_id=ALICE, username="alice", phase=JobState.STAGE1)

    store.upsert_item(make_item(ITEM_A))
    store.enqueue_items([ITEM_A])
    try:
        store.claim_item()
        orchestrator._run_unit(job, Stage.ITEMS, ITEM_A)
    finally:
        orchestrator.shutdown()

    assert job.failure is None
    assert store.queued_item_ids() == []
    assert not store.is_item_stale(ITEM_A)


def test_vanished_collector_is_dropped(store, config):
    fake = FakeFetcher()
    orchestrator = CrawlOrchestrator(store, fake, config)
    store.upsert_collector(make_collector(BOB, "bob"))
    store.enqueue_collectors([BOB])
    try:
        store.claim_collector()
        orchestrator._run_unit(None, Stage.COLLECTORS, BOB)
    finally:
        orchestrator.shutdown()

    assert store.queued_collector_ids() == []
    assert not store.is_collector_stale(BOB)


def test_job_recovers_from_transient_failures(orchestrator, store, fetcher):
    fetcher.fail(("collectors", ITEM_B), *[TransientFetchError("flaky")] * 4)

    job = crawl(orchestrator, "alice")

    assert job.state == JobState.DONE
    assert store.get_target(ALICE).stage == Stage.DONE
    assert fetcher.calls.count(("collectors", ITEM_B)) == 5


def test_sweep_processes_leftover_units(orchestrator, store, fetcher):
    store.upsert_item(make_item(ITEM_C))
    store.upsert_collector(make_collector(CAROL, "carol"))
    store.enqueue_items([ITEM_C])
    store.enqueue_collectors([CAROL])

    assert orchestrator.sweep_once()

    assert store.queued_item_ids() == []
    assert store.collected_by_fan_ids(ITEM_C) == [BOB, CAROL]
    assert store.collection_item_ids(CAROL) == {ITEM_C}
    # bob was discovered on the listing of C
    assert store.queued_collector_ids() == [BOB]

    assert orchestrator.sweep_once()
    assert store.collection_item_ids(BOB) == {ITEM_A, ITEM_C}
    assert store.queued_collector_ids() == []
    assert not orchestrator.sweep_once()


def test_sweep_waits_for_live_jobs(orchestrator, store):
    store.upsert_item(make_item(ITEM_C))
    store.enqueue_items([ITEM_C])
    orchestrator.registry.add(CrawlJob(fan_id=ALICE, username="alice"))

    assert not orchestrator.sweep_once()
    assert store.queued_item_ids() == [ITEM_C]


def test_crawl_all_refreshes_stalest_entities(store, fetcher, config):
    config.crawl_all = True
    orchestrator = CrawlOrchestrator(store, fetcher, config)
    store.upsert_item(make_item(ITEM_C))
    store.upsert_collector(make_collector(CAROL, "carol"))
    try:
        assert orchestrator.sweep_once()
    finally:
        orchestrator.shutdown()

    assert not store.is_item_stale(ITEM_C)
    assert not store.is_collector_stale(CAROL)


def test_shutdown_rejects_new_requests(store, fetcher, config):
    orchestrator = CrawlOrchestrator(store, fetcher, config)
    orchestrator.shutdown()

    with pytest.raises(Exception) as exc_info:
        orchestrator.request_user("alice")

    assert getattr(exc_info.value, "status_code", None) == 503


def test_registry_keeps_one_job_per_fan():
    registry = JobRegistry()
    first = CrawlJob(fan_id=ALICE, username="alice")
    second = CrawlJob(fan_id=ALICE, username="alice")

    assert registry.add(first) is first
    assert registry.add(second) is first

    registry.remove(second)
    assert registry.get(ALICE) is first

    registry.remove(first)
    assert len(registry) == 0
