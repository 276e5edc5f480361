"""Tests for crawl progress reporting."""

import pytest

from bandrec.api.exceptions import NoActiveJob, RateLimited, TransientFetchError
from bandrec.crawler.orchestrator import CrawlJob, JobState
from bandrec.crawler.progress import ProgressReporter
from bandrec.crawler.types import Stage
from tests.conftest import ALICE, make_collector


@pytest.fixture
def reporter(store, orchestrator) -> ProgressReporter:
    return ProgressReporter(store, orchestrator)


def test_unknown_user_has_no_job(reporter):
    with pytest.raises(NoActiveJob) as exc_info:
        reporter.status("nobody")

    assert exc_info.value.status_code == 404


def test_known_user_without_target_has_no_job(reporter, store):
    store.upsert_collector(make_collector(ALICE, "alice"))

    with pytest.raises(NoActiveJob):
        reporter.status("alice")


def test_status_reads_persisted_target(reporter, store):
    store.upsert_collector(make_collector(ALICE, "alice"))
    store.update_target(ALICE, Stage.COLLECTORS, 4, 9, 12)

    target = reporter.status("alice")

    assert (target.stage, target.count_left, target.count_total, target.eta) == (2, 4, 9, 12)


def test_status_without_orchestrator(store):
    store.upsert_collector(make_collector(ALICE, "alice"))
    store.update_target(ALICE, Stage.DONE, 0, 0, 0)

    assert ProgressReporter(store).status("alice").stage == Stage.DONE


def test_failed_job_reports_transient_error(reporter, store, orchestrator):
    store.upsert_collector(make_collector(ALICE, "alice"))
    store.update_target(ALICE, Stage.ITEMS, 2, 2, 4)
    job = CrawlJob(fan_id=ALICE, username="alice", phase=JobState.STAGE1)
    job.record_failure(
        TransientFetchError("Bandcamp returned HTTP 503", {"url": "https://bandcamp.com"})
    )
    orchestrator.registry.add(job)

    with pytest.raises(TransientFetchError) as exc_info:
        reporter.status("alice")

    assert exc_info.value.status_code == 503
    assert exc_info.value.message == "Bandcamp returned HTTP 503"
    assert exc_info.value.details == {"url": "https://bandcamp.com"}


def test_rate_limited_job_reports_rate_limit(reporter, store, orchestrator):
    store.upsert_collector(make_collector(ALICE, "alice"))
    store.update_target(ALICE, Stage.ITEMS, 2, 2, 4)
    job = CrawlJob(fan_id=ALICE, username="alice", phase=JobState.STAGE1)
    job.record_failure(RateLimited("https://bandcamp.com"))
    orchestrator.registry.add(job)

    with pytest.raises(TransientFetchError) as exc_info:
        reporter.status("alice")

    assert exc_info.value.message == "Rate limit reached"


def test_recovered_job_reports_target(reporter, store, orchestrator):
    store.upsert_collector(make_collector(ALICE, "alice"))
    store.update_target(ALICE, Stage.ITEMS, 1, 2, 2)
    job = CrawlJob(fan_id=ALICE, username="alice", phase=JobState.STAGE1)
    job.record_failure(TransientFetchError("timeout"))
    job.clear_failure()
    orchestrator.registry.add(job)

    assert reporter.status("alice").count_left == 1
