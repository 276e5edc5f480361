"""Tests for configuration loading."""

import pytest

from bandrec.config import DEFAULT_STALENESS_TTL, CrawlerConfig


def test_defaults():
    config = CrawlerConfig()

    assert config.staleness_ttl == DEFAULT_STALENESS_TTL == 30 * 86400
    assert config.min_collection_size == 2
    assert config.crawl_all is False


def test_from_env_reads_prefixed_variables():
    config = CrawlerConfig.from_env(
        {
            "BANDREC_DATABASE": "/tmp/graph.sqlite3",
            "BANDREC_WORKERS": "8",
            "BANDREC_RETRY_BACKOFF_MAX": "2.5",
            "BANDREC_CRAWL_ALL": "yes",
            "UNRELATED": "1",
        }
    )

    assert config.database == "/tmp/graph.sqlite3"
    assert config.workers == 8
    assert config.retry_backoff_max == 2.5
    assert config.crawl_all is True


def test_overrides_win_over_environment():
    config = CrawlerConfig.from_env({"BANDREC_WORKERS": "8"}, workers=3)

    assert config.workers == 3


def test_invalid_number_names_the_variable():
    with pytest.raises(ValueError, match="BANDREC_WORKERS"):
        CrawlerConfig.from_env({"BANDREC_WORKERS": "many"})


@pytest.mark.parametrize(
    "overrides",
    [
        {"workers": 0},
        {"max_jobs": -1},
        {"pages_per_unit": 0},
        {"staleness_ttl": -5},
        {"min_shared_items": 0},
    ],
)
def test_invalid_values_are_rejected(overrides):
    with pytest.raises(ValueError):
        CrawlerConfig(**overrides)
