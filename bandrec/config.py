"""Runtime configuration for the crawler, scorer and API.

Every tunable lives on :class:`CrawlerConfig`. Values can be overridden from
the environment with ``BANDREC_`` followed by the upper-cased field name,
e.g. ``BANDREC_STALENESS_TTL=86400``.
"""

import logging
import os
from dataclasses import dataclass, fields
from typing import Dict, Mapping, Optional

# Configure module logger
logger = logging.getLogger(__name__)

ENV_PREFIX = "BANDREC_"

SECONDS_PER_DAY = 86400

# Default configuration constants
DEFAULT_DATABASE = "bandrec.sqlite3"
DEFAULT_STALENESS_TTL = 30 * SECONDS_PER_DAY
DEFAULT_WORKERS = 4
DEFAULT_MAX_JOBS = 4
DEFAULT_REQUESTS_PER_MINUTE = 60
DEFAULT_FETCH_TIMEOUT = 20.0
DEFAULT_MAX_FETCH_RETRIES = 3
DEFAULT_RETRY_BACKOFF_BASE = 1.0
DEFAULT_RETRY_BACKOFF_MAX = 15.0
DEFAULT_RATE_LIMIT_PAUSE = 10.0
DEFAULT_PAGES_PER_UNIT = 5
DEFAULT_PAGE_SIZE = 500
DEFAULT_POLL_INTERVAL = 1.0
DEFAULT_MIN_COLLECTION_SIZE = 2
DEFAULT_MIN_SHARED_ITEMS = 1
DEFAULT_RECOMMENDATION_LIMIT = 50
DEFAULT_SWEEP_INTERVAL = 3.0

_TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass
class CrawlerConfig:
    """Configuration for a BandRec deployment.

    Attributes:
        database: Path of the SQLite file backing the graph store.
        staleness_ttl: Age in seconds after which a crawled item or collector
            is considered stale and crawled again on next access.
        workers: Size of the worker pool that executes fetch units.
        max_jobs: Maximum number of crawl jobs running their stages at once.
        requests_per_minute: Outbound request budget shared by all workers.
        fetch_timeout: Timeout in seconds for every outbound HTTP call.
        max_fetch_retries: Attempts per fetch before a unit is released.
        retry_backoff_base: First backoff delay in seconds, doubled per retry.
        retry_backoff_max: Upper bound for a single backoff delay.
        rate_limit_pause: Pause applied to a job after Bandcamp rate limits it.
        pages_per_unit: Listing pages read per claimed item before the unit
            is released with its resume token.
        page_size: Entries requested per paginated API call.
        poll_interval: Delay before a job re-checks units claimed elsewhere.
        min_collection_size: Smallest collection a user needs to get a job.
        min_shared_items: Items a collector must share with the user to be
            part of the user's neighbourhood.
        recommendation_limit: Default number of recommendations returned.
        crawl_all: Keep refreshing the stalest known entities when idle.
        sweep_interval: Seconds between background sweeps.
        log_level: Root logging level.
    """

    database: str = DEFAULT_DATABASE
    staleness_ttl: int = DEFAULT_STALENESS_TTL
    workers: int = DEFAULT_WORKERS
    max_jobs: int = DEFAULT_MAX_JOBS
    requests_per_minute: int = DEFAULT_REQUESTS_PER_MINUTE
    fetch_timeout: float = DEFAULT_FETCH_TIMEOUT
    max_fetch_retries: int = DEFAULT_MAX_FETCH_RETRIES
    retry_backoff_base: float = DEFAULT_RETRY_BACKOFF_BASE
    retry_backoff_max: float = DEFAULT_RETRY_BACKOFF_MAX
    rate_limit_pause: float = DEFAULT_RATE_LIMIT_PAUSE
    pages_per_unit: int = DEFAULT_PAGES_PER_UNIT
    page_size: int = DEFAULT_PAGE_SIZE
    poll_interval: float = DEFAULT_POLL_INTERVAL
    min_collection_size: int = DEFAULT_MIN_COLLECTION_SIZE
    min_shared_items: int = DEFAULT_MIN_SHARED_ITEMS
    recommendation_limit: int = DEFAULT_RECOMMENDATION_LIMIT
    crawl_all: bool = False
    sweep_interval: float = DEFAULT_SWEEP_INTERVAL
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.workers <= 0 or self.max_jobs <= 0:
            raise ValueError("workers and max_jobs must be positive")
        if self.pages_per_unit <= 0:
            raise ValueError("pages_per_unit must be positive")
        if self.staleness_ttl < 0:
            raise ValueError("staleness_ttl must not be negative")
        if self.min_shared_items < 1:
            raise ValueError("min_shared_items must be at least 1")

    @classmethod
    def from_env(
        cls, environ: Optional[Mapping[str, str]] = None, **overrides
    ) -> "CrawlerConfig":
        """Build a config from ``BANDREC_*`` environment variables.

        Args:
            environ: Mapping to read instead of ``os.environ``.
            **overrides: Values that win over both defaults and environment.

        Returns:
            A validated CrawlerConfig.

        Raises:
            ValueError: If a variable cannot be converted to the field type.
        """
        environ = os.environ if environ is None else environ
        values: Dict[str, object] = {}

        for field in fields(cls):
            raw = environ.get(ENV_PREFIX + field.name.upper())
            if raw is None:
                continue
            try:
                values[field.name] = _convert(raw, field.type)
            except ValueError as e:
                raise ValueError(
                    f"Invalid value for {ENV_PREFIX}{field.name.upper()}: {raw!r}"
                ) from e

        values.update(overrides)
        config = cls(**values)
        logger.debug("Loaded configuration", extra={"config": repr(config)})
        return config


def _convert(raw: str, field_type) -> object:
    if field_type in (bool, "bool"):
        return raw.strip().lower() in _TRUE_VALUES
    if field_type in (int, "int"):
        return int(raw)
    if field_type in (float, "float"):
        return float(raw)
    return raw
