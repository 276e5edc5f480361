"""Progress reporting for crawl jobs."""

import logging
from typing import Optional

from bandrec.api.exceptions import NoActiveJob, TransientFetchError
from bandrec.crawler.orchestrator import CrawlOrchestrator, JobState
from bandrec.crawler.store import GraphStore
from bandrec.crawler.types import Target

# Configure module logger
logger = logging.getLogger(__name__)


class ProgressReporter:
    """Reads the persisted progress of a user's crawl.

    Args:
        store: Graph store holding the collection targets.
        orchestrator: Used to surface the failure state of live jobs.
    """

    def __init__(self, store: GraphStore, orchestrator: Optional[CrawlOrchestrator] = None):
        self.store = store
        self.orchestrator = orchestrator

    def status(self, username: str) -> Target:
        """Return ``(stage, count_left, count_total, eta)`` for a user's crawl.

        Args:
            username: Bandcamp username previously passed to ``get_user``.

        Returns:
            The user's collection target.

        Raises:
            NoActiveJob: If the user is unknown or was never requested.
            TransientFetchError: If the live job is waiting out a fetch failure.
        """
        fan_id = self.store.get_fan_id(username)
        if fan_id is None:
            raise NoActiveJob(username)

        target = self.store.get_target(fan_id)
        if target is None:
            raise NoActiveJob(username)

        job = self.orchestrator.job_for(fan_id) if self.orchestrator else None
        if job is not None and job.state == JobState.FAILED:
            failure = job.failure
            if failure is not None:
                logger.debug(
                    f"Reporting failed crawl for {username}",
                    extra={"fan_id": fan_id, "error": failure.message},
                )
                raise TransientFetchError(failure.message, dict(failure.details))

        return target
