"""FastAPI application main module.

This module defines the BandRec FastAPI application: the crawl and
recommendation services it owns, the exception handlers that turn the
:mod:`bandrec.api.exceptions` taxonomy into plain-text error responses, and
the health and metrics endpoints.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Dict, Optional, Sequence

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import PlainTextResponse

from bandrec import __version__
from bandrec.api.exceptions import BandRecException
from bandrec.api.logging_config import RequestLoggingMiddleware, setup_logging
from bandrec.api.metrics import CrawlMetrics
from bandrec.api.routes import users
from bandrec.config import CrawlerConfig
from bandrec.crawler.fetcher import BandcampFetcher, Fetcher
from bandrec.crawler.orchestrator import CrawlOrchestrator
from bandrec.crawler.progress import ProgressReporter
from bandrec.crawler.store import GraphStore
from bandrec.recommender.scorer import RecommendationScorer

# Configure module logger
logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything a request handler needs, created once per application."""

    config: CrawlerConfig
    store: GraphStore
    fetcher: Fetcher
    metrics: CrawlMetrics
    orchestrator: CrawlOrchestrator
    progress: ProgressReporter
    scorer: RecommendationScorer

    def close(self) -> None:
        self.orchestrator.shutdown()
        self.fetcher.close()


def build_services(
    config: CrawlerConfig, fetcher: Optional[Fetcher] = None
) -> Services:
    """Create the store, fetcher, orchestrator, reporter and scorer.

    Args:
        config: Deployment configuration.
        fetcher: Fetcher to use instead of a BandcampFetcher (tests pass a fake).

    Returns:
        Wired services; the store schema is initialized.
    """
    store = GraphStore(config.database, config.staleness_ttl)
    store.initialize()

    fetcher = fetcher or BandcampFetcher(config)
    metrics = CrawlMetrics()
    orchestrator = CrawlOrchestrator(store, fetcher, config, metrics)
    return Services(
        config=config,
        store=store,
        fetcher=fetcher,
        metrics=metrics,
        orchestrator=orchestrator,
        progress=ProgressReporter(store, orchestrator),
        scorer=RecommendationScorer(
            store,
            min_shared_items=config.min_shared_items,
            default_limit=config.recommendation_limit,
        ),
    )


def format_validation_errors(errors: Sequence[Dict]) -> str:
    """Render request validation errors as one line per parameter.

    Example:
        >>> format_validation_errors(
        ...     [{"loc": ("query", "limit"), "msg": "Input should be greater than 0"}]
        ... )
        'Invalid parameter limit: Input should be greater than 0'
    """
    lines = []
    for error in errors:
        loc = [str(part) for part in error.get("loc", ()) if part not in ("query", "body")]
        name = ".".join(loc) or "request"
        lines.append(f"Invalid parameter {name}: {error.get('msg', 'invalid value')}")
    return "\n".join(lines) or "Invalid request"


def create_app(
    config: Optional[CrawlerConfig] = None,
    fetcher: Optional[Fetcher] = None,
    background: bool = True,
) -> FastAPI:
    """Create the FastAPI application.

    Services are built when the application starts: interrupted crawl jobs
    are resumed and, with ``background=True``, the queue sweeper is started.

    Args:
        config: Configuration; read from the environment when omitted.
        fetcher: Optional fetcher override.
        background: Start the background sweeper.

    Returns:
        Configured FastAPI application.

    Example:
        >>> app = create_app(CrawlerConfig(database="/tmp/bandrec.sqlite3"))
        >>> with TestClient(app) as client:
        ...     client.get("/ping")
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app_config = config or CrawlerConfig.from_env()
        services = build_services(app_config, fetcher)
        app.state.services = services
        services.orchestrator.resume_jobs()
        if background:
            services.orchestrator.start_sweeper()
        logger.info(
            "BandRec started",
            extra={"database": app_config.database, "workers": app_config.workers},
        )
        try:
            yield
        finally:
            services.close()
            logger.info("BandRec stopped")

    app = FastAPI(
        title="BandRec API",
        description="Bandcamp recommendations from the collection graph",
        version=__version__,
        lifespan=lifespan,
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.include_router(users.router)

    @app.exception_handler(BandRecException)
    async def bandrec_exception_handler(
        request: Request, exc: BandRecException
    ) -> PlainTextResponse:
        logger.warning(
            f"{type(exc).__name__}: {exc.message}",
            extra={"path": str(request.url.path), **exc.details},
        )
        return PlainTextResponse(exc.message, status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> PlainTextResponse:
        message = format_validation_errors(exc.errors())
        logger.info(
            f"Rejected request: {message}", extra={"path": str(request.url.path)}
        )
        return PlainTextResponse(message, status_code=422)

    @app.exception_handler(Exception)
    async def unexpected_exception_handler(
        request: Request, exc: Exception
    ) -> PlainTextResponse:
        logger.error(
            f"Unhandled error on {request.url.path}",
            extra={"error_type": type(exc).__name__},
            exc_info=exc,
        )
        return PlainTextResponse("Internal server error", status_code=500)

    @app.get("/ping")
    def ping() -> Dict[str, str]:
        """Health check endpoint.

        Example:
            >>> response = client.get("/ping")
            >>> assert response.json() == {"status": "ok"}
        """
        return {"status": "ok"}

    @app.get("/metrics")
    def metrics(request: Request) -> Dict:
        """Crawl unit counters and moving latencies."""
        services: Services = request.app.state.services
        data = services.metrics.get_metrics()
        data["live_jobs"] = len(services.orchestrator.registry)
        return data

    return app


# Application used by uvicorn; configured from BANDREC_* variables at startup
app = create_app()


if __name__ == "__main__":
    import uvicorn

    setup_logging(CrawlerConfig.from_env().log_level)
    uvicorn.run(
        "bandrec.api.main:app",
        host="0.0.0.0",
        port=8000,
    )
