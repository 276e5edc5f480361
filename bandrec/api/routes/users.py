"""User crawl and recommendation endpoints for the BandRec API.

The client flow is a polling loop: request the user once, poll the status
until the crawl reaches stage 3, then fetch recommendations. Errors are
rendered as plain text by the application's exception handler.
"""

import logging
from typing import Any, List, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field

from bandrec.recommender.scorer import DEFAULT_BOOST

# Configure module logger
logger = logging.getLogger(__name__)

# Create API router
router = APIRouter(
    prefix="/api",
    tags=["users"],
)

USER_FETCHED = "User fetched successfully"


class StatusResponse(BaseModel):
    """Progress of a user's crawl job."""

    stage: int = Field(..., description="1 = items, 2 = collectors, 3 = done")
    count_left: int = Field(..., description="Units left in the current stage")
    count_total: int = Field(..., description="Units seen in the current stage")
    eta: int = Field(..., description="Estimated seconds to finish the stage")


class RecommendationItem(BaseModel):
    """A recommended release."""

    item_title: str
    item_url: str
    band_name: str
    also_collected_count: int = Field(..., description="Known number of collectors")
    score: int = Field(..., description="Blended score, floor-truncated")


def get_services(request: Request) -> Any:
    return request.app.state.services


@router.get("/get_user", response_class=PlainTextResponse)
def get_user(
    username: str = Query(..., min_length=1),
    services: Any = Depends(get_services),
) -> str:
    """Start (or attach to) the crawl job for a user.

    Idempotent: a user with a running job is attached to, a user whose crawl
    is complete and fresh is left alone.

    Raises:
        UnknownUser: 404 if Bandcamp has no such fan.
        CollectionTooSmall: 404 if the fan collected too few items.
        TransientFetchError: 503 if Bandcamp could not be reached.
    """
    username = username.strip()
    logger.info(f"get_user for {username}")
    services.orchestrator.request_user(username)
    return USER_FETCHED


@router.get("/get_status", response_model=StatusResponse)
def get_status(
    username: str = Query(..., min_length=1),
    services: Any = Depends(get_services),
) -> StatusResponse:
    """Report the stage, remaining units and ETA of a user's crawl.

    Raises:
        NoActiveJob: 404 if the user was never requested.
        TransientFetchError: 503 while the job waits out a fetch failure.
    """
    target = services.progress.status(username.strip())
    return StatusResponse(**target.to_dict())


@router.get("/get_recommendations", response_model=List[RecommendationItem])
def get_recommendations(
    username: str = Query(..., min_length=1),
    similar_boost: float = DEFAULT_BOOST,
    limit: Optional[int] = Query(None, ge=1, le=500),
    services: Any = Depends(get_services),
) -> List[RecommendationItem]:
    """Rank releases the user has not collected yet.

    Args:
        username: User whose crawl reached stage 3.
        similar_boost: Personalisation weight in [1, 5]; out-of-range values
            are clamped.
        limit: Maximum number of items (defaults to the configured limit).

    Raises:
        NoActiveJob: 404 if the user was never crawled.
        CrawlInProgress: 409 if the crawl has not finished.
    """
    username = username.strip()
    results = services.scorer.recommend(username, similar_boost, limit)
    logger.info(
        f"Returning {len(results)} recommendations for {username}",
        extra={"similar_boost": similar_boost},
    )
    return [RecommendationItem(**item.to_dict()) for item in results]
