"""Recommendation scoring.

Ranks the items a user's neighbourhood collected by blending two signals:

* ``popularity``: the item's ``also_collected_count``, independent of the user.
* ``affinity``: how many of the user's neighbours are linked to the item.

The blend is a weighted geometric form::

    score = (1 + popularity) ** (m / boost) * affinity ** (boost / m)

with ``m = sqrt(5)``, the boost at the slider midpoint. At ``boost == m`` both
signals enter linearly; raising ``boost`` shifts weight to affinity, lowering
it shifts weight to popularity. The score grows with both signals for every
boost in ``[1, 5]``.
"""

import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Optional

import numpy as np

from bandrec.api.exceptions import CrawlInProgress, NoActiveJob
from bandrec.crawler.store import GraphStore
from bandrec.crawler.types import Stage
from bandrec.recommender.matrix import load_item_details, load_neighbourhood_matrix

# Configure module logger
logger = logging.getLogger(__name__)

MIN_BOOST = 1.0
MAX_BOOST = 5.0
DEFAULT_BOOST = 2.0
MIDPOINT_BOOST = math.sqrt(MIN_BOOST * MAX_BOOST)
DEFAULT_TOP_N = 50


def slider_to_boost(position: float) -> float:
    """Map a linear 0-100 slider position onto the boost range.

    Example:
        >>> slider_to_boost(0), slider_to_boost(100)
        (1.0, 5.0)
    """
    low, high = math.log(MIN_BOOST), math.log(MAX_BOOST)
    return math.exp(low + (high - low) / 100 * position)


def clamp_boost(boost: float) -> float:
    if math.isnan(boost):
        return DEFAULT_BOOST
    return min(max(boost, MIN_BOOST), MAX_BOOST)


def blend_scores(
    popularity: np.ndarray, affinity: np.ndarray, boost: float
) -> np.ndarray:
    """Combine popularity and affinity arrays into scores."""
    popularity = np.asarray(popularity, dtype=np.float64)
    affinity = np.asarray(affinity, dtype=np.float64)
    return np.power(1.0 + popularity, MIDPOINT_BOOST / boost) * np.power(
        affinity, boost / MIDPOINT_BOOST
    )


@dataclass
class ScoredItem:
    """A recommended item with the signals behind its score."""

    item_id: int
    item_title: str
    item_url: str
    band_name: str
    also_collected_count: int
    affinity: int
    score: float

    def to_dict(self) -> Dict:
        return {
            "item_title": self.item_title,
            "item_url": self.item_url,
            "band_name": self.band_name,
            "also_collected_count": self.also_collected_count,
            "score": math.floor(self.score),
        }


class RecommendationScorer:
    """Scores candidate items for crawled users.

    Args:
        store: Graph store holding a completed crawl.
        min_shared_items: Items a collector must share with the user to be
            part of the neighbourhood.
        default_limit: Number of items returned when no limit is given.
    """

    def __init__(
        self,
        store: GraphStore,
        min_shared_items: int = 1,
        default_limit: int = DEFAULT_TOP_N,
    ):
        self.store = store
        self.min_shared_items = min_shared_items
        self.default_limit = default_limit

    def _resolve(self, username: str) -> int:
        fan_id = self.store.get_fan_id(username)
        if fan_id is None:
            raise NoActiveJob(username)
        target = self.store.get_target(fan_id)
        if target is None:
            raise NoActiveJob(username)
        if target.stage != Stage.DONE:
            raise CrawlInProgress(username, target.stage)
        return fan_id

    def recommend(
        self,
        username: str,
        similar_boost: float = DEFAULT_BOOST,
        limit: Optional[int] = None,
    ) -> List[ScoredItem]:
        """Rank items the user has not collected.

        Args:
            username: User whose crawl has completed.
            similar_boost: Personalisation weight, clamped to [1, 5].
            limit: Maximum number of items (defaults to ``default_limit``).

        Returns:
            Items ordered by score desc, popularity desc, item id asc.

        Raises:
            NoActiveJob: If the user was never crawled.
            CrawlInProgress: If the user's crawl has not reached stage 3.
        """
        fan_id = self._resolve(username)
        boost = clamp_boost(similar_boost)
        limit = self.default_limit if limit is None else limit

        matrix, _, item_map = load_neighbourhood_matrix(
            self.store, fan_id, self.min_shared_items
        )
        if matrix.nnz == 0 or limit <= 0:
            return []

        item_ids = np.empty(len(item_map), dtype=np.int64)
        for item_id, idx in item_map.items():
            item_ids[idx] = item_id
        affinity = np.asarray(matrix.sum(axis=0)).ravel()

        owned = np.array(sorted(self.store.collection_item_ids(fan_id)), dtype=np.int64)
        candidates = ~np.isin(item_ids, owned)
        item_ids = item_ids[candidates]
        affinity = affinity[candidates]
        if len(item_ids) == 0:
            return []

        details = load_item_details(self.store, item_ids.tolist())
        popularity = (
            details["also_collected_count"].reindex(item_ids).fillna(0).to_numpy(dtype=np.float64)
        )

        scores = blend_scores(popularity, affinity, boost)
        # np.lexsort uses the last key as primary
        order = np.lexsort((item_ids, -popularity, -scores))[:limit]

        results = []
        for idx in order:
            item_id = int(item_ids[idx])
            row = details.loc[item_id]
            results.append(
                ScoredItem(
                    item_id=item_id,
                    item_title=row["item_title"],
                    item_url=row["item_url"],
                    band_name=row["band_name"],
                    also_collected_count=int(row["also_collected_count"]),
                    affinity=int(affinity[idx]),
                    score=float(scores[idx]),
                )
            )

        logger.info(
            f"Scored {len(item_ids)} candidates for {username}, returning {len(results)}",
            extra={"fan_id": fan_id, "similar_boost": boost},
        )
        return results
