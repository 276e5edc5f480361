"""BandRec: Bandcamp album recommendations from the collection graph.

This package crawls the public "who collected what" graph around a Bandcamp
fan and ranks releases the fan does not own yet by blending global popularity
with personal affinity.

Modules:
    api: FastAPI application and REST API endpoints
    crawler: Graph store, Bandcamp fetcher and the crawl orchestrator
    recommender: Neighbourhood matrix and recommendation scoring
"""

__version__ = "0.1.0"
