"""CLI script for crawling a Bandcamp fan and printing recommendations.

Runs the same crawl the API runs, but in the foreground: it waits for both
stages to finish and then prints the ranked releases. Useful for testing and
for warming the database before serving.
"""

import argparse
import sys
from pathlib import Path

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from bandrec.api.exceptions import BandRecException
from bandrec.api.logging_config import setup_logging
from bandrec.api.main import build_services
from bandrec.config import CrawlerConfig
from bandrec.recommender.scorer import DEFAULT_BOOST, slider_to_boost


def print_recommendations(results, username: str, boost: float) -> None:
    print(f"\nRecommendations for {username} (similar_boost={boost:.3f})")
    print("=" * 72)
    if not results:
        print("  (none)")
        return
    for rank, item in enumerate(results, 1):
        print(f"{rank:3d}. {item.item_title} by {item.band_name}")
        print(
            f"     score={int(item.score)} collectors={item.also_collected_count} "
            f"shared={item.affinity}"
        )
        print(f"     {item.item_url}")


def main() -> None:
    """Main CLI function."""
    parser = argparse.ArgumentParser(
        description="Crawl a Bandcamp fan and print recommendations",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/crawl_cli.py somefan
  python scripts/crawl_cli.py somefan --slider 80 --limit 20
  python scripts/crawl_cli.py somefan --refresh --database cache.sqlite3
        """,
    )
    parser.add_argument("username", help="Bandcamp username")
    parser.add_argument("--database", "-d", help="SQLite database file")
    parser.add_argument(
        "--similar-boost",
        type=float,
        default=DEFAULT_BOOST,
        help=f"Personalisation weight in [1, 5] (default: {DEFAULT_BOOST})",
    )
    parser.add_argument(
        "--slider",
        type=float,
        help="Slider position 0-100, converted to --similar-boost",
    )
    parser.add_argument("--limit", type=int, help="Number of recommendations")
    parser.add_argument(
        "--refresh",
        action="store_true",
        help="Forget the fan's cached collection before crawling",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Log crawl progress")
    args = parser.parse_args()

    overrides = {"database": args.database} if args.database else {}
    config = CrawlerConfig.from_env(**overrides)
    setup_logging("INFO" if args.verbose else "WARNING")

    services = build_services(config)
    try:
        if args.refresh:
            fan_id = services.store.get_fan_id(args.username)
            if fan_id is not None:
                services.store.purge_collector(fan_id)

        job = services.orchestrator.request_user(args.username)
        services.orchestrator.wait(job)

        boost = args.similar_boost
        if args.slider is not None:
            boost = slider_to_boost(args.slider)
        results = services.scorer.recommend(args.username, boost, args.limit)
        print_recommendations(results, args.username, boost)
    except BandRecException as e:
        print(f"Error: {e.message}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        print("Interrupted, crawl state is kept for the next run", file=sys.stderr)
        sys.exit(130)
    finally:
        services.close()


if __name__ == "__main__":
    main()
