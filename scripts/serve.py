"""Run the BandRec API server.

Configuration comes from ``BANDREC_*`` environment variables; the command
line options below override the most common ones.
"""

import argparse
import sys
from pathlib import Path

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

import uvicorn

from bandrec.api.logging_config import setup_logging
from bandrec.api.main import create_app
from bandrec.config import CrawlerConfig


def main() -> None:
    """Main CLI function."""
    parser = argparse.ArgumentParser(
        description="Serve Bandcamp recommendations over HTTP",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/serve.py --database bandrec.sqlite3
  python scripts/serve.py --database bandrec.sqlite3 --port 8080 --crawl
  BANDREC_WORKERS=8 python scripts/serve.py
        """,
    )
    parser.add_argument("--database", "-d", help="SQLite database file")
    parser.add_argument("--host", default="0.0.0.0", help="Listen host (default: 0.0.0.0)")
    parser.add_argument("--port", "-p", type=int, default=8000, help="Listen port (default: 8000)")
    parser.add_argument("--workers", type=int, help="Fetch worker pool size")
    parser.add_argument(
        "--crawl",
        "-c",
        action="store_true",
        help="Keep refreshing the stalest known items and collectors when idle",
    )
    parser.add_argument("--log-level", help="Logging level (default: INFO)")
    args = parser.parse_args()

    overrides = {}
    if args.database:
        overrides["database"] = args.database
    if args.workers:
        overrides["workers"] = args.workers
    if args.crawl:
        overrides["crawl_all"] = True
    if args.log_level:
        overrides["log_level"] = args.log_level

    try:
        config = CrawlerConfig.from_env(**overrides)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config.log_level)
    uvicorn.run(create_app(config), host=args.host, port=args.port, log_config=None)


if __name__ == "__main__":
    main()
