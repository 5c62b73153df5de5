#!/usr/bin/env python3
"""
Periodic maintenance: drop expired cache rows and old unsaved requests.

Run from cron, e.g. daily:
    0 3 * * * /path/to/venv/bin/python scripts/cache_cleanup.py --days 7
"""
import argparse
import json
import os
import sys
import time
from datetime import timedelta

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from greylit_app.database import cleanup_expired_cache
from greylit_app.search import SearchStorage


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Clean up Greylit cache and search requests.")
    parser.add_argument(
        "--days",
        type=int,
        default=7,
        help="Delete unsaved search requests older than this many days."
    )
    parser.add_argument("--cache-only", action="store_true", help="Only evict expired cache rows.")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    if args.days < 0:
        print("--days must not be negative")
        return 2

    report = {
        "generated_at": time.strftime("%Y-%m-%dT%H:%M:%S%z"),
        "expired_cache_rows": cleanup_expired_cache(),
        "unsaved_requests_removed": 0,
    }
    if not args.cache_only:
        report["unsaved_requests_removed"] = SearchStorage().cleanup_unsaved_requests(
            older_than=timedelta(days=args.days)
        )

    print(json.dumps(report, indent=2, sort_keys=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
