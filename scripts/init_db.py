#!/usr/bin/env python3
"""Create the search pipeline tables (use alembic for managed deployments)."""
import argparse
import os
import sys

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from greylit_app.database import check_database_connection, get_engine, init_database


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Create Greylit database tables.")
    parser.add_argument("--drop", action="store_true", help="Drop existing tables first (deletes all data).")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    print(f"Using database at: {get_engine().url}")
    if not check_database_connection():
        print("Database is not reachable")
        return 1

    init_database(drop_existing=args.drop)
    print("Tables created.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
