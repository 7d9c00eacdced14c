"""Admin command line.

Usage:
    conquest-admin reprocess ACTIVITY_ID [--inline]
    conquest-admin archive-season SEASON_ID YYYY-MM-DD [--dry-run]
    conquest-admin seed-config
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from datetime import datetime, timezone

from conquest.admin.reprocess import reprocess_activity
from conquest.admin.season import archive_season
from conquest.config import get_settings
from conquest.database import close_db, get_session_factory, init_db
from conquest.gamification.config import seed_gameplay_config
from conquest.logging_config import setup_logging
from conquest.redis_client import close_redis, get_redis, init_redis


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="conquest-admin", description="Conquest engine admin tools")
    sub = parser.add_subparsers(dest="command", required=True)

    reprocess = sub.add_parser("reprocess", help="Reset an activity to pending and wait for the result")
    reprocess.add_argument("activity_id")
    reprocess.add_argument("--inline", action="store_true", help="Process in this process instead of a worker")

    season = sub.add_parser("archive-season", help="Archive cells last conquered before the season start")
    season.add_argument("season_id")
    season.add_argument("start_date", type=_parse_date, help="Season start (YYYY-MM-DD, UTC)")
    season.add_argument("--dry-run", action="store_true")

    sub.add_parser("seed-config", help="Insert the default gameplay config if none exists")
    return parser


def _parse_date(value: str) -> datetime:
    try:
        return datetime.strptime(value, "%Y-%m-%d").replace(tzinfo=timezone.utc)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"Invalid date {value!r}, use YYYY-MM-DD") from e


async def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    setup_logging(settings)
    await init_db(settings.database_url)
    if settings.redis_url:
        await init_redis(settings.redis_url)

    try:
        session_factory = get_session_factory()
        if args.command == "reprocess":
            status = await reprocess_activity(
                session_factory, args.activity_id, get_redis(), settings, inline=args.inline
            )
            print(f"{args.activity_id}: {status or 'timed out waiting for processing'}")
            return 0 if status is not None else 1

        if args.command == "archive-season":
            summary = await archive_season(
                session_factory, args.season_id, args.start_date, settings, dry_run=args.dry_run
            )
            verb = "would archive" if summary.dry_run else "archived"
            count = summary.candidates if summary.dry_run else summary.archived
            print(f"Season {summary.season_id}: {verb} {count} cells in {summary.batches} batches")
            return 0

        async with session_factory() as db:
            created = await seed_gameplay_config(db)
        print("Seeded default gameplay config" if created else "Gameplay config already present")
        return 0
    finally:
        await close_redis()
        await close_db()


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
