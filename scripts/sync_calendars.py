#!/usr/bin/env python3
"""
Sync the calendar cache for every connected CareerVine user.

Intended for cron; the API itself has no background scheduler. Each user
is synced independently, so one failure does not stop the others.

Usage:
    python scripts/sync_calendars.py [--user USER_ID] [--days-back N] [--days-forward N] [--force]

Options:
    --user USER_ID     Sync only this user
    --days-back N      Lookback window in days (default from settings)
    --days-forward N   Horizon in days (default from settings)
    --force            Ignore the per-user sync cooldown
"""
import argparse
import logging
import sqlite3
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from api.services.calendar import CalendarAPIError
from api.services.calendar_google import get_calendar_provider
from api.services.calendar_sync import SyncRateLimitedError, sync_calendar
from api.services.connection_store import get_connection_store
from api.services.google_auth import CalendarNotConnectedError, GoogleOAuthError
from config.settings import settings

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)


def run(user_ids: list[str], days_back: int, days_forward: int, force: bool = False) -> dict:
    """
    Sync each user and collect a summary.

    Returns:
        Dict with succeeded, rate_limited and failed user lists
    """
    now = datetime.now(timezone.utc)
    start = now - timedelta(days=days_back)
    end = now + timedelta(days=days_forward)

    summary = {"succeeded": [], "rate_limited": [], "failed": []}
    for user_id in user_ids:
        try:
            result = sync_calendar(
                user_id,
                get_calendar_provider(user_id),
                start=start,
                end=end,
                enforce_cooldown=not force,
            )
            logger.info(f"{user_id}: {result.upserted} upserted, {result.deleted} deleted")
            summary["succeeded"].append(user_id)
        except SyncRateLimitedError as e:
            logger.info(f"{user_id}: skipped ({e})")
            summary["rate_limited"].append(user_id)
        except (CalendarAPIError, CalendarNotConnectedError, GoogleOAuthError, sqlite3.Error) as e:
            logger.error(f"{user_id}: sync failed: {e}")
            summary["failed"].append(user_id)

    return summary


def main():
    parser = argparse.ArgumentParser(description="Sync calendar caches for connected users")
    parser.add_argument("--user", help="Sync only this user")
    parser.add_argument("--days-back", type=int, default=settings.calendar_sync_days_back)
    parser.add_argument("--days-forward", type=int, default=settings.calendar_sync_days_forward)
    parser.add_argument("--force", action="store_true", help="Ignore the sync cooldown")
    args = parser.parse_args()

    if args.user:
        user_ids = [args.user]
    else:
        user_ids = [c.user_id for c in get_connection_store().list_connected()]

    if not user_ids:
        logger.info("No connected users to sync")
        return 0

    logger.info(f"Syncing calendars for {len(user_ids)} user(s)")
    summary = run(user_ids, args.days_back, args.days_forward, force=args.force)
    logger.info(
        f"Done: {len(summary['succeeded'])} succeeded, "
        f"{len(summary['rate_limited'])} rate limited, {len(summary['failed'])} failed"
    )
    return 1 if summary["failed"] else 0


if __name__ == "__main__":
    sys.exit(main())
