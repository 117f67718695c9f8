#!/usr/bin/env python3
"""
Billing Jobs Runner

Runs the scheduled billing batches:
- auto-topup: replenish balances that fell below the user's threshold
- renewals: renew or expire subscriptions past their end date

Runs each selected job once by default; pass --loop to keep running them
every --interval seconds.

Usage:
    python scripts/run_billing_jobs.py
    python scripts/run_billing_jobs.py --job renewals
    python scripts/run_billing_jobs.py --job auto-topup --loop --interval 300
"""

import argparse
import asyncio
import os
import sys

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from chatcredits.config import settings
from chatcredits.db.session import Database
from chatcredits.observability import get_logger, setup_logging
from chatcredits.services.autotopup import AutoTopupService
from chatcredits.services.renewals import SubscriptionRenewalService

setup_logging()
logger = get_logger(__name__)

JOBS = ("auto-topup", "renewals")


async def run_once(database: Database, jobs: tuple[str, ...]) -> int:
    """Run each job once. Returns the number of failed items."""
    failed = 0

    if "auto-topup" in jobs:
        topups = await AutoTopupService(database.session_factory, settings).process_auto_topups()
        logger.info(
            "auto_topup_batch_finished",
            scanned=topups.scanned,
            topped_up=topups.topped_up,
            skipped=topups.skipped,
            failed=topups.failed,
        )
        failed += topups.failed

    if "renewals" in jobs:
        renewals = await SubscriptionRenewalService(
            database.session_factory, settings
        ).process_renewals()
        logger.info(
            "renewal_batch_finished",
            scanned=renewals.scanned,
            renewed=renewals.renewed,
            expired=renewals.expired,
            skipped=renewals.skipped,
            failed=renewals.failed,
        )
        failed += renewals.failed

    return failed


async def run_loop(database: Database, jobs: tuple[str, ...], interval_seconds: int) -> None:
    """Run the selected jobs repeatedly."""
    logger.info("billing_runner_started", jobs=list(jobs), interval_seconds=interval_seconds)

    while True:
        try:
            await run_once(database, jobs)
        except Exception as e:
            logger.error("billing_runner_error", error=str(e), exc_info=True)

        await asyncio.sleep(interval_seconds)


async def run(jobs: tuple[str, ...], loop: bool, interval_seconds: int) -> int:
    database = Database(settings)
    try:
        if loop:
            await run_loop(database, jobs, interval_seconds)
            return 0
        failed = await run_once(database, jobs)
        return 1 if failed else 0
    finally:
        await database.dispose()


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Run scheduled billing jobs")
    parser.add_argument(
        "--job",
        choices=[*JOBS, "all"],
        default="all",
        help="Job to run (default: all)",
    )
    parser.add_argument("--loop", action="store_true", help="Keep running on an interval")
    parser.add_argument(
        "--interval",
        type=int,
        default=None,
        help="Seconds between runs in --loop mode (default: the job's configured interval)",
    )
    args = parser.parse_args()

    jobs = JOBS if args.job == "all" else (args.job,)
    interval = args.interval
    if interval is None:
        interval = (
            settings.renewal_interval_seconds
            if jobs == ("renewals",)
            else settings.auto_topup_interval_seconds
        )

    try:
        sys.exit(asyncio.run(run(jobs, args.loop, interval)))
    except KeyboardInterrupt:
        logger.info("billing_runner_stopped")
        sys.exit(0)


if __name__ == "__main__":
    main()
