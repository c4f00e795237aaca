"""
Process entry point.

``dockhand`` runs the background reconciler on an interval (plus once shortly
after start) until interrupted. ``dockhand reconcile`` runs a single sweep
and exits.
"""
import argparse
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from dockhand import __version__
from dockhand.core.config import settings

logger = logging.getLogger(__name__)


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=(level or settings.LOG_LEVEL).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_scheduler() -> AsyncIOScheduler:
    """Create the scheduler with the reconcile jobs (none if reconciling is disabled)."""
    from dockhand.services.reconciler import run_reconcile

    scheduler = AsyncIOScheduler()
    if not settings.RECONCILE_ENABLED:
        logger.info("Reconciler disabled (RECONCILE_ENABLED=false)")
        return scheduler

    scheduler.add_job(
        run_reconcile,
        "interval",
        seconds=settings.RECONCILE_INTERVAL_SECONDS,
        id="reconcile",
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        run_reconcile,
        "date",
        run_date=datetime.now(timezone.utc) + timedelta(seconds=settings.RECONCILE_STARTUP_DELAY_SECONDS),
        id="reconcile-startup",
    )
    return scheduler


async def serve() -> None:
    scheduler = build_scheduler()
    scheduler.start()
    logger.info(
        f"{settings.APP_NAME} {__version__} started; reconciling every "
        f"{settings.RECONCILE_INTERVAL_SECONDS}s"
    )
    try:
        await asyncio.Event().wait()
    finally:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")


async def reconcile_once() -> int:
    from dockhand.services.reconciler import reconciler

    report = await reconciler.reconcile()
    return 1 if report.errors else 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="dockhand", description="Deployment engine daemon")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("serve", help="Run the periodic reconciler (default)")
    subparsers.add_parser("reconcile", help="Run one reconciliation sweep and exit")
    args = parser.parse_args(argv)

    configure_logging(args.log_level)

    if args.command == "reconcile":
        return asyncio.run(reconcile_once())

    try:
        asyncio.run(serve())
    except KeyboardInterrupt:
        logger.info("Interrupted")
    return 0
