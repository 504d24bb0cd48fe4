import argparse
import asyncio
import os
import signal
from loguru import logger

from pricealerts.config import (
    get_app_name,
    get_app_version,
    get_config,
    get_enabled_channels,
    get_healthcheck_config,
    get_logging_config,
    get_scheduler_config,
)
from pricealerts.utils.logging import setup_logging
from pricealerts.storage.db import init_db
from pricealerts.storage.cleanup import schedule_maintenance_task
from pricealerts.storage.metrics import recompute_alert_metrics
from pricealerts.rules.scheduler import get_scheduler
from pricealerts.utils.healthcheck import get_healthcheck


# Global shutdown event
shutdown_event = asyncio.Event()


def signal_handler(sig, frame):
    """Handle SIGTERM and SIGINT for graceful shutdown."""
    logger.info(f"Received signal {sig}, initiating graceful shutdown...")
    shutdown_event.set()


def startup_sequence() -> bool:
    """
    1. Initialize database
    2. Load and validate configuration
    """
    logger.info("=" * 60)
    logger.info(f"Starting {get_app_name()} v{get_app_version()}")
    logger.info("=" * 60)

    try:
        logger.info("Initializing database...")
        init_db()

        logger.info("Loading configuration...")
        get_config()
        scheduler_cfg = get_scheduler_config()
        logger.info(
            f"Config loaded: interval={scheduler_cfg['interval_seconds']}s, "
            f"workers={scheduler_cfg['max_workers']}, channels={get_enabled_channels()}"
        )
        return True

    except (OSError, ValueError) as e:
        logger.exception(f"Startup sequence failed: {e}")
        return False


async def run_service(dry_run: bool = False):
    """
    Main runtime - scheduler, maintenance and healthcheck run side by side
    until a shutdown signal arrives.
    """
    if not startup_sequence():
        logger.error("Startup failed, exiting...")
        return

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, signal_handler, sig, None)
        except NotImplementedError:
            signal.signal(sig, signal_handler)

    scheduler = get_scheduler(dry_run)

    tasks = [
        asyncio.create_task(scheduler.run(), name="SweepScheduler"),
        asyncio.create_task(schedule_maintenance_task(), name="Maintenance"),
        asyncio.create_task(shutdown_event.wait(), name="ShutdownWatcher"),
    ]
    if get_healthcheck_config()['enabled']:
        healthcheck = get_healthcheck(stats_provider=scheduler.get_stats)
        tasks.append(asyncio.create_task(healthcheck.run(), name="Healthcheck"))

    logger.info(f"Running tasks: {', '.join(t.get_name() for t in tasks)}")

    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)

        for task in done:
            if task.get_name() != "ShutdownWatcher" and task.exception():
                logger.error(f"Task {task.get_name()} crashed: {task.exception()!r}")

        logger.info("Stopping tasks...")
        await scheduler.stop()

        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

    finally:
        logger.info(f"Shutdown complete: {scheduler.get_stats()}")


async def run_single_sweep(dry_run: bool = False):
    if not startup_sequence():
        return None
    report = await get_scheduler(dry_run).run_once()
    if report is not None:
        logger.info(f"Sweep report: {report.as_dict()}")
    return report


def main():
    parser = argparse.ArgumentParser(description="Price alert rule evaluation and notification dispatch")
    parser.add_argument("--dry-run", action="store_true", help="Evaluate normally but only log notifications")
    parser.add_argument("--once", action="store_true", help="Run a single sweep and exit")
    parser.add_argument("--init-db", action="store_true", help="Initialize database tables")
    parser.add_argument("--recompute-metrics", action="store_true", help="Rebuild per-rule alert metrics and exit")
    args = parser.parse_args()

    level = os.getenv("LOG_LEVEL") or get_logging_config().get('level', 'INFO')
    setup_logging(level)

    if args.init_db:
        init_db()
        logger.info("Database initialized")
        return

    if args.recompute_metrics:
        count = recompute_alert_metrics()
        logger.info(f"Metrics recomputed for {count} rule(s)")
        return

    if args.once:
        asyncio.run(run_single_sweep(args.dry_run))
        return

    logger.info(f"Service starting in {'dry-run' if args.dry_run else 'live'} mode")

    try:
        asyncio.run(run_service(args.dry_run))
    except KeyboardInterrupt:
        logger.info("Received KeyboardInterrupt, shutting down...")
    finally:
        logger.info("Service stopped")


if __name__ == "__main__":
    main()
