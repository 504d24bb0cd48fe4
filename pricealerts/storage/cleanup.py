# -*- coding: utf-8 -*-
"""
Database cleanup and maintenance tasks.
Prunes old triggered alerts and refreshes alert metrics once a day.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict

from loguru import logger
from sqlalchemy import delete, func, select
from sqlalchemy.orm import sessionmaker

from pricealerts.config import get_database_cleanup_config
from .db import SessionLocal
from .metrics import recompute_alert_metrics
from .models import AlertRuleRow, TriggeredAlertRow


def cleanup_old_alerts(session_factory: sessionmaker = SessionLocal, now: datetime = None) -> Dict[str, int]:
    """
    Delete triggered alerts older than retention_days.

    The cutoff never goes below the longest rule cooldown (or one day, for the
    daily cap), so pruning cannot make an item eligible again early.

    Returns:
        Dict with cleanup stats: {"deleted": 42, "kept": 1234}
    """
    config = get_database_cleanup_config()

    if not config.get('enabled', False):
        logger.info("Database cleanup is disabled in config")
        return {"deleted": 0, "kept": 0}

    retention_days = config.get('retention_days', 90)
    now = (now or datetime.now(timezone.utc)).astimezone(timezone.utc).replace(tzinfo=None)

    with session_factory() as session:
        longest_cooldown = session.scalar(select(func.max(AlertRuleRow.cooldown_hours))) or 0
        retention = max(timedelta(days=retention_days), timedelta(hours=longest_cooldown), timedelta(days=1))
        cutoff = now - retention

        logger.info(f"Starting database cleanup: retention={retention}, cutoff={cutoff:%Y-%m-%d %H:%M} UTC")

        result = session.execute(delete(TriggeredAlertRow).where(TriggeredAlertRow.created_at < cutoff))
        session.commit()
        deleted = result.rowcount or 0
        kept = session.scalar(select(func.count(TriggeredAlertRow.id))) or 0

    logger.info(f"Database cleanup complete: deleted {deleted} alerts (kept {kept})")
    return {"deleted": deleted, "kept": kept}


def run_maintenance(session_factory: sessionmaker = SessionLocal) -> Dict[str, int]:
    """Prune old alerts, then recompute metrics over what is left."""
    stats = cleanup_old_alerts(session_factory)
    stats["metrics_rules"] = recompute_alert_metrics(session_factory)
    return stats


async def schedule_maintenance_task(schedule_hour: int = 3):
    """
    Async task that runs maintenance daily at schedule_hour UTC.
    Uses simple asyncio loop rather than full scheduler library.
    """
    logger.info(f"Maintenance scheduled daily at {schedule_hour:02d}:00 UTC")

    while True:
        try:
            now = datetime.now(timezone.utc)
            next_run = now.replace(hour=schedule_hour, minute=0, second=0, microsecond=0)
            if now >= next_run:
                next_run += timedelta(days=1)

            sleep_seconds = (next_run - now).total_seconds()
            logger.info(f"Next maintenance scheduled for {next_run} (in {sleep_seconds/3600:.1f}h)")
            await asyncio.sleep(sleep_seconds)

            logger.info("Running scheduled maintenance...")
            result = await asyncio.to_thread(run_maintenance)
            logger.info(f"Maintenance result: {result}")

        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Error in maintenance scheduler: {e}")
            # Sleep 1 hour before retrying
            await asyncio.sleep(3600)
