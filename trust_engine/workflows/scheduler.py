"""
Daily compliance jobs on APScheduler.

Two cron jobs run against the shared AsyncIOScheduler (UTC):

- ``retention_sweep``   RetentionScheduler.run_automated_cleanup (default 02:00)
- ``export_cleanup``    ErasureOrchestrator.cleanup_expired_exports (30 min later)

Both use ``max_instances=1`` and ``coalesce=True`` so a slow run never
overlaps the next one and missed runs collapse into one.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

if TYPE_CHECKING:
    from trust_engine.core.engine import TrustEngine

logger = logging.getLogger(__name__)

RETENTION_JOB_ID = "retention_sweep"
EXPORT_CLEANUP_JOB_ID = "export_cleanup"
EXPORT_CLEANUP_OFFSET_MINUTES = 30


def create_scheduler() -> AsyncIOScheduler:
    return AsyncIOScheduler(timezone="UTC")


def _export_cleanup_time(hour: int, minute: int) -> tuple[int, int]:
    total = (hour * 60 + minute + EXPORT_CLEANUP_OFFSET_MINUTES) % (24 * 60)
    return divmod(total, 60)


async def run_retention_sweep(engine: TrustEngine) -> None:
    report = await engine.retention.run_automated_cleanup()
    if report.errors:
        logger.warning(
            "Retention sweep finished with %d errors (%d rows deleted)",
            len(report.errors), report.total_deleted,
        )


async def run_export_cleanup(engine: TrustEngine) -> None:
    cleaned = await engine.erasure.cleanup_expired_exports()
    logger.info("Expired export cleanup removed %d artifacts", cleaned)


def install_compliance_jobs(scheduler: AsyncIOScheduler, engine: TrustEngine) -> None:
    """
    Register the daily compliance jobs.

    Args:
        scheduler: The process's AsyncIOScheduler
        engine: Wired TrustEngine whose services the jobs call
    """
    hour = engine.settings.sweep_hour
    minute = engine.settings.sweep_minute
    cleanup_hour, cleanup_minute = _export_cleanup_time(hour, minute)

    scheduler.add_job(
        run_retention_sweep,
        trigger=CronTrigger(hour=hour, minute=minute, timezone="UTC"),
        args=[engine],
        id=RETENTION_JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        run_export_cleanup,
        trigger=CronTrigger(hour=cleanup_hour, minute=cleanup_minute, timezone="UTC"),
        args=[engine],
        id=EXPORT_CLEANUP_JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    logger.info(
        "Compliance jobs installed: sweep %02d:%02d UTC, export cleanup %02d:%02d UTC",
        hour, minute, cleanup_hour, cleanup_minute,
    )
