"""
APScheduler Background Jobs

Scheduled jobs for dead-letter replay, retention cleanup and in-memory pruning.
Jobs run via AsyncIOScheduler on the FastAPI event loop.
"""

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

logger = structlog.get_logger(__name__)


async def run_dead_letter_sweep(runtime):
    """
    Wrapper for the periodic dead-letter sweep.

    Called by APScheduler every DLQ_SWEEP_INTERVAL_MINUTES to replay due entries.
    """
    try:
        summary = await runtime.sweeper.sweep()
        if summary.total:
            logger.info("dlq_sweep_job_completed", **summary.to_dict())
    except Exception as e:
        logger.error("dlq_sweep_crashed", error=str(e), exc_info=True)


async def run_retention_cleanup(runtime):
    """
    Wrapper for the daily retention job.

    Deletes terminal dead-letter entries and dedup records older than their
    retention windows.
    """
    try:
        deleted_entries = await runtime.dead_letters.cleanup(days_to_keep=runtime.settings.dlq_cleanup_days)
        purged_ids = await runtime.dedup_gate.purge_older_than(days=runtime.settings.dedup_retention_days)
        logger.info("retention_cleanup_completed", dead_letters_deleted=deleted_entries, dedup_records_purged=purged_ids)
    except Exception as e:
        logger.error("retention_cleanup_crashed", error=str(e), exc_info=True)


async def run_memory_prune(runtime):
    """Drop expired rate-limiter windows and dedup cache entries."""
    try:
        pruned_subjects = runtime.rate_limiter.prune()
        pruned_ids = runtime.dedup_gate.prune_cache()
        logger.debug("memory_prune_completed", rate_limit_subjects=pruned_subjects, dedup_cache_entries=pruned_ids)
    except Exception as e:
        logger.error("memory_prune_crashed", error=str(e), exc_info=True)


def start_scheduler(runtime, environment: str = "production") -> AsyncIOScheduler:
    """
    Start background scheduler with all jobs.

    Must be called from inside the running event loop (application startup).

    Args:
        runtime: Runtime whose services the jobs drive
        environment: Current environment (skip scheduler in testing)

    Returns:
        AsyncIOScheduler instance
    """
    scheduler = AsyncIOScheduler(timezone="UTC")

    if environment == "testing":
        logger.info("scheduler_skipped", reason="testing_environment")
        return scheduler

    settings = runtime.settings

    # Job 1: Dead-letter sweep
    scheduler.add_job(
        run_dead_letter_sweep,
        trigger=IntervalTrigger(minutes=settings.dlq_sweep_interval_minutes),
        args=[runtime],
        id="dead_letter_sweep",
        name="Dead Letter Queue Sweep",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    logger.info("job_registered", job="dead_letter_sweep", schedule=f"every_{settings.dlq_sweep_interval_minutes}m")

    # Job 2: Daily retention cleanup (at 03:00 UTC)
    scheduler.add_job(
        run_retention_cleanup,
        trigger=CronTrigger(hour=3, minute=0),
        args=[runtime],
        id="retention_cleanup",
        name="Dead Letter and Dedup Retention Cleanup",
        replace_existing=True,
    )
    logger.info("job_registered", job="retention_cleanup", schedule="daily_03:00")

    # Job 3: In-memory pruning
    scheduler.add_job(
        run_memory_prune,
        trigger=IntervalTrigger(minutes=settings.rate_limit_prune_interval_minutes),
        args=[runtime],
        id="memory_prune",
        name="Rate Limiter and Dedup Cache Pruning",
        replace_existing=True,
    )
    logger.info("job_registered", job="memory_prune", schedule=f"every_{settings.rate_limit_prune_interval_minutes}m")

    scheduler.start()
    logger.info("scheduler_started", jobs=["dead_letter_sweep", "retention_cleanup", "memory_prune"])

    return scheduler


def stop_scheduler(scheduler: AsyncIOScheduler):
    """
    Stop background scheduler gracefully.

    Args:
        scheduler: AsyncIOScheduler instance to stop
    """
    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("scheduler_stopped")


__all__ = [
    "start_scheduler",
    "stop_scheduler",
    "run_dead_letter_sweep",
    "run_retention_cleanup",
    "run_memory_prune",
]
