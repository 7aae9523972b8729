"""
APScheduler wiring for the monitoring service.

Recurring jobs drive the orchestrator (regular and urgent-only ticks),
alert quality re-scoring and observation cleanup. ``APSchedulerExecutor``
is the deferred-task executor the orchestrator uses to re-check a single
filter at its ``next_check_at``.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.jobstores.memory import MemoryJobStore

from farewatch.config import get_settings
from farewatch.database import SessionLocal, init_db
from farewatch.services.alert_quality import AlertQualityScorer
from farewatch.services.cache import StatsCache, build_stats_cache
from farewatch.services.monitoring import FilterNotFoundError, KeyedLock, MonitoringOrchestrator
from farewatch.services.notification import get_global_notifier, shutdown_notifier
from farewatch.services.quote_source import HttpQuoteProvider, QuoteProvider, QuoteSource
from farewatch.services.rate_limiter import RateLimiter
from farewatch.services.repository import MonitoringRepository

logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler: Optional[AsyncIOScheduler] = None

# Shared across jobs so caches and rate-limit windows survive between ticks
_quote_source: Optional[QuoteSource] = None
_stats_cache: Optional[StatsCache] = None
_filter_locks: Optional[KeyedLock] = None

settings = get_settings()


class APSchedulerExecutor:
    """Deferred-task executor: one date-triggered job per filter."""

    def __init__(self, scheduler_instance: AsyncIOScheduler):
        self.scheduler = scheduler_instance

    @staticmethod
    def job_id(filter_id: int) -> str:
        return f"filter-check-{filter_id}"

    def schedule(self, filter_id: int, run_at: datetime) -> None:
        # next_check_at is naive UTC
        run_at_utc = run_at.replace(tzinfo=timezone.utc) if run_at.tzinfo is None else run_at
        self.scheduler.add_job(
            check_single_filter,
            trigger=DateTrigger(run_date=run_at_utc),
            args=[filter_id],
            id=self.job_id(filter_id),
            name=f"Check filter {filter_id}",
            replace_existing=True,
            misfire_grace_time=300,
        )
        logger.debug(f"Filter {filter_id} scheduled for {run_at_utc.isoformat()}")

    def cancel(self, filter_id: int) -> None:
        job = self.scheduler.get_job(self.job_id(filter_id))
        if job is not None:
            job.remove()


def configure_quote_source(providers: List[QuoteProvider], rate_limiter: Optional[RateLimiter] = None) -> QuoteSource:
    """Install the providers used by scheduled checks."""
    global _quote_source
    _quote_source = QuoteSource(providers, rate_limiter=rate_limiter)
    return _quote_source


def get_quote_source() -> QuoteSource:
    global _quote_source
    if _quote_source is None:
        providers: List[QuoteProvider] = []
        if settings.quote_provider_url:
            providers.append(HttpQuoteProvider("http", settings.quote_provider_url, settings.quote_provider_api_key))
        else:
            logger.warning("No quote provider configured; checks will reschedule with the no-data interval")
        _quote_source = QuoteSource(providers)
    return _quote_source


def get_stats_cache() -> StatsCache:
    global _stats_cache
    if _stats_cache is None:
        _stats_cache = build_stats_cache(settings.redis_url)
    return _stats_cache


def get_filter_locks() -> KeyedLock:
    """Per-filter locks shared by ticks and deferred checks."""
    global _filter_locks
    if _filter_locks is None:
        _filter_locks = KeyedLock()
    return _filter_locks


def _build_orchestrator(db) -> MonitoringOrchestrator:
    executor = APSchedulerExecutor(scheduler) if scheduler is not None and scheduler.running else None
    return MonitoringOrchestrator(
        db,
        quote_source=get_quote_source(),
        delivery=get_global_notifier(),
        executor=executor,
        stats_cache=get_stats_cache(),
        locks=get_filter_locks(),
    )


def get_scheduler() -> AsyncIOScheduler:
    """Get or create the global scheduler instance."""
    global scheduler
    if scheduler is None:
        logger.info(f"Scheduler using timezone: {settings.timezone}")

        scheduler = AsyncIOScheduler(
            jobstores={'default': MemoryJobStore()},
            timezone=settings.timezone
        )

        _setup_scheduled_jobs()

    return scheduler


def _setup_scheduled_jobs():
    scheduler.add_job(
        monitoring_tick,
        trigger=IntervalTrigger(minutes=settings.monitoring_tick_minutes),
        id='monitoring_tick',
        name='Monitoring Tick',
        replace_existing=True,
        max_instances=1,
    )

    scheduler.add_job(
        urgent_tick,
        trigger=IntervalTrigger(minutes=settings.urgent_tick_minutes),
        id='urgent_tick',
        name='Urgent Filters Tick',
        replace_existing=True,
        max_instances=1,
    )

    scheduler.add_job(
        quality_update_job,
        trigger=IntervalTrigger(hours=settings.quality_update_hours),
        id='quality_update',
        name='Alert Quality Update',
        replace_existing=True,
        max_instances=1,
    )

    scheduler.add_job(
        observation_cleanup_job,
        trigger=CronTrigger(hour=3, minute=15),
        id='observation_cleanup',
        name='Observation Cleanup (3:15 AM)',
        replace_existing=True,
        max_instances=1,
    )

    logger.info("Scheduled jobs configured:")
    logger.info(f"  - Monitoring tick: every {settings.monitoring_tick_minutes} minutes")
    logger.info(f"  - Urgent tick: every {settings.urgent_tick_minutes} minutes")
    logger.info(f"  - Quality update: every {settings.quality_update_hours} hours")
    logger.info("  - Observation cleanup: 3:15 AM daily")


async def monitoring_tick():
    """Check every due filter."""
    db = SessionLocal()
    orchestrator = _build_orchestrator(db)

    try:
        tick = await orchestrator.run_tick()
        for filter_id, error in tick.failures.items():
            logger.error(f"Filter {filter_id} failed: {error}")
        await orchestrator.drain_deliveries()
    except Exception as e:
        logger.error(f"Error in monitoring tick: {e}")
    finally:
        db.close()


async def urgent_tick():
    """Check only due filters that are urgent."""
    db = SessionLocal()
    orchestrator = _build_orchestrator(db)

    try:
        await orchestrator.run_urgent_tick()
        await orchestrator.drain_deliveries()
    except Exception as e:
        logger.error(f"Error in urgent tick: {e}")
    finally:
        db.close()


async def check_single_filter(filter_id: int, force: bool = False) -> dict:
    """Deferred per-filter check. Pass ``force=True`` for a manual re-check."""
    logger.info(f"Checking filter {filter_id}")

    db = SessionLocal()
    orchestrator = _build_orchestrator(db)

    try:
        result = await orchestrator.check_filter(filter_id, force=force)
        await orchestrator.drain_deliveries()
        return {
            "success": result.error is None,
            "skipped": result.skipped,
            "quotes_fetched": result.quotes_fetched,
            "break_detected": result.break_detected,
            "dispatched": result.dispatched,
            "next_check_at": result.next_check_at.isoformat() if result.next_check_at else None,
            "error": result.error,
        }
    except FilterNotFoundError as e:
        logger.warning(str(e))
        return {"success": False, "error": str(e)}
    finally:
        db.close()


async def quality_update_job():
    """Re-score every alert in batches."""
    logger.info("Starting scheduled alert quality update")

    db = SessionLocal()

    try:
        scorer = AlertQualityScorer(notifier=get_global_notifier())
        await scorer.batch_update(db)
    except Exception as e:
        logger.error(f"Error in quality update job: {e}")
    finally:
        db.close()


async def observation_cleanup_job():
    """Drop observations past retention and expire alerts for past departures."""
    db = SessionLocal()

    try:
        repository = MonitoringRepository(db)
        repository.cleanup_old_observations()
        repository.expire_past_alerts()
    except Exception as e:
        db.rollback()
        logger.error(f"Error in observation cleanup: {e}")
    finally:
        db.close()


def start_scheduler():
    """Start the scheduler."""
    scheduler_instance = get_scheduler()

    if not scheduler_instance.running:
        scheduler_instance.start()
        logger.info("APScheduler started successfully")

        for job in scheduler_instance.get_jobs():
            next_run = job.next_run_time
            logger.info(f"Next '{job.name}': {next_run}")
    else:
        logger.warning("Scheduler already running")


def stop_scheduler():
    """Stop the scheduler."""
    global scheduler, _filter_locks
    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler stopped")
        scheduler = None
        _filter_locks = None


def get_scheduler_status() -> dict:
    """Get scheduler status for health reporting."""
    if scheduler is None or not scheduler.running:
        return {
            "running": False,
            "jobs": [],
            "next_run": None
        }

    jobs = []
    next_run = None

    for job in scheduler.get_jobs():
        job_data = {
            "id": job.id,
            "name": job.name,
            "next_run": job.next_run_time.isoformat() if job.next_run_time else None,
            "func": job.func.__name__ if job.func else None
        }
        jobs.append(job_data)

        if job.next_run_time and (next_run is None or job.next_run_time < next_run):
            next_run = job.next_run_time

    return {
        "running": True,
        "jobs": jobs,
        "next_run": next_run.isoformat() if next_run else None
    }


async def _serve():
    init_db()
    start_scheduler()
    try:
        await asyncio.Event().wait()
    finally:
        stop_scheduler()
        await shutdown_notifier()


def run():
    """Process entry point: ``python -m farewatch.scheduler`` or the ``farewatch`` script."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    if not settings.scheduler_enabled:
        logger.warning("Scheduler disabled by configuration")
        return
    try:
        asyncio.run(_serve())
    except KeyboardInterrupt:
        logger.info("Shutting down")


if __name__ == "__main__":
    run()
