"""Background job scheduler.

One AsyncIOScheduler per process hosts both the periodic escalation sweep
and the one-shot step timers armed by the escalation engine.
"""

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from tidewatch.config import settings
from tidewatch.logging_config import get_logger
from tidewatch.services.escalation_engine import EscalationEngine

logger = get_logger(__name__)

# Global scheduler instance
scheduler: AsyncIOScheduler | None = None


def create_scheduler() -> AsyncIOScheduler:
    """Create (but do not start) the process scheduler."""
    global scheduler

    if scheduler is None:
        scheduler = AsyncIOScheduler()
    return scheduler


async def run_escalation_sweep(engine: EscalationEngine) -> None:
    """Expire stale alerts and fire step timeouts that were missed."""
    try:
        result = await engine.sweep()
    except Exception:
        logger.exception("Escalation sweep failed")
        return

    if result["expired"] or result["recovered"]:
        logger.info(
            "Escalation sweep completed",
            expired=result["expired"],
            recovered=result["recovered"],
        )


def start_scheduler(engine: EscalationEngine) -> AsyncIOScheduler:
    """Register the sweep job and start the scheduler.

    Returns:
        The started scheduler instance
    """
    sched = create_scheduler()

    if sched.running:
        logger.warning("Scheduler already running")
        return sched

    if settings.escalation_check_enabled:
        sched.add_job(
            run_escalation_sweep,
            trigger=IntervalTrigger(minutes=settings.escalation_check_interval_minutes),
            args=[engine],
            id="escalation_sweep",
            name="Escalation Expiry and Recovery Sweep",
            replace_existing=True,
            max_instances=1,
        )
        logger.info(
            "Scheduled escalation sweep job",
            interval_minutes=settings.escalation_check_interval_minutes,
        )

    sched.start()
    logger.info("Background scheduler started")

    return sched


def stop_scheduler() -> None:
    """Stop the background job scheduler."""
    global scheduler

    if scheduler is not None:
        if scheduler.running:
            scheduler.shutdown(wait=False)
        scheduler = None
        logger.info("Background scheduler stopped")


def get_scheduler() -> AsyncIOScheduler | None:
    return scheduler
