"""One-shot step timers.

Each escalation step arms a single timer keyed by (alert, step). Timers are
advisory: the engine re-checks alert state when one fires, and the periodic
sweep recovers any step whose deadline passed without its timer firing.
"""

import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Protocol

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.base import BaseScheduler
from apscheduler.triggers.date import DateTrigger

from tidewatch.logging_config import get_logger

logger = get_logger(__name__)

StepCallback = Callable[[uuid.UUID, int], Awaitable[None]]

JOB_PREFIX = "escalation"


def step_job_id(alert_id: uuid.UUID, step_index: int) -> str:
    return f"{JOB_PREFIX}:{alert_id}:{step_index}"


class StepTimer(Protocol):
    """Arms and cancels per-step deadlines."""

    def schedule(
        self,
        alert_id: uuid.UUID,
        step_index: int,
        run_at: datetime,
        callback: StepCallback,
    ) -> None: ...

    def cancel(self, alert_id: uuid.UUID, step_index: int) -> None: ...

    def cancel_all(self, alert_id: uuid.UUID) -> None: ...


async def _run_step_job(
    callback: StepCallback, alert_id: uuid.UUID, step_index: int
) -> None:
    try:
        await callback(alert_id, step_index)
    except Exception:
        logger.exception(
            "Step timeout handler failed",
            alert_id=str(alert_id),
            step=step_index,
        )


class APSchedulerStepTimer:
    """Step timers backed by DateTrigger jobs on the process scheduler."""

    def __init__(self, scheduler: BaseScheduler):
        self.scheduler = scheduler

    def schedule(
        self,
        alert_id: uuid.UUID,
        step_index: int,
        run_at: datetime,
        callback: StepCallback,
    ) -> None:
        job_id = step_job_id(alert_id, step_index)
        self.scheduler.add_job(
            _run_step_job,
            trigger=DateTrigger(run_date=run_at),
            args=[callback, alert_id, step_index],
            id=job_id,
            replace_existing=True,
            # A late timer still has to advance the escalation.
            misfire_grace_time=None,
            coalesce=True,
        )
        logger.debug("Step timer armed", job_id=job_id, run_at=run_at.isoformat())

    def cancel(self, alert_id: uuid.UUID, step_index: int) -> None:
        try:
            self.scheduler.remove_job(step_job_id(alert_id, step_index))
        except JobLookupError:
            pass

    def cancel_all(self, alert_id: uuid.UUID) -> None:
        prefix = f"{JOB_PREFIX}:{alert_id}:"
        for job in self.scheduler.get_jobs():
            if not job.id.startswith(prefix):
                continue
            try:
                self.scheduler.remove_job(job.id)
            except JobLookupError:
                continue
            logger.debug("Step timer cancelled", job_id=job.id)
