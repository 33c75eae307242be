"""Tests for APScheduler-backed step timers."""

import asyncio
import uuid
from datetime import UTC, datetime, timedelta

import pytest
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from tidewatch.services.step_timer import (
    APSchedulerStepTimer,
    _run_step_job,
    step_job_id,
)

RUN_AT = datetime(2030, 1, 1, 12, 0, tzinfo=UTC)


async def noop(alert_id: uuid.UUID, step_index: int) -> None:
    return None


@pytest.fixture
async def scheduler():
    """Started but paused scheduler so armed jobs land in the job store."""
    sched = AsyncIOScheduler(timezone=UTC)
    sched.start(paused=True)
    yield sched
    sched.shutdown(wait=False)


@pytest.fixture
def timer(scheduler):
    return APSchedulerStepTimer(scheduler)


class TestScheduling:
    def test_job_id_is_keyed_by_alert_and_step(self):
        alert_id = uuid.UUID("00000000-0000-0000-0000-000000000001")

        assert step_job_id(alert_id, 2) == (
            "escalation:00000000-0000-0000-0000-000000000001:2"
        )

    @pytest.mark.asyncio
    async def test_schedule_adds_one_shot_job(self, timer, scheduler):
        alert_id = uuid.uuid4()

        timer.schedule(alert_id, 0, RUN_AT, noop)

        job = scheduler.get_job(step_job_id(alert_id, 0))
        assert job is not None
        assert job.next_run_time == RUN_AT
        assert job.args == (noop, alert_id, 0)

    @pytest.mark.asyncio
    async def test_rescheduling_replaces_the_job(self, timer, scheduler):
        alert_id = uuid.uuid4()

        timer.schedule(alert_id, 0, RUN_AT, noop)
        timer.schedule(alert_id, 0, RUN_AT + timedelta(minutes=5), noop)

        [job] = scheduler.get_jobs()
        assert job.next_run_time == RUN_AT + timedelta(minutes=5)

    @pytest.mark.asyncio
    async def test_cancel_removes_only_that_step(self, timer, scheduler):
        alert_id = uuid.uuid4()
        timer.schedule(alert_id, 0, RUN_AT, noop)
        timer.schedule(alert_id, 1, RUN_AT, noop)

        timer.cancel(alert_id, 0)

        assert [job.id for job in scheduler.get_jobs()] == [step_job_id(alert_id, 1)]

    @pytest.mark.asyncio
    async def test_cancel_unknown_job_is_a_noop(self, timer):
        timer.cancel(uuid.uuid4(), 3)

    @pytest.mark.asyncio
    async def test_cancel_all_leaves_other_alerts(self, timer, scheduler):
        first, second = uuid.uuid4(), uuid.uuid4()
        for step in range(3):
            timer.schedule(first, step, RUN_AT, noop)
        timer.schedule(second, 0, RUN_AT, noop)
        scheduler.add_job(noop, "interval", minutes=1, id="escalation_sweep", args=[first, 0])

        timer.cancel_all(first)

        assert {job.id for job in scheduler.get_jobs()} == {
            step_job_id(second, 0),
            "escalation_sweep",
        }


class TestFiring:
    @pytest.mark.asyncio
    async def test_due_timer_invokes_callback(self):
        fired = asyncio.Event()
        calls = []

        async def on_timeout(alert_id, step_index):
            calls.append((alert_id, step_index))
            fired.set()

        sched = AsyncIOScheduler(timezone=UTC)
        sched.start()
        try:
            alert_id = uuid.uuid4()
            APSchedulerStepTimer(sched).schedule(
                alert_id, 1, datetime.now(UTC) + timedelta(milliseconds=50), on_timeout
            )
            await asyncio.wait_for(fired.wait(), timeout=5)
        finally:
            sched.shutdown(wait=False)

        assert calls == [(alert_id, 1)]

    @pytest.mark.asyncio
    async def test_callback_errors_are_logged(self, caplog):
        async def broken(alert_id, step_index):
            raise RuntimeError("database gone")

        await _run_step_job(broken, uuid.uuid4(), 2)

        assert "Step timeout handler failed" in caplog.text
        assert "database gone" in caplog.text
