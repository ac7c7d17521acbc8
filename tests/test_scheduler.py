# tests/test_scheduler.py

import asyncio
from datetime import datetime, timedelta

import pytest
from sqlalchemy import update

from task_pipeline.db.models import Job
from task_pipeline.domain.errors import ConfigurationError
from task_pipeline.domain.states import JobName, JobStatus
from task_pipeline.scheduler.service import SchedulerService
from task_pipeline.scheduler.trigger import OverdueSweepTrigger
from task_pipeline.utils.time import utcnow


class BrokenQueue:
    def __init__(self, default_options):
        self.default_options = default_options

    async def enqueue(self, *args, **kwargs):
        raise ConnectionError("database unavailable")


def test_next_fire_time_follows_cron():
    trigger = OverdueSweepTrigger(queue=None, cron="0 * * * *", now=datetime(2026, 1, 1, 10, 15))

    assert trigger.next_fire_at == datetime(2026, 1, 1, 11, 0)


def test_invalid_cron_is_rejected():
    with pytest.raises(ConfigurationError):
        OverdueSweepTrigger(queue=None, cron="every hour")


async def test_tick_fires_once_per_due_time(queue):
    trigger = OverdueSweepTrigger(queue, cron="0 * * * *", now=datetime(2026, 1, 1, 10, 15))

    assert await trigger.tick(datetime(2026, 1, 1, 10, 59)) is False
    assert await trigger.tick(datetime(2026, 1, 1, 11, 0, 5)) is True
    assert await trigger.tick(datetime(2026, 1, 1, 11, 30)) is False

    jobs = await queue.list_jobs(name=JobName.OVERDUE_SWEEP)
    assert len(jobs) == 1
    assert jobs[0].max_attempts == 1
    assert jobs[0].payload == {"triggeredAt": "2026-01-01T11:00:05"}
    assert trigger.next_fire_at == datetime(2026, 1, 1, 12, 0)


async def test_missed_firings_collapse_into_one_sweep(queue):
    trigger = OverdueSweepTrigger(queue, cron="0 * * * *", now=datetime(2026, 1, 1, 10, 15))

    assert await trigger.tick(datetime(2026, 1, 1, 15, 20)) is True

    assert len(await queue.list_jobs(name=JobName.OVERDUE_SWEEP)) == 1
    assert trigger.next_fire_at == datetime(2026, 1, 1, 16, 0)


async def test_fire_swallows_enqueue_failure(queue):
    trigger = OverdueSweepTrigger(BrokenQueue(queue.default_options))

    assert await trigger.fire() is None


async def test_scheduler_tick_fires_trigger_and_requeues_stalled(queue, session_factory):
    trigger = OverdueSweepTrigger(queue, now=utcnow() - timedelta(hours=2))
    scheduler = SchedulerService(session_factory, queue, trigger, interval=60)

    stalled = await queue.enqueue(JobName.STATUS_UPDATE, {})
    await queue.dequeue("crashed-worker", timeout=0)
    async with session_factory() as session:
        async with session.begin():
            await session.execute(
                update(Job).where(Job.id == stalled.id).values(locked_until=utcnow() - timedelta(seconds=5))
            )

    await scheduler.run_tick()

    assert scheduler.is_leader
    assert len(await queue.list_jobs(name=JobName.OVERDUE_SWEEP)) == 1
    assert (await queue.get(stalled.id)).status == JobStatus.PENDING
    await scheduler.stop()


async def test_scheduler_start_stop(queue, session_factory):
    trigger = OverdueSweepTrigger(queue)
    scheduler = SchedulerService(session_factory, queue, trigger, interval=0.01)

    await scheduler.start()
    await asyncio.sleep(0.2)
    await scheduler.stop()

    # No advisory locks on SQLite: the single instance is always leader
    assert scheduler.is_leader
