import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from task_pipeline.db.session import AsyncSessionLocal
from task_pipeline.domain.models import JobOptions
from task_pipeline.domain.states import JobName
from task_pipeline.queue.job_queue import JobQueue
from task_pipeline.scheduler.service import SchedulerService
from task_pipeline.scheduler.trigger import OverdueSweepTrigger
from task_pipeline.services.notifier import Notifier, build_notifier
from task_pipeline.services.task_store import TaskStore
from task_pipeline.services.tasks import TaskService
from task_pipeline.worker.dispatcher import JobDispatcher, StatusUpdateHandler
from task_pipeline.worker.overdue_sweep import OverdueSweepHandler
from task_pipeline.worker.pool import WorkerPool

logger = logging.getLogger(__name__)

@dataclass
class Pipeline:
    """Every long-lived component of one process, wired together."""

    session_factory: async_sessionmaker[AsyncSession]
    queue: JobQueue
    store: TaskStore
    notifier: Notifier
    tasks: TaskService
    sweep: OverdueSweepHandler
    dispatcher: JobDispatcher
    pool: WorkerPool
    trigger: OverdueSweepTrigger
    scheduler: SchedulerService
    _started: bool = False

    async def start(self):
        if self._started:
            return
        await self.pool.start()
        await self.scheduler.start()
        self._started = True

    async def stop(self, timeout: float = 30.0):
        if self._started:
            await self.scheduler.stop()
            await self.pool.stop(timeout=timeout)
            self._started = False
        await self.notifier.close()

def build_pipeline(
    settings,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    notifier: Optional[Notifier] = None,
) -> Pipeline:
    session_factory = session_factory or AsyncSessionLocal
    notifier = notifier or build_notifier(settings)

    queue = JobQueue(
        session_factory,
        default_options=JobOptions.from_settings(settings),
        lock_duration=settings.JOB_LOCK_DURATION_SECONDS,
        poll_interval=settings.WORKER_POLL_INTERVAL_SECONDS,
    )
    store = TaskStore()
    sweep = OverdueSweepHandler(session_factory, store, notifier, page_size=settings.OVERDUE_SWEEP_PAGE_SIZE)
    dispatcher = JobDispatcher({
        JobName.STATUS_UPDATE: StatusUpdateHandler(
            session_factory, store, retry_not_found=settings.STATUS_UPDATE_RETRY_NOT_FOUND
        ),
        JobName.OVERDUE_SWEEP: sweep,
    })
    pool = WorkerPool(
        queue,
        dispatcher,
        concurrency=settings.WORKER_CONCURRENCY,
        heartbeat_interval=settings.JOB_HEARTBEAT_INTERVAL_SECONDS,
    )
    trigger = OverdueSweepTrigger(queue, cron=settings.OVERDUE_SWEEP_CRON)
    scheduler = SchedulerService(session_factory, queue, trigger, interval=settings.SCHEDULER_INTERVAL_SECONDS)

    return Pipeline(
        session_factory=session_factory,
        queue=queue,
        store=store,
        notifier=notifier,
        tasks=TaskService(session_factory, store, queue),
        sweep=sweep,
        dispatcher=dispatcher,
        pool=pool,
        trigger=trigger,
        scheduler=scheduler,
    )
