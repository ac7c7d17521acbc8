import asyncio
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from task_pipeline.api.v1.metrics import QUEUE_DEPTH
from task_pipeline.queue.job_queue import JobQueue
from task_pipeline.scheduler.trigger import OverdueSweepTrigger
from task_pipeline.utils.locking import try_advisory_lock

logger = logging.getLogger(__name__)

class SchedulerService:
    """
    Periodic loop. The leader (holder of the advisory lock) fires the overdue
    sweep trigger and requeues stalled jobs; every instance refreshes the
    queue depth gauge.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        queue: JobQueue,
        trigger: OverdueSweepTrigger,
        interval: float = 10.0,
    ):
        self._session_factory = session_factory
        self.queue = queue
        self.trigger = trigger
        self.interval = interval
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._is_leader = False
        self._lock_session: Optional[AsyncSession] = None

    @property
    def is_leader(self) -> bool:
        return self._is_leader

    async def start(self):
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("Scheduler service started.")

    async def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self._release_lock_session()
        logger.info("Scheduler service stopped.")

    async def _loop(self):
        while self._running:
            try:
                await self.run_tick()
            except Exception as e:
                logger.error(f"Error in scheduler tick: {e}", exc_info=True)
                self._is_leader = False
                # Reconnect on the next tick
                await self._release_lock_session()

            await asyncio.sleep(self.interval)

    async def run_tick(self) -> None:
        if self._lock_session is None:
            self._lock_session = self._session_factory()

        # Never committed: committing would hand the lock-holding connection back to the pool
        is_leader = await try_advisory_lock(self._lock_session)

        if is_leader:
            if not self._is_leader:
                logger.info("Acquired leadership. Starting scheduler.")
                self._is_leader = True
            await self.trigger.tick()
            await self.queue.requeue_stalled()
        elif self._is_leader:
            logger.info("Lost leadership. Stopping scheduler.")
            self._is_leader = False

        await self.refresh_metrics()

    async def refresh_metrics(self) -> None:
        counts = await self.queue.counts()
        for status, count in counts.items():
            QUEUE_DEPTH.labels(status=status).set(count)

    async def _release_lock_session(self) -> None:
        if self._lock_session is not None:
            await self._lock_session.close()
            self._lock_session = None
