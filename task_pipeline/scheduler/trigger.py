import dataclasses
import logging
from datetime import datetime
from typing import Optional

from croniter import croniter

from task_pipeline.domain.errors import ConfigurationError
from task_pipeline.domain.models import JobHandle
from task_pipeline.domain.states import JobName
from task_pipeline.queue.job_queue import JobQueue
from task_pipeline.utils.time import utcnow

logger = logging.getLogger(__name__)

class OverdueSweepTrigger:
    """
    Enqueues one `overdue-sweep` job per cron firing. Firings missed while the
    scheduler was down (or not leader) collapse into a single sweep.
    """

    def __init__(self, queue: JobQueue, cron: str = "0 * * * *", now: Optional[datetime] = None):
        if not croniter.is_valid(cron):
            raise ConfigurationError(f"Invalid cron expression for overdue sweep: {cron!r}")
        self.queue = queue
        self.cron = cron
        self.next_fire_at = self._next_after(now or utcnow())

    def _next_after(self, moment: datetime) -> datetime:
        return croniter(self.cron, moment).get_next(datetime)

    async def tick(self, now: Optional[datetime] = None) -> bool:
        """Fires if the next scheduled time has passed. Returns True when it fired."""
        now = now or utcnow()
        if now < self.next_fire_at:
            return False
        await self.fire(now)
        self.next_fire_at = self._next_after(now)
        return True

    async def fire(self, now: Optional[datetime] = None) -> Optional[JobHandle]:
        """
        Enqueues a single-attempt sweep. Enqueue failures are logged and
        swallowed so the scheduler loop keeps running; the next firing retries.
        """
        now = now or utcnow()
        logger.debug("Checking for overdue tasks...")
        options = dataclasses.replace(self.queue.default_options, attempts=1)
        try:
            handle = await self.queue.enqueue(
                JobName.OVERDUE_SWEEP,
                {"triggeredAt": now.isoformat()},
                options,
            )
        except Exception as e:
            logger.error(f"Failed to enqueue overdue tasks notification job: {e}", exc_info=True)
            return None

        logger.info(f"Enqueued overdue sweep job {handle.id}")
        return handle
