import asyncio
import json
import logging
import os
import socket
from typing import Optional

from task_pipeline.api.v1.metrics import JOBS_INFLIGHT
from task_pipeline.db.models import Job
from task_pipeline.domain.errors import JobError, UnrecoverableJobError
from task_pipeline.domain.states import JobStatus
from task_pipeline.queue.job_queue import JobQueue
from task_pipeline.worker.dispatcher import JobDispatcher

logger = logging.getLogger(__name__)

class WorkerPool:
    """
    N concurrent slots over one JobQueue. Each slot loops:
    dequeue -> dispatch -> ack (success) / discard (unrecoverable) / nack (anything else).
    """

    def __init__(
        self,
        queue: JobQueue,
        dispatcher: JobDispatcher,
        concurrency: int = 5,
        heartbeat_interval: float = 10.0,
        name: Optional[str] = None,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.queue = queue
        self.dispatcher = dispatcher
        self.concurrency = concurrency
        self.heartbeat_interval = heartbeat_interval
        self.name = name or f"{socket.gethostname()}-{os.getpid()}"
        self.running = False
        self._tasks: list[asyncio.Task] = []

    async def start(self):
        if self.running:
            return
        self.running = True
        self._tasks = [
            asyncio.create_task(self._slot_loop(f"{self.name}-{slot}"), name=f"worker-slot-{slot}")
            for slot in range(self.concurrency)
        ]
        logger.info(f"Worker pool {self.name} started with {self.concurrency} slots")

    async def stop(self, timeout: float = 30.0):
        """
        Closes the queue so idle slots return, gives in-flight handlers up to
        `timeout` seconds to finish, then cancels what is left.
        """
        self.running = False
        self.queue.close()
        if not self._tasks:
            return

        _, pending = await asyncio.wait(self._tasks, timeout=timeout)
        if pending:
            logger.warning(f"Cancelling {len(pending)} worker slot(s) still busy after {timeout}s")
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks = []
        logger.info(f"Worker pool {self.name} stopped")

    async def _slot_loop(self, worker_id: str):
        while self.running:
            try:
                job = await self.queue.dequeue(worker_id)
                if job is None:
                    if self.queue.closed:
                        break
                    continue
                await self.process_job(job)
            except Exception as e:
                # Queue or database trouble outside a handler; the job (if any)
                # stays locked until requeue_stalled picks it up.
                logger.error(f"Worker {worker_id} experienced an error: {e}", exc_info=True)
                await asyncio.sleep(self.queue.poll_interval)

    async def run_once(self, worker_id: Optional[str] = None, timeout: float = 0) -> Optional[str]:
        """Claims and processes at most one job. Returns the resulting job status, None if idle."""
        job = await self.queue.dequeue(worker_id or f"{self.name}-once", timeout=timeout)
        if job is None:
            return None
        return await self.process_job(job)

    async def process_job(self, job: Job) -> str:
        logger.debug(f"Job {job.id} of type {job.name} started processing (attempt {job.attempts_made}/{job.max_attempts})")
        JOBS_INFLIGHT.inc()
        try:
            try:
                result = await self._run_handler(job)
            except UnrecoverableJobError as e:
                logger.error(
                    f"Unrecoverable error processing job {job.id} of type {job.name}: {e}. "
                    f"Payload: {json.dumps(job.payload, default=str)}",
                    exc_info=True,
                )
                updated = await self.queue.discard(job, e)
                return updated.status
            except Exception as e:
                logger.error(
                    f"Error processing job {job.id} of type {job.name}: {e}. "
                    f"Attempts made: {job.attempts_made}/{job.max_attempts}",
                    exc_info=True,
                )
                updated = await self.queue.nack(job, e)
                if updated.status != JobStatus.PENDING:
                    logger.error(f"Job {job.id} of type {job.name} failed permanently after {updated.attempts_made} attempts")
                return updated.status

            updated = await self.queue.ack(job, result)
            logger.debug(f"Job {job.id} of type {job.name} completed. Result: {json.dumps(result, default=str)}")
            return updated.status
        finally:
            JOBS_INFLIGHT.dec()

    async def _run_handler(self, job: Job):
        heartbeat_task = asyncio.create_task(self._heartbeat_loop(job))
        try:
            return await self.dispatcher.dispatch(job)
        finally:
            heartbeat_task.cancel()
            try:
                await heartbeat_task
            except asyncio.CancelledError:
                pass

    async def _heartbeat_loop(self, job: Job):
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self.queue.extend_lock(job)
                logger.debug(f"Extended lock for job {job.id}")
            except JobError as e:
                # Lock lost (requeued as stalled or removed); stop renewing
                logger.warning(f"Heartbeat failed for job {job.id}: {e}")
                return
            except Exception as e:
                logger.warning(f"Heartbeat error for job {job.id}: {e}", exc_info=True)
