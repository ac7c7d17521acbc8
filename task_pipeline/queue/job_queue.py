"""
Durable job queue backed by the `jobs` table.

The queue object owns its session factory, an in-process claim lock and a
wake-up event. Cross-process safety comes from the conditional claim UPDATE
in `claim_job`; the lock only keeps slots of the same process from racing
each other for the same candidate row.
"""
import asyncio
import logging
from datetime import datetime
from typing import Any, Optional, Union
from uuid import UUID

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from task_pipeline.commands.claim_job import claim_job
from task_pipeline.commands.complete_job import complete_job, load_job
from task_pipeline.commands.enqueue_job import enqueue_job, record_enqueued
from task_pipeline.commands.fail_job import fail_job, discard_job
from task_pipeline.commands.heartbeat import heartbeat
from task_pipeline.commands.manage_jobs import (
    list_jobs,
    count_jobs_by_status,
    retry_failed_job,
    purge_job,
    purge_failed_jobs,
    list_job_events,
)
from task_pipeline.commands.requeue_stalled import requeue_stalled_jobs
from task_pipeline.db.models import Job, JobEventLog
from task_pipeline.domain.models import JobOptions, JobHandle
from task_pipeline.domain.states import JobName, JobStatus

logger = logging.getLogger(__name__)

_UNCOMMITTED_JOBS = "task_pipeline.uncommitted_jobs"

def format_error(error: Union[BaseException, str]) -> str:
    if isinstance(error, BaseException):
        return f"{type(error).__name__}: {error}"
    return str(error)

class JobQueue:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        default_options: Optional[JobOptions] = None,
        lock_duration: int = 30,
        poll_interval: float = 1.0,
    ):
        self._session_factory = session_factory
        self.default_options = default_options or JobOptions()
        self.lock_duration = lock_duration
        self.poll_interval = poll_interval

        self._claim_lock = asyncio.Lock()
        self._wakeup = asyncio.Event()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    # --- Producer side ---

    async def enqueue(
        self,
        name: Union[JobName, str],
        payload: dict[str, Any],
        options: Optional[JobOptions] = None,
        *,
        session: Optional[AsyncSession] = None,
    ) -> JobHandle:
        """
        Enqueue a job.

        With `session`, the job joins the caller's transaction and is only
        visible once the caller commits (a rollback discards it). Without it,
        the queue commits the job in its own transaction.
        """
        opts = options or self.default_options

        if session is not None:
            job = await enqueue_job(session, name, payload, opts)
            self._track_uncommitted(session, job.name)
        else:
            async with self._session_factory() as own_session:
                async with own_session.begin():
                    job = await enqueue_job(own_session, name, payload, opts)
            record_enqueued(job.name)
            self._wakeup.set()

        logger.debug(f"Enqueued job {job.id} of type {job.name} (attempts={job.max_attempts})")
        return JobHandle(
            id=job.id,
            name=JobName(job.name),
            max_attempts=job.max_attempts,
            available_at=job.available_at,
        )

    def _track_uncommitted(self, session: AsyncSession, name: str) -> None:
        # Jobs added to a caller's transaction are counted and announced to
        # idle slots on commit, and forgotten on rollback.
        sync_session = session.sync_session
        sync_session.info.setdefault(_UNCOMMITTED_JOBS, []).append(name)
        if not event.contains(sync_session, "after_commit", self._on_commit):
            event.listen(sync_session, "after_commit", self._on_commit)
            event.listen(sync_session, "after_rollback", self._on_rollback)

    def _on_commit(self, sync_session) -> None:
        names = sync_session.info.pop(_UNCOMMITTED_JOBS, [])
        for name in names:
            record_enqueued(name)
        if names:
            self._wakeup.set()

    def _on_rollback(self, sync_session) -> None:
        sync_session.info.pop(_UNCOMMITTED_JOBS, None)

    # --- Consumer side ---

    async def dequeue(self, worker_id: str, timeout: Optional[float] = None) -> Optional[Job]:
        """
        Blocks until a job is claimed for `worker_id`.
        Returns None when the queue is closed or `timeout` seconds elapse.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None

        while not self._closed:
            self._wakeup.clear()
            job = await self._try_claim(worker_id)
            if job is not None:
                return job
            if self._closed:
                break

            wait_for = self.poll_interval
            if deadline is not None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    return None
                wait_for = min(wait_for, remaining)

            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=wait_for)
            except asyncio.TimeoutError:
                pass

        return None

    async def _try_claim(self, worker_id: str) -> Optional[Job]:
        async with self._claim_lock:
            async with self._session_factory() as session:
                async with session.begin():
                    return await claim_job(session, worker_id, self.lock_duration)

    async def ack(self, job: Job, result: Optional[dict[str, Any]] = None) -> Job:
        async with self._session_factory() as session:
            async with session.begin():
                return await complete_job(session, job.id, result, worker_id=job.worker_id)

    async def nack(self, job: Job, error: Union[BaseException, str]) -> Job:
        async with self._session_factory() as session:
            async with session.begin():
                updated = await fail_job(session, job.id, format_error(error), worker_id=job.worker_id)
        if updated.status == JobStatus.PENDING:
            # Delayed retry; idle slots pick it up on their next poll after available_at
            self._wakeup.set()
        return updated

    async def discard(self, job: Job, error: Union[BaseException, str]) -> Job:
        async with self._session_factory() as session:
            async with session.begin():
                return await discard_job(session, job.id, format_error(error), worker_id=job.worker_id)

    async def extend_lock(self, job: Job) -> datetime:
        async with self._session_factory() as session:
            async with session.begin():
                return await heartbeat(session, job.id, job.worker_id, extend_seconds=self.lock_duration)

    async def requeue_stalled(self, limit: int = 100) -> int:
        async with self._session_factory() as session:
            async with session.begin():
                count = await requeue_stalled_jobs(session, limit=limit)
        if count:
            logger.warning(f"Requeued {count} stalled job(s)")
            self._wakeup.set()
        return count

    def close(self) -> None:
        """Make every pending and future dequeue() return None."""
        self._closed = True
        self._wakeup.set()

    # --- Operator side ---

    async def get(self, job_id: UUID) -> Job:
        async with self._session_factory() as session:
            return await load_job(session, job_id)

    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        name: Optional[JobName] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Job]:
        async with self._session_factory() as session:
            return await list_jobs(session, status=status, name=name, limit=limit, offset=offset)

    async def list_failed(self, name: Optional[JobName] = None, limit: int = 100) -> list[Job]:
        return await self.list_jobs(status=JobStatus.FAILED, name=name, limit=limit)

    async def events(self, job_id: UUID) -> list[JobEventLog]:
        async with self._session_factory() as session:
            return await list_job_events(session, job_id)

    async def counts(self) -> dict[str, int]:
        async with self._session_factory() as session:
            return await count_jobs_by_status(session)

    async def retry_failed(self, job_id: UUID) -> Job:
        async with self._session_factory() as session:
            async with session.begin():
                job = await retry_failed_job(session, job_id)
        self._wakeup.set()
        return job

    async def purge(self, job_id: UUID) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                await purge_job(session, job_id)

    async def purge_failed(self, name: Optional[JobName] = None) -> int:
        async with self._session_factory() as session:
            async with session.begin():
                return await purge_failed_jobs(session, name=name)
