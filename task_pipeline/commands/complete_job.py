from typing import Any, Optional
from uuid import UUID

from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncSession

from task_pipeline.db.models import Job, JobEventLog
from task_pipeline.domain.states import JobStatus, JobEvent
from task_pipeline.api.v1.metrics import JOB_DURATION, JOB_COMPLETE_TOTAL, QUEUE_DEPTH
from task_pipeline.domain.errors import JobNotFoundError, InvalidJobStateError
from task_pipeline.utils.time import utcnow

async def load_job(session: AsyncSession, job_id: UUID, for_update: bool = False) -> Job:
    stmt = select(Job).where(Job.id == job_id).execution_options(populate_existing=True)
    if for_update:
        stmt = stmt.with_for_update()
    job = (await session.execute(stmt)).scalar_one_or_none()
    if not job:
        raise JobNotFoundError(job_id)
    return job

async def remove_job(session: AsyncSession, job_id: UUID) -> None:
    # Explicit child delete: SQLite does not enforce ON DELETE CASCADE by default
    await session.execute(delete(JobEventLog).where(JobEventLog.job_id == job_id))
    await session.execute(delete(Job).where(Job.id == job_id))

async def complete_job(
    session: AsyncSession,
    job_id: UUID,
    result_data: Optional[dict[str, Any]] = None,
    worker_id: Optional[str] = None
) -> Job:
    """
    Acks an ACTIVE job.
    Removes it when remove_on_complete is set, otherwise marks it COMPLETED
    and keeps the handler result.
    Returns the job as it was at ack time (detached if removed).
    """
    now = utcnow()

    job = await load_job(session, job_id, for_update=True)

    if job.status != JobStatus.ACTIVE:
        if job.status == JobStatus.COMPLETED:
            return job
        raise InvalidJobStateError(job.status, JobStatus.COMPLETED)

    if worker_id and job.worker_id != worker_id:
        # Lock expired and someone else owns the attempt now
        raise InvalidJobStateError(f"locked by {job.worker_id}", JobStatus.COMPLETED)

    if job.started_at:
        duration = (now - job.started_at).total_seconds()
        if duration >= 0:
            JOB_DURATION.observe(duration)

    JOB_COMPLETE_TOTAL.labels(name=job.name).inc()
    QUEUE_DEPTH.labels(status=JobStatus.ACTIVE).dec()

    job.status = JobStatus.COMPLETED
    job.result = result_data
    job.finished_at = now
    job.updated_at = now
    job.locked_until = None

    if job.remove_on_complete:
        session.expunge(job)
        await remove_job(session, job_id)
    else:
        session.add(JobEventLog(
            job_id=job.id,
            event_type=JobEvent.COMPLETED,
            timestamp=now,
            meta={"attempt": job.attempts_made, "worker_id": worker_id}
        ))

    await session.flush()
    return job
