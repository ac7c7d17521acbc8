from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from task_pipeline.domain.states import JobStatus
from task_pipeline.domain.errors import InvalidJobStateError
from task_pipeline.commands.complete_job import load_job
from task_pipeline.utils.time import utcnow

async def heartbeat(
    session: AsyncSession,
    job_id: UUID,
    worker_id: str,
    extend_seconds: int = 30
) -> datetime:
    """
    Renews the lock of an ACTIVE job held by `worker_id`.
    Throws if the job is gone, no longer active, or owned by another worker
    (its lock expired and it was requeued).
    Returns the new locked_until.
    """
    now = utcnow()

    job = await load_job(session, job_id)

    if job.status != JobStatus.ACTIVE:
        raise InvalidJobStateError(job.status, JobStatus.ACTIVE)

    if job.worker_id != worker_id:
        raise InvalidJobStateError(f"locked by {job.worker_id}", JobStatus.ACTIVE)

    new_locked_until = now + timedelta(seconds=extend_seconds)
    job.locked_until = new_locked_until
    job.updated_at = now

    await session.flush()
    return new_locked_until
