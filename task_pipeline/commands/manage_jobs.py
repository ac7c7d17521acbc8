from typing import Optional
from uuid import UUID

from sqlalchemy import select, func, delete
from sqlalchemy.ext.asyncio import AsyncSession

from task_pipeline.db.models import Job, JobEventLog
from task_pipeline.domain.states import JobName, JobStatus, JobEvent
from task_pipeline.domain.errors import InvalidJobStateError
from task_pipeline.commands.complete_job import load_job, remove_job
from task_pipeline.utils.time import utcnow

# Terminal states an operator can inspect, retry and purge
RETAINED_STATUSES = (JobStatus.FAILED, JobStatus.DISCARDED, JobStatus.COMPLETED)

async def list_jobs(
    session: AsyncSession,
    status: Optional[JobStatus] = None,
    name: Optional[JobName] = None,
    limit: int = 100,
    offset: int = 0
) -> list[Job]:
    stmt = select(Job)
    if status:
        stmt = stmt.where(Job.status == status)
    if name:
        stmt = stmt.where(Job.name == name)
    stmt = stmt.order_by(Job.updated_at.desc(), Job.created_at.desc()).offset(offset).limit(limit)
    return list((await session.execute(stmt)).scalars().all())

async def count_jobs_by_status(session: AsyncSession) -> dict[str, int]:
    stmt = select(Job.status, func.count(Job.id)).group_by(Job.status)
    rows = (await session.execute(stmt)).all()
    counts = {status.value: 0 for status in JobStatus}
    for status, count in rows:
        counts[str(status)] = count
    return counts

async def retry_failed_job(session: AsyncSession, job_id: UUID, reset_attempts: bool = True) -> Job:
    """
    Manual retry of a terminal job (FAILED or DISCARDED): back to PENDING,
    claimable immediately, with a fresh attempt budget.
    """
    now = utcnow()
    job = await load_job(session, job_id, for_update=True)

    if job.status not in (JobStatus.FAILED, JobStatus.DISCARDED):
        raise InvalidJobStateError(job.status, JobStatus.PENDING)

    previous_status = job.status
    if reset_attempts:
        job.attempts_made = 0
    job.status = JobStatus.PENDING
    job.available_at = now
    job.finished_at = None
    job.updated_at = now

    session.add(JobEventLog(
        job_id=job.id,
        event_type=JobEvent.REQUEUED,
        timestamp=now,
        meta={"reason": "manual_retry", "previous_status": previous_status}
    ))
    await session.flush()
    return job

async def purge_job(session: AsyncSession, job_id: UUID) -> None:
    job = await load_job(session, job_id)
    if job.status not in RETAINED_STATUSES:
        raise InvalidJobStateError(job.status, "purged")
    await remove_job(session, job_id)
    await session.flush()

async def purge_failed_jobs(session: AsyncSession, name: Optional[JobName] = None) -> int:
    stmt = select(Job.id).where(Job.status == JobStatus.FAILED)
    if name:
        stmt = stmt.where(Job.name == name)
    ids = list((await session.execute(stmt)).scalars().all())
    if not ids:
        return 0

    await session.execute(delete(JobEventLog).where(JobEventLog.job_id.in_(ids)))
    await session.execute(delete(Job).where(Job.id.in_(ids)))
    await session.flush()
    return len(ids)

async def list_job_events(session: AsyncSession, job_id: UUID) -> list[JobEventLog]:
    stmt = select(JobEventLog).where(JobEventLog.job_id == job_id).order_by(JobEventLog.id.asc())
    return list((await session.execute(stmt)).scalars().all())
