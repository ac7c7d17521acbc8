from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from task_pipeline.db.models import Job, JobEventLog
from task_pipeline.domain.states import JobStatus, JobEvent
from task_pipeline.api.v1.metrics import JOBS_STALLED
from task_pipeline.utils.time import utcnow

async def requeue_stalled_jobs(session: AsyncSession, limit: int = 100) -> int:
    """
    Finds ACTIVE jobs whose lock expired (worker crashed or hung), and puts
    them back to PENDING. A stalled job already counted its attempt when it
    was claimed, so one with no attempts left goes to FAILED instead.
    Returns number of jobs recovered.
    """
    now = utcnow()

    stmt = select(Job).where(
        Job.status == JobStatus.ACTIVE,
        Job.locked_until < now
    ).limit(limit).with_for_update(skip_locked=True)

    result = await session.execute(stmt)
    stalled = result.scalars().all()

    if not stalled:
        return 0

    for job in stalled:
        previous_worker = job.worker_id
        job.last_error = f"Job stalled: lock expired (worker {previous_worker})"
        job.updated_at = now
        job.locked_until = None
        job.worker_id = None

        if job.attempts_made >= job.max_attempts:
            job.status = JobStatus.FAILED
            job.finished_at = now
            event_type = JobEvent.FAILED
        else:
            job.status = JobStatus.PENDING
            job.available_at = now
            event_type = JobEvent.STALLED

        session.add(JobEventLog(
            job_id=job.id,
            event_type=event_type,
            timestamp=now,
            meta={"reason": "lock_expired", "worker_id": previous_worker, "attempts": job.attempts_made}
        ))

    JOBS_STALLED.inc(len(stalled))

    await session.flush()
    return len(stalled)
