from typing import Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from task_pipeline.db.models import Job, JobEventLog
from task_pipeline.domain.states import JobStatus, JobEvent
from task_pipeline.domain.retry import calculate_next_run
from task_pipeline.domain.errors import InvalidJobStateError
from task_pipeline.commands.complete_job import load_job, remove_job
from task_pipeline.api.v1.metrics import JOB_FAILURES, QUEUE_DEPTH
from task_pipeline.utils.time import utcnow

def _ensure_active(job: Job, worker_id: Optional[str], target: JobStatus) -> None:
    if job.status != JobStatus.ACTIVE:
        raise InvalidJobStateError(job.status, target)
    if worker_id and job.worker_id != worker_id:
        raise InvalidJobStateError(f"locked by {job.worker_id}", target)

async def fail_job(
    session: AsyncSession,
    job_id: UUID,
    error: str,
    worker_id: Optional[str] = None
) -> Job:
    """
    Nacks an ACTIVE job after a recoverable failure.

    attempts_made < max_attempts: back to PENDING, claimable again after
        base_delay * 2^(attempts_made-1).
    attempts_made == max_attempts: terminal FAILED, kept for inspection
        (removed only when remove_on_fail is set).
    """
    now = utcnow()

    job = await load_job(session, job_id, for_update=True)
    _ensure_active(job, worker_id, JobStatus.FAILED)

    QUEUE_DEPTH.labels(status=JobStatus.ACTIVE).dec()
    job.last_error = error
    job.updated_at = now
    job.locked_until = None
    job.worker_id = None

    if job.attempts_made >= job.max_attempts:
        job.status = JobStatus.FAILED
        job.finished_at = now

        JOB_FAILURES.labels(name=job.name, type="final").inc()

        if job.remove_on_fail:
            session.expunge(job)
            await remove_job(session, job_id)
            await session.flush()
            return job

        QUEUE_DEPTH.labels(status=JobStatus.FAILED).inc()
        next_event = JobEvent.FAILED
        meta = {"error": error, "attempts": job.attempts_made, "max": job.max_attempts}
    else:
        next_run = calculate_next_run(
            job.attempts_made,
            base_delay_ms=job.backoff_base_delay_ms,
            backoff_type=job.backoff_type,
            now=now,
        )
        job.status = JobStatus.PENDING
        job.available_at = next_run

        JOB_FAILURES.labels(name=job.name, type="retryable").inc()
        QUEUE_DEPTH.labels(status=JobStatus.PENDING).inc() # Back to PENDING
        next_event = JobEvent.RETRIED
        meta = {
            "error": error,
            "attempts": job.attempts_made,
            "max": job.max_attempts,
            "available_at": next_run.isoformat()
        }

    session.add(JobEventLog(job_id=job.id, event_type=next_event, timestamp=now, meta=meta))

    await session.flush()
    return job

async def discard_job(
    session: AsyncSession,
    job_id: UUID,
    error: str,
    worker_id: Optional[str] = None
) -> Job:
    """
    Ack-and-drop for unrecoverable failures: never retried regardless of the
    attempts left. Follows the remove_on_complete policy; when the row is kept
    it is marked DISCARDED.
    """
    now = utcnow()

    job = await load_job(session, job_id, for_update=True)
    _ensure_active(job, worker_id, JobStatus.DISCARDED)

    JOB_FAILURES.labels(name=job.name, type="unrecoverable").inc()
    QUEUE_DEPTH.labels(status=JobStatus.ACTIVE).dec()

    job.status = JobStatus.DISCARDED
    job.worker_id = None
    job.last_error = error
    job.finished_at = now
    job.updated_at = now
    job.locked_until = None

    if job.remove_on_complete:
        session.expunge(job)
        await remove_job(session, job_id)
    else:
        session.add(JobEventLog(
            job_id=job.id,
            event_type=JobEvent.DISCARDED,
            timestamp=now,
            meta={"error": error, "attempts": job.attempts_made}
        ))

    await session.flush()
    return job
