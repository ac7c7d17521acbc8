from datetime import datetime, timedelta
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from task_pipeline.db.models import Job, JobEventLog
from task_pipeline.domain.models import JobOptions
from task_pipeline.domain.states import JobName, JobStatus, JobEvent
from task_pipeline.api.v1.metrics import JOBS_ENQUEUED, QUEUE_DEPTH
from task_pipeline.utils.time import utcnow

async def enqueue_job(
    session: AsyncSession,
    name: JobName | str,
    payload: dict[str, Any],
    options: JobOptions,
    now: Optional[datetime] = None
) -> Job:
    """
    Adds a PENDING job to the caller's unit of work.
    Does not commit: the job becomes visible to workers only when the
    caller's transaction commits, together with whatever else it wrote.
    Metrics are left to the caller, see `record_enqueued`.
    """
    job_name = JobName(name)  # ValueError for names outside the dispatch table
    if not isinstance(payload, dict):
        raise ValueError(f"payload must be a JSON object, got {type(payload).__name__}")
    if options.attempts < 1:
        raise ValueError("attempts must be >= 1")

    now = now or utcnow()
    available_at = now + timedelta(milliseconds=options.delay_ms) if options.delay_ms else now

    job = Job(
        id=uuid4(),
        name=job_name,
        payload=payload,
        status=JobStatus.PENDING,
        attempts_made=0,
        max_attempts=options.attempts,
        backoff_type=options.backoff_type,
        backoff_base_delay_ms=options.backoff_base_delay_ms,
        remove_on_complete=options.remove_on_complete,
        remove_on_fail=options.remove_on_fail,
        available_at=available_at,
        created_at=now,
        updated_at=now,
        events=[JobEventLog(event_type=JobEvent.CREATED, timestamp=now, meta={"max_attempts": options.attempts})],
    )
    session.add(job)
    await session.flush()
    return job

def record_enqueued(name: JobName | str) -> None:
    """Counts a job once its transaction has committed."""
    JOBS_ENQUEUED.labels(name=JobName(name)).inc()
    QUEUE_DEPTH.labels(status=JobStatus.PENDING).inc()
