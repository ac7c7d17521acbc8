from datetime import datetime, timedelta
from typing import Optional

import logging

logger = logging.getLogger(__name__)

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from task_pipeline.db.models import Job, JobEventLog
from task_pipeline.domain.states import JobStatus, JobEvent
from task_pipeline.api.v1.metrics import QUEUE_DEPTH
from task_pipeline.utils.time import utcnow

async def claim_job(
    session: AsyncSession,
    worker_id: str,
    lock_duration: int,
    now: Optional[datetime] = None
) -> Optional[Job]:
    """
    Atomically claims the next claimable job for the given worker.

    Claimable: status=PENDING, available_at <= now, attempts_made < max_attempts.
    The claim itself is a conditional UPDATE (... WHERE status='pending'), so
    when two workers race for the same row only one of them gets rowcount 1.
    On Postgres the candidate SELECT also skips rows locked by other claimers.
    """
    now = now or utcnow()
    locked_until = now + timedelta(seconds=lock_duration)

    claimed_id = None

    # Retry loop for race conditions (another worker claimed our candidate)
    for _ in range(3):
        candidate_q = (
            select(Job.id)
            .where(
                Job.status == JobStatus.PENDING,
                Job.available_at <= now,
                Job.attempts_made < Job.max_attempts,
            )
            .order_by(Job.available_at.asc(), Job.created_at.asc())
            .with_for_update(skip_locked=True)
            .limit(1)
        )
        candidate_id = await session.scalar(candidate_q)
        if candidate_id is None:
            return None

        stmt = (
            update(Job)
            .where(Job.id == candidate_id, Job.status == JobStatus.PENDING)
            .values(
                status=JobStatus.ACTIVE,
                attempts_made=Job.attempts_made + 1,
                worker_id=worker_id,
                locked_until=locked_until,
                started_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        if result.rowcount == 1:
            claimed_id = candidate_id
            break

        logger.debug(f"Job {candidate_id} claimed concurrently, retrying")

    if claimed_id is None:
        return None

    job = await session.get(Job, claimed_id, populate_existing=True)

    QUEUE_DEPTH.labels(status=JobStatus.PENDING).dec()
    QUEUE_DEPTH.labels(status=JobStatus.ACTIVE).inc()

    # Audit log
    session.add(JobEventLog(
        job_id=job.id,
        event_type=JobEvent.STARTED,
        timestamp=now,
        meta={
            "worker_id": worker_id,
            "attempt": job.attempts_made,
            "locked_until": locked_until.isoformat()
        }
    ))

    await session.flush()
    return job
