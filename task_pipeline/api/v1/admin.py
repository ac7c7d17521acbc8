from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, ConfigDict

from task_pipeline.api.deps import AdminDep, PipelineDep
from task_pipeline.domain.errors import JobNotFoundError, InvalidJobStateError
from task_pipeline.domain.states import JobName, JobStatus

router = APIRouter()

class JobResponse(BaseModel):
    id: UUID
    name: str
    status: JobStatus
    payload: dict[str, Any]
    result: Optional[dict[str, Any]] = None
    attempts_made: int
    max_attempts: int
    last_error: Optional[str] = None
    available_at: datetime
    created_at: datetime
    updated_at: datetime
    finished_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)

class JobEventResponse(BaseModel):
    event_type: str
    timestamp: datetime
    meta: dict[str, Any]
    model_config = ConfigDict(from_attributes=True)

class JobDetail(JobResponse):
    events: list[JobEventResponse] = []

@router.get("/jobs", response_model=list[JobResponse])
async def list_jobs(
    pipeline: PipelineDep,
    _admin: AdminDep,
    status: Optional[JobStatus] = None,
    name: Optional[JobName] = None,
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
):
    return await pipeline.queue.list_jobs(status=status, name=name, limit=limit, offset=offset)

@router.get("/jobs/failed", response_model=list[JobResponse])
async def list_failed_jobs(
    pipeline: PipelineDep,
    _admin: AdminDep,
    name: Optional[JobName] = None,
    limit: int = Query(default=100, ge=1, le=1000),
):
    return await pipeline.queue.list_failed(name=name, limit=limit)

@router.delete("/jobs/failed")
async def purge_failed_jobs(pipeline: PipelineDep, _admin: AdminDep, name: Optional[JobName] = None):
    count = await pipeline.queue.purge_failed(name=name)
    return {"purged_count": count}

@router.get("/jobs/counts")
async def job_counts(pipeline: PipelineDep, _admin: AdminDep):
    return await pipeline.queue.counts()

@router.get("/jobs/{job_id}", response_model=JobDetail)
async def get_job(job_id: UUID, pipeline: PipelineDep, _admin: AdminDep):
    try:
        job = await pipeline.queue.get(job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    events = await pipeline.queue.events(job_id)
    return JobDetail(
        **JobResponse.model_validate(job).model_dump(),
        events=[JobEventResponse.model_validate(e) for e in events],
    )

@router.post("/jobs/{job_id}/retry", response_model=JobResponse)
async def retry_job(job_id: UUID, pipeline: PipelineDep, _admin: AdminDep):
    try:
        return await pipeline.queue.retry_failed(job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidJobStateError as e:
        raise HTTPException(status_code=409, detail=str(e))

@router.delete("/jobs/{job_id}")
async def purge_job(job_id: UUID, pipeline: PipelineDep, _admin: AdminDep):
    try:
        await pipeline.queue.purge(job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidJobStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"purged": str(job_id)}

@router.post("/requeue_stalled")
async def trigger_requeue_stalled(pipeline: PipelineDep, _admin: AdminDep):
    count = await pipeline.queue.requeue_stalled()
    return {"requeued_count": count}

@router.post("/overdue-sweep")
async def trigger_overdue_sweep(pipeline: PipelineDep, _admin: AdminDep):
    handle = await pipeline.trigger.fire()
    if handle is None:
        raise HTTPException(status_code=503, detail="Could not enqueue overdue sweep")
    return {"job_id": str(handle.id)}
