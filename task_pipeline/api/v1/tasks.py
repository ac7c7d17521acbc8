from datetime import datetime
from enum import StrEnum
from typing import Annotated, Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict, Field

from task_pipeline.api.deps import PipelineDep, UserDep
from task_pipeline.domain.errors import TaskAccessError, TaskNotFoundError
from task_pipeline.domain.models import TaskFilter
from task_pipeline.domain.states import TaskStatus, TaskPriority
from task_pipeline.utils.time import as_naive_utc

router = APIRouter()

class TaskCreate(BaseModel):
    title: str = Field(min_length=1)
    description: Optional[str] = None
    status: TaskStatus = TaskStatus.PENDING
    priority: TaskPriority = TaskPriority.MEDIUM
    due_date: Optional[datetime] = None

class TaskUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    due_date: Optional[datetime] = None

class UserSummary(BaseModel):
    id: UUID
    email: Optional[str] = None
    name: Optional[str] = None
    model_config = ConfigDict(from_attributes=True)

class TaskResponse(BaseModel):
    id: UUID
    title: str
    description: Optional[str] = None
    status: TaskStatus
    priority: TaskPriority
    due_date: Optional[datetime] = None
    user_id: Optional[UUID] = None
    created_at: datetime
    updated_at: datetime
    model_config = ConfigDict(from_attributes=True)

class TaskPage(BaseModel):
    data: list[TaskResponse]
    total: int
    page: int
    limit: int
    total_pages: int

class BatchAction(StrEnum):
    COMPLETE = "complete"
    DELETE = "delete"

class BatchRequest(BaseModel):
    task_ids: list[UUID] = Field(min_length=1)
    action: BatchAction

def _normalize_dates(fields: dict) -> dict:
    if fields.get("due_date") is not None:
        fields["due_date"] = as_naive_utc(fields["due_date"])
    return fields

@router.post("", response_model=TaskResponse, status_code=status.HTTP_201_CREATED)
async def create_task(body: TaskCreate, pipeline: PipelineDep, user: UserDep):
    return await pipeline.tasks.create_task(_normalize_dates(body.model_dump()), user.id)

@router.get("", response_model=TaskPage)
async def list_tasks(
    pipeline: PipelineDep,
    user: UserDep,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 10,
    title: Optional[str] = None,
    status_filter: Annotated[Optional[TaskStatus], Query(alias="status")] = None,
    priority: Optional[TaskPriority] = None,
    due_date_before: Optional[datetime] = None,
    due_date_after: Optional[datetime] = None,
    user_id: Optional[UUID] = None,
):
    task_filter = TaskFilter(
        title=title,
        status=status_filter,
        priority=priority,
        due_date_before=as_naive_utc(due_date_before) if due_date_before else None,
        due_date_after=as_naive_utc(due_date_after) if due_date_after else None,
        user_id=user_id,
    )
    try:
        result = await pipeline.tasks.list_tasks(task_filter, user.id, user.is_admin, page=page, limit=limit)
    except TaskAccessError as e:
        raise HTTPException(status_code=403, detail=str(e))

    return TaskPage(
        data=[TaskResponse.model_validate(task) for task in result.items],
        total=result.total,
        page=result.page,
        limit=result.limit,
        total_pages=result.total_pages,
    )

@router.get("/stats")
async def get_stats(pipeline: PipelineDep, user: UserDep):
    return await pipeline.tasks.get_statistics(user.id, user.is_admin)

@router.get("/{task_id}", response_model=TaskResponse)
async def get_task(task_id: UUID, pipeline: PipelineDep, user: UserDep):
    try:
        return await pipeline.tasks.get_task(task_id, user.id, user.is_admin)
    except TaskNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

@router.patch("/{task_id}", response_model=TaskResponse)
async def update_task(task_id: UUID, body: TaskUpdate, pipeline: PipelineDep, user: UserDep):
    patch = _normalize_dates(body.model_dump(exclude_unset=True))
    # title, status and priority cannot be cleared
    patch = {k: v for k, v in patch.items() if v is not None or k in ("description", "due_date")}
    try:
        return await pipeline.tasks.update_task(task_id, patch, user.id, user.is_admin)
    except TaskNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

@router.delete("/{task_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_task(task_id: UUID, pipeline: PipelineDep, user: UserDep):
    try:
        await pipeline.tasks.delete_task(task_id, user.id, user.is_admin)
    except TaskNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

@router.post("/batch")
async def batch_process(body: BatchRequest, pipeline: PipelineDep, user: UserDep):
    if body.action == BatchAction.COMPLETE:
        result = await pipeline.tasks.batch_update_status(
            body.task_ids, TaskStatus.COMPLETED, user.id, user.is_admin
        )
        return {"updated": result.updated, "failed": result.failed}
    return await pipeline.tasks.batch_delete(body.task_ids, user.id, user.is_admin)
