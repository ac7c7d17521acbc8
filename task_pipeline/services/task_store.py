import logging
from datetime import datetime
from typing import Any, Iterable, Optional
from uuid import UUID

from sqlalchemy import select, update, delete, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from task_pipeline.db.models import Task
from task_pipeline.domain.errors import TaskNotFoundError
from task_pipeline.domain.models import TaskFilter, Page
from task_pipeline.domain.states import TaskStatus, TaskPriority
from task_pipeline.utils.time import utcnow

logger = logging.getLogger(__name__)

# Fields a caller may patch through update_task
UPDATABLE_FIELDS = ("title", "description", "status", "priority", "due_date")

class TaskStore:
    """
    Persistence boundary for tasks.

    Every method takes the caller's session and never commits, so a caller can
    put a task write and a queue enqueue in one transaction.
    """

    async def create_task(self, session: AsyncSession, attrs: dict[str, Any]) -> Task:
        task = Task(**attrs)
        if task.status is None:
            task.status = TaskStatus.PENDING
        if task.priority is None:
            task.priority = TaskPriority.MEDIUM
        if task.updated_at is None:
            task.updated_at = utcnow()
        session.add(task)
        await session.flush()
        return task

    async def get_task(self, session: AsyncSession, task_id: UUID, user_id: Optional[UUID] = None) -> Task:
        stmt = select(Task).where(Task.id == task_id).options(selectinload(Task.user))
        if user_id is not None:
            stmt = stmt.where(Task.user_id == user_id)
        task = await session.scalar(stmt)
        if not task:
            raise TaskNotFoundError(task_id)
        return task

    async def update_task(self, session: AsyncSession, task: Task, patch: dict[str, Any]) -> Task:
        for field, value in patch.items():
            if field not in UPDATABLE_FIELDS:
                raise ValueError(f"Field {field!r} cannot be updated")
            setattr(task, field, value)
        task.updated_at = utcnow()
        await session.flush()
        return task

    async def find_page(
        self,
        session: AsyncSession,
        task_filter: TaskFilter,
        page: int = 1,
        page_size: int = 10
    ) -> Page[Task]:
        """
        One page of tasks matching `task_filter`, newest first, users eager-loaded.
        Pages are 1-indexed. The id tiebreaker keeps the order stable across
        pages so offsets always advance.
        """
        page = max(1, page)
        page_size = max(1, page_size)
        conditions = self._conditions(task_filter)

        total = await session.scalar(select(func.count(Task.id)).where(*conditions)) or 0

        stmt = (
            select(Task)
            .where(*conditions)
            .options(selectinload(Task.user))
            .order_by(Task.created_at.desc(), Task.id.asc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        items = list((await session.execute(stmt)).scalars().all())
        return Page(items=items, total=total, page=page, limit=page_size)

    def _conditions(self, task_filter: TaskFilter) -> list:
        conditions = []
        if task_filter.title:
            conditions.append(Task.title.ilike(f"%{task_filter.title}%"))
        if task_filter.status:
            conditions.append(Task.status == task_filter.status)
        if task_filter.priority:
            conditions.append(Task.priority == task_filter.priority)
        if task_filter.due_date_before:
            conditions.append(Task.due_date < task_filter.due_date_before)
        if task_filter.due_date_after:
            conditions.append(Task.due_date > task_filter.due_date_after)
        if task_filter.user_id:
            conditions.append(Task.user_id == task_filter.user_id)
        return conditions

    async def set_status(self, session: AsyncSession, task_id: UUID, status: TaskStatus) -> Task:
        task = await session.get(Task, task_id, populate_existing=True)
        if not task:
            raise TaskNotFoundError(task_id)
        task.status = status
        task.updated_at = utcnow()
        await session.flush()
        return task

    async def update_status_many(
        self,
        session: AsyncSession,
        task_ids: Iterable[UUID],
        status: TaskStatus,
        user_id: Optional[UUID] = None,
        now: Optional[datetime] = None
    ) -> list[UUID]:
        """Bulk status write. Returns the ids that matched (and were updated)."""
        ids = list(dict.fromkeys(task_ids))
        if not ids:
            return []

        match = select(Task.id).where(Task.id.in_(ids))
        if user_id is not None:
            match = match.where(Task.user_id == user_id)
        matched = set((await session.execute(match)).scalars().all())
        if not matched:
            return []

        await session.execute(
            update(Task)
            .where(Task.id.in_(matched))
            .values(status=status, updated_at=now or utcnow())
            .execution_options(synchronize_session=False)
        )
        # Keep request order for the caller
        return [task_id for task_id in ids if task_id in matched]

    async def delete_task(self, session: AsyncSession, task: Task) -> None:
        await session.delete(task)
        await session.flush()

    async def delete_many(
        self,
        session: AsyncSession,
        task_ids: Iterable[UUID],
        user_id: Optional[UUID] = None
    ) -> int:
        ids = list(dict.fromkeys(task_ids))
        if not ids:
            return 0
        stmt = delete(Task).where(Task.id.in_(ids))
        if user_id is not None:
            stmt = stmt.where(Task.user_id == user_id)
        result = await session.execute(stmt.execution_options(synchronize_session=False))
        return result.rowcount or 0

    async def statistics(self, session: AsyncSession, user_id: Optional[UUID] = None) -> dict[str, int]:
        base = select(func.count(Task.id))
        if user_id is not None:
            base = base.where(Task.user_id == user_id)
        total = await session.scalar(base) or 0

        by_status = select(Task.status, func.count(Task.id)).group_by(Task.status)
        by_priority = select(Task.priority, func.count(Task.id)).group_by(Task.priority)
        if user_id is not None:
            by_status = by_status.where(Task.user_id == user_id)
            by_priority = by_priority.where(Task.user_id == user_id)

        status_counts = {str(s): c for s, c in (await session.execute(by_status)).all()}
        priority_counts = {str(p): c for p, c in (await session.execute(by_priority)).all()}

        return {
            "total": total,
            "completed": status_counts.get(TaskStatus.COMPLETED, 0),
            "inProgress": status_counts.get(TaskStatus.IN_PROGRESS, 0),
            "pending": status_counts.get(TaskStatus.PENDING, 0),
            "highPriority": priority_counts.get(TaskPriority.HIGH, 0),
            "mediumPriority": priority_counts.get(TaskPriority.MEDIUM, 0),
            "lowPriority": priority_counts.get(TaskPriority.LOW, 0),
        }
