import logging
from dataclasses import replace
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from task_pipeline.db.models import Task
from task_pipeline.domain.errors import TaskAccessError
from task_pipeline.domain.models import TaskFilter, Page, BatchResult
from task_pipeline.domain.states import JobName, TaskStatus
from task_pipeline.queue.job_queue import JobQueue
from task_pipeline.services.task_store import TaskStore
from task_pipeline.utils.time import utcnow

logger = logging.getLogger(__name__)

class TaskService:
    """
    Task use cases for the HTTP layer.

    Every mutation that changes a task's status enqueues a `status-update` job
    in the same transaction as the task write: both land or neither does.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        store: TaskStore,
        queue: JobQueue,
    ):
        self._session_factory = session_factory
        self.store = store
        self.queue = queue

    async def _enqueue_status_update(
        self,
        session: AsyncSession,
        task_id: UUID,
        status: TaskStatus,
        written_at: datetime,
    ) -> None:
        # updatedAt lets the handler skip a job that a later write has overtaken
        await self.queue.enqueue(
            JobName.STATUS_UPDATE,
            {"taskId": str(task_id), "status": str(status), "updatedAt": written_at.isoformat()},
            session=session,
        )

    async def create_task(self, data: dict[str, Any], user_id: UUID) -> Task:
        logger.info(f"Creating task for user {user_id}")
        async with self._session_factory() as session:
            async with session.begin():
                task = await self.store.create_task(session, {**data, "user_id": user_id})
                await self._enqueue_status_update(session, task.id, task.status, task.updated_at)
        logger.info(f"Task created and queued: {task.id}")
        return task

    async def get_task(self, task_id: UUID, user_id: Optional[UUID], is_admin: bool = False) -> Task:
        async with self._session_factory() as session:
            return await self.store.get_task(session, task_id, None if is_admin else user_id)

    async def list_tasks(
        self,
        task_filter: TaskFilter,
        user_id: Optional[UUID],
        is_admin: bool = False,
        page: int = 1,
        limit: int = 10,
    ) -> Page[Task]:
        if not is_admin:
            if task_filter.user_id and task_filter.user_id != user_id:
                raise TaskAccessError("Only administrators can list tasks of other users")
            task_filter = replace(task_filter, user_id=user_id)

        async with self._session_factory() as session:
            result = await self.store.find_page(session, task_filter, page, limit)
        logger.debug(f"Found {len(result.items)} tasks out of {result.total} total")
        return result

    async def update_task(
        self,
        task_id: UUID,
        patch: dict[str, Any],
        user_id: Optional[UUID],
        is_admin: bool = False,
    ) -> Task:
        async with self._session_factory() as session:
            async with session.begin():
                task = await self.store.get_task(session, task_id, None if is_admin else user_id)
                original_status = task.status

                task = await self.store.update_task(session, task, patch)

                if task.status != original_status:
                    logger.info(f"Task {task.id} status changed {original_status} -> {task.status}, queueing update")
                    await self._enqueue_status_update(session, task.id, task.status, task.updated_at)
        return task

    async def batch_update_status(
        self,
        task_ids: list[UUID],
        status: TaskStatus,
        user_id: Optional[UUID],
        is_admin: bool = False,
    ) -> BatchResult:
        now = utcnow()
        async with self._session_factory() as session:
            async with session.begin():
                affected = await self.store.update_status_many(
                    session, task_ids, status, None if is_admin else user_id, now=now
                )
                # One job per task so each keeps its own retry budget
                for task_id in affected:
                    await self._enqueue_status_update(session, task_id, status, now)

        requested = len(set(task_ids))
        logger.info(f"Batch status update to {status}: {len(affected)} of {requested} tasks affected")
        return BatchResult(updated=len(affected), failed=requested - len(affected), affected_ids=affected)

    async def delete_task(self, task_id: UUID, user_id: Optional[UUID], is_admin: bool = False) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                task = await self.store.get_task(session, task_id, None if is_admin else user_id)
                await self.store.delete_task(session, task)
        logger.info(f"Task removed: {task_id}")

    async def batch_delete(self, task_ids: list[UUID], user_id: Optional[UUID], is_admin: bool = False) -> dict[str, int]:
        async with self._session_factory() as session:
            async with session.begin():
                deleted = await self.store.delete_many(session, task_ids, None if is_admin else user_id)
        requested = len(set(task_ids))
        logger.info(f"Batch delete: {deleted} of {requested} tasks removed")
        return {"deleted": deleted, "failed": requested - deleted}

    async def get_statistics(self, user_id: Optional[UUID], is_admin: bool = False) -> dict[str, int]:
        async with self._session_factory() as session:
            return await self.store.statistics(session, None if is_admin else user_id)
