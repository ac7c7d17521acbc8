import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Mapping, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from task_pipeline.db.models import Job
from task_pipeline.domain.errors import (
    ConfigurationError,
    RecoverableJobError,
    TaskNotFoundError,
    UnrecoverableJobError,
)
from task_pipeline.domain.states import JobName, TaskStatus
from task_pipeline.services.task_store import TaskStore
from task_pipeline.utils.time import as_naive_utc

logger = logging.getLogger(__name__)

Handler = Callable[[Job], Awaitable[dict[str, Any]]]

class JobDispatcher:
    """
    Routes a claimed job to the handler registered for its name.
    The table must cover every JobName; a gap is a wiring bug and fails here,
    not at the first job of that type.
    """

    def __init__(self, handlers: Mapping[JobName, Handler]):
        missing = [name.value for name in JobName if name not in handlers]
        if missing:
            raise ConfigurationError(f"No handler registered for job type(s): {', '.join(missing)}")
        self._handlers = dict(handlers)

    async def dispatch(self, job: Job) -> dict[str, Any]:
        try:
            name = JobName(job.name)
        except ValueError:
            raise UnrecoverableJobError(f"Unknown job type: {job.name}") from None
        return await self._handlers[name](job)

class StatusUpdateHandler:
    """Persists the status carried by a `status-update` job."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        store: TaskStore,
        retry_not_found: bool = True,
    ):
        self._session_factory = session_factory
        self.store = store
        self.retry_not_found = retry_not_found

    async def __call__(self, job: Job) -> dict[str, Any]:
        payload = job.payload
        if not isinstance(payload, dict):
            raise UnrecoverableJobError(f"Status update payload must be an object, got {type(payload).__name__}")
        task_id = payload.get("taskId")
        status = payload.get("status")

        if not task_id or not status:
            raise UnrecoverableJobError("Missing required task ID or status for update.")

        try:
            new_status = TaskStatus(status)
        except ValueError:
            allowed = ", ".join(s.value for s in TaskStatus)
            raise UnrecoverableJobError(f'Invalid task status value: "{status}". Must be one of: {allowed}') from None

        try:
            task_uuid = UUID(str(task_id))
        except ValueError:
            raise UnrecoverableJobError(f'Invalid task ID: "{task_id}"') from None

        written_at = self._parse_written_at(payload.get("updatedAt"))

        logger.info(f"Handling status update for task {task_uuid} to status {new_status}")

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    task = await self.store.get_task(session, task_uuid)
                    if written_at is not None and task.updated_at > written_at:
                        # A later write already moved the task on
                        logger.info(
                            f"Skipping stale status update for task {task.id}: "
                            f"job written at {written_at.isoformat()}, task updated at {task.updated_at.isoformat()}"
                        )
                        return {"success": True, "taskId": str(task.id), "newStatus": str(task.status), "skipped": True}
                    task = await self.store.set_status(session, task_uuid, new_status)
        except TaskNotFoundError as e:
            if self.retry_not_found:
                raise RecoverableJobError(str(e)) from e
            raise UnrecoverableJobError(str(e)) from e

        logger.info(f"Task {task.id} status updated to {task.status}")
        return {"success": True, "taskId": str(task.id), "newStatus": str(task.status)}

    @staticmethod
    def _parse_written_at(value: Any) -> Optional[datetime]:
        if value is None:
            return None
        try:
            return as_naive_utc(datetime.fromisoformat(str(value)))
        except ValueError:
            raise UnrecoverableJobError(f'Invalid updatedAt timestamp: "{value}"') from None
