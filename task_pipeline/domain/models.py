from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Any, Generic, TypeVar
from uuid import UUID

from task_pipeline.domain.states import JobName, TaskStatus, TaskPriority

T = TypeVar("T")

@dataclass
class JobOptions:
    attempts: int = 3
    backoff_base_delay_ms: int = 1000
    backoff_type: str = "exponential"
    remove_on_complete: bool = True
    remove_on_fail: bool = False
    delay_ms: int = 0

    @classmethod
    def from_settings(cls, settings, **overrides) -> "JobOptions":
        opts = cls(
            attempts=settings.JOB_DEFAULT_ATTEMPTS,
            backoff_base_delay_ms=settings.JOB_BACKOFF_BASE_DELAY_MS,
            remove_on_complete=settings.JOB_REMOVE_ON_COMPLETE,
            remove_on_fail=settings.JOB_REMOVE_ON_FAIL,
        )
        for key, value in overrides.items():
            setattr(opts, key, value)
        return opts

@dataclass(frozen=True)
class JobHandle:
    id: UUID
    name: JobName
    max_attempts: int
    available_at: datetime

@dataclass
class TaskFilter:
    title: Optional[str] = None
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    due_date_before: Optional[datetime] = None
    due_date_after: Optional[datetime] = None
    user_id: Optional[UUID] = None

@dataclass
class Page(Generic[T]):
    items: list[T]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        if self.limit <= 0:
            return 0
        return (self.total + self.limit - 1) // self.limit

@dataclass
class BatchResult:
    updated: int = 0
    failed: int = 0
    affected_ids: list[UUID] = field(default_factory=list)

@dataclass
class SweepReport:
    total_processed: int = 0
    notified: int = 0
    failed: int = 0
    skipped: int = 0
    pages: int = 0

    def as_result(self) -> dict[str, Any]:
        return {
            "success": True,
            "totalOverdueProcessed": self.total_processed,
            "notified": self.notified,
            "failed": self.failed,
            "skipped": self.skipped,
            "pages": self.pages,
            "message": f"Overdue tasks processing completed. Total: {self.total_processed}",
        }
