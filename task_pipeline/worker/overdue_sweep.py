"""
Overdue sweep: one job scans every pending task past its due date and emails
its owner.

The sweep only reads tasks and sends mail. Running it twice against the same
data sends the same emails twice and changes nothing in the store, so a
retried sweep can always restart from the first page.
"""
import html
import logging
import math
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from task_pipeline.api.v1.metrics import OVERDUE_NOTIFICATIONS
from task_pipeline.db.models import Job, Task
from task_pipeline.domain.errors import PerItemNotificationError
from task_pipeline.domain.models import TaskFilter, SweepReport
from task_pipeline.domain.states import TaskStatus
from task_pipeline.services.notifier import Notifier
from task_pipeline.services.task_store import TaskStore
from task_pipeline.utils.time import utcnow

logger = logging.getLogger(__name__)

def render_overdue_email(task: Task) -> tuple[str, str]:
    title = html.escape(task.title or "")
    name = html.escape((task.user.name if task.user else None) or "User")
    due = f"{task.due_date:%Y-%m-%d}" if task.due_date else "an earlier date"

    subject = f'Action Required: Your Task "{task.title}" is Overdue!'
    body = (
        f"<p>Dear {name},</p>"
        f"<p>Your task <strong>\"{title}\"</strong> (ID: {task.id}) was due on {due}.</p>"
        "<p>Please log in to your dashboard to update its status</p>"
        "<p>Thank you,</p>"
        "<p>Your Task Management Team</p>"
    )
    return subject, body

class OverdueSweepHandler:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        store: TaskStore,
        notifier: Notifier,
        page_size: int = 100,
    ):
        if page_size < 1:
            raise ValueError("page_size must be >= 1")
        self._session_factory = session_factory
        self.store = store
        self.notifier = notifier
        self.page_size = page_size

    async def __call__(self, job: Job) -> dict[str, Any]:
        logger.debug(f"Processing overdue tasks notification (job {job.id})")
        report = await self.run()
        return report.as_result()

    async def run(self, now=None) -> SweepReport:
        """
        Pages through `status == pending AND due_date < now` in a stable order.
        Stops on an empty or short page, and after ceil(total/page_size)+1
        queries at the latest.
        """
        now = now or utcnow()
        task_filter = TaskFilter(status=TaskStatus.PENDING, due_date_before=now)
        report = SweepReport()

        offset = 0
        queries = 0
        max_queries: Optional[int] = None

        while max_queries is None or queries < max_queries:
            page_number = offset // self.page_size + 1
            async with self._session_factory() as session:
                page = await self.store.find_page(session, task_filter, page_number, self.page_size)
            queries += 1
            if max_queries is None:
                max_queries = math.ceil(page.total / self.page_size) + 1

            if not page.items:
                break

            report.pages += 1
            for task in page.items:
                await self._notify(task, report)

            report.total_processed += len(page.items)
            logger.info(f"Processed batch of {len(page.items)} overdue tasks (page {page_number})")

            if len(page.items) < self.page_size:
                break
            offset += self.page_size

        logger.info(
            f"Finished processing overdue tasks. Total processed: {report.total_processed} "
            f"(notified={report.notified}, failed={report.failed}, skipped={report.skipped})"
        )
        return report

    async def _notify(self, task: Task, report: SweepReport) -> None:
        if task.user is None or not task.user.email:
            logger.warning(f"Task {task.id} has no associated user or email for notification. Skipping email.")
            report.skipped += 1
            OVERDUE_NOTIFICATIONS.labels(outcome="skipped").inc()
            return

        try:
            await self._send(task)
        except PerItemNotificationError as e:
            logger.error(str(e), exc_info=True)
            report.failed += 1
            OVERDUE_NOTIFICATIONS.labels(outcome="failed").inc()
            return

        logger.debug(f"Sent overdue email for task {task.id} to {task.user.email}")
        report.notified += 1
        OVERDUE_NOTIFICATIONS.labels(outcome="sent").inc()

    async def _send(self, task: Task) -> None:
        recipient = task.user.email
        subject, body = render_overdue_email(task)
        try:
            result = await self.notifier.send_mail(recipient, subject, body)
        except Exception as e:
            raise PerItemNotificationError(task.id, recipient, f"{type(e).__name__}: {e}") from e
        if not result.ok:
            raise PerItemNotificationError(task.id, recipient, result.error or "mail transport error")
