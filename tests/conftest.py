# tests/conftest.py

import os

# Settings are read at import time; keep the module-level engine off Postgres.
os.environ.setdefault("SQLALCHEMY_DATABASE_URI", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("START_BACKGROUND_WORKERS", "false")

from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

import pytest
from sqlalchemy.ext.asyncio import create_async_engine

from task_pipeline.db.models import Task, User
from task_pipeline.db.session import init_models, make_session_factory
from task_pipeline.domain.models import JobOptions
from task_pipeline.domain.states import TaskStatus
from task_pipeline.pipeline import build_pipeline
from task_pipeline.queue.job_queue import JobQueue
from task_pipeline.settings import Settings
from task_pipeline.utils.time import utcnow

from .fakes import FakeNotifier


@pytest.fixture()
async def engine(tmp_path):
    """Fresh SQLite database file per test."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'pipeline.sqlite3'}")
    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture()
def settings():
    # No backoff delay so retried jobs are claimable straight away
    return Settings(
        SQLALCHEMY_DATABASE_URI="sqlite+aiosqlite:///:memory:",
        WORKER_CONCURRENCY=2,
        WORKER_POLL_INTERVAL_SECONDS=0.05,
        JOB_HEARTBEAT_INTERVAL_SECONDS=0.05,
        JOB_BACKOFF_BASE_DELAY_MS=0,
        SCHEDULER_INTERVAL_SECONDS=0.05,
        START_BACKGROUND_WORKERS=False,
        MAIL_API_URL=None,
    )


@pytest.fixture()
def queue(session_factory):
    return JobQueue(
        session_factory,
        default_options=JobOptions(backoff_base_delay_ms=0),
        lock_duration=30,
        poll_interval=0.05,
    )


@pytest.fixture()
def notifier():
    return FakeNotifier()


@pytest.fixture()
async def pipeline(settings, session_factory, notifier):
    pipeline = build_pipeline(settings, session_factory=session_factory, notifier=notifier)
    yield pipeline
    await pipeline.stop(timeout=2.0)


class Seeder:
    """Inserts users and tasks directly, bypassing the producer (no jobs enqueued)."""

    def __init__(self, session_factory):
        self._session_factory = session_factory

    async def user(self, email: Optional[str] = "owner@example.com", name: Optional[str] = "Owner") -> User:
        async with self._session_factory() as session:
            async with session.begin():
                user = User(email=email, name=name)
                session.add(user)
        return user

    async def task(
        self,
        user_id: Optional[UUID],
        title: str = "Write report",
        status: TaskStatus = TaskStatus.PENDING,
        due_date: Optional[datetime] = None,
    ) -> Task:
        async with self._session_factory() as session:
            async with session.begin():
                task = Task(title=title, status=status, due_date=due_date, user_id=user_id)
                session.add(task)
        return task

    async def overdue_tasks(self, user_id: Optional[UUID], count: int) -> list[Task]:
        due = utcnow() - timedelta(days=1)
        async with self._session_factory() as session:
            async with session.begin():
                tasks = [
                    Task(title=f"Overdue {i}", status=TaskStatus.PENDING, due_date=due, user_id=user_id)
                    for i in range(count)
                ]
                session.add_all(tasks)
        return tasks


@pytest.fixture()
def seed(session_factory):
    return Seeder(session_factory)
