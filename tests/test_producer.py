# tests/test_producer.py

from uuid import uuid4

import pytest
from sqlalchemy import func, select

from task_pipeline.db.models import Task
from task_pipeline.domain.errors import TaskAccessError, TaskNotFoundError
from task_pipeline.domain.models import TaskFilter
from task_pipeline.domain.states import JobName, TaskPriority, TaskStatus


async def _status_jobs(pipeline) -> list[dict]:
    jobs = await pipeline.queue.list_jobs(name=JobName.STATUS_UPDATE)
    return [job.payload for job in jobs]


async def test_create_task_enqueues_one_job_with_initial_status(pipeline, seed):
    owner = await seed.user()

    task = await pipeline.tasks.create_task({"title": "Ship release", "status": TaskStatus.IN_PROGRESS}, owner.id)

    assert await _status_jobs(pipeline) == [
        {"taskId": str(task.id), "status": "in_progress", "updatedAt": task.updated_at.isoformat()}
    ]
    assert task.user_id == owner.id
    assert task.priority == TaskPriority.MEDIUM


async def test_failed_enqueue_rolls_back_task_insert(pipeline, seed, session_factory, monkeypatch):
    owner = await seed.user()

    async def broken_enqueue(*args, **kwargs):
        raise RuntimeError("queue unavailable")

    monkeypatch.setattr(pipeline.queue, "enqueue", broken_enqueue)

    with pytest.raises(RuntimeError):
        await pipeline.tasks.create_task({"title": "Ship release"}, owner.id)

    async with session_factory() as session:
        assert await session.scalar(select(func.count(Task.id))) == 0


async def test_update_with_same_status_enqueues_nothing(pipeline, seed):
    owner = await seed.user()
    task = await seed.task(owner.id, status=TaskStatus.PENDING)

    await pipeline.tasks.update_task(task.id, {"status": TaskStatus.PENDING}, owner.id)
    await pipeline.tasks.update_task(task.id, {"title": "Renamed"}, owner.id)

    assert await _status_jobs(pipeline) == []


async def test_update_with_new_status_enqueues_exactly_one_job(pipeline, seed):
    owner = await seed.user()
    task = await seed.task(owner.id, status=TaskStatus.PENDING)

    updated = await pipeline.tasks.update_task(
        task.id, {"status": TaskStatus.COMPLETED, "title": "Done"}, owner.id
    )

    assert updated.status == TaskStatus.COMPLETED
    assert updated.title == "Done"
    assert await _status_jobs(pipeline) == [{"taskId": str(task.id), "status": "completed"}]


async def test_update_rejects_unknown_field(pipeline, seed):
    owner = await seed.user()
    task = await seed.task(owner.id)

    with pytest.raises(ValueError):
        await pipeline.tasks.update_task(task.id, {"user_id": uuid4()}, owner.id)


async def test_update_of_foreign_task_is_not_found_unless_admin(pipeline, seed):
    owner = await seed.user()
    other = await seed.user(email="other@example.com")
    task = await seed.task(owner.id)

    with pytest.raises(TaskNotFoundError):
        await pipeline.tasks.update_task(task.id, {"status": TaskStatus.COMPLETED}, other.id)
    assert await _status_jobs(pipeline) == []

    await pipeline.tasks.update_task(task.id, {"status": TaskStatus.COMPLETED}, other.id, is_admin=True)
    assert len(await _status_jobs(pipeline)) == 1


async def test_batch_update_enqueues_one_job_per_affected_task(pipeline, seed):
    owner = await seed.user()
    other = await seed.user(email="other@example.com")
    mine = [await seed.task(owner.id, title=f"t{i}") for i in range(3)]
    foreign = await seed.task(other.id)

    result = await pipeline.tasks.batch_update_status(
        [t.id for t in mine] + [foreign.id], TaskStatus.COMPLETED, owner.id
    )

    assert result.updated == 3
    assert result.failed == 1
    payloads = await _status_jobs(pipeline)
    assert sorted(p["taskId"] for p in payloads) == sorted(str(t.id) for t in mine)
    assert {p["status"] for p in payloads} == {"completed"}

    jobs = await pipeline.queue.list_jobs(name=JobName.STATUS_UPDATE)
    assert len({job.id for job in jobs}) == 3
    assert all(job.max_attempts == 3 for job in jobs)

    untouched = await pipeline.tasks.get_task(foreign.id, other.id)
    assert untouched.status == TaskStatus.PENDING


async def test_batch_delete_respects_ownership(pipeline, seed):
    owner = await seed.user()
    other = await seed.user(email="other@example.com")
    mine = await seed.task(owner.id)
    foreign = await seed.task(other.id)

    assert await pipeline.tasks.batch_delete([mine.id, foreign.id], owner.id) == {"deleted": 1, "failed": 1}

    with pytest.raises(TaskNotFoundError):
        await pipeline.tasks.get_task(mine.id, owner.id)
    assert (await pipeline.tasks.get_task(foreign.id, None, is_admin=True)).id == foreign.id


async def test_delete_task(pipeline, seed):
    owner = await seed.user()
    task = await seed.task(owner.id)

    await pipeline.tasks.delete_task(task.id, owner.id)

    with pytest.raises(TaskNotFoundError):
        await pipeline.tasks.get_task(task.id, owner.id)


async def test_list_tasks_is_scoped_to_caller(pipeline, seed):
    owner = await seed.user()
    other = await seed.user(email="other@example.com")
    for i in range(3):
        await seed.task(owner.id, title=f"report {i}")
    await seed.task(other.id, title="report other")

    task_filter = TaskFilter(title="report")
    page = await pipeline.tasks.list_tasks(task_filter, owner.id, page=1, limit=2)

    assert page.total == 3
    assert len(page.items) == 2
    assert page.total_pages == 2
    assert all(t.user_id == owner.id for t in page.items)
    assert task_filter.user_id is None

    everything = await pipeline.tasks.list_tasks(TaskFilter(), owner.id, is_admin=True)
    assert everything.total == 4

    with pytest.raises(TaskAccessError):
        await pipeline.tasks.list_tasks(TaskFilter(user_id=other.id), owner.id)


async def test_statistics_counts_by_status_and_priority(pipeline, seed):
    owner = await seed.user()
    await seed.task(owner.id, status=TaskStatus.PENDING)
    await seed.task(owner.id, status=TaskStatus.COMPLETED)
    await seed.task(owner.id, status=TaskStatus.COMPLETED)

    stats = await pipeline.tasks.get_statistics(owner.id)

    assert stats["total"] == 3
    assert stats["completed"] == 2
    assert stats["pending"] == 1
    assert stats["inProgress"] == 0
    assert stats["mediumPriority"] == 3
