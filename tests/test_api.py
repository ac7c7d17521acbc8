# tests/test_api.py

from uuid import uuid4

import httpx
import pytest

from task_pipeline.domain.models import JobOptions
from task_pipeline.domain.states import JobName, JobStatus
from task_pipeline.main import create_app


@pytest.fixture()
async def client(pipeline):
    app = create_app(pipeline, start_background=False)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


def _headers(user_id, admin: bool = False) -> dict:
    headers = {"X-User-ID": str(user_id)}
    if admin:
        headers["X-User-Role"] = "admin"
    return headers


async def test_health_and_metrics(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}

    resp = await client.get("/metrics")
    assert resp.status_code == 200
    assert "jobs_enqueued_total" in resp.text


async def test_requests_without_identity_are_rejected(client):
    assert (await client.get("/api/v1/tasks")).status_code == 401
    assert (await client.get("/api/v1/tasks", headers={"X-User-ID": "nobody"})).status_code == 401


async def test_create_task_returns_201_and_enqueues_status_update(client, pipeline, seed):
    owner = await seed.user()

    resp = await client.post(
        "/api/v1/tasks",
        json={"title": "Write docs", "priority": "high", "due_date": "2030-01-01T12:00:00+02:00"},
        headers=_headers(owner.id),
    )

    assert resp.status_code == 201
    body = resp.json()
    assert body["status"] == "pending"
    assert body["priority"] == "high"
    assert body["due_date"].startswith("2030-01-01T10:00:00")
    jobs = await pipeline.queue.list_jobs(name=JobName.STATUS_UPDATE)
    assert [(job.payload["taskId"], job.payload["status"]) for job in jobs] == [(body["id"], "pending")]


async def test_create_task_validates_body(client, seed):
    owner = await seed.user()

    resp = await client.post("/api/v1/tasks", json={"title": "x", "status": "archived"}, headers=_headers(owner.id))

    assert resp.status_code == 422


async def test_patch_enqueues_only_on_status_change(client, pipeline, seed):
    owner = await seed.user()
    task = await seed.task(owner.id)
    url = f"/api/v1/tasks/{task.id}"

    resp = await client.patch(url, json={"status": "pending", "title": "Same status"}, headers=_headers(owner.id))
    assert resp.status_code == 200
    assert resp.json()["title"] == "Same status"
    assert await pipeline.queue.list_jobs() == []

    resp = await client.patch(url, json={"status": "completed"}, headers=_headers(owner.id))
    assert resp.status_code == 200
    jobs = await pipeline.queue.list_jobs()
    assert [job.payload["status"] for job in jobs] == ["completed"]


async def test_foreign_task_is_hidden(client, seed):
    owner = await seed.user()
    task = await seed.task(owner.id)

    resp = await client.get(f"/api/v1/tasks/{task.id}", headers=_headers(uuid4()))
    assert resp.status_code == 404

    resp = await client.get(f"/api/v1/tasks/{task.id}", headers=_headers(uuid4(), admin=True))
    assert resp.status_code == 200


async def test_list_stats_and_delete(client, seed):
    owner = await seed.user()
    for i in range(3):
        await seed.task(owner.id, title=f"item {i}")

    resp = await client.get("/api/v1/tasks", params={"limit": 2, "page": 2}, headers=_headers(owner.id))
    assert resp.status_code == 200
    page = resp.json()
    assert page["total"] == 3
    assert page["total_pages"] == 2
    assert len(page["data"]) == 1

    stats = (await client.get("/api/v1/tasks/stats", headers=_headers(owner.id))).json()
    assert stats["total"] == 3

    task_id = page["data"][0]["id"]
    assert (await client.delete(f"/api/v1/tasks/{task_id}", headers=_headers(owner.id))).status_code == 204
    assert (await client.get(f"/api/v1/tasks/{task_id}", headers=_headers(owner.id))).status_code == 404


async def test_listing_other_users_tasks_requires_admin(client, seed):
    owner = await seed.user()

    resp = await client.get("/api/v1/tasks", params={"user_id": str(uuid4())}, headers=_headers(owner.id))

    assert resp.status_code == 403


async def test_batch_complete_enqueues_job_per_task(client, pipeline, seed):
    owner = await seed.user()
    tasks = [await seed.task(owner.id, title=f"t{i}") for i in range(3)]

    resp = await client.post(
        "/api/v1/tasks/batch",
        json={"task_ids": [str(t.id) for t in tasks], "action": "complete"},
        headers=_headers(owner.id),
    )

    assert resp.status_code == 200
    assert resp.json() == {"updated": 3, "failed": 0}
    assert len(await pipeline.queue.list_jobs(name=JobName.STATUS_UPDATE)) == 3


async def test_batch_rejects_empty_ids(client, seed):
    owner = await seed.user()

    resp = await client.post("/api/v1/tasks/batch", json={"task_ids": [], "action": "delete"}, headers=_headers(owner.id))

    assert resp.status_code == 422


async def test_admin_endpoints_require_admin_role(client):
    resp = await client.get("/api/v1/admin/jobs", headers=_headers(uuid4()))

    assert resp.status_code == 403


async def test_admin_failed_job_inspection_retry_and_purge(client, pipeline):
    admin = _headers(uuid4(), admin=True)
    handle = await pipeline.queue.enqueue(JobName.STATUS_UPDATE, {"taskId": str(uuid4()), "status": "completed"}, JobOptions(attempts=1))
    assert await pipeline.pool.run_once() == JobStatus.FAILED

    resp = await client.get("/api/v1/admin/jobs/failed", headers=admin)
    assert [job["id"] for job in resp.json()] == [str(handle.id)]

    resp = await client.get(f"/api/v1/admin/jobs/{handle.id}", headers=admin)
    assert resp.status_code == 200
    detail = resp.json()
    assert detail["attempts_made"] == 1
    assert [e["event_type"] for e in detail["events"]] == ["created", "started", "failed"]

    resp = await client.post(f"/api/v1/admin/jobs/{handle.id}/retry", headers=admin)
    assert resp.status_code == 200
    assert resp.json()["status"] == "pending"

    resp = await client.post(f"/api/v1/admin/jobs/{handle.id}/retry", headers=admin)
    assert resp.status_code == 409

    resp = await client.delete(f"/api/v1/admin/jobs/{handle.id}", headers=admin)
    assert resp.status_code == 409

    assert await pipeline.pool.run_once() == JobStatus.FAILED
    resp = await client.delete("/api/v1/admin/jobs/failed", headers=admin)
    assert resp.json() == {"purged_count": 1}

    resp = await client.get(f"/api/v1/admin/jobs/{handle.id}", headers=admin)
    assert resp.status_code == 404


async def test_admin_triggers_overdue_sweep_and_requeue(client, pipeline):
    admin = _headers(uuid4(), admin=True)

    resp = await client.post("/api/v1/admin/overdue-sweep", headers=admin)
    assert resp.status_code == 200
    jobs = await pipeline.queue.list_jobs(name=JobName.OVERDUE_SWEEP)
    assert [str(job.id) for job in jobs] == [resp.json()["job_id"]]

    resp = await client.post("/api/v1/admin/requeue_stalled", headers=admin)
    assert resp.json() == {"requeued_count": 0}

    resp = await client.get("/api/v1/admin/jobs/counts", headers=admin)
    assert resp.json()["pending"] == 1
