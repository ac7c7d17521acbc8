from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response

router = APIRouter()

# Metrics Definitions
JOBS_ENQUEUED = Counter('jobs_enqueued_total', 'Total jobs enqueued', ['name'])
JOB_FAILURES = Counter('job_failures_total', 'Total job failures', ['name', 'type']) # type=retryable|final|unrecoverable
JOB_COMPLETE_TOTAL = Counter('jobs_completed_total', 'Total jobs acked', ['name'])

JOB_DURATION = Histogram('job_duration_seconds', 'Time from claim to ack', buckets=[0.05, 0.1, 0.5, 1.0, 5.0, 10.0, 60.0, 300.0])

JOBS_INFLIGHT = Gauge(
    "jobs_inflight",
    "Number of jobs currently being handled by a worker slot"
)

QUEUE_DEPTH = Gauge('job_queue_depth', 'Number of jobs per status', ['status'])

JOBS_STALLED = Counter(
    "jobs_stalled_total",
    "Total number of active jobs whose lock expired without an ack"
)

OVERDUE_NOTIFICATIONS = Counter(
    "overdue_notifications_total",
    "Overdue notification attempts made by the sweep",
    ["outcome"] # sent | failed | skipped
)

@router.get("/metrics")
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
