from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response

router = APIRouter()

# Metrics Definitions
SUBMISSIONS_TOTAL = Counter(
    "render_submissions_total",
    "Queue messages processed by the consumer",
    ["outcome"] # started|duplicate|invalid|error
)

RENDER_INVOCATIONS_TOTAL = Counter(
    "render_invocations_total",
    "Render worker invocation attempts",
    ["result"] # success|retry|failed
)

CALLBACKS_TOTAL = Counter(
    "render_callbacks_total",
    "Completion callbacks received",
    ["type", "result"] # result=resumed|stale|rejected
)

EXECUTION_TIMEOUTS_TOTAL = Counter(
    "render_execution_timeouts_total",
    "Executions resolved by the timeout sweeper",
    ["reason"] # ceiling|heartbeat
)

NOTIFICATIONS_TOTAL = Counter(
    "render_notifications_total",
    "Notification deliveries from the outbox",
    ["result"] # published|retry|failed
)

EXECUTIONS_INFLIGHT = Gauge(
    "render_executions_inflight",
    "Workflow executions currently running",
    ["state"]
)

RENDER_DURATION = Histogram(
    "render_duration_seconds",
    "Time from execution start to terminal state",
    buckets=[10.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1800.0, 3600.0]
)

LEADER_STATUS = Gauge(
    "instance_leader_status",
    "Whether this instance is currently the leader (1 for leader, 0 for follower)"
)

@router.get("/metrics")
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
