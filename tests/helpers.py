"""Fakes and shortcuts shared by the test modules."""
import hashlib
import hmac
import json
from datetime import timedelta
from typing import Any, Optional

from sqlalchemy import select, update

from render_orchestrator.db.models import RenderJob, WorkflowExecution, TaskToken
from render_orchestrator.domain.messages import SqsRecord
from render_orchestrator.domain.models import RenderProgress, WorkerHandle, utcnow
from render_orchestrator.domain.states import TokenStatus
from render_orchestrator.scheduler.dispatcher import dispatch_trigger_renders
from render_orchestrator.services.queue_consumer import encode_submission

WEBHOOK_SECRET = "test-webhook-secret"

class FakeRenderWorker:
    """Scripted render worker: each start_render pops the next response (handle or exception)."""

    def __init__(self):
        self.responses: list[Any] = []
        self.calls: list[dict[str, Any]] = []
        self.progress = RenderProgress(done=False, failed=False, progress=42.0)
        self.before_return = None

    async def start_render(self, job_id, worker_parameters, continuation_token) -> WorkerHandle:
        self.calls.append({
            "job_id": job_id,
            "worker_parameters": worker_parameters,
            "continuation_token": continuation_token,
        })
        response = self.responses.pop(0) if self.responses else WorkerHandle(f"render-{len(self.calls)}", "renders-bucket")
        if isinstance(response, Exception):
            raise response
        if self.before_return:
            # Lets a test deliver the callback before the invocation is recorded
            await self.before_return(job_id, continuation_token)
        return response

    async def get_render_progress(self, handle: WorkerHandle) -> RenderProgress:
        return self.progress

class FakeNotificationSink:
    def __init__(self):
        self.sent = []
        self.fail = False

    async def send(self, notification):
        if self.fail:
            raise ConnectionError("sink down")
        self.sent.append(notification)

class FakeQueuePublisher:
    def __init__(self):
        self.published: list[tuple[str, str]] = []
        self.fail = False

    async def publish(self, body: str, job_id: str) -> str:
        if self.fail:
            raise ConnectionError("queue down")
        self.published.append((body, job_id))
        return f"msg-{len(self.published)}"

def record(job_id: str, resource_key: str, message_id: Optional[str] = None, **params) -> SqsRecord:
    return SqsRecord(
        messageId=message_id or f"msg-{job_id}",
        body=encode_submission(job_id, resource_key, params or {"videoUrl": f"s3://in/{job_id}.mp4"}),
    )

def sign(body: bytes, secret: str = WEBHOOK_SECRET, algorithm: str = "sha256") -> str:
    return hmac.new(secret.encode(), body, getattr(hashlib, algorithm)).hexdigest()

def signed(payload: dict[str, Any], secret: str = WEBHOOK_SECRET) -> tuple[bytes, dict[str, str]]:
    body = json.dumps(payload).encode()
    return body, {"Content-Type": "application/json", "X-Render-Signature": sign(body, secret)}

async def submit(clients, job_id: str, resource_key: str):
    return await clients.consumer.process_batch([record(job_id, resource_key)])

async def dispatch(clients) -> int:
    return await dispatch_trigger_renders(clients.database.session_factory, clients.definition, clients.worker)

async def make_due(clients, job_id: str):
    """Pulls a scheduled retry forward so the next dispatch picks it up."""
    async with clients.database.session() as session:
        await session.execute(
            update(WorkflowExecution)
            .where(WorkflowExecution.job_id == job_id)
            .values(next_attempt_at=utcnow() - timedelta(seconds=1))
        )
        await session.commit()

async def get_job(clients, job_id: str) -> Optional[RenderJob]:
    async with clients.database.session() as session:
        return await session.get(RenderJob, job_id)

async def get_execution(clients, job_id: str) -> Optional[WorkflowExecution]:
    async with clients.database.session() as session:
        return await session.scalar(select(WorkflowExecution).where(WorkflowExecution.job_id == job_id))

async def pending_token(clients, job_id: str) -> Optional[str]:
    async with clients.database.session() as session:
        return await session.scalar(
            select(TaskToken.token).where(TaskToken.job_id == job_id, TaskToken.status == TokenStatus.PENDING)
        )

async def start_render(clients, job_id: str, resource_key: Optional[str] = None) -> str:
    """Submits and dispatches a job, returning the continuation token the worker received."""
    await submit(clients, job_id, resource_key or f"project-{job_id}")
    await dispatch(clients)
    return clients.worker.calls[-1]["continuation_token"]
