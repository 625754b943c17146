import logging
import math
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select, func

from render_orchestrator.api.deps import DbSession, ClientsDep
from render_orchestrator.commands.cancel_job import cancel_job as cancel_job_command
from render_orchestrator.commands.project_status import project_status
from render_orchestrator.commands.start_execution import describe_execution
from render_orchestrator.commands.submit_job import create_pending_job
from render_orchestrator.db.models import RenderJob
from render_orchestrator.domain.errors import (
    DuplicateSubmissionError, ExecutionNotFoundError, InvalidJobStateError, JobNotFoundError, WorkerInvocationError,
)
from render_orchestrator.domain.models import StatusUpdate, WorkerHandle
from render_orchestrator.domain.states import JobStatus
from render_orchestrator.services.queue_consumer import encode_submission

logger = logging.getLogger(__name__)

router = APIRouter()

class JobCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    resource_key: str = Field(min_length=1, alias="resourceKey")
    worker_parameters: dict[str, Any] = Field(default_factory=dict, alias="workerParameters")
    job_id: Optional[str] = Field(default=None, alias="jobId")

class JobResponse(BaseModel):
    job_id: str = Field(serialization_alias="jobId")
    resource_key: str = Field(serialization_alias="resourceKey")
    status: JobStatus
    output_location: Optional[str] = Field(default=None, serialization_alias="outputLocation")
    error_detail: Optional[list[dict[str, Any]]] = Field(default=None, serialization_alias="errorDetail")
    progress: Optional[float] = None
    workflow_execution_id: Optional[str] = Field(default=None, serialization_alias="workflowExecutionId")
    created_at: datetime = Field(serialization_alias="createdAt")
    updated_at: datetime = Field(serialization_alias="updatedAt")
    model_config = ConfigDict(from_attributes=True)

class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int

class JobHistoryResponse(BaseModel):
    jobs: list[JobResponse]
    pagination: Pagination

class ExecutionResponse(BaseModel):
    execution_id: str = Field(serialization_alias="executionId")
    state: str
    status: str
    attempts: int
    input: dict[str, Any]
    output: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    cause: Optional[str] = None
    started_at: datetime = Field(serialization_alias="startedAt")
    stopped_at: Optional[datetime] = Field(default=None, serialization_alias="stoppedAt")

class RenderProgressResponse(BaseModel):
    job_id: str = Field(serialization_alias="jobId")
    done: bool
    failed: bool
    progress: Optional[float] = None
    output_location: Optional[str] = Field(default=None, serialization_alias="outputLocation")
    errors: list[dict[str, Any]] = Field(default_factory=list)

@router.post("", response_model=JobResponse, status_code=status.HTTP_202_ACCEPTED)
async def create_job(payload: JobCreate, session: DbSession, clients: ClientsDep):
    job_id = payload.job_id or str(uuid4())
    try:
        job = await create_pending_job(session, job_id, payload.resource_key, payload.worker_parameters)
    except DuplicateSubmissionError as e:
        await session.rollback()
        raise HTTPException(
            status_code=409,
            detail={"message": "Render already in progress", "jobId": e.active_job_id},
        )
    await session.commit()

    body = encode_submission(job_id, payload.resource_key, payload.worker_parameters)
    try:
        await clients.publisher.publish(body, job_id)
    except Exception as e:
        logger.error("Failed to queue job %s: %s", job_id, e, exc_info=True)
        await project_status(
            session,
            StatusUpdate(job_id=job_id, status=JobStatus.FAILED, error_detail=[{"message": f"Failed to queue render: {e}"}]),
        )
        await session.commit()
        raise HTTPException(status_code=502, detail="Failed to queue render")

    await session.refresh(job)
    return job

@router.get("", response_model=JobHistoryResponse)
async def list_jobs(
    session: DbSession,
    resource_key: Optional[str] = Query(default=None, alias="resourceKey"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=50),
):
    filters = [RenderJob.resource_key == resource_key] if resource_key else []

    total = await session.scalar(select(func.count()).select_from(RenderJob).where(*filters)) or 0
    stmt = (
        select(RenderJob)
        .where(*filters)
        .order_by(RenderJob.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    jobs = (await session.execute(stmt)).scalars().all()

    return JobHistoryResponse(
        jobs=[JobResponse.model_validate(j) for j in jobs],
        pagination=Pagination(page=page, limit=limit, total=total, pages=math.ceil(total / limit)),
    )

@router.get("/{job_id}", response_model=JobResponse)
async def get_job(job_id: str, session: DbSession):
    job = await session.get(RenderJob, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job

@router.get("/{job_id}/execution", response_model=ExecutionResponse)
async def get_execution(job_id: str, session: DbSession):
    job = await session.get(RenderJob, job_id)
    if not job or not job.workflow_execution_id:
        raise HTTPException(status_code=404, detail="Execution not found")
    try:
        execution = await describe_execution(session, job.workflow_execution_id)
    except ExecutionNotFoundError:
        raise HTTPException(status_code=404, detail="Execution not found")

    return ExecutionResponse(
        execution_id=execution.id,
        state=execution.state,
        status=execution.status,
        attempts=execution.attempts,
        input=execution.input or {},
        output=execution.output,
        error=execution.error,
        cause=execution.cause,
        started_at=execution.started_at,
        stopped_at=execution.stopped_at,
    )

@router.get("/{job_id}/render-progress", response_model=RenderProgressResponse)
async def get_render_progress(job_id: str, session: DbSession, clients: ClientsDep):
    job = await session.get(RenderJob, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    if not job.render_id:
        raise HTTPException(status_code=409, detail="Render not started")

    try:
        progress = await clients.worker.get_render_progress(WorkerHandle(job.render_id, job.bucket_name))
    except WorkerInvocationError as e:
        logger.warning("Render progress for job %s unavailable: %s", job_id, e)
        raise HTTPException(status_code=502, detail="Render worker unavailable")

    if progress.progress is not None and not progress.done and not progress.failed:
        # Only moves a processing job; terminal jobs are left untouched
        await project_status(
            session,
            StatusUpdate(job_id=job_id, status=JobStatus.PROCESSING, progress=progress.progress),
        )
        await session.commit()

    return RenderProgressResponse(
        job_id=job_id,
        done=progress.done,
        failed=progress.failed,
        progress=progress.progress,
        output_location=progress.output_location,
        errors=progress.errors,
    )

@router.post("/{job_id}/cancel", response_model=JobResponse)
async def cancel_job(job_id: str, session: DbSession):
    try:
        job = await cancel_job_command(session, job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    except InvalidJobStateError as e:
        await session.rollback()
        raise HTTPException(status_code=409, detail=f"Job cannot be canceled: {e.current_status}")

    await session.commit()
    return job
