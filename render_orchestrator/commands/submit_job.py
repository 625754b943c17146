import logging
from enum import StrEnum, auto
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from render_orchestrator.db.models import RenderJob, JobEventLog
from render_orchestrator.domain.errors import DuplicateSubmissionError, ExecutionAlreadyExistsError
from render_orchestrator.domain.messages import SubmissionMessage
from render_orchestrator.domain.models import StatusUpdate, utcnow
from render_orchestrator.domain.states import JobStatus, JobEvent, ACTIVE_STATUSES
from render_orchestrator.commands.project_status import project_status
from render_orchestrator.commands.start_execution import start_execution
from render_orchestrator.workflow.definition import WorkflowDefinition

logger = logging.getLogger(__name__)

class IngestOutcome(StrEnum):
    STARTED = auto()
    DUPLICATE = auto()

async def find_active_job(session: AsyncSession, resource_key: str) -> Optional[RenderJob]:
    stmt = select(RenderJob).where(
        RenderJob.resource_key == resource_key,
        RenderJob.status.in_([str(s) for s in ACTIVE_STATUSES]),
    )
    return await session.scalar(stmt)

async def create_pending_job(
    session: AsyncSession,
    job_id: str,
    resource_key: str,
    worker_parameters: dict[str, Any]
) -> RenderJob:
    """
    Submission endpoint: records the job as `pending` before its message is
    queued. Raises DuplicateSubmissionError if the resource is busy.
    """
    active = await find_active_job(session, resource_key)
    if active:
        raise DuplicateSubmissionError(resource_key, active.job_id)

    job = RenderJob(
        job_id=job_id,
        resource_key=resource_key,
        status=JobStatus.PENDING,
        worker_parameters=worker_parameters,
    )
    session.add(job)
    session.add(JobEventLog(job_id=job_id, event_type=JobEvent.CREATED, timestamp=utcnow(), meta={}))
    try:
        await session.flush()
    except IntegrityError as e:
        raise DuplicateSubmissionError(resource_key) from e
    return job

async def ingest_submission(
    session: AsyncSession,
    definition: WorkflowDefinition,
    message: SubmissionMessage,
    message_id: Optional[str] = None
) -> IngestOutcome:
    """
    Turns a submission message into a running workflow execution.

    Job row, execution and the `queued` projection are written in the
    caller's transaction. Duplicates (busy resource, job already started, or
    a concurrent delivery that won the insert race) come back as
    IngestOutcome.DUPLICATE; the caller must roll back in that case.
    """
    job = await session.get(RenderJob, message.job_id)

    if job:
        if job.workflow_execution_id or job.status != JobStatus.PENDING:
            logger.info("Job %s already started (%s); message %s is a duplicate", job.job_id, job.status, message_id)
            return IngestOutcome.DUPLICATE
    else:
        active = await find_active_job(session, message.resource_key)
        if active:
            logger.info(
                "Resource %s busy with job %s; message %s for job %s is a duplicate",
                message.resource_key, active.job_id, message_id, message.job_id,
            )
            return IngestOutcome.DUPLICATE

        job = RenderJob(
            job_id=message.job_id,
            resource_key=message.resource_key,
            status=JobStatus.PENDING,
            worker_parameters=message.worker_parameters,
        )
        session.add(job)
        session.add(JobEventLog(
            job_id=message.job_id,
            event_type=JobEvent.CREATED,
            timestamp=utcnow(),
            meta={"message_id": message_id},
        ))
        try:
            await session.flush()
        except IntegrityError:
            logger.info("Job %s / resource %s inserted concurrently; duplicate", message.job_id, message.resource_key)
            return IngestOutcome.DUPLICATE

    try:
        execution = await start_execution(
            session,
            definition,
            job_id=message.job_id,
            execution_input={
                "jobId": message.job_id,
                "resourceKey": message.resource_key,
                "workerParameters": job.worker_parameters or message.worker_parameters,
                "messageId": message_id,
            },
        )
    except ExecutionAlreadyExistsError:
        logger.info("Execution for job %s already exists; duplicate", message.job_id)
        return IngestOutcome.DUPLICATE

    await project_status(
        session,
        StatusUpdate(job_id=message.job_id, status=JobStatus.QUEUED, workflow_execution_id=execution.id),
        meta={"execution_id": execution.id, "message_id": message_id},
    )
    return IngestOutcome.STARTED
