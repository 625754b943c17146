import logging

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from render_orchestrator.db.models import RenderJob, WorkflowExecution, TaskToken
from render_orchestrator.domain.errors import JobNotFoundError, InvalidJobStateError
from render_orchestrator.domain.models import StatusUpdate, utcnow
from render_orchestrator.domain.states import (
    JobStatus, ExecutionStatus, TokenStatus, TERMINAL_STATUSES,
)
from render_orchestrator.commands.project_status import project_status

logger = logging.getLogger(__name__)

CANCEL_CAUSE = "Canceled by user"

async def stop_execution(session: AsyncSession, execution_id: str, cause: str) -> bool:
    """
    Aborts a running execution. Pending tokens are canceled first, so any
    callback that arrives afterwards is treated as stale.
    Returns False if the execution was not running.
    """
    now = utcnow()
    await session.execute(
        update(TaskToken)
        .where(TaskToken.execution_id == execution_id, TaskToken.status == TokenStatus.PENDING)
        .values(status=TokenStatus.CANCELED, consumed_at=now, outcome="canceled")
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(
        update(WorkflowExecution)
        .where(WorkflowExecution.id == execution_id, WorkflowExecution.status == ExecutionStatus.RUNNING)
        .values(
            status=ExecutionStatus.ABORTED,
            error="Canceled",
            cause=cause,
            stopped_at=now,
            updated_at=now,
            next_attempt_at=None,
            timeout_at=None,
            heartbeat_deadline=None,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1

async def cancel_job(session: AsyncSession, job_id: str, cause: str = CANCEL_CAUSE) -> RenderJob:
    """
    Cancels a non-terminal job: stops its execution and marks it canceled.
    Raises InvalidJobStateError if the job already reached a terminal state,
    including one reached concurrently by a callback.
    """
    job = await session.get(RenderJob, job_id)
    if not job:
        raise JobNotFoundError(job_id)

    if job.status in TERMINAL_STATUSES:
        raise InvalidJobStateError(job.status, JobStatus.CANCELED)

    if job.workflow_execution_id:
        stopped = await stop_execution(session, job.workflow_execution_id, cause)
        if not stopped:
            logger.info("Execution %s for job %s was not running", job.workflow_execution_id, job_id)

    changed = await project_status(
        session,
        StatusUpdate(job_id=job_id, status=JobStatus.CANCELED, error_detail=[{"message": cause}]),
        meta={"cause": cause},
    )

    await session.refresh(job)
    if not changed:
        # A callback or timeout resolved the job first; caller rolls back.
        raise InvalidJobStateError(job.status, JobStatus.CANCELED)

    logger.info("Job %s canceled", job_id)
    return job
