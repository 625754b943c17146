from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from render_orchestrator.db.models import TaskToken, WorkflowExecution
from render_orchestrator.domain.errors import TaskDoesNotExistError, TaskAlreadyResolvedError
from render_orchestrator.domain.models import StatusUpdate, utcnow
from render_orchestrator.domain.states import JobStatus, ExecutionStatus, TokenStatus
from render_orchestrator.commands.project_status import project_status
from render_orchestrator.workflow.definition import WorkflowDefinition

async def send_task_heartbeat(
    session: AsyncSession,
    definition: WorkflowDefinition,
    token: str,
    progress: Optional[float] = None
) -> Optional[datetime]:
    """
    Records worker liveness for the execution suspended on `token`.
    Pushes the heartbeat deadline out (when the definition has one) and
    projects progress onto a processing job.
    Returns the new heartbeat deadline, or None if heartbeats are not enforced.
    """
    now = utcnow()

    stmt = select(TaskToken).where(TaskToken.token == token)
    task_token = await session.scalar(stmt)

    if not task_token:
        raise TaskDoesNotExistError("Task token does not exist")
    if task_token.status != TokenStatus.PENDING:
        raise TaskAlreadyResolvedError(f"Task token for job {task_token.job_id} already {task_token.status}")

    execution = await session.get(WorkflowExecution, task_token.execution_id)
    if not execution or execution.status != ExecutionStatus.RUNNING:
        raise TaskAlreadyResolvedError(f"Execution for job {task_token.job_id} is no longer running")

    new_deadline = None
    heartbeat_seconds = definition.wait.heartbeat_seconds
    if heartbeat_seconds:
        new_deadline = now + timedelta(seconds=heartbeat_seconds)
        execution.heartbeat_deadline = new_deadline
        execution.updated_at = now

    if progress is not None:
        await project_status(
            session,
            StatusUpdate(job_id=task_token.job_id, status=JobStatus.PROCESSING, progress=progress),
        )

    await session.flush()
    return new_deadline
