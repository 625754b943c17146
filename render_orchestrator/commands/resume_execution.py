import logging
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from render_orchestrator.db.models import WorkflowExecution, TaskToken
from render_orchestrator.domain.errors import TaskDoesNotExistError, TaskAlreadyResolvedError
from render_orchestrator.domain.models import (
    RenderOutcome, RenderSucceeded, RenderFailed, RenderTimedOut, StatusUpdate, utcnow, as_utc,
)
from render_orchestrator.domain.states import (
    JobStatus, JobEvent, WorkflowState, ExecutionStatus, TokenStatus,
)
from render_orchestrator.commands.project_status import project_status
from render_orchestrator.workflow.definition import WorkflowDefinition
from render_orchestrator.api.v1.metrics import RENDER_DURATION

logger = logging.getLogger(__name__)

# Resume signal per outcome, looked up in the WaitForCompletion OnSignal map
_SIGNALS = {
    RenderSucceeded: "success",
    RenderFailed: "failure",
    RenderTimedOut: "timeout",
}

_EXECUTION_STATUS = {
    WorkflowState.SUCCEEDED: ExecutionStatus.SUCCEEDED,
    WorkflowState.FAILED: ExecutionStatus.FAILED,
    WorkflowState.TIMED_OUT: ExecutionStatus.TIMED_OUT,
}

async def consume_token(session: AsyncSession, token: str, outcome: str) -> TaskToken:
    """
    Marks a pending token consumed. Exactly one caller wins: the UPDATE only
    matches while status is still PENDING, and concurrent callers serialize
    on the row.
    """
    stmt = (
        update(TaskToken)
        .where(TaskToken.token == token, TaskToken.status == TokenStatus.PENDING)
        .values(status=TokenStatus.CONSUMED, consumed_at=utcnow(), outcome=outcome)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)

    fetch = select(TaskToken).where(TaskToken.token == token).execution_options(populate_existing=True)
    task_token = await session.scalar(fetch)

    if result.rowcount != 1:
        if not task_token:
            raise TaskDoesNotExistError("Task token does not exist")
        raise TaskAlreadyResolvedError(
            f"Task token for job {task_token.job_id} already {task_token.status}"
        )
    return task_token

async def resume_execution(
    session: AsyncSession,
    definition: WorkflowDefinition,
    token: str,
    outcome: RenderOutcome
) -> WorkflowExecution:
    """
    Resumes the execution suspended on `token` with the given outcome and
    runs the terminal state's entry action (status projection).

    Raises TaskDoesNotExistError / TaskAlreadyResolvedError when the token is
    unknown or was already used; nothing is changed in that case.
    """
    signal = _SIGNALS[type(outcome)]
    task_token = await consume_token(session, token, signal)

    execution = await session.get(WorkflowExecution, task_token.execution_id, populate_existing=True)
    target = WorkflowState(definition.wait.on_signal[signal])

    await enter_terminal_state(session, definition, execution, target, outcome)
    return execution

async def send_task_success(session, definition, token: str, output_location: str, worker_handle: Optional[str] = None):
    return await resume_execution(session, definition, token, RenderSucceeded(output_location, worker_handle))

async def send_task_failure(session, definition, token: str, error_detail: list[dict], worker_handle: Optional[str] = None):
    return await resume_execution(session, definition, token, RenderFailed(error_detail, worker_handle=worker_handle))

async def time_out_task(session, definition, token: str, error_detail: list[dict], worker_handle: Optional[str] = None):
    return await resume_execution(session, definition, token, RenderTimedOut(error_detail, worker_handle=worker_handle))

async def enter_terminal_state(
    session: AsyncSession,
    definition: WorkflowDefinition,
    execution: WorkflowExecution,
    target: WorkflowState,
    outcome: RenderOutcome
) -> bool:
    """
    Moves a running execution into a terminal state and projects the
    corresponding job status. Returns False if the execution had already
    stopped (e.g. canceled), in which case nothing is projected.
    """
    now = utcnow()
    values = {
        "state": target,
        "status": _EXECUTION_STATUS[target],
        "stopped_at": now,
        "updated_at": now,
        "next_attempt_at": None,
        "timeout_at": None,
        "heartbeat_deadline": None,
    }
    if isinstance(outcome, RenderSucceeded):
        values["output"] = {"outputLocation": outcome.output_location, "workerHandle": outcome.worker_handle}
    else:
        values["error"] = outcome.error
        values["cause"] = "; ".join(item.get("message", "") for item in outcome.error_detail)

    stmt = (
        update(WorkflowExecution)
        .where(WorkflowExecution.id == execution.id, WorkflowExecution.status == ExecutionStatus.RUNNING)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    if result.rowcount != 1:
        logger.warning("Execution %s already stopped; %s not applied", execution.id, target)
        return False

    job_status = JobStatus(definition.states[target].job_status)
    status_update = StatusUpdate(job_id=execution.job_id, status=job_status)
    if isinstance(outcome, RenderSucceeded):
        status_update.output_location = outcome.output_location
    else:
        status_update.error_detail = outcome.error_detail

    await project_status(
        session,
        status_update,
        event_type=JobEvent.TIMED_OUT if target == WorkflowState.TIMED_OUT else None,
        meta={"execution_id": execution.id, "state": str(target)},
    )

    started_at = as_utc(execution.started_at)
    if started_at:
        duration = (now - started_at).total_seconds()
        if duration > 0:
            RENDER_DURATION.observe(duration)

    logger.info("Execution %s entered %s", execution.id, target)
    return True
