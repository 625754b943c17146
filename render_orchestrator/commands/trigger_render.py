import logging
import secrets
from datetime import timedelta
from typing import Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from render_orchestrator.db.models import WorkflowExecution, TaskToken, JobEventLog
from render_orchestrator.domain.errors import WorkerInvocationError
from render_orchestrator.domain.models import RenderFailed, StatusUpdate, WorkerHandle, utcnow
from render_orchestrator.domain.retry import calculate_next_run
from render_orchestrator.domain.states import (
    JobStatus, JobEvent, WorkflowState, ExecutionStatus, TokenStatus,
)
from render_orchestrator.commands.project_status import project_status
from render_orchestrator.commands.resume_execution import enter_terminal_state
from render_orchestrator.services.render_worker import RenderWorker
from render_orchestrator.workflow.definition import WorkflowDefinition
from render_orchestrator.api.v1.metrics import RENDER_INVOCATIONS_TOTAL

logger = logging.getLogger(__name__)

def mint_token() -> str:
    return secrets.token_urlsafe(48)

async def run_trigger_render(
    session_factory: async_sessionmaker,
    definition: WorkflowDefinition,
    worker: RenderWorker,
    execution_id: str
) -> Optional[WorkflowState]:
    """
    One TriggerRender attempt for a claimed execution.

    The token is committed before the worker is called, so a callback that
    beats our own bookkeeping still finds it and resolves the execution; the
    success write below is conditional and becomes a no-op in that case.

    Returns the state the execution is in afterwards, or None if the
    execution was no longer waiting in TriggerRender.
    """
    async with session_factory() as session:
        prepared = await prepare_attempt(session, execution_id)
        await session.commit()
    if not prepared:
        return None

    execution, token = prepared
    job_id = execution.job_id
    worker_parameters = (execution.input or {}).get("workerParameters", {})

    try:
        handle = await worker.start_render(job_id, worker_parameters, token)
    except WorkerInvocationError as e:
        logger.warning("Render invocation for job %s failed (attempt %s): %s", job_id, execution.attempts, e)
        async with session_factory() as session:
            state = await record_invocation_failure(session, definition, execution_id, token, e)
            await session.commit()
        return state
    except Exception as e:
        # Anything unexpected from the worker client is treated as fatal
        logger.error("Unexpected error invoking render for job %s: %s", job_id, e, exc_info=True)
        async with session_factory() as session:
            state = await record_invocation_failure(
                session, definition, execution_id, token, WorkerInvocationError(f"{type(e).__name__}: {e}")
            )
            await session.commit()
        return state

    async with session_factory() as session:
        state = await record_invocation_success(session, definition, execution_id, token, handle)
        await session.commit()
    return state

async def prepare_attempt(session: AsyncSession, execution_id: str) -> Optional[tuple[WorkflowExecution, str]]:
    """Supersedes leftover tokens, mints a fresh one and counts the attempt."""
    execution = await session.get(WorkflowExecution, execution_id, populate_existing=True)
    if (
        not execution
        or execution.status != ExecutionStatus.RUNNING
        or execution.state != WorkflowState.TRIGGER_RENDER
    ):
        return None

    await _supersede_pending_tokens(session, execution_id)

    token = mint_token()
    session.add(TaskToken(
        token=token,
        execution_id=execution_id,
        job_id=execution.job_id,
        state_name=WorkflowState.WAIT_FOR_COMPLETION,
        status=TokenStatus.PENDING,
    ))
    execution.attempts += 1
    execution.updated_at = utcnow()
    await session.flush()
    return execution, token

async def record_invocation_success(
    session: AsyncSession,
    definition: WorkflowDefinition,
    execution_id: str,
    token: str,
    handle: WorkerHandle
) -> WorkflowState:
    now = utcnow()
    wait = definition.wait
    values = {
        "state": WorkflowState.WAIT_FOR_COMPLETION,
        "next_attempt_at": None,
        "timeout_at": now + timedelta(seconds=wait.timeout_seconds),
        "heartbeat_deadline": now + timedelta(seconds=wait.heartbeat_seconds) if wait.heartbeat_seconds else None,
        "output": {"workerHandle": handle.as_dict()},
        "updated_at": now,
    }
    stmt = (
        update(WorkflowExecution)
        .where(
            WorkflowExecution.id == execution_id,
            WorkflowExecution.status == ExecutionStatus.RUNNING,
            WorkflowExecution.state == WorkflowState.TRIGGER_RENDER,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    RENDER_INVOCATIONS_TOTAL.labels(result="success").inc()

    execution = await session.get(WorkflowExecution, execution_id, populate_existing=True)
    if result.rowcount != 1:
        # The callback (or a cancel) got there first; the resume already
        # projected the authoritative status.
        logger.info("Execution %s left TriggerRender before the invocation was recorded", execution_id)
        return WorkflowState(execution.state)

    await project_status(
        session,
        StatusUpdate(
            job_id=execution.job_id,
            status=JobStatus.PROCESSING,
            continuation_token=token,
            worker_handle=handle,
        ),
        meta={"execution_id": execution_id, "render_id": handle.render_id, "attempt": execution.attempts},
    )
    return WorkflowState.WAIT_FOR_COMPLETION

async def record_invocation_failure(
    session: AsyncSession,
    definition: WorkflowDefinition,
    execution_id: str,
    token: str,
    error: WorkerInvocationError
) -> Optional[WorkflowState]:
    execution = await session.get(WorkflowExecution, execution_id, populate_existing=True)
    if not execution or execution.status != ExecutionStatus.RUNNING or execution.state != WorkflowState.TRIGGER_RENDER:
        return WorkflowState(execution.state) if execution else None

    await _supersede_pending_tokens(session, execution_id)

    policy = definition.retry_policy_for(error.error_code) if error.transient else None
    if policy and execution.attempts < policy.max_attempts:
        next_run = calculate_next_run(
            execution.attempts,
            interval_seconds=policy.interval_seconds,
            backoff_rate=policy.backoff_rate,
        )
        execution.next_attempt_at = next_run
        execution.error = error.error_code
        execution.cause = str(error)
        execution.updated_at = utcnow()

        session.add(JobEventLog(
            job_id=execution.job_id,
            event_type=JobEvent.INVOCATION_RETRIED,
            timestamp=utcnow(),
            meta={
                "error": str(error),
                "attempts": execution.attempts,
                "max": policy.max_attempts,
                "next_attempt_at": next_run.isoformat(),
            },
        ))
        await session.flush()
        RENDER_INVOCATIONS_TOTAL.labels(result="retry").inc()
        logger.info("Execution %s retrying TriggerRender at %s", execution_id, next_run.isoformat())
        return WorkflowState.TRIGGER_RENDER

    target = _catch_target(definition, error.error_code)
    outcome = RenderFailed(
        error_detail=[{"message": f"Failed to start render: {error}"}],
        error=error.error_code,
    )
    await enter_terminal_state(session, definition, execution, target, outcome)
    RENDER_INVOCATIONS_TOTAL.labels(result="failed").inc()
    logger.error("Execution %s failed to start render after %s attempt(s): %s", execution_id, execution.attempts, error)
    return target

def _catch_target(definition: WorkflowDefinition, error_code: str) -> WorkflowState:
    for catcher in definition.trigger.catch:
        if "States.ALL" in catcher.error_equals or error_code in catcher.error_equals:
            return WorkflowState(catcher.next)
    return WorkflowState.FAILED

async def _supersede_pending_tokens(session: AsyncSession, execution_id: str):
    await session.execute(
        update(TaskToken)
        .where(TaskToken.execution_id == execution_id, TaskToken.status == TokenStatus.PENDING)
        .values(status=TokenStatus.SUPERSEDED, consumed_at=utcnow())
        .execution_options(synchronize_session=False)
    )
