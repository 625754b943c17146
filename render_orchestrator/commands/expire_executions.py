import logging
from datetime import datetime

from sqlalchemy import Select, select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from render_orchestrator.db.models import WorkflowExecution, TaskToken
from render_orchestrator.domain.errors import TaskTokenError
from render_orchestrator.domain.models import RenderTimedOut, utcnow, as_utc
from render_orchestrator.domain.states import WorkflowState, ExecutionStatus, TokenStatus
from render_orchestrator.commands.resume_execution import resume_execution
from render_orchestrator.workflow.definition import WorkflowDefinition
from render_orchestrator.api.v1.metrics import EXECUTION_TIMEOUTS_TOTAL

logger = logging.getLogger(__name__)

def expired_tokens_query(now: datetime, limit: int) -> Select:
    # Locks the token row only: callbacks and cancel take the token before the execution
    return (
        select(TaskToken.token, WorkflowExecution.id, WorkflowExecution.timeout_at)
        .join(WorkflowExecution, TaskToken.execution_id == WorkflowExecution.id)
        .where(
            TaskToken.status == TokenStatus.PENDING,
            WorkflowExecution.status == ExecutionStatus.RUNNING,
            WorkflowExecution.state == WorkflowState.WAIT_FOR_COMPLETION,
            or_(
                WorkflowExecution.timeout_at <= now,
                WorkflowExecution.heartbeat_deadline <= now,
            ),
        )
        .limit(limit)
        .with_for_update(of=TaskToken, skip_locked=True)
    )

async def expire_executions(session: AsyncSession, definition: WorkflowDefinition, limit: int = 100) -> int:
    """
    Finds executions suspended in WaitForCompletion past their ceiling or
    heartbeat deadline and resolves them as TimedOut.

    Resolution goes through the same token consumption as a callback, so a
    callback racing the sweeper resolves the execution at most once; the
    loser sees an already-resolved token. Each expiry runs in its own
    savepoint so one failure leaves the rest of the batch intact.
    Returns number of executions timed out.
    """
    now = utcnow()
    rows = (await session.execute(expired_tokens_query(now, limit))).all()

    count = 0
    for token, execution_id, timeout_at in rows:
        timeout_at = as_utc(timeout_at)
        if timeout_at and timeout_at <= now:
            reason = "ceiling"
            message = f"Render did not complete within {definition.wait.timeout_seconds}s"
        else:
            reason = "heartbeat"
            message = f"Render worker sent no heartbeat for {definition.wait.heartbeat_seconds}s"

        try:
            async with session.begin_nested():
                await resume_execution(session, definition, token, RenderTimedOut([{"message": message}]))
        except TaskTokenError:
            # Resolved by a callback between our read and the update
            continue
        except Exception as e:
            logger.error("Failed to time out execution %s: %s", execution_id, e, exc_info=True)
            continue

        count += 1
        EXECUTION_TIMEOUTS_TOTAL.labels(reason=reason).inc()
        logger.warning("Execution %s timed out (%s)", execution_id, reason)

    await session.flush()
    return count
