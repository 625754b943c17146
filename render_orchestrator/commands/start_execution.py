import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from render_orchestrator.db.models import WorkflowExecution
from render_orchestrator.domain.errors import ExecutionAlreadyExistsError, ExecutionNotFoundError
from render_orchestrator.domain.models import utcnow
from render_orchestrator.domain.states import WorkflowState, ExecutionStatus
from render_orchestrator.workflow.definition import WorkflowDefinition

logger = logging.getLogger(__name__)

def execution_name(job_id: str) -> str:
    """Deterministic execution name, so a redelivered message can't start a second one."""
    return f"render-{job_id}"

async def start_execution(
    session: AsyncSession,
    definition: WorkflowDefinition,
    job_id: str,
    execution_input: dict[str, Any]
) -> WorkflowExecution:
    """
    Creates a running execution at the definition's StartAt state.
    The scheduler picks it up from there (next_attempt_at = now).

    Raises ExecutionAlreadyExistsError if an execution with the same name
    exists, including one inserted concurrently by another consumer.
    """
    name = execution_name(job_id)

    existing = await session.get(WorkflowExecution, name)
    if existing:
        raise ExecutionAlreadyExistsError(name)

    now = utcnow()
    execution = WorkflowExecution(
        id=name,
        job_id=job_id,
        state=WorkflowState(definition.start_at),
        status=ExecutionStatus.RUNNING,
        input=execution_input,
        attempts=0,
        next_attempt_at=now,
        definition_digest=definition.digest,
        started_at=now,
    )
    session.add(execution)
    try:
        await session.flush()
    except IntegrityError as e:
        # Lost a race with a concurrent delivery of the same message
        raise ExecutionAlreadyExistsError(name) from e

    logger.info("Started execution %s for job %s", name, job_id)
    return execution

async def describe_execution(session: AsyncSession, execution_id: str) -> WorkflowExecution:
    stmt = select(WorkflowExecution).where(WorkflowExecution.id == execution_id)
    execution = await session.scalar(stmt)
    if not execution:
        raise ExecutionNotFoundError(execution_id)
    return execution
