import asyncio
import logging
from datetime import timedelta

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from render_orchestrator.db.models import WorkflowExecution
from render_orchestrator.domain.models import utcnow
from render_orchestrator.domain.states import WorkflowState, ExecutionStatus
from render_orchestrator.commands.trigger_render import run_trigger_render
from render_orchestrator.services.render_worker import RenderWorker
from render_orchestrator.workflow.definition import WorkflowDefinition

logger = logging.getLogger(__name__)

async def claim_runnable(session: AsyncSession, limit: int = 20, lease_seconds: int = 120) -> list[str]:
    """
    Claims executions due for a TriggerRender attempt.

    The claim pushes next_attempt_at out by the lease, conditional on it still
    being due, so two dispatchers never claim the same execution. If the
    process dies mid-attempt the lease lapses and the attempt is redone.
    """
    now = utcnow()
    stmt = (
        select(WorkflowExecution.id)
        .where(
            WorkflowExecution.status == ExecutionStatus.RUNNING,
            WorkflowExecution.state == WorkflowState.TRIGGER_RENDER,
            WorkflowExecution.next_attempt_at <= now,
        )
        .order_by(WorkflowExecution.next_attempt_at.asc())
        .limit(limit)
    )
    candidates = (await session.execute(stmt)).scalars().all()

    claimed = []
    lease_until = now + timedelta(seconds=lease_seconds)
    for execution_id in candidates:
        result = await session.execute(
            update(WorkflowExecution)
            .where(
                WorkflowExecution.id == execution_id,
                WorkflowExecution.status == ExecutionStatus.RUNNING,
                WorkflowExecution.state == WorkflowState.TRIGGER_RENDER,
                WorkflowExecution.next_attempt_at <= now,
            )
            .values(next_attempt_at=lease_until)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            claimed.append(execution_id)
    return claimed

async def dispatch_trigger_renders(
    session_factory: async_sessionmaker,
    definition: WorkflowDefinition,
    worker: RenderWorker,
    limit: int = 20,
    lease_seconds: int = 120
) -> int:
    """Claims due executions and runs one TriggerRender attempt for each. Returns the number claimed."""
    async with session_factory() as session:
        claimed = await claim_runnable(session, limit=limit, lease_seconds=lease_seconds)
        await session.commit()

    if not claimed:
        return 0

    results = await asyncio.gather(
        *(run_trigger_render(session_factory, definition, worker, execution_id) for execution_id in claimed),
        return_exceptions=True,
    )
    for execution_id, result in zip(claimed, results):
        if isinstance(result, BaseException):
            # Lease lapses and the attempt is picked up again
            logger.error("TriggerRender for %s crashed: %s", execution_id, result, exc_info=result)
    return len(claimed)
