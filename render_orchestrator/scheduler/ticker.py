import logging

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from render_orchestrator.db.models import WorkflowExecution
from render_orchestrator.domain.states import WorkflowState, ExecutionStatus
from render_orchestrator.commands.expire_executions import expire_executions
from render_orchestrator.scheduler.dispatcher import dispatch_trigger_renders
from render_orchestrator.api.v1.metrics import EXECUTIONS_INFLIGHT

logger = logging.getLogger(__name__)

async def run_leader_tasks(clients) -> dict[str, int]:
    """
    Periodic engine work, leader only:
    1. Dispatch due TriggerRender attempts
    2. Time out executions past their ceiling or heartbeat deadline
    """
    settings = clients.settings

    dispatched = await dispatch_trigger_renders(
        clients.database.session_factory,
        clients.definition,
        clients.worker,
        limit=settings.DISPATCH_BATCH_SIZE,
        lease_seconds=settings.CLAIM_LEASE_SECONDS,
    )

    async with clients.database.session() as session:
        expired = await expire_executions(session, clients.definition, limit=settings.DISPATCH_BATCH_SIZE)
        await session.commit()

    if dispatched or expired:
        logger.info("Tick: dispatched %s, timed out %s", dispatched, expired)
    return {"dispatched": dispatched, "expired": expired}

async def run_metrics_tasks(session: AsyncSession):
    """Refreshes gauges; runs on every instance so any /metrics scrape is current."""
    stmt = (
        select(WorkflowExecution.state, func.count(WorkflowExecution.id))
        .where(WorkflowExecution.status == ExecutionStatus.RUNNING)
        .group_by(WorkflowExecution.state)
    )
    counts = dict((await session.execute(stmt)).all())
    for state in (WorkflowState.TRIGGER_RENDER, WorkflowState.WAIT_FOR_COMPLETION):
        EXECUTIONS_INFLIGHT.labels(state=str(state)).set(counts.get(str(state), 0))
