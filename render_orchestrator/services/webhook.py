import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from render_orchestrator.commands.heartbeat import send_task_heartbeat
from render_orchestrator.commands.resume_execution import send_task_success, send_task_failure, time_out_task
from render_orchestrator.domain.errors import TaskTokenError
from render_orchestrator.domain.messages import (
    SuccessCallback, ErrorCallback, TimeoutCallback, HeartbeatCallback, ErrorItem,
)
from render_orchestrator.workflow.definition import WorkflowDefinition

logger = logging.getLogger(__name__)

def _error_detail(items: list[ErrorItem], fallback: str) -> list[dict]:
    detail = [item.model_dump(exclude_none=True) for item in items]
    return detail or [{"message": fallback}]

async def handle_success(session: AsyncSession, definition: WorkflowDefinition, callback: SuccessCallback):
    await send_task_success(
        session, definition, callback.continuation_token,
        output_location=callback.output_location,
        worker_handle=callback.worker_handle,
    )

async def handle_error(session: AsyncSession, definition: WorkflowDefinition, callback: ErrorCallback):
    await send_task_failure(
        session, definition, callback.continuation_token,
        error_detail=_error_detail(callback.error_detail, "Render failed"),
        worker_handle=callback.worker_handle,
    )

async def handle_timeout(session: AsyncSession, definition: WorkflowDefinition, callback: TimeoutCallback):
    await time_out_task(
        session, definition, callback.continuation_token,
        error_detail=_error_detail(callback.error_detail, "Render timed out"),
        worker_handle=callback.worker_handle,
    )

_HANDLERS = {
    "success": handle_success,
    "error": handle_error,
    "timeout": handle_timeout,
}

async def resolve_callback(
    session: AsyncSession,
    definition: WorkflowDefinition,
    callback: SuccessCallback | ErrorCallback | TimeoutCallback
) -> bool:
    """
    Hands a verified completion callback to the engine.

    Returns False for an unknown or already-resolved token (duplicate
    delivery, late callback after a timeout or cancel); nothing changes then.
    The job status is projected by the engine's terminal-state entry, never
    here.
    """
    handler = _HANDLERS[callback.type]
    try:
        await handler(session, definition, callback)
    except TaskTokenError as e:
        logger.info("Stale %s callback for render %s: %s", callback.type, callback.worker_handle, e)
        return False

    logger.info("Resumed execution from %s callback (render %s)", callback.type, callback.worker_handle)
    return True

async def record_heartbeat(
    session: AsyncSession,
    definition: WorkflowDefinition,
    callback: HeartbeatCallback
) -> tuple[bool, Optional[str]]:
    """Returns (accepted, next heartbeat deadline as ISO string)."""
    try:
        deadline = await send_task_heartbeat(session, definition, callback.continuation_token, callback.progress)
    except TaskTokenError as e:
        logger.info("Stale heartbeat: %s", e)
        return False, None
    return True, deadline.isoformat() if deadline else None
