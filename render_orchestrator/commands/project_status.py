import logging
from typing import Any, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from render_orchestrator.db.models import RenderJob, JobEventLog, OutboxEvent
from render_orchestrator.domain.models import StatusUpdate, utcnow
from render_orchestrator.domain.states import (
    JobStatus, JobEvent, ALLOWED_PREDECESSORS, NOTIFY_STATUSES,
)

logger = logging.getLogger(__name__)

NOTIFICATION_EVENT = "JOB_STATUS_CHANGED"

_STATUS_EVENTS = {
    JobStatus.QUEUED: JobEvent.QUEUED,
    JobStatus.PROCESSING: JobEvent.RENDER_INVOKED,
    JobStatus.COMPLETED: JobEvent.COMPLETED,
    JobStatus.FAILED: JobEvent.FAILED,
    JobStatus.CANCELED: JobEvent.CANCELED,
}

async def project_status(
    session: AsyncSession,
    status_update: StatusUpdate,
    event_type: Optional[JobEvent] = None,
    meta: Optional[dict[str, Any]] = None
) -> bool:
    """
    The single write path for the persisted job record.

    Each call is one conditional UPDATE keyed by job_id whose WHERE clause
    only admits legal predecessor statuses, so a late or racing writer
    (e.g. a `processing` write after a callback already completed the job)
    affects zero rows instead of moving the job backwards.

    Newly `processing`, `completed` and `failed` transitions also enqueue a
    notification in the outbox, inside the same transaction. Delivery happens
    later and can never undo the status write.

    Returns True if the job row changed.
    """
    target = status_update.status
    values = _build_values(status_update)

    notify = False
    if target == JobStatus.PROCESSING:
        # First try the QUEUED -> PROCESSING edge; only that one notifies.
        changed = await _conditional_update(session, status_update.job_id, {JobStatus.QUEUED}, values)
        if changed:
            notify = True
        else:
            changed = await _conditional_update(session, status_update.job_id, {JobStatus.PROCESSING}, values)
            if changed and event_type is None:
                event_type = JobEvent.PROGRESS
    else:
        changed = await _conditional_update(
            session, status_update.job_id, ALLOWED_PREDECESSORS[target], values
        )
        notify = changed and target in NOTIFY_STATUSES

    if not changed:
        logger.info(
            "Status update %s for job %s ignored (job missing or already past it)",
            target, status_update.job_id,
        )
        return False

    session.add(JobEventLog(
        job_id=status_update.job_id,
        event_type=event_type or _STATUS_EVENTS[target],
        timestamp=utcnow(),
        meta={"status": str(target), **(meta or {})},
    ))

    if notify:
        session.add(OutboxEvent(
            event_type=NOTIFICATION_EVENT,
            payload=_notification_payload(status_update),
        ))

    await session.flush()
    logger.info("Job %s -> %s", status_update.job_id, target)
    return True

def _build_values(status_update: StatusUpdate) -> dict[str, Any]:
    values: dict[str, Any] = {"status": status_update.status, "updated_at": utcnow()}
    if status_update.output_location is not None:
        values["output_location"] = status_update.output_location
    if status_update.error_detail is not None:
        values["error_detail"] = status_update.error_detail
    if status_update.progress is not None:
        values["progress"] = status_update.progress
    elif status_update.status == JobStatus.COMPLETED:
        values["progress"] = 100.0
    if status_update.continuation_token is not None:
        values["continuation_token"] = status_update.continuation_token
    if status_update.worker_handle is not None:
        values["render_id"] = status_update.worker_handle.render_id
        values["bucket_name"] = status_update.worker_handle.bucket_name
    if status_update.workflow_execution_id is not None:
        values["workflow_execution_id"] = status_update.workflow_execution_id
    return values

async def _conditional_update(session: AsyncSession, job_id: str, predecessors, values: dict[str, Any]) -> bool:
    if not predecessors:
        return False
    stmt = (
        update(RenderJob)
        .where(RenderJob.job_id == job_id, RenderJob.status.in_([str(s) for s in predecessors]))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return result.rowcount == 1

def _notification_payload(status_update: StatusUpdate) -> dict[str, Any]:
    payload: dict[str, Any] = {"jobId": status_update.job_id, "status": str(status_update.status)}
    if status_update.output_location is not None:
        payload["outputLocation"] = status_update.output_location
    if status_update.error_detail is not None:
        payload["errorDetail"] = status_update.error_detail
    return payload
