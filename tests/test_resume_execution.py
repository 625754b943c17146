from datetime import timedelta

import pytest
from sqlalchemy import select, update

from render_orchestrator.commands.cancel_job import cancel_job
from render_orchestrator.commands import expire_executions as expire_module
from render_orchestrator.commands.expire_executions import expire_executions, expired_tokens_query
from render_orchestrator.commands.heartbeat import send_task_heartbeat
from render_orchestrator.commands.resume_execution import send_task_success, send_task_failure, time_out_task
from render_orchestrator.db.models import OutboxEvent, WorkflowExecution, TaskToken
from render_orchestrator.domain.errors import (
    TaskAlreadyResolvedError, TaskDoesNotExistError, InvalidJobStateError, JobNotFoundError,
)
from render_orchestrator.domain.models import as_utc, utcnow
from render_orchestrator.domain.states import JobStatus, WorkflowState, ExecutionStatus, TokenStatus
from render_orchestrator.workflow.definition import build_default_definition, parse_definition

from helpers import submit, dispatch, start_render, get_job, get_execution, pending_token

async def _notified_statuses(clients):
    async with clients.database.session() as session:
        events = (await session.execute(select(OutboxEvent).order_by(OutboxEvent.id))).scalars().all()
    return [e.payload["status"] for e in events]

async def _expire_now(clients, job_id):
    async with clients.database.session() as session:
        await session.execute(
            update(WorkflowExecution)
            .where(WorkflowExecution.job_id == job_id)
            .values(timeout_at=utcnow() - timedelta(seconds=1))
        )
        await session.commit()

async def test_success_completes_job(clients, definition):
    token = await start_render(clients, "job-1")

    async with clients.database.session() as session:
        await send_task_success(session, definition, token, "s3://out/job-1.mp4", worker_handle="r-1")
        await session.commit()

    job = await get_job(clients, "job-1")
    assert job.status == JobStatus.COMPLETED
    assert job.output_location == "s3://out/job-1.mp4"
    assert job.progress == 100.0

    execution = await get_execution(clients, "job-1")
    assert execution.state == WorkflowState.SUCCEEDED
    assert execution.status == ExecutionStatus.SUCCEEDED
    assert execution.output["outputLocation"] == "s3://out/job-1.mp4"
    assert await _notified_statuses(clients) == ["processing", "completed"]

async def test_failure_fails_job(clients, definition):
    token = await start_render(clients, "job-1")

    async with clients.database.session() as session:
        await send_task_failure(session, definition, token, [{"message": "out of memory"}])
        await session.commit()

    job = await get_job(clients, "job-1")
    assert job.status == JobStatus.FAILED
    assert job.error_detail == [{"message": "out of memory"}]
    assert (await get_execution(clients, "job-1")).state == WorkflowState.FAILED

async def test_worker_reported_timeout(clients, definition):
    token = await start_render(clients, "job-1")

    async with clients.database.session() as session:
        await time_out_task(session, definition, token, [{"message": "lambda timed out"}])
        await session.commit()

    assert (await get_job(clients, "job-1")).status == JobStatus.FAILED
    execution = await get_execution(clients, "job-1")
    assert execution.state == WorkflowState.TIMED_OUT
    assert execution.status == ExecutionStatus.TIMED_OUT

async def test_token_resolves_at_most_once(clients, definition):
    token = await start_render(clients, "job-1")

    async with clients.database.session() as session:
        await send_task_success(session, definition, token, "s3://out/job-1.mp4")
        await session.commit()

    async with clients.database.session() as session:
        with pytest.raises(TaskAlreadyResolvedError):
            await send_task_failure(session, definition, token, [{"message": "late"}])
        with pytest.raises(TaskAlreadyResolvedError):
            await send_task_success(session, definition, token, "s3://out/other.mp4")
        await session.rollback()

    job = await get_job(clients, "job-1")
    assert job.status == JobStatus.COMPLETED
    assert job.output_location == "s3://out/job-1.mp4"
    assert await _notified_statuses(clients) == ["processing", "completed"]

async def test_unknown_token(clients, definition):
    async with clients.database.session() as session:
        with pytest.raises(TaskDoesNotExistError):
            await send_task_success(session, definition, "x" * 64, "s3://out/nothing.mp4")

async def test_superseded_token_is_stale(clients, definition, worker):
    from render_orchestrator.domain.errors import WorkerUnavailableError
    from helpers import make_due

    worker.responses = [WorkerUnavailableError("503")]
    await submit(clients, "job-1", "project-1")
    await dispatch(clients)
    old_token = worker.calls[0]["continuation_token"]
    await make_due(clients, "job-1")
    await dispatch(clients)

    async with clients.database.session() as session:
        with pytest.raises(TaskAlreadyResolvedError):
            await send_task_success(session, definition, old_token, "s3://out/old.mp4")

async def test_callback_before_invocation_is_recorded(clients, definition, worker):
    async def callback_first(job_id, token):
        async with clients.database.session() as session:
            await send_task_success(session, definition, token, f"s3://out/{job_id}.mp4")
            await session.commit()

    worker.before_return = callback_first
    await submit(clients, "job-1", "project-1")
    await dispatch(clients)

    job = await get_job(clients, "job-1")
    assert job.status == JobStatus.COMPLETED
    assert job.output_location == "s3://out/job-1.mp4"

    execution = await get_execution(clients, "job-1")
    assert execution.state == WorkflowState.SUCCEEDED
    # The late TriggerRender bookkeeping did not drag it back
    assert execution.timeout_at is None
    assert await _notified_statuses(clients) == ["completed"]

async def test_sweeper_times_out_past_ceiling(clients, definition):
    token = await start_render(clients, "job-1")
    await _expire_now(clients, "job-1")

    async with clients.database.session() as session:
        assert await expire_executions(session, definition) == 1
        await session.commit()

    job = await get_job(clients, "job-1")
    assert job.status == JobStatus.FAILED
    assert "did not complete" in job.error_detail[0]["message"]
    assert (await get_execution(clients, "job-1")).state == WorkflowState.TIMED_OUT

    # A callback arriving after the timeout is stale
    async with clients.database.session() as session:
        with pytest.raises(TaskAlreadyResolvedError):
            await send_task_success(session, definition, token, "s3://out/late.mp4")
    assert (await get_job(clients, "job-1")).status == JobStatus.FAILED

async def test_sweeper_ignores_executions_within_ceiling(clients, definition):
    await start_render(clients, "job-1")
    async with clients.database.session() as session:
        assert await expire_executions(session, definition) == 0
    assert (await get_job(clients, "job-1")).status == JobStatus.PROCESSING

async def test_sweeper_isolates_failures(clients, definition, monkeypatch):
    await start_render(clients, "job-1")
    await start_render(clients, "job-2")
    await _expire_now(clients, "job-1")
    await _expire_now(clients, "job-2")

    real = expire_module.resume_execution
    broken_token = await pending_token(clients, "job-1")

    async def failing_for_job_1(session, definition, token, outcome):
        execution = await real(session, definition, token, outcome)
        if token == broken_token:
            raise RuntimeError("projection failed")
        return execution

    monkeypatch.setattr(expire_module, "resume_execution", failing_for_job_1)

    async with clients.database.session() as session:
        assert await expire_executions(session, definition) == 1
        await session.commit()

    assert (await get_job(clients, "job-2")).status == JobStatus.FAILED
    # The failed expiry was rolled back in full and stays due for the next sweep
    assert (await get_job(clients, "job-1")).status == JobStatus.PROCESSING
    assert await pending_token(clients, "job-1") == broken_token
    assert (await get_execution(clients, "job-1")).status == ExecutionStatus.RUNNING

def test_sweeper_locks_tokens_not_executions():
    from sqlalchemy.dialects import postgresql

    sql = str(expired_tokens_query(utcnow(), 10).compile(dialect=postgresql.dialect()))
    assert "FOR UPDATE OF task_tokens SKIP LOCKED" in sql

async def test_heartbeat_extends_deadline_and_records_progress(clients):
    definition = parse_definition(build_default_definition(timeout_seconds=3600, heartbeat_seconds=60))
    clients.definition = definition
    token = await start_render(clients, "job-1")

    execution = await get_execution(clients, "job-1")
    first_deadline = as_utc(execution.heartbeat_deadline)
    assert first_deadline is not None

    async with clients.database.session() as session:
        deadline = await send_task_heartbeat(session, definition, token, progress=37.5)
        await session.commit()

    assert deadline >= first_deadline
    assert (await get_job(clients, "job-1")).progress == 37.5

async def test_missed_heartbeat_times_out(clients):
    definition = parse_definition(build_default_definition(timeout_seconds=3600, heartbeat_seconds=60))
    clients.definition = definition
    await start_render(clients, "job-1")

    async with clients.database.session() as session:
        await session.execute(
            update(WorkflowExecution)
            .where(WorkflowExecution.job_id == "job-1")
            .values(heartbeat_deadline=utcnow() - timedelta(seconds=1))
        )
        await session.commit()

    async with clients.database.session() as session:
        assert await expire_executions(session, definition) == 1
        await session.commit()

    job = await get_job(clients, "job-1")
    assert job.status == JobStatus.FAILED
    assert "heartbeat" in job.error_detail[0]["message"]

async def test_heartbeat_on_resolved_token(clients, definition):
    token = await start_render(clients, "job-1")
    async with clients.database.session() as session:
        await send_task_success(session, definition, token, "s3://out/job-1.mp4")
        await session.commit()

    async with clients.database.session() as session:
        with pytest.raises(TaskAlreadyResolvedError):
            await send_task_heartbeat(session, definition, token, progress=50)

async def test_cancel_stops_execution(clients, definition):
    token = await start_render(clients, "job-1")

    async with clients.database.session() as session:
        job = await cancel_job(session, "job-1")
        await session.commit()
    assert job.status == JobStatus.CANCELED
    assert job.error_detail == [{"message": "Canceled by user"}]

    execution = await get_execution(clients, "job-1")
    assert execution.status == ExecutionStatus.ABORTED
    assert execution.cause == "Canceled by user"

    async with clients.database.session() as session:
        assert (await session.get(TaskToken, token)).status == TokenStatus.CANCELED
        with pytest.raises(TaskAlreadyResolvedError):
            await send_task_success(session, definition, token, "s3://out/job-1.mp4")

    assert (await get_job(clients, "job-1")).status == JobStatus.CANCELED
    assert await _notified_statuses(clients) == ["processing"]

async def test_cancel_queued_job_prevents_invocation(clients, worker):
    await submit(clients, "job-1", "project-1")
    async with clients.database.session() as session:
        await cancel_job(session, "job-1")
        await session.commit()

    assert await dispatch(clients) == 0
    assert worker.calls == []

async def test_cancel_terminal_job_rejected(clients, definition):
    token = await start_render(clients, "job-1")
    async with clients.database.session() as session:
        await send_task_success(session, definition, token, "s3://out/job-1.mp4")
        await session.commit()

    async with clients.database.session() as session:
        with pytest.raises(InvalidJobStateError):
            await cancel_job(session, "job-1")
        await session.rollback()
    assert (await get_job(clients, "job-1")).status == JobStatus.COMPLETED

async def test_cancel_unknown_job(clients):
    async with clients.database.session() as session:
        with pytest.raises(JobNotFoundError):
            await cancel_job(session, "ghost")
