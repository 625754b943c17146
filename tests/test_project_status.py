from sqlalchemy import select

from render_orchestrator.commands.project_status import project_status, NOTIFICATION_EVENT
from render_orchestrator.db.models import RenderJob, OutboxEvent, JobEventLog
from render_orchestrator.domain.models import StatusUpdate, WorkerHandle
from render_orchestrator.domain.states import JobStatus

async def _seed(database, job_id="job-1", status=JobStatus.QUEUED):
    async with database.session() as session:
        session.add(RenderJob(job_id=job_id, resource_key=f"res-{job_id}", status=status, worker_parameters={}))
        await session.commit()

async def _outbox(database):
    async with database.session() as session:
        return (await session.execute(select(OutboxEvent).order_by(OutboxEvent.id))).scalars().all()

async def test_processing_records_handle_and_notifies(database):
    await _seed(database)
    async with database.session() as session:
        changed = await project_status(session, StatusUpdate(
            job_id="job-1",
            status=JobStatus.PROCESSING,
            continuation_token="t" * 64,
            worker_handle=WorkerHandle("r-1", "bucket"),
        ))
        await session.commit()

    assert changed
    async with database.session() as session:
        job = await session.get(RenderJob, "job-1")
    assert job.status == JobStatus.PROCESSING
    assert job.render_id == "r-1"
    assert job.bucket_name == "bucket"
    assert job.continuation_token == "t" * 64

    events = await _outbox(database)
    assert [e.event_type for e in events] == [NOTIFICATION_EVENT]
    assert events[0].payload == {"jobId": "job-1", "status": "processing"}

async def test_progress_update_does_not_notify(database):
    await _seed(database, status=JobStatus.PROCESSING)
    async with database.session() as session:
        changed = await project_status(session, StatusUpdate(job_id="job-1", status=JobStatus.PROCESSING, progress=55.0))
        await session.commit()

    assert changed
    assert await _outbox(database) == []
    async with database.session() as session:
        job = await session.get(RenderJob, "job-1")
        log = (await session.execute(select(JobEventLog.event_type))).scalars().all()
    assert job.progress == 55.0
    assert log == ["progress"]

async def test_completed_is_never_overwritten_by_processing(database):
    await _seed(database, status=JobStatus.PROCESSING)
    async with database.session() as session:
        assert await project_status(session, StatusUpdate(
            job_id="job-1", status=JobStatus.COMPLETED, output_location="s3://out/job-1.mp4",
        ))
        await session.commit()

    async with database.session() as session:
        late = await project_status(session, StatusUpdate(
            job_id="job-1", status=JobStatus.PROCESSING, worker_handle=WorkerHandle("r-late"),
        ))
        await session.commit()

    assert late is False
    async with database.session() as session:
        job = await session.get(RenderJob, "job-1")
    assert job.status == JobStatus.COMPLETED
    assert job.output_location == "s3://out/job-1.mp4"
    assert job.progress == 100.0
    assert job.render_id is None

async def test_failed_carries_error_detail(database):
    await _seed(database)
    detail = [{"message": "codec exploded"}]
    async with database.session() as session:
        assert await project_status(session, StatusUpdate(job_id="job-1", status=JobStatus.FAILED, error_detail=detail))
        await session.commit()

    events = await _outbox(database)
    assert events[0].payload == {"jobId": "job-1", "status": "failed", "errorDetail": detail}

async def test_terminal_job_rejects_second_terminal_write(database):
    await _seed(database, status=JobStatus.FAILED)
    async with database.session() as session:
        assert not await project_status(session, StatusUpdate(job_id="job-1", status=JobStatus.COMPLETED))
        assert not await project_status(session, StatusUpdate(job_id="job-1", status=JobStatus.CANCELED))
        await session.commit()
    assert await _outbox(database) == []

async def test_unknown_job_is_a_no_op(database):
    async with database.session() as session:
        assert not await project_status(session, StatusUpdate(job_id="ghost", status=JobStatus.QUEUED))

async def test_canceled_is_not_notified(database):
    await _seed(database)
    async with database.session() as session:
        assert await project_status(session, StatusUpdate(job_id="job-1", status=JobStatus.CANCELED))
        await session.commit()
    assert await _outbox(database) == []
