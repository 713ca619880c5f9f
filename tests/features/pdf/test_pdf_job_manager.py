from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy import update

from app.features.pdf.models.pdf_job import PdfJob, PdfJobStatus
from app.features.pdf.schemas.pdf_job import PdfJobCreate
from app.features.pdf.services.pdf_job_manager import PdfJobFilter, PdfJobManager
from app.platform.exceptions import InvalidTransition, JobNotFound, ServiceUnavailable
from app.platform.polling import StatusPoller


@pytest.fixture
def worker():
    worker = MagicMock()
    worker.dispatch = AsyncMock(return_value=None)
    return worker


@pytest.fixture
def manager(db, worker, clock):
    return PdfJobManager(db, worker, now=clock, max_attempts=3, stale_after_seconds=600)


def report_request(project_id="project-1"):
    return PdfJobCreate(project_id=project_id, template_id="executive-summary", theme={"primaryColor": "#111"})


@pytest.mark.asyncio
async def test_enqueue_creates_queued_job(manager, clock):
    job_id = await manager.enqueue(report_request(), requested_by="user-1")

    job = await manager.get_status(job_id)
    assert job.status == PdfJobStatus.queued
    assert job.attempts == 0
    assert job.max_attempts == 3
    assert job.requested_by == "user-1"
    assert job.theme == {"primaryColor": "#111"}
    assert job.queued_at == clock()
    assert job.artifact_ref is None


@pytest.mark.asyncio
async def test_get_status_unknown_job(manager):
    with pytest.raises(JobNotFound):
        await manager.get_status("missing")


@pytest.mark.asyncio
async def test_dispatch_hands_job_to_worker(manager, worker, clock):
    job_id = await manager.enqueue(report_request(), requested_by="user-1")

    job = await manager.dispatch(job_id)

    assert job.status == PdfJobStatus.queued
    assert job.dispatched_at == clock()
    worker.dispatch.assert_awaited_once_with(
        job_id=job_id,
        project_id="project-1",
        template_id="executive-summary",
        theme={"primaryColor": "#111"},
        requested_by="user-1",
    )


@pytest.mark.asyncio
async def test_dispatch_failure_keeps_job_queued(manager, worker):
    worker.dispatch.side_effect = ServiceUnavailable("Render worker timed out after 30s")
    job_id = await manager.enqueue(report_request(), requested_by="user-1")

    job = await manager.dispatch(job_id)

    assert job.status == PdfJobStatus.queued
    assert job.dispatched_at is None
    assert job.last_error == "Render worker timed out after 30s"


@pytest.mark.asyncio
async def test_dispatch_skips_jobs_already_picked_up(manager, worker):
    job_id = await manager.enqueue(report_request(), requested_by="user-1")
    await manager.mark_processing(job_id)

    job = await manager.dispatch(job_id)

    assert job.status == PdfJobStatus.processing
    worker.dispatch.assert_not_awaited()


@pytest.mark.asyncio
async def test_happy_path_lifecycle(manager, clock):
    job_id = await manager.enqueue(report_request(), requested_by="user-1")

    clock.advance(seconds=5)
    job = await manager.mark_processing(job_id)
    assert job.status == PdfJobStatus.processing
    assert job.started_at == clock()

    clock.advance(seconds=30)
    job = await manager.heartbeat(job_id, progress=60)
    assert job.progress == 60
    assert job.heartbeat_at == clock()

    job = await manager.mark_completed(job_id, "s3://reports/project-1/report.pdf")
    assert job.status == PdfJobStatus.completed
    assert job.artifact_ref == "s3://reports/project-1/report.pdf"
    assert job.progress == 100
    assert job.completed_at == clock()


@pytest.mark.asyncio
async def test_duplicate_processing_callback_is_a_heartbeat(manager, clock):
    job_id = await manager.enqueue(report_request(), requested_by="user-1")
    first = await manager.mark_processing(job_id)
    started_at = first.started_at

    clock.advance(seconds=20)
    job = await manager.mark_processing(job_id)

    assert job.status == PdfJobStatus.processing
    assert job.started_at == started_at
    assert job.heartbeat_at == clock()


@pytest.mark.asyncio
async def test_invalid_transitions_are_refused(manager):
    job_id = await manager.enqueue(report_request(), requested_by="user-1")

    with pytest.raises(InvalidTransition):
        await manager.mark_completed(job_id, "s3://reports/x.pdf")
    with pytest.raises(InvalidTransition):
        await manager.heartbeat(job_id)

    await manager.mark_processing(job_id)
    await manager.mark_completed(job_id, "s3://reports/x.pdf")
    with pytest.raises(InvalidTransition):
        await manager.mark_processing(job_id)
    with pytest.raises(InvalidTransition):
        await manager.mark_failed(job_id, "too late")

    job = await manager.get_status(job_id)
    assert job.status == PdfJobStatus.completed
    assert job.artifact_ref == "s3://reports/x.pdf"


@pytest.mark.asyncio
async def test_retries_are_bounded_by_max_attempts(manager):
    job_id = await manager.enqueue(report_request(), requested_by="user-1")

    for expected_attempts in (1, 2):
        await manager.mark_processing(job_id)
        job = await manager.mark_failed(job_id, f"chromium crashed #{expected_attempts}")
        assert job.status == PdfJobStatus.queued
        assert job.attempts == expected_attempts
        assert job.dispatched_at is None

    await manager.mark_processing(job_id)
    job = await manager.mark_failed(job_id, "chromium crashed #3")

    assert job.status == PdfJobStatus.failed
    assert job.attempts == 3
    assert job.last_error == "chromium crashed #3"
    assert job.artifact_ref is None
    with pytest.raises(InvalidTransition):
        await manager.mark_processing(job_id)
    with pytest.raises(InvalidTransition):
        await manager.mark_completed(job_id, "s3://reports/late.pdf")


@pytest.mark.asyncio
async def test_job_out_of_attempts_cannot_start(manager, db):
    job_id = await manager.enqueue(report_request(), requested_by="user-1")
    await db.execute(update(PdfJob).where(PdfJob.id == job_id).values(attempts=3))
    await db.commit()

    with pytest.raises(InvalidTransition):
        await manager.mark_processing(job_id)

    job = await manager.get_status(job_id)
    assert job.status == PdfJobStatus.queued
    assert job.started_at is None


@pytest.mark.asyncio
async def test_non_retryable_failure_is_terminal(manager):
    job_id = await manager.enqueue(report_request(), requested_by="user-1")
    await manager.mark_processing(job_id)

    job = await manager.mark_failed(job_id, "template not found", retryable=False)

    assert job.status == PdfJobStatus.failed
    assert job.attempts == 0


@pytest.mark.asyncio
async def test_sweep_abandons_silent_processing_jobs(manager, clock):
    stale_id = await manager.enqueue(report_request("project-1"), requested_by="user-1")
    fresh_id = await manager.enqueue(report_request("project-2"), requested_by="user-1")
    await manager.mark_processing(stale_id)
    clock.advance(minutes=9)
    await manager.mark_processing(fresh_id)

    clock.advance(minutes=2)
    with patch("app.features.pdf.services.pdf_job_manager.logger") as logger:
        report = await manager.sweep_stale()

    assert report.abandoned == [stale_id]
    logger.error.assert_called_once()
    assert f"PDF job {stale_id} abandoned after no progress for 600s" in logger.error.call_args.args[0]
    stale = await manager.get_status(stale_id)
    assert stale.status == PdfJobStatus.failed
    assert stale.last_error == "abandoned"
    assert (await manager.get_status(fresh_id)).status == PdfJobStatus.processing


@pytest.mark.asyncio
async def test_heartbeat_keeps_job_alive(manager, clock):
    job_id = await manager.enqueue(report_request(), requested_by="user-1")
    await manager.mark_processing(job_id)
    for _ in range(3):
        clock.advance(minutes=5)
        await manager.heartbeat(job_id)

    report = await manager.sweep_stale()

    assert report.abandoned == []
    assert (await manager.get_status(job_id)).status == PdfJobStatus.processing


@pytest.mark.asyncio
async def test_sweep_redispatches_queued_jobs_until_attempts_run_out(manager, clock):
    job_id = await manager.enqueue(report_request(), requested_by="user-1")
    await manager.dispatch(job_id)

    for expected_attempts in (1, 2):
        clock.advance(minutes=11)
        report = await manager.sweep_stale()
        assert report.redispatch == [job_id]
        job = await manager.get_status(job_id)
        assert job.status == PdfJobStatus.queued
        assert job.attempts == expected_attempts

    clock.advance(minutes=11)
    report = await manager.sweep_stale()

    assert report.redispatch == []
    assert report.abandoned == [job_id]
    job = await manager.get_status(job_id)
    assert job.status == PdfJobStatus.failed
    assert job.last_error == "abandoned"
    assert job.attempts < job.max_attempts


@pytest.mark.asyncio
async def test_wait_for_terminal_returns_settled_job(manager):
    job_id = await manager.enqueue(report_request(), requested_by="user-1")
    await manager.mark_processing(job_id)
    await manager.mark_completed(job_id, "s3://reports/done.pdf")

    sleep = AsyncMock()
    poller = StatusPoller(min_interval=1, max_interval=5, max_wait=10, sleep=sleep)
    job = await manager.wait_for_terminal(job_id, poller)

    assert job.status == PdfJobStatus.completed
    sleep.assert_not_awaited()


@pytest.mark.asyncio
async def test_wait_for_terminal_abandons_stale_job(manager, clock):
    job_id = await manager.enqueue(report_request(), requested_by="user-1")
    await manager.mark_processing(job_id)
    clock.advance(minutes=15)

    poller = StatusPoller(min_interval=1, max_interval=5, max_wait=10, sleep=AsyncMock())
    job = await manager.wait_for_terminal(job_id, poller)

    assert job.status == PdfJobStatus.failed
    assert job.last_error == "abandoned"


@pytest.mark.asyncio
async def test_list_jobs_and_counts(manager):
    first = await manager.enqueue(report_request("project-1"), requested_by="user-1")
    await manager.enqueue(report_request("project-2"), requested_by="user-2")
    await manager.enqueue(report_request("project-1"), requested_by="user-2")
    await manager.mark_processing(first)

    jobs, total = await manager.list_jobs(PdfJobFilter(project_id="project-1"))
    assert total == 2

    jobs, total = await manager.list_jobs(PdfJobFilter(status=PdfJobStatus.processing))
    assert total == 1
    assert jobs[0].id == first

    jobs, total = await manager.list_jobs(PdfJobFilter(requested_by="user-2", per_page=1))
    assert total == 2
    assert len(jobs) == 1

    counts = await manager.status_counts()
    assert counts == {"queued": 2, "processing": 1, "completed": 0, "failed": 0}
