from fastapi import APIRouter, Depends, Query, status
from kombu.exceptions import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from app.features.pdf.models.pdf_job import TERMINAL_PDF_STATUSES, PdfJob, PdfJobStatus
from app.features.pdf.schemas.pdf_job import (
    PdfCompleteRequest,
    PdfFailRequest,
    PdfHeartbeatRequest,
    PdfJobCreate,
    PdfJobCreated,
    PdfJobResponse,
)
from app.features.pdf.services.pdf_job_manager import PdfJobManager
from app.features.pdf.workers.tasks import dispatch_pdf_job
from app.platform.config import settings
from app.platform.db.session import get_db
from app.platform.exceptions import JobNotFound
from app.platform.logger import get_logger
from app.platform.polling import StatusPoller
from app.platform.response import api_response
from app.platform.security import get_current_user_id, verify_render_worker

logger = get_logger(__name__)

router = APIRouter(prefix="/pdf/jobs", tags=["PDF"])


def _job_data(job: PdfJob) -> dict:
    return PdfJobResponse.model_validate(job).model_dump()


def _hand_to_dispatcher(job_id: str) -> None:
    try:
        dispatch_pdf_job.delay(job_id)
    except OperationalError as e:
        # The job is stored as queued; the staleness sweep re-dispatches it.
        logger.error(f"Could not queue dispatch of PDF job {job_id}, leaving it to the sweep: {e}")


async def _owned_job(manager: PdfJobManager, job_id: str, user_id: str) -> PdfJob:
    job = await manager.get_status(job_id)
    if job.requested_by != user_id:
        raise JobNotFound(f"PDF job {job_id} not found")
    return job


@router.post("", status_code=status.HTTP_202_ACCEPTED)
async def enqueue_pdf_job(
    request: PdfJobCreate,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    job_id = await PdfJobManager(db).enqueue(request, requested_by=user_id)
    _hand_to_dispatcher(job_id)

    return api_response(
        data=PdfJobCreated(job_id=job_id, status=PdfJobStatus.queued.value).model_dump(),
        message="PDF generation queued",
        status_code=status.HTTP_202_ACCEPTED,
    )


@router.get("/{job_id}")
async def get_pdf_job(
    job_id: str,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    job = await _owned_job(PdfJobManager(db), job_id, user_id)
    return api_response(data=_job_data(job), message="PDF job retrieved")


@router.get("/{job_id}/wait")
async def wait_for_pdf_job(
    job_id: str,
    timeout: int = Query(30, ge=1, le=settings.PDF_WAIT_MAX_SECONDS),
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """
    Long-poll until the job completes or fails, or ``timeout`` seconds pass.

    A job still in flight at the timeout is returned as-is; clients call
    again rather than holding the connection open.
    """
    manager = PdfJobManager(db)
    await _owned_job(manager, job_id, user_id)

    poller = StatusPoller(min_interval=1, max_interval=5, max_wait=timeout)
    job = await manager.wait_for_terminal(job_id, poller)

    settled = job.status in TERMINAL_PDF_STATUSES
    return api_response(
        data=_job_data(job),
        message=f"PDF job {job.status.value}" if settled else "PDF job still in progress",
    )


# ----------------------------------------------------------------------
# Render worker callbacks
# ----------------------------------------------------------------------

@router.post("/{job_id}/processing", dependencies=[Depends(verify_render_worker)])
async def pdf_job_processing(job_id: str, db: AsyncSession = Depends(get_db)):
    job = await PdfJobManager(db).mark_processing(job_id)
    return api_response(data=_job_data(job), message="PDF job processing")


@router.post("/{job_id}/heartbeat", dependencies=[Depends(verify_render_worker)])
async def pdf_job_heartbeat(
    job_id: str,
    request: PdfHeartbeatRequest,
    db: AsyncSession = Depends(get_db),
):
    job = await PdfJobManager(db).heartbeat(job_id, progress=request.progress)
    return api_response(data=_job_data(job), message="Heartbeat recorded")


@router.post("/{job_id}/complete", dependencies=[Depends(verify_render_worker)])
async def pdf_job_complete(
    job_id: str,
    request: PdfCompleteRequest,
    db: AsyncSession = Depends(get_db),
):
    job = await PdfJobManager(db).mark_completed(job_id, request.artifact_ref)
    return api_response(data=_job_data(job), message="PDF job completed")


@router.post("/{job_id}/fail", dependencies=[Depends(verify_render_worker)])
async def pdf_job_fail(
    job_id: str,
    request: PdfFailRequest,
    db: AsyncSession = Depends(get_db),
):
    job = await PdfJobManager(db).mark_failed(job_id, request.error, retryable=request.retryable)
    if job.status == PdfJobStatus.queued:
        _hand_to_dispatcher(job.id)
        message = "PDF job requeued"
    else:
        message = "PDF job failed"
    return api_response(data=_job_data(job), message=message)
