"""
Celery tasks for PDF generation.
"""
import asyncio

from celery import shared_task

from app.features.pdf.services.pdf_job_manager import PdfJobManager
from app.features.pdf.services.render_worker import RenderWorkerClient
from app.platform.async_db_helper import get_async_db
from app.platform.celery_app import celery_app  # noqa: F401  (registers the app)
from app.platform.logger import get_logger

logger = get_logger(__name__)


async def _dispatch(job_id: str) -> dict:
    async with get_async_db() as db:
        manager = PdfJobManager(db, RenderWorkerClient())
        job = await manager.dispatch(job_id)
        return {
            "job_id": job_id,
            "status": job.status.value,
            "dispatched": job.dispatched_at is not None,
        }


async def _sweep():
    async with get_async_db() as db:
        return await PdfJobManager(db).sweep_stale()


@shared_task(bind=True, name="app.features.pdf.workers.tasks.dispatch_pdf_job")
def dispatch_pdf_job(self, job_id: str):
    """Hand a queued PDF job to the render worker."""
    result = asyncio.run(_dispatch(job_id))
    if not result["dispatched"] and result["status"] == "queued":
        logger.warning(f"[{self.request.id}] PDF job {job_id} still queued; the sweep will retry it")
    return result


@shared_task(bind=True, name="app.features.pdf.workers.tasks.sweep_stale_pdf_jobs")
def sweep_stale_pdf_jobs(self):
    """
    Periodic reconciliation of PDF jobs.

    Runs via Celery Beat:
    - processing jobs without a heartbeat for the staleness window fail as "abandoned"
    - queued jobs the worker never picked up are re-dispatched until attempts run out
    """
    report = asyncio.run(_sweep())
    for job_id in report.redispatch:
        dispatch_pdf_job.delay(job_id)
    return {"abandoned": report.abandoned, "redispatched": report.redispatch}
