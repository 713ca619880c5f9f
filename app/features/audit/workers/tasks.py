"""
Celery tasks for audit tracking.

The API process only admits an audit; the polling loop that drives it to a
terminal state runs here so that it survives the HTTP request.
"""
import asyncio
from typing import List, Optional

from celery import shared_task

from app.features.audit.services.audit_dispatcher import AuditDispatcher
from app.features.audit.services.crawler_gateway import CrawlerGateway
from app.platform.async_db_helper import get_async_db
from app.platform.celery_app import celery_app  # noqa: F401  (registers the app)
from app.platform.logger import get_logger

logger = get_logger(__name__)


async def _track(job_id: str, max_wait: Optional[float] = None) -> str:
    async with get_async_db() as db:
        dispatcher = AuditDispatcher(db, CrawlerGateway())
        job = await dispatcher.track(job_id, max_wait=max_wait)
        return job.status.value


async def _reconcile(limit: int) -> List[str]:
    async with get_async_db() as db:
        dispatcher = AuditDispatcher(db, CrawlerGateway())
        return await dispatcher.reconcile_running(limit=limit)


@shared_task(bind=True, name="app.features.audit.workers.tasks.track_audit_job")
def track_audit_job(self, job_id: str, max_wait: Optional[float] = None):
    """
    Poll the crawler for ``job_id`` until it completes, fails or hits its
    30 minute deadline.
    """
    logger.info(f"[{self.request.id}] Tracking audit job {job_id}")
    status = asyncio.run(_track(job_id, max_wait))
    logger.info(f"[{self.request.id}] Audit job {job_id} finished tracking as {status}")
    return {"job_id": job_id, "status": status}


@shared_task(bind=True, name="app.features.audit.workers.tasks.reconcile_running_audits")
def reconcile_running_audits(self, limit: int = 100):
    """
    Periodic safety net for trackers that died with their worker.

    Runs via Celery Beat. Every active job nobody has polled recently gets a
    single poll step, which also enforces the poll deadline.
    """
    job_ids = asyncio.run(_reconcile(limit))
    return {"reconciled": len(job_ids), "job_ids": job_ids}
