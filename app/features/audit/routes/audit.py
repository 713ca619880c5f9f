from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from kombu.exceptions import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from app.features.audit.models.audit_job import AuditJobStatus
from app.features.audit.schemas.audit import (
    AuditJobListResponse,
    AuditJobResponse,
    AuditRequest,
    AuditStatusResponse,
    AuditWebhookRequest,
)
from app.features.audit.services.audit_dispatcher import AuditDispatcher, RejectReason
from app.features.audit.services.crawler_gateway import (
    CrawlerGateway,
    get_crawler_gateway,
    parse_remote_state,
)
from app.features.audit.workers.tasks import track_audit_job
from app.features.quota.schemas.quota import QuotaUsageResponse
from app.features.quota.services.quota_ledger import QuotaLedger
from app.platform.db.session import get_db
from app.platform.exceptions import (
    AuditInProgress,
    DatastoreError,
    LimitReached,
    ServiceUnavailable,
)
from app.platform.logger import get_logger
from app.platform.response import api_response
from app.platform.security import get_current_user_id, verify_crawler_webhook

logger = get_logger(__name__)

router = APIRouter(prefix="/audits", tags=["Audits"])

_REJECTIONS = {
    RejectReason.LIMIT_REACHED: LimitReached,
    RejectReason.AUDIT_IN_PROGRESS: AuditInProgress,
    RejectReason.SERVICE_UNAVAILABLE: ServiceUnavailable,
    RejectReason.DATASTORE_UNAVAILABLE: DatastoreError,
}


@router.post("", status_code=status.HTTP_202_ACCEPTED)
async def request_audit(
    request: AuditRequest,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    gateway: CrawlerGateway = Depends(get_crawler_gateway),
):
    """
    Admit an audit for a project and hand its tracking to a worker.

    Rejections carry the reason in the envelope data:
    - 429 quota exhausted for the current period
    - 409 another audit is pending or running for the project
    - 503 crawler or datastore unavailable
    """
    dispatcher = AuditDispatcher(db, gateway)
    decision = await dispatcher.request_audit(user_id, request.project_id, request.options)

    if not decision.admitted:
        raise _REJECTIONS[decision.reason](decision.message, data={"reason": decision.reason.value})

    job = decision.job
    try:
        track_audit_job.delay(job.id)
    except OperationalError as e:
        # Already admitted and charged; the reconcile beat task tracks it.
        logger.error(f"Could not hand audit job {job.id} to tracker, leaving it to reconciliation: {e}")
    else:
        logger.info(f"Audit job {job.id} handed to tracker (remote {job.remote_job_id})")

    return api_response(
        data=AuditJobResponse.model_validate(job).model_dump(),
        message="Audit started",
        status_code=status.HTTP_202_ACCEPTED,
    )


@router.post("/webhook", dependencies=[Depends(verify_crawler_webhook)])
async def audit_webhook(
    request: AuditWebhookRequest,
    db: AsyncSession = Depends(get_db),
    gateway: CrawlerGateway = Depends(get_crawler_gateway),
):
    """
    Crawler push notification for an audit's outcome.

    Completed and failed callbacks settle the job through the same
    conditional transitions as polling, so duplicates are harmless.
    """
    job = await AuditDispatcher(db, gateway).apply_callback(
        request.audit_id,
        request.project_id,
        parse_remote_state(request.status),
        payload=request.result,
        error=request.error,
        progress=request.progress,
    )
    return api_response(
        data=AuditJobResponse.model_validate(job).model_dump(),
        message=f"Audit {job.status.value}",
    )


@router.get("/quota")
async def get_quota(
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    usage = await QuotaLedger(db).get_usage(user_id)
    return api_response(
        data=QuotaUsageResponse(
            tier=usage.tier.value,
            period_start=usage.period_start,
            used=usage.used,
            limit=usage.limit,
            remaining=usage.remaining,
        ).model_dump(),
        message="Quota retrieved",
    )


@router.get("")
async def list_audits(
    project_id: Optional[str] = Query(None),
    status_filter: Optional[AuditJobStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    gateway: CrawlerGateway = Depends(get_crawler_gateway),
):
    jobs, total = await AuditDispatcher(db, gateway).list_jobs(
        user_id, project_id=project_id, status=status_filter, page=page, per_page=per_page
    )
    return api_response(
        data=AuditJobListResponse(
            jobs=[AuditJobResponse.model_validate(job) for job in jobs],
            total=total,
            page=page,
            per_page=per_page,
            pages=(total + per_page - 1) // per_page,
        ).model_dump(),
        message="Audits retrieved",
    )


@router.get("/{job_id}/status")
async def get_audit_status(
    job_id: str,
    sync: bool = Query(False, description="Poll the crawler once before answering"),
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    gateway: CrawlerGateway = Depends(get_crawler_gateway),
):
    dispatcher = AuditDispatcher(db, gateway)
    job = await dispatcher.get_job(job_id, user_id=user_id)
    if sync:
        job = await dispatcher.refresh(job.id)

    response = AuditStatusResponse.model_validate(job)
    response.results = await dispatcher.get_result(job)
    return api_response(data=response.model_dump(), message="Audit status retrieved")
