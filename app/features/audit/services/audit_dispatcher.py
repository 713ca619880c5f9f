import asyncio
import enum
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import and_, desc, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.features.audit.models.audit_job import (
    ACTIVE_AUDIT_STATUSES,
    TERMINAL_AUDIT_STATUSES,
    AuditJob,
    AuditJobStatus,
    AuditResult,
)
from app.features.audit.services.crawler_gateway import CrawlerGateway, RemoteState
from app.features.quota.services.quota_ledger import DenialReason, QuotaLedger
from app.platform.config import settings
from app.platform.exceptions import (
    CrawlerRequestError,
    DatastoreError,
    InvalidTransition,
    JobNotFound,
    ServiceUnavailable,
)
from app.platform.logger import get_logger
from app.platform.polling import PollResult, StatusPoller, retry_async
from app.platform.utils.clock import utcnow

logger = get_logger(__name__)

POLL_DEADLINE_EXCEEDED = "Audit exceeded the maximum poll duration"


class RejectReason(str, enum.Enum):
    LIMIT_REACHED = "limit_reached"
    SERVICE_UNAVAILABLE = "service_unavailable"
    AUDIT_IN_PROGRESS = "audit_in_progress"
    DATASTORE_UNAVAILABLE = "datastore_unavailable"


@dataclass
class DispatchDecision:
    admitted: bool
    job: Optional[AuditJob] = None
    reason: Optional[RejectReason] = None
    message: Optional[str] = None


def _reject(reason: RejectReason, message: str) -> DispatchDecision:
    logger.warning(f"Audit request rejected ({reason.value}): {message}")
    return DispatchDecision(admitted=False, reason=reason, message=message)


class AuditDispatcher:
    """
    Admits audit requests and drives AuditJob through
    pending -> running -> completed | failed.

    Quota, crawler and datastore failures are folded into a
    ``DispatchDecision`` for the caller instead of being re-raised.
    """

    def __init__(
        self,
        db: AsyncSession,
        gateway: CrawlerGateway,
        ledger: Optional[QuotaLedger] = None,
        now: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Any] = asyncio.sleep,
        poller_factory: Optional[Callable[[float], StatusPoller]] = None,
        retry_attempts: Optional[int] = None,
        retry_base_delay: Optional[float] = None,
        poll_deadline_seconds: Optional[int] = None,
    ):
        self.db = db
        self.gateway = gateway
        self.ledger = ledger or QuotaLedger(db, now=now)
        self._now = now
        self._sleep = sleep
        self._poller_factory = poller_factory or self._default_poller
        self.retry_attempts = retry_attempts or settings.CRAWLER_RETRY_ATTEMPTS
        self.retry_base_delay = retry_base_delay or settings.CRAWLER_RETRY_BASE_DELAY_SECONDS
        self.poll_deadline = timedelta(
            seconds=poll_deadline_seconds or settings.AUDIT_POLL_DEADLINE_SECONDS
        )

    def _default_poller(self, max_wait: float) -> StatusPoller:
        return StatusPoller(
            min_interval=settings.POLL_MIN_INTERVAL_SECONDS,
            max_interval=settings.POLL_MAX_INTERVAL_SECONDS,
            max_wait=max_wait,
            sleep=self._sleep,
        )

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    async def _active_job_for_project(self, project_id: str) -> Optional[AuditJob]:
        result = await self.db.execute(
            select(AuditJob).where(
                AuditJob.project_id == project_id,
                AuditJob.status.in_(ACTIVE_AUDIT_STATUSES),
            )
        )
        return result.scalars().first()

    async def request_audit(
        self, user_id: str, project_id: str, options: Optional[Dict[str, Any]] = None
    ) -> DispatchDecision:
        try:
            active = await self._active_job_for_project(project_id)
        except SQLAlchemyError as e:
            await self.db.rollback()
            return _reject(RejectReason.DATASTORE_UNAVAILABLE, f"Could not read audit jobs: {e}")

        if active:
            return _reject(
                RejectReason.AUDIT_IN_PROGRESS,
                f"Audit {active.id} is already {active.status.value} for project {project_id}",
            )

        health = await self.gateway.health_check()
        if not health.available:
            return _reject(
                RejectReason.SERVICE_UNAVAILABLE,
                f"Crawler service is unavailable: {health.error or 'health check failed'}",
            )

        quota = await self.ledger.check_and_reserve(user_id)
        if not quota.allowed:
            if quota.reason == DenialReason.LIMIT_REACHED:
                return _reject(
                    RejectReason.LIMIT_REACHED,
                    f"Audit limit of {quota.limit} reached for the current period",
                )
            return _reject(RejectReason.DATASTORE_UNAVAILABLE, "Quota could not be verified")

        job = AuditJob(
            project_id=project_id,
            user_id=user_id,
            status=AuditJobStatus.pending,
            options=options or {},
            period_start=quota.period_start,
            queued_at=self._now(),
        )
        self.db.add(job)
        try:
            await self.db.flush()
            job_id = job.id
            await self.db.commit()
        except IntegrityError:
            # Lost the race with another request for the same project.
            await self.db.rollback()
            await self.ledger.release(user_id, quota.period_start)
            return _reject(
                RejectReason.AUDIT_IN_PROGRESS,
                f"Another audit was just started for project {project_id}",
            )
        except SQLAlchemyError as e:
            await self.db.rollback()
            await self.ledger.release(user_id, quota.period_start)
            return _reject(RejectReason.DATASTORE_UNAVAILABLE, f"Could not create audit job: {e}")

        logger.info(f"Audit job {job_id} pending for project {project_id} (user {user_id})")

        # start_audit is not idempotent: exactly one attempt per local job.
        try:
            remote_job_id = await self.gateway.start_audit(project_id, options, audit_id=job_id)
        except (ServiceUnavailable, CrawlerRequestError) as e:
            try:
                await self._fail(job_id, f"Crawler could not start the audit: {e.message}")
            except DatastoreError:
                logger.error(f"Could not mark audit job {job_id} failed; reconciliation will retry")
            await self.ledger.release(user_id, quota.period_start)
            return _reject(RejectReason.SERVICE_UNAVAILABLE, e.message)

        try:
            job = await self._transition(
                job_id,
                (AuditJobStatus.pending,),
                AuditJobStatus.running,
                remote_job_id=remote_job_id,
                started_at=self._now(),
            )
        except (DatastoreError, InvalidTransition) as e:
            # The crawler is already working on it; nothing here can stop it.
            logger.error(
                f"Audit job {job_id} started on the crawler as {remote_job_id} but could not be "
                f"marked running; remote audit {remote_job_id} is orphaned: {e.message}"
            )
            return _reject(RejectReason.DATASTORE_UNAVAILABLE, e.message)

        return DispatchDecision(admitted=True, job=job)

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    async def _load(self, job_id: str) -> AuditJob:
        try:
            job = await self.db.get(AuditJob, job_id, populate_existing=True)
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise DatastoreError(f"Could not load audit job {job_id}: {e}") from e
        if job is None:
            raise JobNotFound(f"Audit job {job_id} not found")
        return job

    async def _transition(
        self,
        job_id: str,
        allowed_from: Sequence[AuditJobStatus],
        to: AuditJobStatus,
        **values: Any,
    ) -> AuditJob:
        try:
            result = await self.db.execute(
                update(AuditJob)
                .where(AuditJob.id == job_id, AuditJob.status.in_(allowed_from))
                .values(status=to, **values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await self.db.rollback()
                current = await self._load(job_id)
                raise InvalidTransition(
                    f"Audit job {job_id} is {current.status.value}; cannot move to {to.value}"
                )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise DatastoreError(f"Could not update audit job {job_id}: {e}") from e

        logger.info(f"Audit job {job_id} -> {to.value}")
        return await self._load(job_id)

    async def _fail(self, job_id: str, error: str) -> AuditJob:
        try:
            return await self._transition(
                job_id,
                ACTIVE_AUDIT_STATUSES,
                AuditJobStatus.failed,
                error_message=error,
                completed_at=self._now(),
            )
        except InvalidTransition:
            # Already terminal, most likely settled by another tracker.
            return await self._load(job_id)

    async def _complete(self, job_id: str, payload: Dict[str, Any]) -> AuditJob:
        try:
            result_row = AuditResult(audit_job_id=job_id, payload=payload)
            self.db.add(result_row)
            await self.db.flush()
            result_id = result_row.id
            result = await self.db.execute(
                update(AuditJob)
                .where(AuditJob.id == job_id, AuditJob.status == AuditJobStatus.running)
                .values(
                    status=AuditJobStatus.completed,
                    result_ref=result_id,
                    progress=100,
                    completed_at=self._now(),
                    last_polled_at=self._now(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await self.db.rollback()
                return await self._load(job_id)
            await self.db.commit()
        except IntegrityError:
            # A result row already exists: the job was completed elsewhere.
            await self.db.rollback()
            return await self._load(job_id)
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise DatastoreError(f"Could not store results for audit job {job_id}: {e}") from e

        logger.info(f"Audit job {job_id} -> completed (result {result_id})")
        return await self._load(job_id)

    async def _record_progress(self, job_id: str, progress: int) -> None:
        try:
            await self.db.execute(
                update(AuditJob)
                .where(AuditJob.id == job_id, AuditJob.status == AuditJobStatus.running)
                .values(progress=progress, last_polled_at=self._now())
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise DatastoreError(f"Could not record progress for audit job {job_id}: {e}") from e

    # ------------------------------------------------------------------
    # Tracking
    # ------------------------------------------------------------------

    def _deadline_passed(self, job: AuditJob) -> bool:
        started = job.started_at or job.queued_at
        return started is not None and self._now() >= started + self.poll_deadline

    def _start_unconfirmed(self, job: AuditJob) -> bool:
        window = timedelta(seconds=settings.AUDIT_RECONCILE_AFTER_SECONDS)
        return job.queued_at is not None and self._now() >= job.queued_at + window

    async def _with_retry(self, call: Callable[[], Any]) -> Any:
        return await retry_async(
            call,
            attempts=self.retry_attempts,
            base_delay=self.retry_base_delay,
            retry_on=(ServiceUnavailable,),
            sleep=self._sleep,
        )

    async def _settle(
        self,
        job_id: str,
        remote_job_id: Optional[str],
        state: RemoteState,
        error: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> AuditJob:
        """Move the job to the terminal state the crawler reported."""
        if state == RemoteState.FAILED:
            return await self._fail(job_id, error or "Crawler reported the audit as failed")

        if payload is None:
            try:
                payload = await self._with_retry(lambda: self.gateway.fetch_results(remote_job_id))
            except (ServiceUnavailable, CrawlerRequestError) as e:
                return await self._fail(job_id, f"Could not fetch audit results: {e.message}")
        return await self._complete(job_id, payload)

    async def _poll_step(self, job_id: str) -> PollResult:
        job = await self._load(job_id)
        if job.status in TERMINAL_AUDIT_STATUSES:
            return PollResult(done=True, value=job)

        if job.status == AuditJobStatus.pending:
            # No remote id yet: either the start is in flight or its
            # confirmation was lost.
            if self._start_unconfirmed(job):
                job = await self._fail(job_id, "Audit start was never confirmed")
                return PollResult(done=True, value=job, error=job.error_message)
            return PollResult(done=False, value=job)

        # Past the deadline the crawler still gets one look, so an audit that
        # finished just before it keeps its results.
        overdue = self._deadline_passed(job)
        remote_job_id = job.remote_job_id
        try:
            status = await self._with_retry(lambda: self.gateway.poll_status(remote_job_id))
        except (ServiceUnavailable, CrawlerRequestError) as e:
            reason = POLL_DEADLINE_EXCEEDED if overdue else f"Crawler service unavailable: {e.message}"
            job = await self._fail(job_id, reason)
            return PollResult(done=True, value=job, error=job.error_message)

        if status.state.is_terminal:
            job = await self._settle(job_id, remote_job_id, status.state, error=status.error)
            return PollResult(done=True, value=job, error=job.error_message)

        if overdue:
            job = await self._fail(job_id, POLL_DEADLINE_EXCEEDED)
            return PollResult(done=True, value=job, error=job.error_message)

        await self._record_progress(job_id, status.progress)
        return PollResult(done=False, value=await self._load(job_id))

    async def track(self, job_id: str, max_wait: Optional[float] = None) -> AuditJob:
        """
        Poll the crawler until the job settles or its deadline passes.

        Abandoning this coroutine leaves the persisted job as it was; the
        reconciliation task picks it up later.
        """
        job = await self._load(job_id)
        if job.status in TERMINAL_AUDIT_STATUSES:
            return job

        started = job.started_at or job.queued_at or self._now()
        until_deadline = max(0.0, (started + self.poll_deadline - self._now()).total_seconds())
        wait = until_deadline if max_wait is None else min(max_wait, until_deadline)

        poller = self._poller_factory(wait)
        outcome = await poller.run(lambda: self._poll_step(job_id))
        if outcome.done:
            return outcome.value

        job = await self._load(job_id)
        if job.status not in TERMINAL_AUDIT_STATUSES and self._deadline_passed(job):
            job = await self._fail(job_id, POLL_DEADLINE_EXCEEDED)
        return job

    async def refresh(self, job_id: str) -> AuditJob:
        """Single poll step, applying the same transition rules as ``track``."""
        return (await self._poll_step(job_id)).value

    async def apply_callback(
        self,
        job_id: str,
        project_id: str,
        state: RemoteState,
        payload: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
        progress: Optional[int] = None,
    ) -> AuditJob:
        """
        Apply an outcome the crawler pushed instead of waiting for a poll.

        Terminal jobs come back unchanged, so repeated and late callbacks
        are no-ops. A job whose start is not yet confirmed refuses the
        callback; the crawler retries or the reconciler settles it.
        """
        job = await self._load(job_id)
        if job.project_id != project_id:
            raise JobNotFound(f"Audit job {job_id} not found")

        if job.status in TERMINAL_AUDIT_STATUSES:
            logger.info(f"Ignoring {state.value} callback for audit job {job_id}: already {job.status.value}")
            return job
        if job.status == AuditJobStatus.pending:
            raise InvalidTransition(f"Audit job {job_id} has not been confirmed as started yet")

        if state.is_terminal:
            return await self._settle(job_id, job.remote_job_id, state, error=error, payload=payload)

        if progress is not None:
            await self._record_progress(job_id, progress)
        return await self._load(job_id)

    async def reconcile_running(self, limit: int = 100) -> List[str]:
        """Refresh active jobs nobody has polled recently."""
        cutoff = self._now() - timedelta(seconds=settings.AUDIT_RECONCILE_AFTER_SECONDS)
        try:
            result = await self.db.execute(
                select(AuditJob.id)
                .where(
                    or_(
                        and_(
                            AuditJob.status == AuditJobStatus.running,
                            or_(AuditJob.last_polled_at.is_(None), AuditJob.last_polled_at < cutoff),
                        ),
                        and_(
                            AuditJob.status == AuditJobStatus.pending,
                            AuditJob.queued_at < cutoff,
                        ),
                    )
                )
                .order_by(AuditJob.queued_at)
                .limit(limit)
            )
            job_ids = list(result.scalars().all())
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise DatastoreError(f"Could not list audit jobs to reconcile: {e}") from e

        reconciled = []
        for job_id in job_ids:
            try:
                await self.refresh(job_id)
                reconciled.append(job_id)
            except DatastoreError as e:
                logger.error(f"Reconciliation of audit job {job_id} failed: {e.message}")

        if reconciled:
            logger.info(f"Reconciled {len(reconciled)} audit jobs")
        return reconciled

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_job(self, job_id: str, user_id: Optional[str] = None) -> AuditJob:
        job = await self._load(job_id)
        if user_id is not None and job.user_id != user_id:
            raise JobNotFound(f"Audit job {job_id} not found")
        return job

    async def get_result(self, job: AuditJob) -> Optional[Dict[str, Any]]:
        if not job.result_ref:
            return None
        row = await self.db.get(AuditResult, job.result_ref)
        return row.payload if row else None

    async def list_jobs(
        self,
        user_id: str,
        project_id: Optional[str] = None,
        status: Optional[AuditJobStatus] = None,
        page: int = 1,
        per_page: int = 20,
    ) -> Tuple[List[AuditJob], int]:
        filters = [AuditJob.user_id == user_id]
        if project_id:
            filters.append(AuditJob.project_id == project_id)
        if status:
            filters.append(AuditJob.status == status)

        total = await self.db.scalar(select(func.count(AuditJob.id)).where(*filters)) or 0
        result = await self.db.execute(
            select(AuditJob)
            .where(*filters)
            .order_by(desc(AuditJob.queued_at))
            .offset((page - 1) * per_page)
            .limit(per_page)
        )
        return list(result.scalars().all()), total
