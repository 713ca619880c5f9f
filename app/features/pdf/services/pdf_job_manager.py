from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import desc, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.features.pdf.models.pdf_job import TERMINAL_PDF_STATUSES, PdfJob, PdfJobStatus
from app.features.pdf.schemas.pdf_job import PdfJobCreate
from app.features.pdf.services.render_worker import RenderWorkerClient
from app.platform.config import settings
from app.platform.exceptions import (
    DatastoreError,
    InvalidTransition,
    JobAbandoned,
    JobNotFound,
    ServiceUnavailable,
)
from app.platform.logger import get_logger
from app.platform.polling import PollResult, StatusPoller
from app.platform.utils.clock import utcnow

logger = get_logger(__name__)

ABANDONED = JobAbandoned.default_message


@dataclass
class PdfJobFilter:
    status: Optional[PdfJobStatus] = None
    requested_by: Optional[str] = None
    project_id: Optional[str] = None
    page: int = 1
    per_page: int = 20


@dataclass
class SweepReport:
    abandoned: List[str] = field(default_factory=list)
    redispatch: List[str] = field(default_factory=list)


class PdfJobManager:
    """
    Owns the PdfJob lifecycle.

    queued -> processing -> completed | failed, plus processing -> queued
    while another run fits under ``max_attempts``. ``attempts`` counts
    failed runs, so a job that reaches ``max_attempts`` can only be failed.

    Every transition is a conditional UPDATE committed before the caller
    hears about it, so a crash between the render worker and us leaves a
    row the staleness sweep can settle.
    """

    def __init__(
        self,
        db: AsyncSession,
        worker: Optional[RenderWorkerClient] = None,
        now: Callable[[], datetime] = utcnow,
        max_attempts: Optional[int] = None,
        stale_after_seconds: Optional[int] = None,
    ):
        self.db = db
        self.worker = worker
        self._now = now
        self.max_attempts = max_attempts or settings.PDF_MAX_ATTEMPTS
        self.stale_after = timedelta(seconds=stale_after_seconds or settings.PDF_STALE_AFTER_SECONDS)

    async def enqueue(self, request: PdfJobCreate, requested_by: str) -> str:
        job = PdfJob(
            requested_by=requested_by,
            project_id=request.project_id,
            template_id=request.template_id,
            theme=request.theme,
            status=PdfJobStatus.queued,
            attempts=0,
            max_attempts=self.max_attempts,
            progress=0,
            queued_at=self._now(),
        )
        self.db.add(job)
        try:
            await self.db.flush()
            job_id = job.id
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise DatastoreError(f"Could not create PDF job: {e}") from e

        logger.info(
            f"PDF job {job_id} queued for project {request.project_id} "
            f"(template={request.template_id}, user={requested_by})"
        )
        return job_id

    async def get_status(self, job_id: str) -> PdfJob:
        try:
            job = await self.db.get(PdfJob, job_id, populate_existing=True)
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise DatastoreError(f"Could not load PDF job {job_id}: {e}") from e
        if job is None:
            raise JobNotFound(f"PDF job {job_id} not found")
        return job

    async def list_jobs(self, filter: PdfJobFilter) -> Tuple[List[PdfJob], int]:
        conditions = []
        if filter.status:
            conditions.append(PdfJob.status == filter.status)
        if filter.requested_by:
            conditions.append(PdfJob.requested_by == filter.requested_by)
        if filter.project_id:
            conditions.append(PdfJob.project_id == filter.project_id)

        try:
            total = await self.db.scalar(select(func.count(PdfJob.id)).where(*conditions)) or 0
            result = await self.db.execute(
                select(PdfJob)
                .where(*conditions)
                .order_by(desc(PdfJob.queued_at))
                .offset((filter.page - 1) * filter.per_page)
                .limit(filter.per_page)
            )
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise DatastoreError(f"Could not list PDF jobs: {e}") from e

        return list(result.scalars().all()), total

    async def status_counts(self) -> Dict[str, int]:
        result = await self.db.execute(
            select(PdfJob.status, func.count(PdfJob.id)).group_by(PdfJob.status)
        )
        counts = {status.value: 0 for status in PdfJobStatus}
        for status, count in result.all():
            counts[status.value] = count
        return counts

    async def _transition(
        self,
        job_id: str,
        allowed_from: Sequence[PdfJobStatus],
        to: PdfJobStatus,
        conditions: Sequence[Any] = (),
        quiet: bool = False,
        **values: Any,
    ) -> PdfJob:
        try:
            result = await self.db.execute(
                update(PdfJob)
                .where(PdfJob.id == job_id, PdfJob.status.in_(allowed_from), *conditions)
                .values(status=to, **values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await self.db.rollback()
                current = await self.get_status(job_id)
                raise InvalidTransition(
                    f"PDF job {job_id} is {current.status.value}; cannot move to {to.value}"
                )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise DatastoreError(f"Could not update PDF job {job_id}: {e}") from e

        if not quiet:
            logger.info(f"PDF job {job_id} -> {to.value}")
        return await self.get_status(job_id)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def dispatch(self, job_id: str) -> PdfJob:
        job = await self.get_status(job_id)
        if job.status != PdfJobStatus.queued:
            logger.info(f"PDF job {job_id} is {job.status.value}; skipping dispatch")
            return job
        if self.worker is None:
            raise ServiceUnavailable("No render worker configured")

        try:
            await self.worker.dispatch(
                job_id=job.id,
                project_id=job.project_id,
                template_id=job.template_id,
                theme=job.theme,
                requested_by=job.requested_by,
            )
        except ServiceUnavailable as e:
            # Stays queued; the staleness sweep re-dispatches it.
            logger.warning(f"Dispatch of PDF job {job_id} failed: {e.message}")
            values: Dict[str, Any] = {"last_error": e.message}
        else:
            values = {"dispatched_at": self._now()}

        try:
            await self.db.execute(
                update(PdfJob)
                .where(PdfJob.id == job_id, PdfJob.status == PdfJobStatus.queued)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise DatastoreError(f"Could not record dispatch of PDF job {job_id}: {e}") from e

        return await self.get_status(job_id)

    # ------------------------------------------------------------------
    # Render worker callbacks
    # ------------------------------------------------------------------

    async def mark_processing(self, job_id: str) -> PdfJob:
        now = self._now()
        try:
            return await self._transition(
                job_id,
                (PdfJobStatus.queued,),
                PdfJobStatus.processing,
                conditions=(PdfJob.attempts < PdfJob.max_attempts,),
                started_at=now,
                heartbeat_at=now,
            )
        except InvalidTransition:
            job = await self.get_status(job_id)
            if job.status == PdfJobStatus.processing:
                # Duplicate callback; treat as a heartbeat.
                return await self.heartbeat(job_id)
            raise

    async def heartbeat(self, job_id: str, progress: Optional[int] = None) -> PdfJob:
        values: Dict[str, Any] = {"heartbeat_at": self._now()}
        if progress is not None:
            values["progress"] = progress
        return await self._transition(
            job_id, (PdfJobStatus.processing,), PdfJobStatus.processing, quiet=True, **values
        )

    async def mark_completed(self, job_id: str, artifact_ref: str) -> PdfJob:
        now = self._now()
        return await self._transition(
            job_id,
            (PdfJobStatus.processing,),
            PdfJobStatus.completed,
            artifact_ref=artifact_ref,
            progress=100,
            heartbeat_at=now,
            completed_at=now,
        )

    async def mark_failed(self, job_id: str, error: str, retryable: bool = True) -> PdfJob:
        """
        Requeue the job if it has attempts left, otherwise fail it.

        A returned job in ``queued`` needs to be dispatched again. The
        failed run counts towards ``attempts`` unless the error is
        permanent.
        """
        now = self._now()
        if retryable:
            try:
                job = await self._transition(
                    job_id,
                    (PdfJobStatus.processing,),
                    PdfJobStatus.queued,
                    conditions=(PdfJob.attempts + 1 < PdfJob.max_attempts,),
                    attempts=PdfJob.attempts + 1,
                    last_error=error,
                    progress=0,
                    queued_at=now,
                    dispatched_at=None,
                    heartbeat_at=None,
                )
                logger.warning(
                    f"PDF job {job_id} requeued (attempt {job.attempts}/{job.max_attempts}): {error}"
                )
                return job
            except InvalidTransition:
                pass

        values: Dict[str, Any] = {"last_error": error, "completed_at": now}
        if retryable:
            values["attempts"] = PdfJob.attempts + 1
        return await self._transition(
            job_id,
            (PdfJobStatus.processing,),
            PdfJobStatus.failed,
            **values,
        )

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def _stale_processing_condition(self, cutoff: datetime):
        return func.coalesce(PdfJob.heartbeat_at, PdfJob.started_at, PdfJob.queued_at) < cutoff

    def _stale_queued_condition(self, cutoff: datetime):
        return func.coalesce(PdfJob.dispatched_at, PdfJob.queued_at) < cutoff

    async def _abandon(self, job_id: str, allowed_from: PdfJobStatus, stale_condition) -> Optional[PdfJob]:
        try:
            job = await self._transition(
                job_id,
                (allowed_from,),
                PdfJobStatus.failed,
                conditions=(stale_condition,),
                last_error=ABANDONED,
                completed_at=self._now(),
            )
        except InvalidTransition:
            # Progress arrived between the scan and the update.
            return None
        logger.error(
            f"PDF job {job_id} {ABANDONED} after no progress for {int(self.stale_after.total_seconds())}s "
            f"(was {allowed_from.value}, attempts={job.attempts})"
        )
        return job

    async def sweep_stale(self, limit: int = 200) -> SweepReport:
        now = self._now()
        cutoff = now - self.stale_after
        report = SweepReport()

        stale_processing = self._stale_processing_condition(cutoff)
        stale_queued = self._stale_queued_condition(cutoff)
        try:
            processing_ids = list(
                (
                    await self.db.execute(
                        select(PdfJob.id)
                        .where(PdfJob.status == PdfJobStatus.processing, stale_processing)
                        .limit(limit)
                    )
                ).scalars().all()
            )
            queued_ids = list(
                (
                    await self.db.execute(
                        select(PdfJob.id)
                        .where(PdfJob.status == PdfJobStatus.queued, stale_queued)
                        .limit(limit)
                    )
                ).scalars().all()
            )
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise DatastoreError(f"Could not scan for stale PDF jobs: {e}") from e

        for job_id in processing_ids:
            if await self._abandon(job_id, PdfJobStatus.processing, stale_processing):
                report.abandoned.append(job_id)

        for job_id in queued_ids:
            try:
                job = await self._transition(
                    job_id,
                    (PdfJobStatus.queued,),
                    PdfJobStatus.queued,
                    conditions=(PdfJob.attempts + 1 < PdfJob.max_attempts, stale_queued),
                    attempts=PdfJob.attempts + 1,
                    last_error="render worker did not pick up the job",
                    queued_at=now,
                    dispatched_at=None,
                )
                logger.warning(f"PDF job {job_id} never started; re-dispatching (attempt {job.attempts})")
                report.redispatch.append(job_id)
            except InvalidTransition:
                if await self._abandon(job_id, PdfJobStatus.queued, stale_queued):
                    report.abandoned.append(job_id)

        if report.abandoned or report.redispatch:
            logger.info(
                f"PDF sweep: {len(report.abandoned)} abandoned, {len(report.redispatch)} re-dispatched"
            )
        return report

    async def wait_for_terminal(self, job_id: str, poller: StatusPoller) -> PdfJob:
        """Poll the stored job until it settles, failing it if it goes stale meanwhile."""

        async def poll_once() -> PollResult:
            job = await self.get_status(job_id)
            if job.status in TERMINAL_PDF_STATUSES:
                return PollResult(done=True, value=job)
            if job.status == PdfJobStatus.processing:
                abandoned = await self._abandon(
                    job_id,
                    PdfJobStatus.processing,
                    self._stale_processing_condition(self._now() - self.stale_after),
                )
                if abandoned is not None:
                    return PollResult(done=True, value=abandoned, error=abandoned.last_error)
            return PollResult(done=False, value=job)

        outcome = await poller.run(poll_once)
        return outcome.value
