import enum

from sqlalchemy import JSON, CheckConstraint, Column, DateTime, Enum, Index, Integer, String, Text

from app.platform.db.base import BaseModel
from app.platform.utils.clock import utcnow


class PdfJobStatus(enum.Enum):
    """PDF job state machine: queued -> processing -> completed | failed (processing -> queued on retry)"""
    queued = "queued"
    processing = "processing"
    completed = "completed"
    failed = "failed"


TERMINAL_PDF_STATUSES = (PdfJobStatus.completed, PdfJobStatus.failed)


class PdfJob(BaseModel):
    __tablename__ = "pdf_jobs"

    requested_by = Column(String, nullable=False, index=True)
    project_id = Column(String, nullable=False, index=True)
    template_id = Column(String(128), nullable=False)
    theme = Column(JSON, nullable=True)

    status = Column(Enum(PdfJobStatus), default=PdfJobStatus.queued, nullable=False, index=True)

    # Retry tracking
    attempts = Column(Integer, default=0, nullable=False)
    max_attempts = Column(Integer, default=3, nullable=False)
    last_error = Column(Text, nullable=True)

    progress = Column(Integer, default=0, nullable=False)
    artifact_ref = Column(String(1024), nullable=True)

    queued_at = Column(DateTime, default=utcnow, nullable=False)
    dispatched_at = Column(DateTime, nullable=True)
    started_at = Column(DateTime, nullable=True)
    heartbeat_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint("attempts <= max_attempts", name="check_pdf_attempts_within_max"),
        Index("idx_pdf_jobs_status_heartbeat", "status", "heartbeat_at"),
    )
