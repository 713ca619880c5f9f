import enum

from sqlalchemy import JSON, Column, DateTime, Enum, ForeignKey, Index, Integer, String, Text, text

from app.platform.db.base import BaseModel
from app.platform.utils.clock import utcnow


class AuditJobStatus(enum.Enum):
    """Audit job state machine: pending -> running -> completed | failed"""
    pending = "pending"
    running = "running"
    completed = "completed"
    failed = "failed"


ACTIVE_AUDIT_STATUSES = (AuditJobStatus.pending, AuditJobStatus.running)
TERMINAL_AUDIT_STATUSES = (AuditJobStatus.completed, AuditJobStatus.failed)


class AuditJob(BaseModel):
    """
    Local mirror of an audit executed by the crawler service.
    """
    __tablename__ = "audit_jobs"

    project_id = Column(String, nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)

    status = Column(Enum(AuditJobStatus), default=AuditJobStatus.pending, nullable=False, index=True)

    # Crawler-side identifier, set on pending -> running
    remote_job_id = Column(String(128), nullable=True, index=True)
    options = Column(JSON, nullable=True)
    progress = Column(Integer, default=0, nullable=False)
    error_message = Column(Text, nullable=True)

    # Quota period this audit was charged to (needed to refund a failed start)
    period_start = Column(DateTime, nullable=True)

    queued_at = Column(DateTime, default=utcnow, nullable=False)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    last_polled_at = Column(DateTime, nullable=True)

    result_ref = Column(String, ForeignKey("audit_results.id", ondelete="SET NULL"), nullable=True)

    __table_args__ = (
        # One active audit per project, across every API instance.
        Index(
            "uq_audit_jobs_active_project",
            "project_id",
            unique=True,
            postgresql_where=text("status IN ('pending', 'running')"),
            sqlite_where=text("status IN ('pending', 'running')"),
        ),
        Index("idx_audit_jobs_user_created", "user_id", "created_at"),
    )


class AuditResult(BaseModel):
    """Full crawler payload for a completed audit."""
    __tablename__ = "audit_results"

    audit_job_id = Column(String, nullable=False, unique=True, index=True)
    payload = Column(JSON, nullable=False)
