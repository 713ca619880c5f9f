from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from app.features.audit.models.audit_job import AuditJobStatus


class AuditRequest(BaseModel):
    project_id: str = Field(..., min_length=1)
    options: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        json_schema_extra = {
            "example": {
                "project_id": "0192f3c4-7d1e-7a55-9b1e-3f0a6c2d9e10",
                "options": {"maxPages": 25, "checks": ["seo", "performance"]},
            }
        }


class AuditJobResponse(BaseModel):
    id: str
    project_id: str
    user_id: str
    status: AuditJobStatus
    remote_job_id: Optional[str] = None
    progress: int = 0
    error_message: Optional[str] = None
    result_ref: Optional[str] = None
    queued_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_polled_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class AuditStatusResponse(AuditJobResponse):
    results: Optional[Dict[str, Any]] = None


class AuditJobListResponse(BaseModel):
    jobs: List[AuditJobResponse]
    total: int
    page: int
    per_page: int
    pages: int


class CrawlerHealthResponse(BaseModel):
    available: bool
    checked_at: datetime
    latency_ms: float
    error: Optional[str] = None


class AuditWebhookRequest(BaseModel):
    """Outcome pushed by the crawler for an audit it was asked to run."""

    audit_id: str = Field(..., min_length=1)
    project_id: str = Field(..., min_length=1)
    status: str = Field(..., min_length=1)
    progress: Optional[int] = Field(None, ge=0, le=100)
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "audit_id": "0192f3c4-8a20-7c11-a3e5-77b0d1f4e2aa",
                "project_id": "0192f3c4-7d1e-7a55-9b1e-3f0a6c2d9e10",
                "status": "completed",
                "result": {"score": 87, "pages": []},
            }
        }
