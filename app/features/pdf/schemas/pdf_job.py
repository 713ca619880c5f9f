"""
PDF Job Schemas

Request and response models for PDF generation, render worker callbacks
and the admin job listing.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from app.features.pdf.models.pdf_job import PdfJobStatus


# ============================================================================
# User-facing
# ============================================================================

class PdfJobCreate(BaseModel):
    """Request to render an audit report as PDF."""
    project_id: str = Field(..., min_length=1)
    template_id: str = Field(..., min_length=1, max_length=128)
    theme: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        json_schema_extra = {
            "example": {
                "project_id": "0192f3c4-7d1e-7a55-9b1e-3f0a6c2d9e10",
                "template_id": "executive-summary",
                "theme": {"primaryColor": "#1d4ed8", "clientName": "Acme Ltd"},
            }
        }


class PdfJobCreated(BaseModel):
    job_id: str
    status: str


class PdfJobResponse(BaseModel):
    id: str
    requested_by: str
    project_id: str
    template_id: str
    theme: Optional[Dict[str, Any]] = None
    status: PdfJobStatus
    attempts: int
    max_attempts: int
    progress: int
    last_error: Optional[str] = None
    artifact_ref: Optional[str] = None
    queued_at: datetime
    dispatched_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    heartbeat_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class PdfJobListResponse(BaseModel):
    jobs: List[PdfJobResponse]
    total: int
    page: int
    per_page: int
    pages: int


# ============================================================================
# Render worker callbacks
# ============================================================================

class PdfHeartbeatRequest(BaseModel):
    progress: Optional[int] = Field(None, ge=0, le=100)


class PdfCompleteRequest(BaseModel):
    artifact_ref: str = Field(..., min_length=1, max_length=1024)

    class Config:
        json_schema_extra = {
            "example": {"artifact_ref": "s3://reports/0192f3c4/report.pdf"}
        }


class PdfFailRequest(BaseModel):
    error: str = Field(..., min_length=1)
    retryable: bool = True
