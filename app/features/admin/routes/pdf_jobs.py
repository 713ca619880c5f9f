from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.features.pdf.models.pdf_job import PdfJobStatus
from app.features.pdf.schemas.pdf_job import PdfJobListResponse, PdfJobResponse
from app.features.pdf.services.pdf_job_manager import PdfJobFilter, PdfJobManager
from app.platform.db.session import get_db
from app.platform.response import api_response
from app.platform.security import get_current_admin

router = APIRouter(prefix="/admin/pdf-jobs", tags=["Admin - PDF Jobs"])


@router.get(
    "",
    summary="List PDF jobs",
)
async def list_pdf_jobs(
    status: Optional[PdfJobStatus] = Query(None, description="Filter by job status"),
    requested_by: Optional[str] = Query(None, description="Filter by requesting user id"),
    project_id: Optional[str] = Query(None, description="Filter by project id"),
    page: int = Query(1, ge=1, description="Page number"),
    per_page: int = Query(20, ge=1, le=100, description="Items per page"),
    current_admin: dict = Depends(get_current_admin),
    db: AsyncSession = Depends(get_db),
):
    """
    Read-only listing of PDF jobs, newest first.
    """
    manager = PdfJobManager(db)
    jobs, total = await manager.list_jobs(
        PdfJobFilter(
            status=status,
            requested_by=requested_by,
            project_id=project_id,
            page=page,
            per_page=per_page,
        )
    )

    return api_response(
        data=PdfJobListResponse(
            jobs=[PdfJobResponse.model_validate(job) for job in jobs],
            total=total,
            page=page,
            per_page=per_page,
            pages=(total + per_page - 1) // per_page,
        ).model_dump(),
        message="PDF jobs retrieved successfully",
    )


@router.get(
    "/stats",
    summary="Get PDF job counts by status",
)
async def get_pdf_job_stats(
    current_admin: dict = Depends(get_current_admin),
    db: AsyncSession = Depends(get_db),
):
    counts = await PdfJobManager(db).status_counts()

    return api_response(
        data={"by_status": counts, "total": sum(counts.values())},
        message="PDF job statistics retrieved successfully",
    )
