from fastapi import APIRouter

from app.features.admin.routes.pdf_jobs import router as admin_pdf_jobs_router
from app.features.audit.routes.audit import router as audit_router
from app.features.audit.routes.crawler import router as crawler_router
from app.features.health.routes.health import router as health_router
from app.features.pdf.routes.pdf_jobs import router as pdf_jobs_router

api_router = APIRouter()

# Register all feature routes
api_router.include_router(health_router)
api_router.include_router(crawler_router)
api_router.include_router(audit_router)
api_router.include_router(pdf_jobs_router)

# Admin routes
api_router.include_router(admin_pdf_jobs_router)
