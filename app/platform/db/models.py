# Import every model so Base.metadata is complete (alembic, tests, create_all).
from app.platform.db.base import Base  # noqa: F401
from app.features.audit.models.audit_job import AuditJob, AuditResult  # noqa: F401
from app.features.pdf.models.pdf_job import PdfJob  # noqa: F401
from app.features.quota.models.quota_record import QuotaRecord, UserSubscription  # noqa: F401
