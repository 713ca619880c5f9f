from celery import Celery
from kombu import Queue

from app.platform.config import settings


def create_celery_app() -> Celery:
    """
    Create and configure the Celery application.

    Queue Structure:
    - audit.tracking: Long-running crawler polling, one task per audit
    - pdf.dispatch: Hand-off of PDF jobs to the render worker
    - celery: Periodic reconciliation (beat)
    """
    celery_app = Celery(
        "audit_orchestrator",
        broker=settings.CELERY_BROKER_URL,
        backend=settings.CELERY_RESULT_BACKEND,
    )

    celery_app.conf.update(
        task_serializer=settings.CELERY_TASK_SERIALIZER,
        result_serializer=settings.CELERY_RESULT_SERIALIZER,
        accept_content=[settings.CELERY_ACCEPT_CONTENT],
        timezone="UTC",
        enable_utc=True,
        task_track_started=settings.CELERY_TASK_TRACK_STARTED,
        task_time_limit=settings.CELERY_TASK_TIME_LIMIT,

        result_expires=3600,

        task_routes={
            "app.features.audit.workers.tasks.track_audit_job": {"queue": "audit.tracking"},
            "app.features.pdf.workers.tasks.dispatch_pdf_job": {"queue": "pdf.dispatch"},
            "app.features.audit.workers.tasks.reconcile_running_audits": {"queue": "celery"},
            "app.features.pdf.workers.tasks.sweep_stale_pdf_jobs": {"queue": "celery"},
        },

        task_queues=(
            Queue("default"),
            Queue("celery"),
            Queue("audit.tracking"),
            Queue("pdf.dispatch"),
        ),

        task_default_queue="default",

        worker_prefetch_multiplier=1,

        # A tracker lost with its worker is re-delivered; the persisted
        # job state makes the re-run safe.
        task_acks_late=True,
        task_reject_on_worker_lost=True,

        beat_schedule={
            "reconcile-running-audits": {
                "task": "app.features.audit.workers.tasks.reconcile_running_audits",
                "schedule": float(settings.AUDIT_RECONCILE_AFTER_SECONDS),
            },
            "sweep-stale-pdf-jobs": {
                "task": "app.features.pdf.workers.tasks.sweep_stale_pdf_jobs",
                "schedule": float(settings.PDF_SWEEP_INTERVAL_SECONDS),
            },
        },
    )

    celery_app.autodiscover_tasks(["app.features.audit.workers", "app.features.pdf.workers"])

    return celery_app


celery_app = create_celery_app()
