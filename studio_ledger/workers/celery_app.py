from celery import Celery

from studio_ledger.core.config import get_settings

settings = get_settings()

QUEUE_HIGH = "q_high"
QUEUE_NORMAL = "q_normal"

celery_app = Celery(
    "studio_ledger",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        "studio_ledger.workers.tasks.monthly_grant",
        "studio_ledger.workers.tasks.refund_retry",
    ],
)

celery_app.conf.update(
    task_default_queue=QUEUE_NORMAL,
    task_routes={
        "studio_ledger.workers.tasks.refund_retry.*": {"queue": QUEUE_HIGH},
        "studio_ledger.workers.tasks.monthly_grant.*": {"queue": QUEUE_NORMAL},
    },
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_soft_time_limit=120,
    task_time_limit=180,
    result_expires=24 * 60 * 60,
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
)
