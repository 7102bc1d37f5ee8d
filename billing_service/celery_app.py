from celery import Celery
from celery.schedules import crontab

from billing_service.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "billing_service",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_BROKER_URL,
    include=["billing_service.tasks.billing_tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
)

# Drift jobs run off-peak and staggered so they don't contend for the same rows.
celery_app.conf.beat_schedule = {
    "reconcile-renewals": {
        "task": "reconcile_renewals",
        "schedule": crontab(minute=0, hour="*/6"),
    },
    "reconcile-installments": {
        "task": "reconcile_installments",
        "schedule": crontab(minute=15, hour="*/6"),
    },
    "reconcile-timestamps": {
        "task": "reconcile_timestamps",
        "schedule": crontab(minute=30, hour=2),
    },
    "reconcile-validity": {
        "task": "reconcile_validity",
        "schedule": crontab(minute=45, hour=2),
    },
    "expire-installments": {
        "task": "expire_installments",
        "schedule": crontab(minute=5),
    },
    "retry-provider-cancellations": {
        "task": "retry_provider_cancellations",
        "schedule": crontab(minute="*/15"),
    },
    "send-expiry-reminders": {
        "task": "send_expiry_reminders",
        "schedule": crontab(minute=0, hour=9),
    },
    "prune-webhook-events": {
        "task": "prune_webhook_events",
        "schedule": crontab(minute=0, hour=4),
    },
}
