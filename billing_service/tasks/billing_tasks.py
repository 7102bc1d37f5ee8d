"""
Scheduled billing jobs. Each task opens its own session, runs one job and
returns the job report (datetimes as ISO strings for the JSON result backend).
"""
import logging
from contextlib import contextmanager

from fastapi.encoders import jsonable_encoder

from billing_service.celery_app import celery_app
from billing_service.core.config import get_settings
from billing_service.db.session import SessionLocal
from billing_service.services import expiry_notifier, reconciliation
from billing_service.services.razorpay_client import RazorpayClient

logger = logging.getLogger(__name__)


@contextmanager
def _job_context(with_provider: bool = False):
    settings = get_settings()
    db = SessionLocal()
    provider = RazorpayClient(settings) if with_provider else None
    try:
        yield db, provider, settings
    except Exception:
        db.rollback()
        raise
    finally:
        if provider is not None:
            provider.close()
        db.close()


@celery_app.task(name="reconcile_renewals")
def reconcile_renewals():
    with _job_context(with_provider=True) as (db, provider, settings):
        return jsonable_encoder(reconciliation.reconcile_renewals(db, provider, settings))


@celery_app.task(name="reconcile_validity")
def reconcile_validity():
    with _job_context() as (db, _, settings):
        return jsonable_encoder(reconciliation.reconcile_validity(db, settings))


@celery_app.task(name="reconcile_timestamps")
def reconcile_timestamps():
    with _job_context() as (db, _, settings):
        return jsonable_encoder(reconciliation.reconcile_timestamps(db, settings))


@celery_app.task(name="reconcile_installments")
def reconcile_installments():
    with _job_context(with_provider=True) as (db, provider, settings):
        return jsonable_encoder(reconciliation.reconcile_installments(db, provider, settings))


@celery_app.task(name="expire_installments")
def expire_installments():
    with _job_context(with_provider=True) as (db, provider, settings):
        return jsonable_encoder(reconciliation.expire_installments(db, provider, settings))


@celery_app.task(name="retry_provider_cancellations")
def retry_provider_cancellations():
    with _job_context(with_provider=True) as (db, provider, settings):
        return jsonable_encoder(reconciliation.retry_provider_cancellations(db, provider, settings))


@celery_app.task(name="send_expiry_reminders")
def send_expiry_reminders():
    with _job_context() as (db, _, settings):
        return jsonable_encoder(expiry_notifier.send_expiry_reminders(db, settings))


@celery_app.task(name="prune_webhook_events")
def prune_webhook_events():
    with _job_context() as (db, _, settings):
        return jsonable_encoder(reconciliation.prune_webhook_events(db, settings))
