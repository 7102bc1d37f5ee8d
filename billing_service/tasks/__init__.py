from billing_service.tasks.billing_tasks import (
    reconcile_renewals,
    reconcile_validity,
    reconcile_timestamps,
    reconcile_installments,
    expire_installments,
    retry_provider_cancellations,
    send_expiry_reminders,
    prune_webhook_events,
)

__all__ = [
    'reconcile_renewals',
    'reconcile_validity',
    'reconcile_timestamps',
    'reconcile_installments',
    'expire_installments',
    'retry_provider_cancellations',
    'send_expiry_reminders',
    'prune_webhook_events',
]
