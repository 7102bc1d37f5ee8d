from billing_service.models.user import User
from billing_service.models.subscription import Subscription
from billing_service.models.weekly_installment import WeeklyInstallmentTracker
from billing_service.models.webhook_event import ProcessedWebhookEvent
from billing_service.models.provider_operation import ProviderOperation
from billing_service.models.purchase import Purchase

__all__ = [
    "User",
    "Subscription",
    "WeeklyInstallmentTracker",
    "ProcessedWebhookEvent",
    "ProviderOperation",
    "Purchase",
]
