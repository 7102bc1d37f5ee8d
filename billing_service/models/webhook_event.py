from sqlalchemy import Column, String, DateTime
from billing_service.db.base import Base
from billing_service.utils.clock import utcnow


class ProcessedWebhookEvent(Base):
    """Provider event ids already applied; re-deliveries are acknowledged without side effects."""
    __tablename__ = "processed_webhook_events"

    event_id = Column(String(255), primary_key=True)
    event_type = Column(String(100), nullable=False, index=True)
    received_at = Column(DateTime, nullable=False, default=utcnow, index=True)
