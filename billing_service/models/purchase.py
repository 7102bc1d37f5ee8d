from sqlalchemy import Column, String, DateTime
from billing_service.db.base import Base
from billing_service.utils.clock import utcnow


class Purchase(Base):
    """
    One-time product purchase. The billing engine only flips its status from
    payment.captured / payment.failed events; catalog and fulfilment live elsewhere.
    """

    __tablename__ = "purchases"

    id = Column(String, primary_key=True)
    owner_id = Column(String, nullable=True, index=True)
    razorpay_order_id = Column(String, nullable=True, index=True)
    status = Column(String, nullable=False, default="pending")  # pending | paid | failed
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
