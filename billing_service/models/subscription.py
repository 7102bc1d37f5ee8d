from sqlalchemy import Column, Integer, String, Boolean, DateTime
from billing_service.db.base import Base
from billing_service.db.types import PlanType
from billing_service.utils.clock import utcnow


class Subscription(Base):
    """
    Local entitlement record, one row per owner.

    Razorpay is the source of truth for whether money moved; this row is what
    the marketplace checks for access. `updated_at` is written explicitly by
    every writer because the reconciliation jobs use it as the duration anchor.
    """

    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(String, nullable=False, unique=True, index=True)
    plan = Column(PlanType(), nullable=True)
    is_active = Column(Boolean, nullable=False, default=False)
    valid_until = Column(DateTime, nullable=True)  # None = never computed, not unlimited
    autopay_enabled = Column(Boolean, nullable=False, default=False)
    external_subscription_id = Column(String, unique=True, nullable=True)  # Razorpay sub_...
    expiry_email_sent = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=True, default=utcnow)
    # Optimistic lock: every UPDATE is conditional on the version that was read.
    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self):
        return (
            f"<Subscription(owner_id={self.owner_id}, plan={self.plan}, active={self.is_active}, "
            f"valid_until={self.valid_until}, autopay={self.autopay_enabled})>"
        )
