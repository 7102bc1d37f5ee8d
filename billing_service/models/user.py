from sqlalchemy import Column, String, Boolean, DateTime
from sqlalchemy.sql import func
from billing_service.db.base import Base


class User(Base):
    """Owner directory: where notifications for an owner id are delivered."""
    __tablename__ = "users"

    id = Column(String, primary_key=True)  # Opaque owner id (JWT `sub`)
    email = Column(String, index=True, nullable=True)
    notify_billing = Column(Boolean, default=True, nullable=False)  # Email for billing/renewals
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
