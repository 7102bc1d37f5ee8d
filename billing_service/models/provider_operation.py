"""
Saga log for remote calls made on behalf of a command.

A row is committed as `pending` before the provider is called, then moved to
`succeeded` or `failed` together with the local state change. Rows left
pending (crash mid-flight) or failed are retried by the reconciliation sweep.
"""
from sqlalchemy import Column, Integer, String, DateTime, Text
from billing_service.db.base import Base
from billing_service.utils.clock import utcnow

OPERATION_CANCEL = "cancel"

STATUS_PENDING = "pending"
STATUS_SUCCEEDED = "succeeded"
STATUS_FAILED = "failed"


class ProviderOperation(Base):
    __tablename__ = "provider_operations"

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(String, nullable=False, index=True)
    operation = Column(String(50), nullable=False, default=OPERATION_CANCEL)
    external_id = Column(String, nullable=False, index=True)
    status = Column(String(20), nullable=False, default=STATUS_PENDING, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    completed_at = Column(DateTime, nullable=True)
