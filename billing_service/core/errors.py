"""
Error taxonomy for the billing engine.

Services raise these; `billing_service.main` turns them into JSON responses.
Batch jobs catch them per record and report them instead of failing the batch.
"""
from fastapi import status


class BillingError(Exception):
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, detail: str = ""):
        super().__init__(detail)
        self.detail = detail or self.__class__.__name__


class AuthError(BillingError):
    """Caller is not authenticated."""
    status_code = status.HTTP_401_UNAUTHORIZED


class ForbiddenError(BillingError):
    """Caller is authenticated but not allowed to do this."""
    status_code = status.HTTP_403_FORBIDDEN


class ValidationError(BillingError):
    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundError(BillingError):
    status_code = status.HTTP_404_NOT_FOUND


class SignatureError(BillingError):
    """HMAC signature did not match; nothing was changed."""
    status_code = status.HTTP_400_BAD_REQUEST


class ProviderError(BillingError):
    """The billing provider call failed. Never proof that a state change did or did not happen."""
    status_code = status.HTTP_502_BAD_GATEWAY


class PersistenceError(BillingError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


class ConflictError(BillingError):
    """Row was modified by another writer since it was read."""
    status_code = status.HTTP_409_CONFLICT
