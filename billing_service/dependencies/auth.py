import hmac
import logging
from dataclasses import dataclass
from typing import Optional

import jwt  # PyJWT
from fastapi import Depends, Header

from billing_service.core.config import Settings, get_settings
from billing_service.core.errors import AuthError, ForbiddenError

logger = logging.getLogger(__name__)


@dataclass
class Owner:
    id: str
    email: Optional[str] = None


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise AuthError("Missing authorization header")
    if not authorization.startswith("Bearer "):
        raise AuthError("Invalid header format. Expected 'Bearer <token>'")
    token = authorization[len("Bearer "):].strip()
    # Reject common invalid token values sent by broken clients
    if token.lower() in ("", "null", "undefined", "none"):
        raise AuthError("Missing token")
    return token


def decode_token(token: str, settings: Settings) -> dict:
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise AuthError("Token expired")
    except jwt.PyJWTError as e:
        logger.info("[AUTH] Token verification failed: %s", e)
        raise AuthError("Invalid token")


def get_current_owner(
    authorization: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings),
) -> Owner:
    """Verifies the bearer JWT and returns the owner it was issued to (`sub`)."""
    payload = decode_token(_bearer_token(authorization), settings)
    owner_id = payload.get("sub")
    if not owner_id:
        raise AuthError("Token missing user ID claim")
    return Owner(id=str(owner_id), email=payload.get("email"))


def require_operator(
    authorization: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings),
) -> str:
    """
    Scheduler or admin. Accepts the shared cron secret, or a JWT whose subject
    is listed in ADMIN_OWNER_IDS. Returns a label for logging.
    """
    token = _bearer_token(authorization)
    if settings.CRON_SECRET and hmac.compare_digest(token, settings.CRON_SECRET):
        return "cron"
    payload = decode_token(token, settings)
    owner_id = str(payload.get("sub") or "")
    if owner_id and owner_id in settings.ADMIN_OWNER_IDS:
        return owner_id
    raise ForbiddenError("Admin access required")
