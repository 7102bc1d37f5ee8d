"""
Read/write helpers for the Subscription Store and the owner directory.

All mutations are single-row, keyed by owner. `commit` is the one place where
SQLAlchemy failures are translated into the billing error taxonomy.
"""
import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from billing_service.core.errors import ConflictError, PersistenceError
from billing_service.models.subscription import Subscription
from billing_service.models.user import User
from billing_service.utils.clock import utcnow

logger = logging.getLogger(__name__)


def commit(db: Session) -> None:
    try:
        db.commit()
    except StaleDataError as e:
        db.rollback()
        raise ConflictError("Subscription was modified concurrently; retry the request") from e
    except IntegrityError as e:
        db.rollback()
        raise ConflictError("Conflicting write") from e
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("Database commit failed: %s", e)
        raise PersistenceError("Could not save subscription state") from e


def get_subscription(db: Session, owner_id: str) -> Optional[Subscription]:
    return db.query(Subscription).filter(Subscription.owner_id == owner_id).first()


def get_or_create_subscription(db: Session, owner_id: str) -> Subscription:
    subscription = get_subscription(db, owner_id)
    if subscription is None:
        now = utcnow()
        subscription = Subscription(
            owner_id=owner_id,
            is_active=False,
            autopay_enabled=False,
            created_at=now,
            updated_at=now,
        )
        db.add(subscription)
    return subscription


def find_by_external_id(db: Session, external_id: Optional[str]) -> Optional[Subscription]:
    if not external_id:
        return None
    return (
        db.query(Subscription)
        .filter(Subscription.external_subscription_id == external_id)
        .first()
    )


def upsert_owner(db: Session, owner_id: str, email: Optional[str]) -> User:
    """Record the caller's email in the owner directory. Flushed with the caller's next commit."""
    user = db.query(User).filter(User.id == owner_id).first()
    if user is None:
        user = User(id=owner_id, email=email, notify_billing=True)
        db.add(user)
    elif email and user.email != email:
        user.email = email
    return user
