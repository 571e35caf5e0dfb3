"""
Owner-scoped record lookup shared by every service.

A decision that is absent, soft-deleted, or owned by another user all look
the same from here: NotFoundError.
"""
import logging
from typing import Callable, TypeVar

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from ..exceptions import DependencyUnavailableError, NotFoundError
from ..models.db_models import DecisionDB

logger = logging.getLogger(__name__)

T = TypeVar("T")


def read_with_retry(db: Session, read: Callable[[], T], operation: str) -> T:
    """Run an idempotent read, retrying once on a transient store error."""
    try:
        return read()
    except OperationalError as e:
        logger.warning(f"Store error during {operation}, retrying once: {e}")
        db.rollback()
    try:
        return read()
    except OperationalError as e:
        raise DependencyUnavailableError(f"store unavailable during {operation}") from e


def get_owned_decision(
    db: Session,
    decision_id: str,
    user_id: str,
    include_deleted: bool = False,
) -> DecisionDB:
    query = db.query(DecisionDB).filter(
        DecisionDB.id == decision_id,
        DecisionDB.user_id == user_id,
    )
    if not include_deleted:
        query = query.filter(DecisionDB.is_deleted.is_(False))

    decision = read_with_retry(db, query.first, "get_decision")
    if decision is None:
        raise NotFoundError("decision", decision_id)
    return decision
