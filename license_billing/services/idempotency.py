import logging
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from license_billing.models.billing import IdempotencyKey

logger = logging.getLogger(__name__)


def claim_operation(db: Session, operation_id: str, data: dict[str, Any] | None = None) -> bool:
    """Insert the marker for ``operation_id``; False when it was already claimed.

    The unique constraint is the only guard, so two concurrent deliveries
    cannot both win. The insert runs in a savepoint and commits with the
    caller's transaction.
    """
    try:
        with db.begin_nested():
            db.add(IdempotencyKey(operation_id=operation_id, operation_data=data))
            db.flush()
    except IntegrityError:
        logger.info("Operation %s already processed", operation_id)
        return False
    return True

