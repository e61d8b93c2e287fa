"""Administrative queue drain and status routes."""

import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from license_billing.api.deps import get_db, get_stripe_gateway, require_admin_token
from license_billing.config import Settings, get_settings
from license_billing.schemas.billing import ProcessQueueRequest, ProcessQueueResponse
from license_billing.services.queue import QueueService
from license_billing.services.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)
router = APIRouter(tags=["queue"], dependencies=[Depends(require_admin_token)])


@router.post("/process-queue", response_model=ProcessQueueResponse)
def process_queue(
    payload: ProcessQueueRequest | None = None,
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
    config: Settings = Depends(get_settings),
) -> ProcessQueueResponse:
    """Drain due queue rows; every row commits on its own."""
    limit = payload.limit if payload else ProcessQueueRequest().limit
    result = QueueService(db, gateway, config).process_batch(limit=limit)
    db.commit()
    logger.info("Queue drain: %s", result.as_dict())
    return ProcessQueueResponse(**result.as_dict())


@router.get("/queue-status")
def queue_status(
    payment_intent_id: str = Query(min_length=1),
    db: Session = Depends(get_db),
) -> dict:
    return QueueService(db).status_for_payment_intent(payment_intent_id)
