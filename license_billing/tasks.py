import logging

from license_billing.celery_app import (
    DRAIN_TASK,
    REQUEUE_STALE_TASK,
    SWEEP_ORPHANS_TASK,
    celery_app,
)
from license_billing.db import SessionLocal
from license_billing.services.queue import QueueService

logger = logging.getLogger(__name__)


@celery_app.task(name=DRAIN_TASK)
def drain_subscription_queue(limit: int = 10) -> dict:
    session = SessionLocal()
    try:
        result = QueueService(session).process_batch(limit=limit)
        session.commit()
    except Exception:
        session.rollback()
        logger.exception("Queue drain task failed")
        raise
    finally:
        session.close()
    return result.as_dict()


@celery_app.task(name=REQUEUE_STALE_TASK)
def requeue_stale_queue_items() -> int:
    session = SessionLocal()
    try:
        requeued = QueueService(session).requeue_stale_processing()
        session.commit()
    except Exception:
        session.rollback()
        logger.exception("Stale queue sweep failed")
        raise
    finally:
        session.close()
    if requeued:
        logger.warning("Requeued %d stale processing rows", requeued)
    return requeued


@celery_app.task(name=SWEEP_ORPHANS_TASK)
def sweep_orphaned_quantity_items() -> int:
    session = SessionLocal()
    try:
        removed = QueueService(session).sweep_orphaned_items()
        session.commit()
    except Exception:
        session.rollback()
        logger.exception("Orphaned item sweep failed")
        raise
    finally:
        session.close()
    return removed
