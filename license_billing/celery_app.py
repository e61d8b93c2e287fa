"""Celery application for the periodic queue maintenance tasks.

Run a worker with::

    celery -A license_billing.celery_app worker --beat
"""

from datetime import timedelta

from celery import Celery

from license_billing.config import Settings, settings

DRAIN_TASK = "license_billing.drain_subscription_queue"
REQUEUE_STALE_TASK = "license_billing.requeue_stale_queue_items"
SWEEP_ORPHANS_TASK = "license_billing.sweep_orphaned_quantity_items"


def get_celery_config(config: Settings) -> dict:
    celery_config = {
        "broker_url": config.celery_broker_url,
        "timezone": config.celery_timezone or "UTC",
        "task_acks_late": True,
        "worker_prefetch_multiplier": 1,
    }
    if config.celery_result_backend:
        celery_config["result_backend"] = config.celery_result_backend
    return celery_config


def build_beat_schedule(config: Settings) -> dict:
    """Periodic entries; the drain only runs on a timer when an interval is configured."""
    schedule: dict[str, dict] = {}
    if config.queue_drain_interval_seconds > 0:
        schedule["drain_subscription_queue"] = {
            "task": DRAIN_TASK,
            "schedule": timedelta(seconds=config.queue_drain_interval_seconds),
            "kwargs": {"limit": 10},
        }
        schedule["requeue_stale_queue_items"] = {
            "task": REQUEUE_STALE_TASK,
            "schedule": timedelta(seconds=max(config.queue_stale_processing_seconds, 60)),
        }
        schedule["sweep_orphaned_quantity_items"] = {
            "task": SWEEP_ORPHANS_TASK,
            "schedule": timedelta(hours=1),
        }
    return schedule


celery_app = Celery("license_billing", include=["license_billing.tasks"])
celery_app.conf.update(get_celery_config(settings))
celery_app.conf.beat_schedule = build_beat_schedule(settings)
