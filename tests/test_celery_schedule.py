from dataclasses import replace
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from license_billing import tasks
from license_billing.celery_app import (
    DRAIN_TASK,
    REQUEUE_STALE_TASK,
    SWEEP_ORPHANS_TASK,
    build_beat_schedule,
    get_celery_config,
)
from license_billing.services.queue import DrainResult


def test_no_periodic_drain_without_interval(config):
    assert build_beat_schedule(replace(config, queue_drain_interval_seconds=0)) == {}


def test_beat_schedule_with_interval(config):
    schedule = build_beat_schedule(
        replace(config, queue_drain_interval_seconds=30, queue_stale_processing_seconds=10)
    )

    assert schedule["drain_subscription_queue"]["task"] == DRAIN_TASK
    assert schedule["drain_subscription_queue"]["schedule"] == timedelta(seconds=30)
    assert schedule["drain_subscription_queue"]["kwargs"] == {"limit": 10}
    # Stale sweep never runs more often than once a minute.
    assert schedule["requeue_stale_queue_items"]["schedule"] == timedelta(seconds=60)
    assert schedule["requeue_stale_queue_items"]["task"] == REQUEUE_STALE_TASK
    assert schedule["sweep_orphaned_quantity_items"]["task"] == SWEEP_ORPHANS_TASK


def test_celery_config_result_backend_optional(config):
    base = get_celery_config(replace(config, celery_result_backend=""))
    with_backend = get_celery_config(
        replace(config, celery_result_backend="redis://localhost:6379/2")
    )

    assert "result_backend" not in base
    assert base["task_acks_late"] is True
    assert with_backend["result_backend"] == "redis://localhost:6379/2"


def test_drain_task_commits_and_returns_counts():
    session = MagicMock()
    service = MagicMock()
    service.process_batch.return_value = DrainResult(processed=2, success_count=1, fail_count=1)
    with (
        patch.object(tasks, "SessionLocal", return_value=session),
        patch.object(tasks, "QueueService", return_value=service),
    ):
        result = tasks.drain_subscription_queue(limit=5)

    assert result == {"processed": 2, "successCount": 1, "failCount": 1}
    service.process_batch.assert_called_once_with(limit=5)
    session.commit.assert_called_once()
    session.close.assert_called_once()


def test_sweep_task_rolls_back_on_failure():
    session = MagicMock()
    service = MagicMock()
    service.sweep_orphaned_items.side_effect = RuntimeError("provider down")
    with (
        patch.object(tasks, "SessionLocal", return_value=session),
        patch.object(tasks, "QueueService", return_value=service),
        pytest.raises(RuntimeError),
    ):
        tasks.sweep_orphaned_quantity_items()

    session.rollback.assert_called_once()
    session.commit.assert_not_called()
    session.close.assert_called_once()
