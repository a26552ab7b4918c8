"""
Celery app for the maintenance sweeps.

Usage:
    celery -A app.tasks.celery_app worker --loglevel=INFO
    celery -A app.tasks.celery_app beat --loglevel=INFO
"""
from __future__ import annotations

import os

from celery import Celery
from celery.schedules import crontab

from config import Config


def make_celery(cfg: Config | None = None) -> Celery:
    """
    Celery with the Redis broker from REDIS_URL.

    CELERY_RESULT_BACKEND may point results elsewhere; it defaults to the broker.
    """
    cfg = cfg or Config()
    result_backend = os.getenv("CELERY_RESULT_BACKEND", cfg.REDIS_URL)

    app = Celery(
        "labourflow",
        broker=cfg.REDIS_URL,
        backend=result_backend,
        include=["app.tasks.maintenance"],
    )

    app.conf.update(
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        timezone=cfg.APP_TIMEZONE,
        enable_utc=True,
        result_expires=86400,
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,
        worker_concurrency=int(os.getenv("CELERY_CONCURRENCY", "2")),
        task_default_retry_delay=60,
        task_max_retries=3,
        beat_schedule={
            "cleanup-hourly": {
                "task": "maintenance.cleanup",
                "schedule": crontab(minute=0),
            },
            "delete-accounts-hourly": {
                "task": "maintenance.delete_accounts",
                "schedule": crontab(minute=30),
            },
            "overdue-labour-reminders-daily": {
                "task": "maintenance.overdue_labour_reminders",
                "schedule": crontab(hour=cfg.SCHEDULER_HOUR, minute=cfg.SCHEDULER_MINUTE),
            },
            "purge-archived-notifications-daily": {
                "task": "maintenance.purge_archived_notifications",
                "schedule": crontab(hour=3, minute=0),
            },
        },
    )

    return app


celery_app = make_celery()
