"""
Maintenance sweeps as Celery tasks.

Each task runs one cron action as the SYSTEM actor in its own transaction,
the same way ``/cron/*`` does over HTTP.
"""
from __future__ import annotations

import logging
import threading

from app.tasks import celery_app
from config import Config
from db import SessionLocal, init_engine
from services.notification_bus import init_notification_bus
from utils import SYSTEM_ACTOR

_log = logging.getLogger("tasks")

_runtime_lock = threading.Lock()
_runtime_cfg: Config | None = None

# Sweep name (as used by /jobs/<sweep>) -> action.
SWEEP_ACTIONS = {
    "cleanup": "CRON_CLEANUP",
    "delete-accounts": "CRON_DELETE_ACCOUNTS",
    "overdue-labour-reminders": "CRON_OVERDUE_LABOUR_REMINDERS",
    "purge-archived-notifications": "NOTIFICATIONS_PURGE_ARCHIVED",
}


def _runtime() -> Config:
    global _runtime_cfg
    with _runtime_lock:
        if _runtime_cfg is None:
            cfg = Config()
            cfg.validate()
            init_engine(cfg.DATABASE_URL)
            init_notification_bus(cfg)
            _runtime_cfg = cfg
        return _runtime_cfg


def run_sweep(action: str, cfg: Config | None = None) -> dict:
    from actions import dispatch

    cfg = cfg or _runtime()
    db = SessionLocal()
    try:
        out = dispatch(action, {}, SYSTEM_ACTOR, db, cfg)
        db.commit()
        _log.info("sweep=%s result=%s", action, out)
        return out
    except Exception:
        db.rollback()
        _log.exception("sweep=%s failed", action)
        raise
    finally:
        db.close()


@celery_app.task(name="maintenance.cleanup", bind=True, max_retries=3, default_retry_delay=60)
def cleanup(self):
    return run_sweep("CRON_CLEANUP")


@celery_app.task(name="maintenance.delete_accounts", bind=True, max_retries=3, default_retry_delay=60)
def delete_accounts(self):
    return run_sweep("CRON_DELETE_ACCOUNTS")


@celery_app.task(name="maintenance.overdue_labour_reminders", bind=True, max_retries=3, default_retry_delay=60)
def overdue_labour_reminders(self):
    return run_sweep("CRON_OVERDUE_LABOUR_REMINDERS")


@celery_app.task(name="maintenance.purge_archived_notifications", bind=True, max_retries=3, default_retry_delay=60)
def purge_archived_notifications(self):
    return run_sweep("NOTIFICATIONS_PURGE_ARCHIVED")


SWEEP_TASKS = {
    "cleanup": cleanup,
    "delete-accounts": delete_accounts,
    "overdue-labour-reminders": overdue_labour_reminders,
    "purge-archived-notifications": purge_archived_notifications,
}
