from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

from sqlalchemy import select

from app.tasks.maintenance import run_sweep
from db import SessionLocal
from factories import CRON_HEADERS, auth_headers, seed_placed_at_stage, seed_user, seed_world
from models import Agency, AuditLog, Notification, User
from utils import iso_utc


def test_cron_requires_secret(app_client):
    _app, client = app_client
    assert client.post("/cron/cleanup").status_code == 401
    res = client.post("/cron/cleanup", headers={"X-Cron-Secret": "nope"})
    assert res.status_code == 401
    assert res.get_json()["error"]["code"] == "AUTH_INVALID"

    bearer = client.get("/cron/cleanup", headers={"Authorization": "Bearer test-cron-secret"})
    assert bearer.status_code == 200
    assert bearer.get_json()["data"]["immediateDeletions"] == 0


def test_rejected_agency_removed_by_cleanup(app_client):
    _app, client = app_client
    w = seed_world(client)

    short = client.put(
        f"/agencies/{w.agency_id}/status",
        json={"status": "REJECTED", "reason": "bad"},
        headers=auth_headers(w.admin_token),
    )
    assert short.status_code == 400

    res = client.put(
        f"/agencies/{w.agency_id}/status",
        json={"status": "REJECTED", "reason": "License could not be verified", "deletionType": "IMMEDIATE"},
        headers=auth_headers(w.admin_token),
    )
    assert res.status_code == 200, res.get_json()
    assert res.get_json()["data"]["user"]["deletionType"] == "IMMEDIATE"

    # Sessions were revoked with the rejection.
    assert client.get("/notifications/count", headers=auth_headers(w.agency_token)).status_code == 401

    swept = client.post("/cron/cleanup", headers=CRON_HEADERS)
    assert swept.status_code == 200, swept.get_json()
    assert swept.get_json()["data"]["immediateDeletions"] == 1

    with SessionLocal() as db:
        assert db.get(User, w.agency_user) is None
        assert db.get(Agency, w.agency_id) is None
        audit = db.execute(select(AuditLog).where(AuditLog.action == "ACCOUNT_DELETED")).scalar_one()
        assert audit.entityType == "Agency"
        assert audit.entityId == w.agency_id
        assert audit.actorUserId == "SYSTEM"


def test_delete_accounts_honours_grace_period(app_client):
    _app, client = app_client
    now = datetime.now(timezone.utc)
    seed_user(user_id="USR-OLD", email="old@example.com", role="CLIENT")
    seed_user(user_id="USR-NEW", email="new@example.com", role="CLIENT")
    with SessionLocal() as db:
        old = db.get(User, "USR-OLD")
        old.deleteAt = iso_utc(now - timedelta(days=2))
        old.deletionType = "SCHEDULED"
        new = db.get(User, "USR-NEW")
        new.deleteAt = iso_utc(now - timedelta(hours=1))
        new.deletionType = "SCHEDULED"
        db.commit()

    res = client.post("/cron/delete-accounts", headers=CRON_HEADERS)
    assert res.status_code == 200
    assert res.get_json()["data"] == {"message": "Deleted 1 accounts", "deletedAccounts": 1}
    with SessionLocal() as db:
        assert db.get(User, "USR-OLD") is None
        assert db.get(User, "USR-NEW") is not None


def test_overdue_reminders_notify_agency_and_client(app_client):
    _app, client = app_client
    w = seed_world(client)
    stale = iso_utc(datetime.now(timezone.utc) - timedelta(days=10))
    seed_placed_at_stage(assignment_id="ASG-1", labour_id="LAB-1", stage="VISA_APPLYING", updated_at=stale)
    seed_placed_at_stage(assignment_id="ASG-2", labour_id="LAB-2", stage="VISA_APPLYING")

    res = client.post("/cron/overdue-labour-reminders", headers=CRON_HEADERS)
    assert res.status_code == 200, res.get_json()
    assert res.get_json()["data"] == {"remindersSent": 2}

    with SessionLocal() as db:
        rows = db.execute(select(Notification).where(Notification.type == "STAGE_PENDING_ACTION")).scalars().all()
    assert {n.recipientId for n in rows} == {w.agency_user, w.client_user}
    assert {n.entityId for n in rows} == {"LAB-1"}
    assert all(n.priority == "HIGH" for n in rows)


def test_run_sweep_outside_request(app_client):
    app, _client = app_client
    out = run_sweep("NOTIFICATIONS_PURGE_ARCHIVED", app.config["CFG"])
    assert out == {"deleted": 0}


def test_jobs_enqueue_sweep(app_client):
    _app, client = app_client
    fake_task = MagicMock()
    fake_task.apply_async.return_value = MagicMock(id="job-123")

    with patch.dict("app.routes.jobs.SWEEP_TASKS", {"cleanup": fake_task}):
        res = client.post("/jobs/cleanup", headers=CRON_HEADERS)
        assert res.status_code == 202
        assert res.get_json()["data"] == {"job_id": "job-123", "sweep": "cleanup", "status": "queued"}
        fake_task.apply_async.assert_called_once_with()

        assert client.post("/jobs/cleanup").status_code == 401
        assert client.post("/jobs/bogus", headers=CRON_HEADERS).status_code == 404


def test_jobs_status_reports_result(app_client):
    _app, client = app_client
    result = MagicMock(state="SUCCESS", result={"deleted": 3})
    with patch("app.routes.jobs.celery_app") as fake_app:
        fake_app.AsyncResult.return_value = result
        res = client.get("/jobs/job-123", headers=CRON_HEADERS)
    assert res.status_code == 200
    assert res.get_json()["data"] == {"job_id": "job-123", "status": "SUCCESS", "result": {"deleted": 3}}
