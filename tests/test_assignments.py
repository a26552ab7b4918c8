from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select, update

from actions.assignments import compute_placement
from db import SessionLocal
from factories import CRON_HEADERS, api, auth_headers, seed_assignment, seed_world
from models import JobRole, LabourAssignment, LabourProfile, LabourStageHistory, Notification, Requirement
from utils import iso_utc


@pytest.mark.parametrize(
    "agency,admin,client,expected",
    [
        ("ACCEPTED", "ACCEPTED", "ACCEPTED", "PLACED"),
        ("ACCEPTED", "REJECTED", "PENDING", "REJECTED"),
        ("REJECTED", "ACCEPTED", "ACCEPTED", "REJECTED"),
        ("ACCEPTED", "ACCEPTED", "SUBMITTED", "IN_PROGRESS"),
        ("ACCEPTED", "ACCEPTED", "PENDING", "IN_PROGRESS"),
        ("NEEDS_REVISION", "PENDING", "PENDING", "IN_PROGRESS"),
    ],
)
def test_compute_placement(agency, admin, client, expected):
    assert compute_placement(agency, admin, client) == expected


def _submit(client, w, labour_ids):
    res = client.post(
        "/agencies/assignments",
        json={"jobRoleId": w.job_role_id, "labourIds": labour_ids},
        headers=auth_headers(w.agency_token),
    )
    assert res.status_code == 201, res.get_json()
    return [a["id"] for a in res.get_json()["data"]["assignments"]]


def test_placement_flow_with_backup(app_client):
    _app, client = app_client
    w = seed_world(client, quantity=1)
    ids = _submit(client, w, ["LAB-1", "LAB-2"])

    res = client.put(
        "/admin/assignments/bulk-status",
        json={"assignmentIds": ids, "status": "ACCEPTED"},
        headers=auth_headers(w.admin_token),
    )
    assert res.status_code == 200, res.get_json()
    assert res.get_json()["data"]["updated"] == 2

    with SessionLocal() as db:
        rows = db.execute(select(LabourAssignment).where(LabourAssignment.assignmentId.in_(ids))).scalars().all()
        primaries = [a for a in rows if not a.isBackup]
        backups = [a for a in rows if a.isBackup]
        assert len(primaries) == 1 and len(backups) == 1
        assert primaries[0].clientStatus == "SUBMITTED"
        assert backups[0].clientStatus == "PENDING"
        assert db.get(Requirement, "REQ-1").status == "CLIENT_REVIEW"
        primary_id, backup_id = primaries[0].assignmentId, backups[0].assignmentId

    # Client sees only admin-approved rows.
    listed = client.get("/assignments", headers=auth_headers(w.client_token)).get_json()["data"]["assignments"]
    assert {a["id"] for a in listed} == set(ids)

    rejected = client.put(
        f"/clients/assignments/{primary_id}/status",
        json={"status": "REJECTED", "feedback": "Not enough experience"},
        headers=auth_headers(w.client_token),
    )
    assert rejected.status_code == 200, rejected.get_json()
    promotion = rejected.get_json()["data"]["promotion"]
    assert promotion["promoted"] is True
    assert promotion["candidateId"] == backup_id

    accepted = client.put(
        f"/clients/assignments/{backup_id}/status",
        json={"status": "ACCEPTED"},
        headers=auth_headers(w.client_token),
    )
    assert accepted.status_code == 200, accepted.get_json()
    body = accepted.get_json()["data"]
    assert body["assignment"]["placementStatus"] == "PLACED"
    assert body["jobRoleFulfilled"] is True

    with SessionLocal() as db:
        placed = db.get(LabourAssignment, backup_id)
        labour = db.get(LabourProfile, placed.labourId)
        assert labour.currentStage == "OFFER_LETTER_SIGN"
        pending = db.execute(
            select(LabourStageHistory).where(LabourStageHistory.labourId == labour.labourId)
        ).scalars().all()
        assert [(r.stage, r.status) for r in pending] == [("OFFER_LETTER_SIGN", "PENDING")]
        assert db.get(Requirement, "REQ-1").status == "ACCEPTED"
        assert db.get(JobRole, "JR-1").needsMoreLabour is False
        assert db.get(LabourAssignment, primary_id).placementStatus == "REJECTED"


def test_client_cannot_accept_before_admin(app_client):
    _app, client = app_client
    w = seed_world(client)
    seed_assignment(
        assignment_id="ASG-1",
        labour_id="LAB-1",
        created_at="2026-01-01T00:00:00.000Z",
        admin="PENDING",
        client="PENDING",
    )
    res = client.put("/clients/assignments/ASG-1/status", json={"status": "ACCEPTED"}, headers=auth_headers(w.client_token))
    assert res.status_code == 409


def test_rejection_needs_feedback(app_client):
    _app, client = app_client
    w = seed_world(client)
    seed_assignment(assignment_id="ASG-1", labour_id="LAB-1", created_at="2026-01-01T00:00:00.000Z")
    res = client.put("/admin/assignments/ASG-1/status", json={"status": "REJECTED"}, headers=auth_headers(w.admin_token))
    assert res.status_code == 400


def test_agency_cannot_write_admin_status(app_client):
    _app, client = app_client
    w = seed_world(client)
    seed_assignment(assignment_id="ASG-1", labour_id="LAB-1", created_at="2026-01-01T00:00:00.000Z")
    res = client.put("/admin/assignments/ASG-1/status", json={"status": "ACCEPTED"}, headers=auth_headers(w.agency_token))
    assert res.status_code == 401
    assert res.get_json()["error"]["code"] == "UNAUTHORIZED"


def test_bulk_reports_per_item_failures(app_client):
    _app, client = app_client
    w = seed_world(client, quantity=2)
    seed_assignment(
        assignment_id="ASG-1",
        labour_id="LAB-1",
        created_at="2026-01-01T00:00:00.000Z",
        admin="PENDING",
        client="PENDING",
    )
    res = client.put(
        "/admin/assignments/bulk-status",
        json={"assignmentIds": ["ASG-1", "ASG-MISSING"], "status": "ACCEPTED"},
        headers=auth_headers(w.admin_token),
    )
    assert res.status_code == 200
    data = res.get_json()["data"]
    assert data["updated"] == 1
    by_id = {r["id"]: r for r in data["results"]}
    assert by_id["ASG-1"]["ok"] is True
    assert by_id["ASG-MISSING"]["error"]["code"] == "NOT_FOUND"


def test_labour_cannot_hold_two_active_assignments(app_client):
    _app, client = app_client
    w = seed_world(client)
    _submit(client, w, ["LAB-1"])
    again = client.post(
        "/agencies/assignments",
        json={"jobRoleId": w.job_role_id, "labourIds": ["LAB-1"]},
        headers=auth_headers(w.agency_token),
    )
    assert again.status_code == 409


def test_agency_withdrawal_releases_labour(app_client):
    _app, client = app_client
    w = seed_world(client)
    (assignment_id,) = _submit(client, w, ["LAB-1"])

    res = api(
        client,
        {
            "action": "AGENCY_ASSIGNMENT_STATUS",
            "token": w.agency_token,
            "data": {"assignmentId": assignment_id, "status": "REJECTED", "feedback": "Worker unavailable"},
        },
    )
    assert res.status_code == 200, res.get_json()
    assert res.get_json()["data"]["assignment"]["placementStatus"] == "REJECTED"
    with SessionLocal() as db:
        assert db.get(LabourProfile, "LAB-1").status == "APPROVED"


def test_backup_awaiting_client_is_never_counted_as_placed(app_client):
    _app, client = app_client
    w = seed_world(client, quantity=2)
    ids = _submit(client, w, ["LAB-1", "LAB-2", "LAB-3"])
    res = client.put(
        "/admin/assignments/bulk-status",
        json={"assignmentIds": ids, "status": "ACCEPTED"},
        headers=auth_headers(w.admin_token),
    )
    assert res.get_json()["data"]["updated"] == 3

    with SessionLocal() as db:
        rows = db.execute(select(LabourAssignment).where(LabourAssignment.assignmentId.in_(ids))).scalars().all()
        primary = next(a for a in rows if not a.isBackup)
        backup = next(a for a in rows if a.isBackup)
        assert (backup.agencyStatus, backup.adminStatus, backup.clientStatus) == ("ACCEPTED", "ACCEPTED", "PENDING")
        assert backup.placementStatus == "IN_PROGRESS"

    accepted = client.put(
        f"/clients/assignments/{primary.assignmentId}/status",
        json={"status": "ACCEPTED"},
        headers=auth_headers(w.client_token),
    )
    assert accepted.status_code == 200, accepted.get_json()

    placed = client.get("/assignments?placementStatus=PLACED", headers=auth_headers(w.admin_token))
    assert [a["id"] for a in placed.get_json()["data"]["assignments"]] == [primary.assignmentId]

    # Everyone looks stuck in a stage; only the placed labour gets a reminder.
    stale = iso_utc(datetime.now(timezone.utc) - timedelta(days=10))
    with SessionLocal() as db:
        db.execute(
            update(LabourProfile)
            .where(LabourProfile.labourId.in_(["LAB-1", "LAB-2", "LAB-3"]))
            .values(currentStage="OFFER_LETTER_SIGN", updatedAt=stale)
        )
        db.commit()

    sweep = client.post("/cron/overdue-labour-reminders", headers=CRON_HEADERS)
    assert sweep.status_code == 200, sweep.get_json()
    assert sweep.get_json()["data"] == {"remindersSent": 2}
    with SessionLocal() as db:
        reminded = set(
            db.execute(select(Notification.entityId).where(Notification.type == "STAGE_PENDING_ACTION")).scalars().all()
        )
    assert reminded == {primary.labourId}
