from __future__ import annotations

from sqlalchemy import select

from db import SessionLocal
from factories import auth_headers, seed_user, seed_world
from models import Agency, AuditLog, JobRole, Notification, Requirement, User
from utils import iso_utc_now


def _second_agency(status: str = "NOT_VERIFIED") -> None:
    seed_user(user_id="USR-AGENCY-2", email="second@example.com", role="AGENCY", status="NOT_VERIFIED")
    now = iso_utc_now()
    with SessionLocal() as db:
        db.add(Agency(agencyId="AGY-2", userId="USR-AGENCY-2", agencyName="Desert Staffing", verificationStatus=status, createdAt=now, updatedAt=now))
        db.commit()


def _create(client, w, roles=None):
    return client.post(
        "/clients/requirements",
        json={"projectLocation": "Doha", "jobRoles": roles or [{"title": "Carpenter", "quantity": 2}]},
        headers=auth_headers(w.client_token),
    )


def test_client_creates_requirement(app_client):
    _app, client = app_client
    w = seed_world(client)

    res = _create(client, w, [{"title": "Carpenter", "quantity": 2}, {"title": "Welder", "quantity": 1}])
    assert res.status_code == 201, res.get_json()
    data = res.get_json()["data"]
    assert data["status"] == "SUBMITTED"
    assert [(jr["title"], jr["quantity"]) for jr in data["jobRoles"]] == [("Carpenter", 2), ("Welder", 1)]

    with SessionLocal() as db:
        note = db.execute(select(Notification).where(Notification.type == "REQUIREMENT_SUBMITTED")).scalar_one()
        assert note.recipientId == w.admin_user
        assert note.message == "Acme Builders submitted a requirement for 3 labour."

    listed = client.get("/requirements?status=SUBMITTED", headers=auth_headers(w.client_token)).get_json()["data"]
    assert [r["id"] for r in listed["requirements"]] == [data["id"]]


def test_requirement_validation(app_client):
    _app, client = app_client
    w = seed_world(client)
    assert _create(client, w, [{"title": "Carpenter", "quantity": 0}]).status_code == 400
    assert client.post("/clients/requirements", json={"jobRoles": []}, headers=auth_headers(w.client_token)).status_code == 400
    # Agencies cannot raise requirements.
    res = client.post(
        "/clients/requirements",
        json={"jobRoles": [{"title": "Carpenter", "quantity": 1}]},
        headers=auth_headers(w.agency_token),
    )
    assert res.status_code == 401


def test_forward_requires_verified_agency(app_client):
    _app, client = app_client
    w = seed_world(client)
    _second_agency()
    requirement_id = _create(client, w).get_json()["data"]["id"]

    blocked = client.post(
        f"/requirements/{requirement_id}/forward", json={"agencyId": "AGY-2"}, headers=auth_headers(w.admin_token)
    )
    assert blocked.status_code == 409

    verified = client.put(
        "/agencies/AGY-2/status",
        json={"status": "VERIFIED", "reason": "Documents checked and valid"},
        headers=auth_headers(w.admin_token),
    )
    assert verified.status_code == 200, verified.get_json()
    assert verified.get_json()["data"]["verificationStatus"] == "VERIFIED"

    forwarded = client.post(
        f"/requirements/{requirement_id}/forward", json={"agencyId": "AGY-2"}, headers=auth_headers(w.admin_token)
    )
    assert forwarded.status_code == 200, forwarded.get_json()
    data = forwarded.get_json()["data"]
    assert data["status"] == "FORWARDED"
    assert {jr["assignedAgencyId"] for jr in data["jobRoles"]} == {"AGY-2"}

    with SessionLocal() as db:
        assert db.get(User, "USR-AGENCY-2").status == "ACTIVE"
        audit = db.execute(select(AuditLog).where(AuditLog.action == "AGENCY_UPDATE")).scalar_one()
        assert (audit.fromState, audit.toState, audit.remark) == ("NOT_VERIFIED", "VERIFIED", "Documents checked and valid")
        types = db.execute(
            select(Notification.type).where(Notification.recipientId == "USR-AGENCY-2").order_by(Notification.createdAt)
        ).scalars().all()
        assert set(types) == {"ACCOUNT_VERIFIED", "REQUIREMENT_FORWARDED"}


def test_agency_accepts_forwarded_job_role(app_client):
    _app, client = app_client
    w = seed_world(client)
    requirement_id = _create(client, w).get_json()["data"]["id"]
    client.post(f"/requirements/{requirement_id}/forward", json={"agencyId": w.agency_id}, headers=auth_headers(w.admin_token))

    with SessionLocal() as db:
        (job_role_id,) = db.execute(select(JobRole.jobRoleId).where(JobRole.requirementId == requirement_id)).scalars().all()

    res = client.put(f"/requirements/{job_role_id}/status", json={"status": "ACCEPTED"}, headers=auth_headers(w.agency_token))
    assert res.status_code == 200, res.get_json()
    data = res.get_json()["data"]
    assert data["jobRole"]["agencyStatus"] == "ACCEPTED"
    assert data["jobRole"]["needsMoreLabour"] is True
    assert data["requirementStatus"] == "ACCEPTED"

    again = client.put(f"/requirements/{job_role_id}/status", json={"status": "REJECTED"}, headers=auth_headers(w.agency_token))
    assert again.status_code == 409

    with SessionLocal() as db:
        assert db.get(Requirement, requirement_id).status == "ACCEPTED"
        client_notes = db.execute(
            select(Notification.type).where(Notification.recipientId == w.client_user)
        ).scalars().all()
        assert client_notes == ["REQUIREMENT_ACCEPTED"]


def test_agency_sees_only_its_requirements(app_client):
    _app, client = app_client
    w = seed_world(client)
    _create(client, w)
    listed = client.get("/requirements", headers=auth_headers(w.agency_token)).get_json()["data"]["requirements"]
    assert [r["id"] for r in listed] == [w.requirement_id]
    assert client.get("/requirements/REQ-NOPE", headers=auth_headers(w.agency_token)).status_code == 404


def test_labour_profile_passport_is_unique_per_agency(app_client):
    _app, client = app_client
    w = seed_world(client)

    res = client.post(
        "/agencies/labour-profiles",
        json={"name": "Ram Bahadur", "nationality": "NP", "passportNumber": "pa1234567"},
        headers=auth_headers(w.agency_token),
    )
    assert res.status_code == 201, res.get_json()
    data = res.get_json()["data"]
    assert data["status"] == "RECEIVED"
    assert data["passportNumber"] == "PA1234567"

    dup = client.post(
        "/agencies/labour-profiles",
        json={"name": "Someone Else", "passportNumber": "PA1234567"},
        headers=auth_headers(w.agency_token),
    )
    assert dup.status_code == 409

    listed = client.get("/agencies/labour-profiles?status=RECEIVED", headers=auth_headers(w.agency_token)).get_json()["data"]
    assert [p["id"] for p in listed["labour"]] == [data["id"]]
