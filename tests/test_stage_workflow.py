from __future__ import annotations

import base64
import io
import json
import os
from unittest.mock import patch

from sqlalchemy import select

from db import SessionLocal
from factories import auth_headers, seed_assignment, seed_placed_at_stage, seed_world
from models import AuditLog, JobRole, LabourAssignment, LabourProfile, LabourStageHistory, Notification, Requirement


def _history(labour_id: str) -> list[LabourStageHistory]:
    with SessionLocal() as db:
        return (
            db.execute(
                select(LabourStageHistory)
                .where(LabourStageHistory.labourId == labour_id)
                .order_by(LabourStageHistory.createdAt.asc())
            )
            .scalars()
            .all()
        )


def test_medical_fit_advances_to_fingerprint(app_client):
    _app, client = app_client
    w = seed_world(client)
    seed_placed_at_stage(assignment_id="ASG-1", labour_id="LAB-1", stage="MEDICAL_STATUS")

    res = client.post("/assignments/ASG-1/mark-medical-fit", json={}, headers=auth_headers(w.agency_token))
    assert res.status_code == 200, res.get_json()
    data = res.get_json()["data"]
    assert data["success"] is True
    assert data["currentStage"] == "FINGERPRINT"

    rows = {(r.stage, r.status) for r in _history("LAB-1")}
    assert ("MEDICAL_STATUS", "COMPLETED") in rows
    assert ("FINGERPRINT", "PENDING") in rows

    with SessionLocal() as db:
        assert db.get(LabourProfile, "LAB-1").currentStage == "FINGERPRINT"
        audit = db.execute(select(AuditLog).where(AuditLog.action == "LABOUR_STAGE_ADVANCE")).scalars().all()
        assert [(a.fromState, a.toState) for a in audit] == [("MEDICAL_STATUS", "FINGERPRINT")]
        # The client hears about it, the acting agency does not.
        recipients = db.execute(
            select(Notification.recipientId).where(Notification.type == "STAGE_COMPLETED")
        ).scalars().all()
        assert recipients == [w.client_user]


def test_repeated_advance_conflicts_without_extra_rows(app_client):
    _app, client = app_client
    w = seed_world(client)
    seed_placed_at_stage(assignment_id="ASG-1", labour_id="LAB-1", stage="MEDICAL_STATUS")

    first = client.post("/assignments/ASG-1/mark-medical-fit", json={}, headers=auth_headers(w.agency_token))
    assert first.status_code == 200
    second = client.post("/assignments/ASG-1/mark-medical-fit", json={}, headers=auth_headers(w.agency_token))
    assert second.status_code == 409
    assert second.get_json()["error"]["code"] == "CONFLICT"

    pending = [r for r in _history("LAB-1") if r.stage == "FINGERPRINT" and r.status == "PENDING"]
    assert len(pending) == 1


def test_wrong_role_cannot_run_agency_step(app_client):
    _app, client = app_client
    w = seed_world(client)
    seed_placed_at_stage(assignment_id="ASG-1", labour_id="LAB-1", stage="MEDICAL_STATUS")

    res = client.post("/assignments/ASG-1/mark-medical-fit", json={}, headers=auth_headers(w.client_token))
    assert res.status_code == 401
    assert res.get_json()["error"]["code"] == "UNAUTHORIZED"
    with SessionLocal() as db:
        assert db.get(LabourProfile, "LAB-1").currentStage == "MEDICAL_STATUS"


def test_step_requires_placed_assignment(app_client):
    _app, client = app_client
    w = seed_world(client)
    seed_assignment(assignment_id="ASG-1", labour_id="LAB-1", created_at="2026-01-01T00:00:00.000Z")

    res = client.post("/clients/assignments/ASG-1/verify-offer-letter", json={}, headers=auth_headers(w.client_token))
    assert res.status_code == 409
    assert res.get_json()["error"]["message"] == "Assignment is not placed"


def test_client_offer_letter_verification(app_client):
    _app, client = app_client
    w = seed_world(client)
    seed_placed_at_stage(assignment_id="ASG-1", labour_id="LAB-1", stage="OFFER_LETTER_SIGN")

    res = client.post(
        "/clients/assignments/ASG-1/verify-offer-letter",
        json={"notes": "Signed copy received"},
        headers=auth_headers(w.client_token),
    )
    assert res.status_code == 200
    assert res.get_json()["data"]["currentStage"] == "VISA_APPLYING"

    rows = _history("LAB-1")
    assert {(r.stage, r.status) for r in rows} == {("OFFER_LETTER_SIGN", "SIGNED"), ("VISA_APPLYING", "PENDING")}
    assert [r.notes for r in rows if r.stage == "VISA_APPLYING"] == ["Signed copy received"]


def test_unknown_stage_endpoint_is_404(app_client):
    _app, client = app_client
    w = seed_world(client)
    res = client.post("/assignments/ASG-1/mark-something", json={}, headers=auth_headers(w.agency_token))
    assert res.status_code == 404


def test_medical_unfit_resets_and_promotes_backup(app_client):
    _app, client = app_client
    w = seed_world(client)
    seed_placed_at_stage(assignment_id="ASG-1", labour_id="LAB-1", stage="MEDICAL_STATUS")
    seed_assignment(
        assignment_id="ASG-2",
        labour_id="LAB-2",
        created_at="2026-01-02T00:00:00.000Z",
        client="PENDING",
        is_backup=True,
    )

    res = client.post("/assignments/ASG-1/mark-medical-unfit", json={}, headers=auth_headers(w.agency_token))
    assert res.status_code == 200, res.get_json()
    assert res.get_json()["data"]["success"] is True

    with SessionLocal() as db:
        failed = db.get(LabourAssignment, "ASG-1")
        assert failed.adminStatus == "REJECTED"
        assert failed.clientStatus == "PENDING"
        assert failed.agencyStatus == "NEEDS_REVISION"
        assert failed.placementStatus == "REJECTED"
        assert failed.adminFeedback == "Labour failed medical examination"

        labour = db.get(LabourProfile, "LAB-1")
        assert labour.status == "APPROVED"
        assert labour.requirementId == ""
        assert labour.currentStage == "OFFER_LETTER_SIGN"

        backup = db.get(LabourAssignment, "ASG-2")
        assert backup.isBackup is False
        assert backup.clientStatus == "SUBMITTED"

        job_role = db.get(JobRole, "JR-1")
        assert job_role.needsMoreLabour is True
        assert job_role.adminStatus == "NEEDS_REVISION"
        assert db.get(Requirement, "REQ-1").status == "UNDER_REVIEW"

        failed_to = set(
            db.execute(select(Notification.recipientId).where(Notification.type == "STAGE_FAILED")).scalars().all()
        )
        assert failed_to == {w.agency_user, w.client_user, w.admin_user}
        msg = db.execute(
            select(Notification.message).where(Notification.recipientId == w.client_user).where(Notification.type == "STAGE_FAILED")
        ).scalar_one()
        assert msg == "Labour Worker 1 failed medical examination for Mason. Replacement needed."

    assert _history("LAB-1") == []


def test_contract_refusal_requires_contract_stage(app_client):
    _app, client = app_client
    w = seed_world(client)
    seed_placed_at_stage(assignment_id="ASG-1", labour_id="LAB-1", stage="MEDICAL_STATUS")

    res = client.post("/assignments/ASG-1/refuse-contract", json={}, headers=auth_headers(w.agency_token))
    assert res.status_code == 409
    with SessionLocal() as db:
        assert db.get(LabourAssignment, "ASG-1").placementStatus == "PLACED"


def test_visa_upload_moves_to_ready_to_travel_and_serves_file(app_client):
    _app, client = app_client
    w = seed_world(client)
    seed_placed_at_stage(assignment_id="ASG-1", labour_id="LAB-1", stage="VISA_PRINTING")

    res = client.post(
        "/clients/assignments/ASG-1/upload-visa",
        data={"file": (io.BytesIO(b"%PDF-1.4 visa"), "visa scan.pdf", "application/pdf")},
        content_type="multipart/form-data",
        headers=auth_headers(w.client_token),
    )
    assert res.status_code == 200, res.get_json()
    data = res.get_json()["data"]
    assert data["currentStage"] == "READY_TO_TRAVEL"
    file_id = data["fileId"]

    with SessionLocal() as db:
        assert db.get(LabourAssignment, "ASG-1").visaFileId == file_id

    got = client.get(f"/files/{file_id}", headers=auth_headers(w.agency_token))
    assert got.status_code == 200
    assert got.data == b"%PDF-1.4 visa"
    assert got.headers["Content-Type"].startswith("application/pdf")
    assert got.headers["X-Content-Type-Options"] == "nosniff"

    assert client.get(f"/files/{file_id}").status_code == 401
    assert client.get("/files/not-a-file-id", headers=auth_headers(w.admin_token)).status_code == 400


def test_visa_upload_rejects_non_pdf(app_client):
    _app, client = app_client
    w = seed_world(client)
    seed_placed_at_stage(assignment_id="ASG-1", labour_id="LAB-1", stage="VISA_PRINTING")

    res = client.post(
        "/clients/assignments/ASG-1/upload-visa",
        data={"file": (io.BytesIO(b"GIF89a"), "visa.gif", "image/gif")},
        content_type="multipart/form-data",
        headers=auth_headers(w.client_token),
    )
    assert res.status_code == 400
    with SessionLocal() as db:
        assert db.get(LabourProfile, "LAB-1").currentStage == "VISA_PRINTING"


def test_travel_rescheduled_keeps_single_pending_row(app_client):
    _app, client = app_client
    w = seed_world(client)
    seed_placed_at_stage(assignment_id="ASG-1", labour_id="LAB-1", stage="TRAVEL_CONFIRMATION")

    res = client.post(
        "/assignments/ASG-1/travel-confirmation",
        json={"status": "RESCHEDULED", "rescheduledTravelDate": "2026-12-01T08:00:00Z"},
        headers=auth_headers(w.agency_token),
    )
    assert res.status_code == 200, res.get_json()
    assert res.get_json()["data"]["travelDate"].startswith("2026-12-01")

    rows = [(r.stage, r.status) for r in _history("LAB-1")]
    assert rows.count(("TRAVEL_CONFIRMATION", "PENDING")) == 1
    assert ("TRAVEL_CONFIRMATION", "RESCHEDULED") in rows

    missing = client.post(
        "/assignments/ASG-1/travel-confirmation",
        json={"status": "RESCHEDULED"},
        headers=auth_headers(w.agency_token),
    )
    assert missing.status_code == 400


def test_arrival_confirmation_deploys_labour(app_client):
    _app, client = app_client
    w = seed_world(client)
    seed_placed_at_stage(assignment_id="ASG-1", labour_id="LAB-1", stage="ARRIVAL_CONFIRMATION")

    res = client.post("/clients/assignments/ASG-1/confirm-arrival", json={}, headers=auth_headers(w.client_token))
    assert res.status_code == 200
    with SessionLocal() as db:
        labour = db.get(LabourProfile, "LAB-1")
        assert labour.currentStage == "DEPLOYED"
        assert labour.status == "DEPLOYED"
        assert db.get(LabourAssignment, "ASG-1").travelStatus == "ARRIVED"

    stages = client.get("/labour/LAB-1/stages", headers=auth_headers(w.client_token)).get_json()["data"]
    assert stages["currentStage"] == "DEPLOYED"
    assert [s["status"] for s in stages["stages"] if s["stage"] == "DEPLOYED"] == ["COMPLETED"]


def _uploaded_files(app) -> list[str]:
    root = app.config["CFG"].UPLOAD_DIR
    return sorted(os.listdir(root)) if os.path.isdir(root) else []


def test_visa_file_removed_when_request_rolls_back(app_client):
    app, client = app_client
    w = seed_world(client)
    seed_placed_at_stage(assignment_id="ASG-1", labour_id="LAB-1", stage="VISA_PRINTING")

    with patch("app.rest.write_api_audit", side_effect=RuntimeError("audit store down")):
        res = client.post(
            "/clients/assignments/ASG-1/upload-visa",
            data={"file": (io.BytesIO(b"%PDF-1.4 visa"), "visa.pdf", "application/pdf")},
            content_type="multipart/form-data",
            headers=auth_headers(w.client_token),
        )
    assert res.status_code == 500
    assert _uploaded_files(app) == []
    with SessionLocal() as db:
        assert db.get(LabourProfile, "LAB-1").currentStage == "VISA_PRINTING"
        assert db.get(LabourAssignment, "ASG-1").visaFileId in ("", None)


def _pdf(doc_type: str) -> dict:
    return {
        "type": doc_type,
        "fileBase64": base64.b64encode(f"%PDF-1.4 {doc_type}".encode()).decode(),
        "fileName": f"{doc_type.lower()}.pdf",
        "mimeType": "application/pdf",
    }


def test_travel_documents_partial_then_complete(app_client):
    app, client = app_client
    w = seed_world(client)
    seed_placed_at_stage(assignment_id="ASG-1", labour_id="LAB-1", stage="READY_TO_TRAVEL")

    partial = client.post(
        "/assignments/ASG-1/travel-documents",
        data={
            "flightTicket": (io.BytesIO(b"%PDF-1.4 ticket"), "ticket.pdf", "application/pdf"),
            "medicalCertificate": (io.BytesIO(b"\x89PNG medical"), "medical.png", "image/png"),
            "travelDate": "2026-12-01T08:00:00Z",
        },
        content_type="multipart/form-data",
        headers=auth_headers(w.agency_token),
    )
    assert partial.status_code == 200, partial.get_json()
    data = partial.get_json()["data"]
    assert data["readyToMoveToNextStage"] is False
    assert data["currentStage"] == "READY_TO_TRAVEL"
    assert data["missingDocuments"] == ["POLICE_CLEARANCE", "EMPLOYMENT_CONTRACT"]
    assert [d["type"] for d in data["documents"]] == ["FLIGHT_TICKET", "MEDICAL_CERTIFICATE"]
    assert data["message"] == "Travel documents uploaded successfully. Some required documents are still missing."
    assert len(_uploaded_files(app)) == 2

    with SessionLocal() as db:
        assert db.get(LabourProfile, "LAB-1").currentStage == "READY_TO_TRAVEL"
        assert db.get(LabourAssignment, "ASG-1").travelDate.startswith("2026-12-01")
        audit = db.execute(select(AuditLog).where(AuditLog.action == "TRAVEL_DOCUMENTS_UPLOAD")).scalar_one()
        assert audit.entityId == "LAB-1"
        admin_note = db.execute(
            select(Notification).where(Notification.type == "TRAVEL_DOCUMENTS_UPLOADED")
        ).scalar_one()
        assert admin_note.recipientId == w.admin_user
        assert admin_note.message == "Travel documents uploaded for Worker 1. More documents are pending."

    complete = client.post(
        "/assignments/ASG-1/travel-documents",
        json={"documents": [_pdf("POLICE_CLEARANCE"), _pdf("EMPLOYMENT_CONTRACT"), _pdf("OTHER")]},
        headers=auth_headers(w.agency_token),
    )
    assert complete.status_code == 200, complete.get_json()
    data = complete.get_json()["data"]
    assert data["readyToMoveToNextStage"] is True
    assert data["missingDocuments"] == []
    assert data["currentStage"] == "TRAVEL_CONFIRMATION"

    rows = _history("LAB-1")
    ready = [r for r in rows if r.stage == "READY_TO_TRAVEL"]
    assert [r.status for r in ready] == ["COMPLETED"]
    on_file = [d["type"] for d in json.loads(ready[0].documentsJson)]
    assert on_file == ["FLIGHT_TICKET", "MEDICAL_CERTIFICATE", "POLICE_CLEARANCE", "EMPLOYMENT_CONTRACT", "OTHER"]
    assert ("TRAVEL_CONFIRMATION", "PENDING") in {(r.stage, r.status) for r in rows}
    with SessionLocal() as db:
        assert db.get(LabourProfile, "LAB-1").currentStage == "TRAVEL_CONFIRMATION"

    again = client.post(
        "/assignments/ASG-1/travel-documents",
        json={"documents": [_pdf("FLIGHT_TICKET")]},
        headers=auth_headers(w.agency_token),
    )
    assert again.status_code == 409


def test_travel_documents_need_a_date_before_advancing(app_client):
    _app, client = app_client
    w = seed_world(client)
    seed_placed_at_stage(assignment_id="ASG-1", labour_id="LAB-1", stage="READY_TO_TRAVEL")

    docs = [_pdf(t) for t in ("FLIGHT_TICKET", "MEDICAL_CERTIFICATE", "POLICE_CLEARANCE", "EMPLOYMENT_CONTRACT")]
    res = client.post("/assignments/ASG-1/travel-documents", json={"documents": docs}, headers=auth_headers(w.agency_token))
    data = res.get_json()["data"]
    assert (data["readyToMoveToNextStage"], data["missingDocuments"]) == (False, [])

    dated = client.post(
        "/assignments/ASG-1/travel-documents",
        json={"travelDate": "2026-12-01"},
        headers=auth_headers(w.agency_token),
    )
    assert dated.status_code == 200, dated.get_json()
    assert dated.get_json()["data"]["currentStage"] == "TRAVEL_CONFIRMATION"


def test_travel_documents_bad_entry_keeps_no_files(app_client):
    app, client = app_client
    w = seed_world(client)
    seed_placed_at_stage(assignment_id="ASG-1", labour_id="LAB-1", stage="READY_TO_TRAVEL")

    empty = client.post("/assignments/ASG-1/travel-documents", json={}, headers=auth_headers(w.agency_token))
    assert empty.status_code == 400
    assert empty.get_json()["error"]["message"] == "No travel documents provided"

    res = client.post(
        "/assignments/ASG-1/travel-documents",
        json={"documents": [_pdf("FLIGHT_TICKET"), _pdf("PASSPORT_SCAN")]},
        headers=auth_headers(w.agency_token),
    )
    assert res.status_code == 400
    assert res.get_json()["error"]["message"] == "Unknown document type: PASSPORT_SCAN"
    assert _uploaded_files(app) == []

    wrong_role = client.post(
        "/assignments/ASG-1/travel-documents",
        json={"documents": [_pdf("FLIGHT_TICKET")]},
        headers=auth_headers(w.client_token),
    )
    assert wrong_role.status_code == 401
