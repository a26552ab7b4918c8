"""
REST surface for the placement workflow.

Each route translates path and body into an action payload and runs it
through the same handlers as ``POST /api``.
"""
from __future__ import annotations

from flask import Blueprint, request

from app.rest import body, rest_handle
from utils import ApiError, err

workflow_bp = Blueprint("workflow", __name__)


def _with(**extra) -> dict:
    data = body()
    data.pop("token", None)
    data.update(extra)
    return data


def _query(**extra) -> dict:
    data = {k: v for k, v in request.args.items() if k != "token"}
    data.update(extra)
    return data


# Requirements


@workflow_bp.post("/clients/requirements")
def requirement_create():
    return rest_handle("REQUIREMENT_CREATE", _with(), success_status=201)


@workflow_bp.get("/requirements")
def requirements_list():
    return rest_handle("REQUIREMENTS_LIST", _query())


@workflow_bp.get("/requirements/<requirement_id>")
def requirement_get(requirement_id: str):
    return rest_handle("REQUIREMENT_GET", {"requirementId": requirement_id})


@workflow_bp.post("/requirements/<requirement_id>/forward")
def requirement_forward(requirement_id: str):
    return rest_handle("REQUIREMENT_FORWARD", _with(requirementId=requirement_id))


@workflow_bp.put("/requirements/<job_role_id>/status")
def job_role_agency_status(job_role_id: str):
    return rest_handle("JOB_ROLE_AGENCY_STATUS", _with(jobRoleId=job_role_id))


# Agencies and labour


@workflow_bp.put("/agencies/<agency_id>/status")
def agency_status_update(agency_id: str):
    return rest_handle("AGENCY_STATUS_UPDATE", _with(agencyId=agency_id))


@workflow_bp.post("/agencies/labour-profiles")
def labour_profile_create():
    return rest_handle("LABOUR_PROFILE_CREATE", _with(), success_status=201)


@workflow_bp.get("/agencies/labour-profiles")
def labour_profiles_list():
    return rest_handle("LABOUR_PROFILES_LIST", _query())


@workflow_bp.get("/labour/<labour_id>/stages")
def labour_stages_get(labour_id: str):
    return rest_handle("LABOUR_STAGES_GET", {"labourId": labour_id})


# Assignments


@workflow_bp.post("/agencies/assignments")
def assignment_create():
    return rest_handle("ASSIGNMENT_CREATE", _with(), success_status=201)


@workflow_bp.get("/assignments")
def assignments_list():
    return rest_handle("ASSIGNMENTS_LIST", _query())


@workflow_bp.put("/agencies/assignments/<assignment_id>/status")
def agency_assignment_status(assignment_id: str):
    return rest_handle("AGENCY_ASSIGNMENT_STATUS", _with(assignmentId=assignment_id))


@workflow_bp.put("/admin/assignments/bulk-status")
def admin_assignment_bulk_status():
    return rest_handle("ADMIN_ASSIGNMENT_BULK_STATUS", _with())


@workflow_bp.put("/admin/assignments/<assignment_id>/status")
def admin_assignment_status(assignment_id: str):
    return rest_handle("ADMIN_ASSIGNMENT_STATUS", _with(assignmentId=assignment_id))


@workflow_bp.put("/clients/assignments/bulk-status")
def client_assignment_bulk_status():
    return rest_handle("CLIENT_ASSIGNMENT_BULK_STATUS", _with())


@workflow_bp.put("/clients/assignments/<assignment_id>/status")
def client_assignment_status(assignment_id: str):
    return rest_handle("CLIENT_ASSIGNMENT_STATUS", _with(assignmentId=assignment_id))


@workflow_bp.post("/clients/job-role/<job_role_id>/replace-rejected")
def replace_rejected(job_role_id: str):
    return rest_handle("REPLACE_REJECTED", {"jobRoleId": job_role_id})


# Stage workflow: client side

_CLIENT_STAGE_ROUTES = {
    "verify-offer-letter": "OFFER_LETTER_VERIFY",
    "mark-visa-applied": "VISA_MARK_APPLIED",
    "mark-qvc-paid": "QVC_MARK_PAID",
    "confirm-arrival": "ARRIVAL_CONFIRM",
}

# Stage workflow: agency side

_AGENCY_STAGE_ROUTES = {
    "approve-contract": "CONTRACT_APPROVE",
    "refuse-contract": "CONTRACT_REFUSE",
    "mark-medical-fit": "MEDICAL_MARK_FIT",
    "mark-medical-unfit": "MEDICAL_MARK_UNFIT",
    "mark-fingerprint-pass": "FINGERPRINT_MARK_PASS",
    "mark-fingerprint-fail": "FINGERPRINT_MARK_FAIL",
    "travel-confirmation": "TRAVEL_CONFIRM",
}


@workflow_bp.post("/clients/assignments/<assignment_id>/<step>")
def client_stage_step(assignment_id: str, step: str):
    action = _CLIENT_STAGE_ROUTES.get(step)
    if not action:
        return err("NOT_FOUND", f"Unknown endpoint: {request.path}", http_status=404)
    return rest_handle(action, _with(assignmentId=assignment_id))


@workflow_bp.post("/assignments/<assignment_id>/<step>")
def agency_stage_step(assignment_id: str, step: str):
    action = _AGENCY_STAGE_ROUTES.get(step)
    if not action:
        return err("NOT_FOUND", f"Unknown endpoint: {request.path}", http_status=404)
    return rest_handle(action, _with(assignmentId=assignment_id))


@workflow_bp.put("/clients/assignments/<assignment_id>/travel-date")
def travel_date_set(assignment_id: str):
    return rest_handle("TRAVEL_DATE_SET", _with(assignmentId=assignment_id))


@workflow_bp.post("/clients/assignments/<assignment_id>/upload-visa")
def visa_upload(assignment_id: str):
    up = request.files.get("file") or request.files.get("visa")
    if up is None:
        # JSON clients may send fileBase64 instead of multipart.
        return rest_handle("VISA_UPLOAD", _with(assignmentId=assignment_id))

    blob = up.read() or b""
    if not blob:
        e = ApiError("BAD_REQUEST", "Empty file")
        return err(e.code, e.message, http_status=e.http_status)
    data = {
        "assignmentId": assignment_id,
        "notes": str(request.form.get("notes") or ""),
        "file": {
            "bytes": blob,
            "name": str(up.filename or "visa.pdf"),
            "mimeType": str(up.mimetype or "application/octet-stream"),
        },
    }
    return rest_handle("VISA_UPLOAD", data)


_TRAVEL_FORM_FIELDS = {
    "flightTicket": "FLIGHT_TICKET",
    "medicalCertificate": "MEDICAL_CERTIFICATE",
    "policeClearance": "POLICE_CLEARANCE",
    "employmentContract": "EMPLOYMENT_CONTRACT",
}


@workflow_bp.post("/assignments/<assignment_id>/travel-documents")
def travel_documents_submit(assignment_id: str):
    if not request.files and not request.form:
        return rest_handle("TRAVEL_DOCUMENTS_SUBMIT", _with(assignmentId=assignment_id))

    uploads = [(doc_type, request.files.get(field)) for field, doc_type in _TRAVEL_FORM_FIELDS.items()]
    uploads += [("OTHER", up) for up in request.files.getlist("additionalDocuments")]
    documents = []
    for doc_type, up in uploads:
        if up is None:
            continue
        blob = up.read() or b""
        if not blob:
            continue
        documents.append(
            {
                "type": doc_type,
                "file": {
                    "bytes": blob,
                    "name": str(up.filename or f"{doc_type.lower()}.pdf"),
                    "mimeType": str(up.mimetype or "application/octet-stream"),
                },
            }
        )
    data = {
        "assignmentId": assignment_id,
        "travelDate": str(request.form.get("travelDate") or ""),
        "documents": documents,
    }
    return rest_handle("TRAVEL_DOCUMENTS_SUBMIT", data)
