from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from actions.assignments import (
    PLACED,
    AssignmentContext,
    load_agency_assignment,
    load_client_assignment,
    release_labour,
    serialize_assignment,
    set_party_status,
)
from actions.helpers import agency_for_user, append_audit, client_for_user, require_auth, required_str
from models import JobRole, LabourAssignment, LabourProfile, LabourStageHistory, Requirement
from services.file_store import store_upload
from services.notifications import deliver_to_role, deliver_to_user
from utils import ApiError, AuthContext, iso_utc, iso_utc_now, new_id, normalize_role, parse_datetime_maybe


STAGES = [
    "OFFER_LETTER_SIGN",
    "VISA_APPLYING",
    "QVC_PAYMENT",
    "CONTRACT_SIGN",
    "MEDICAL_STATUS",
    "FINGERPRINT",
    "VISA_PRINTING",
    "READY_TO_TRAVEL",
    "TRAVEL_CONFIRMATION",
    "ARRIVAL_CONFIRMATION",
    "DEPLOYED",
]


@dataclass(frozen=True)
class Transition:
    role: str
    from_stage: str
    to_stage: str
    closed_status: str
    note: str
    message: str


TRANSITIONS: dict[str, Transition] = {
    "OFFER_LETTER_VERIFY": Transition(
        "CLIENT", "OFFER_LETTER_SIGN", "VISA_APPLYING", "SIGNED",
        "Offer letter signed, awaiting visa application",
        "Signed offer letter verified successfully",
    ),
    "VISA_MARK_APPLIED": Transition(
        "CLIENT", "VISA_APPLYING", "QVC_PAYMENT", "COMPLETED",
        "Visa applied, awaiting QVC payment",
        "Visa application marked as completed successfully",
    ),
    "QVC_MARK_PAID": Transition(
        "CLIENT", "QVC_PAYMENT", "CONTRACT_SIGN", "PAID",
        "QVC paid, awaiting contract signature",
        "QVC payment marked as completed successfully",
    ),
    "CONTRACT_APPROVE": Transition(
        "AGENCY", "CONTRACT_SIGN", "MEDICAL_STATUS", "COMPLETED",
        "Contract approved, awaiting medical examination",
        "Contract approved successfully",
    ),
    "MEDICAL_MARK_FIT": Transition(
        "AGENCY", "MEDICAL_STATUS", "FINGERPRINT", "COMPLETED",
        "Medical examination passed, proceeding to fingerprint",
        "Medical status marked as fit successfully",
    ),
    "FINGERPRINT_MARK_PASS": Transition(
        "AGENCY", "FINGERPRINT", "VISA_PRINTING", "COMPLETED",
        "Fingerprint passed, awaiting visa printing",
        "Fingerprint marked as passed successfully",
    ),
    "VISA_UPLOAD": Transition(
        "CLIENT", "VISA_PRINTING", "READY_TO_TRAVEL", "COMPLETED",
        "Visa uploaded, awaiting travel documents",
        "Visa uploaded successfully",
    ),
    "TRAVEL_DOCUMENTS_SUBMIT": Transition(
        "AGENCY", "READY_TO_TRAVEL", "TRAVEL_CONFIRMATION", "COMPLETED",
        "Travel documents submitted, awaiting travel confirmation",
        "All travel documents uploaded successfully. Stage progressed to TRAVEL_CONFIRMATION.",
    ),
    "TRAVEL_CONFIRM": Transition(
        "AGENCY", "TRAVEL_CONFIRMATION", "ARRIVAL_CONFIRMATION", "TRAVELED",
        "Labour traveled, awaiting arrival confirmation",
        "Travel status updated to TRAVELED",
    ),
    "ARRIVAL_CONFIRM": Transition(
        "CLIENT", "ARRIVAL_CONFIRMATION", "DEPLOYED", "COMPLETED",
        "Labour arrived and deployed",
        "Labour arrival confirmed successfully",
    ),
}


def advance_stage(
    db,
    *,
    labour_id: str,
    from_stage: str,
    to_stage: str,
    closed_status: str,
    note: str = "",
    actor: Optional[AuthContext] = None,
    to_status: str = "PENDING",
) -> LabourStageHistory:
    """
    Move a labour from ``from_stage`` to ``to_stage`` exactly once.

    The profile update is a compare-and-swap on ``currentStage``; a caller
    that loses the race matches no row and gets CONFLICT without writing.
    """
    now = iso_utc_now()
    res = db.execute(
        update(LabourProfile)
        .where(LabourProfile.labourId == labour_id)
        .where(LabourProfile.currentStage == from_stage)
        .values(currentStage=to_stage, updatedAt=now)
    )
    if int(res.rowcount or 0) == 0:
        raise ApiError("CONFLICT", f"Labour is not in {from_stage} stage")

    db.execute(
        update(LabourStageHistory)
        .where(LabourStageHistory.labourId == labour_id)
        .where(LabourStageHistory.stage == from_stage)
        .where(LabourStageHistory.status == "PENDING")
        .values(status=closed_status, completedAt=now)
    )

    row = LabourStageHistory(
        historyId=new_id("STG"),
        labourId=labour_id,
        stage=to_stage,
        status=to_status,
        notes=str(note or ""),
        documentsJson="[]",
        completedAt=now if to_status != "PENDING" else "",
        createdAt=now,
    )
    db.add(row)
    try:
        db.flush()
    except IntegrityError:
        raise ApiError("CONFLICT", f"{to_stage} is already pending for this labour")

    append_audit(
        db,
        entityType="LabourProfile",
        entityId=labour_id,
        action="LABOUR_STAGE_ADVANCE",
        fromState=from_stage,
        toState=to_stage,
        stageTag=to_stage,
        remark=note,
        actor=actor,
        at=now,
    )
    return row


def _load_for_role(db, auth: AuthContext, role: str, data: dict) -> AssignmentContext:
    if role == "AGENCY":
        return load_agency_assignment(db, auth, data)
    return load_client_assignment(db, auth, data)


def _require_placed(ctx: AssignmentContext) -> None:
    if ctx.assignment.placementStatus != PLACED:
        raise ApiError("CONFLICT", "Assignment is not placed")


def _notify_stage(db, cfg, ctx: AssignmentContext, auth: AuthContext, *, title: str, message: str, type: str = "STAGE_COMPLETED", priority: str = "NORMAL") -> None:
    for uid in (ctx.agency_user_id, ctx.client_user_id):
        if uid and uid != auth.userId:
            deliver_to_user(
                db,
                cfg,
                uid,
                type=type,
                title=title,
                message=message,
                priority=priority,
                sender_id=auth.userId,
                entity_type="LabourAssignment",
                entity_id=ctx.assignment.assignmentId,
            )


def _apply_transition(db, cfg, auth: AuthContext, ctx: AssignmentContext, key: str, *, note: str = "") -> dict[str, Any]:
    t = TRANSITIONS[key]
    _require_placed(ctx)
    deployed = t.to_stage == "DEPLOYED"
    advance_stage(
        db,
        labour_id=ctx.labour.labourId,
        from_stage=t.from_stage,
        to_stage=t.to_stage,
        closed_status=t.closed_status,
        note=note or t.note,
        actor=auth,
        to_status="COMPLETED" if deployed else "PENDING",
    )
    if deployed:
        ctx.labour.status = "DEPLOYED"
    _notify_stage(
        db,
        cfg,
        ctx,
        auth,
        title=f"{ctx.labour.name}: {t.to_stage.replace('_', ' ').title()}",
        message=f"{ctx.labour.name} ({ctx.job_role.title}) moved from {t.from_stage} to {t.to_stage}.",
    )
    return {"success": True, "message": t.message, "currentStage": t.to_stage}


def _transition_action(key: str):
    role = TRANSITIONS[key].role

    def handler(data, auth: AuthContext | None, db, cfg):
        auth = require_auth(auth)
        ctx = _load_for_role(db, auth, role, data)
        return _apply_transition(db, cfg, auth, ctx, key, note=str((data or {}).get("notes") or ""))

    handler.__name__ = key.lower()
    return handler


offer_letter_verify = _transition_action("OFFER_LETTER_VERIFY")
visa_mark_applied = _transition_action("VISA_MARK_APPLIED")
qvc_mark_paid = _transition_action("QVC_MARK_PAID")
contract_approve = _transition_action("CONTRACT_APPROVE")
medical_mark_fit = _transition_action("MEDICAL_MARK_FIT")
fingerprint_mark_pass = _transition_action("FINGERPRINT_MARK_PASS")


def arrival_confirm(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    status = str((data or {}).get("status") or "ARRIVED").upper().strip()
    if status != "ARRIVED":
        raise ApiError("BAD_REQUEST", "Invalid status. Must be ARRIVED")
    ctx = load_client_assignment(db, auth, data)
    out = _apply_transition(db, cfg, auth, ctx, "ARRIVAL_CONFIRM", note=str((data or {}).get("notes") or ""))
    ctx.assignment.travelStatus = "ARRIVED"
    _notify_stage(
        db,
        cfg,
        ctx,
        auth,
        type="ARRIVAL_CONFIRMED",
        title="Labour arrival confirmed",
        message=f"{ctx.labour.name} arrived and is deployed as {ctx.job_role.title}.",
    )
    return out


def _decode_upload(data: dict, *, default_name: str = "visa.pdf", missing: str = "Missing visa file") -> tuple[bytes, str, str]:
    """Multipart routes pass ``file={bytes,name,mimeType}``; JSON callers send ``fileBase64``."""
    upload = (data or {}).get("file")
    if isinstance(upload, dict) and isinstance(upload.get("bytes"), (bytes, bytearray)):
        return bytes(upload["bytes"]), str(upload.get("name") or default_name), str(upload.get("mimeType") or "")
    b64 = str((data or {}).get("fileBase64") or "").strip()
    if not b64:
        raise ApiError("BAD_REQUEST", missing)
    try:
        blob = base64.b64decode(b64, validate=True)
    except (binascii.Error, ValueError):
        raise ApiError("BAD_REQUEST", "Invalid fileBase64")
    return blob, str((data or {}).get("fileName") or default_name), str((data or {}).get("mimeType") or "application/pdf")


def visa_upload(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    ctx = load_client_assignment(db, auth, data)
    _require_placed(ctx)
    if ctx.labour.currentStage != "VISA_PRINTING":
        raise ApiError("CONFLICT", "Labour is not in VISA_PRINTING stage")

    blob, name, mime = _decode_upload(data)
    stored = store_upload(cfg, file_bytes=blob, file_name=name, mime_type=mime, allowed_mime={"application/pdf"}, db=db)

    out = _apply_transition(db, cfg, auth, ctx, "VISA_UPLOAD")
    ctx.assignment.visaFileId = stored["fileId"]
    ctx.assignment.updatedAt = iso_utc_now()

    # Attach the document to the visa printing row that was just closed.
    closed = (
        db.execute(
            select(LabourStageHistory)
            .where(LabourStageHistory.labourId == ctx.labour.labourId)
            .where(LabourStageHistory.stage == "VISA_PRINTING")
            .order_by(LabourStageHistory.createdAt.desc())
            .limit(1)
        )
        .scalars()
        .first()
    )
    if closed is not None:
        closed.documentsJson = json.dumps([stored])

    _notify_stage(
        db,
        cfg,
        ctx,
        auth,
        type="VISA_UPLOADED",
        title="Visa uploaded",
        message=f"The visa for {ctx.labour.name} ({ctx.job_role.title}) has been uploaded.",
    )
    out["fileId"] = stored["fileId"]
    return out


TRAVEL_DOCUMENTS = ("FLIGHT_TICKET", "MEDICAL_CERTIFICATE", "POLICE_CLEARANCE", "EMPLOYMENT_CONTRACT")

_TRAVEL_MIME = {"application/pdf", "image/jpeg", "image/png"}


def _pending_row(db, labour_id: str, stage: str) -> Optional[LabourStageHistory]:
    return (
        db.execute(
            select(LabourStageHistory)
            .where(LabourStageHistory.labourId == labour_id)
            .where(LabourStageHistory.stage == stage)
            .where(LabourStageHistory.status == "PENDING")
            .limit(1)
        )
        .scalars()
        .first()
    )


def travel_documents_submit(data, auth: AuthContext | None, db, cfg):
    """
    Collect the travel package for a labour in READY_TO_TRAVEL.

    Documents may arrive over several calls and accumulate on the pending
    READY_TO_TRAVEL row. The stage advances once the four required documents
    and a travel date are all on file; until then the response lists what is
    still missing.
    """
    auth = require_auth(auth)
    ctx = load_agency_assignment(db, auth, data)
    _require_placed(ctx)
    if ctx.labour.currentStage != "READY_TO_TRAVEL":
        raise ApiError("CONFLICT", "Labour is not in READY_TO_TRAVEL stage")
    row = _pending_row(db, ctx.labour.labourId, "READY_TO_TRAVEL")
    if row is None:
        raise ApiError("CONFLICT", "No pending READY_TO_TRAVEL stage for this labour")

    items = (data or {}).get("documents") or []
    if not isinstance(items, list) or not all(isinstance(i, dict) for i in items):
        raise ApiError("BAD_REQUEST", "documents must be a list of objects")
    travel_date = None
    if (data or {}).get("travelDate"):
        travel_date = parse_datetime_maybe(data["travelDate"])
        if not travel_date:
            raise ApiError("BAD_REQUEST", "Invalid travelDate")
    if not items and travel_date is None:
        raise ApiError("BAD_REQUEST", "No travel documents provided")

    now = iso_utc_now()
    saved = []
    for item in items:
        doc_type = str(item.get("type") or "OTHER").upper().strip()
        if doc_type not in TRAVEL_DOCUMENTS and doc_type != "OTHER":
            raise ApiError("BAD_REQUEST", f"Unknown document type: {doc_type}")
        blob, name, mime = _decode_upload(item, default_name=f"{doc_type.lower()}.pdf", missing=f"Missing file for {doc_type}")
        stored = store_upload(cfg, file_bytes=blob, file_name=name, mime_type=mime, allowed_mime=_TRAVEL_MIME, db=db)
        saved.append({"type": doc_type, **stored, "uploadedAt": now})

    documents = json.loads(row.documentsJson or "[]") + saved
    row.documentsJson = json.dumps(documents)
    if travel_date is not None:
        ctx.assignment.travelDate = iso_utc(travel_date)
    ctx.assignment.updatedAt = now
    db.flush()

    on_file = {d.get("type") for d in documents}
    missing = [t for t in TRAVEL_DOCUMENTS if t not in on_file]
    ready = not missing and bool(ctx.assignment.travelDate)
    uploaded = [d["type"] for d in saved]

    if ready:
        out = _apply_transition(
            db,
            cfg,
            auth,
            ctx,
            "TRAVEL_DOCUMENTS_SUBMIT",
            note=f"All travel documents uploaded. Travel date: {ctx.assignment.travelDate[:10]}",
        )
        current, message = out["currentStage"], out["message"]
        summary = f"All travel documents are on file for {ctx.labour.name}."
    else:
        append_audit(
            db,
            entityType="LabourProfile",
            entityId=ctx.labour.labourId,
            action="TRAVEL_DOCUMENTS_UPLOAD",
            fromState="READY_TO_TRAVEL",
            toState="READY_TO_TRAVEL",
            stageTag="READY_TO_TRAVEL",
            actor=auth,
            at=now,
            after={"uploadedDocuments": uploaded, "missingDocuments": missing, "travelDate": ctx.assignment.travelDate},
        )
        current = "READY_TO_TRAVEL"
        message = "Travel documents uploaded successfully. Some required documents are still missing."
        summary = f"Travel documents uploaded for {ctx.labour.name}. More documents are pending."

    deliver_to_role(
        db,
        cfg,
        "ADMIN",
        type="TRAVEL_DOCUMENTS_UPLOADED",
        title=f"Travel documents: {ctx.labour.name}",
        message=summary,
        action_url=f"/dashboard/admin/requirements?requirementId={ctx.requirement.requirementId}",
        action_text="Open requirement",
        sender_id=auth.userId,
        entity_type="LabourAssignment",
        entity_id=ctx.assignment.assignmentId,
    )
    return {
        "success": True,
        "message": message,
        "documents": saved,
        "travelDate": ctx.assignment.travelDate or "",
        "readyToMoveToNextStage": ready,
        "missingDocuments": missing,
        "currentStage": current,
    }


def _fail_and_reset(db, cfg, auth: AuthContext, ctx: AssignmentContext, *, stage: str, row_status: str, reason: str, title: str, summary: str) -> None:
    """Close a failed stage and put the job role slot back up for replacement."""
    a = ctx.assignment
    if ctx.labour.currentStage != stage:
        raise ApiError("CONFLICT", f"Labour must be in {stage} stage")

    now = iso_utc_now()
    before = {
        **serialize_assignment(a),
        "labourStatus": ctx.labour.status,
        "currentStage": ctx.labour.currentStage,
        "requirementStatus": ctx.requirement.status,
        "jobRoleAdminStatus": ctx.job_role.adminStatus,
    }

    db.execute(
        update(LabourStageHistory)
        .where(LabourStageHistory.labourId == ctx.labour.labourId)
        .where(LabourStageHistory.stage == stage)
        .where(LabourStageHistory.status == "PENDING")
        .values(status=row_status, notes=reason, completedAt=now)
    )

    set_party_status(db, a, "ADMIN", "REJECTED", feedback=reason, writer="SYSTEM")
    set_party_status(db, a, "CLIENT", "PENDING", writer="SYSTEM")
    set_party_status(db, a, "AGENCY", "NEEDS_REVISION", writer="SYSTEM")
    release_labour(db, ctx.labour, reset_stages=True)

    ctx.job_role.needsMoreLabour = True
    ctx.job_role.adminStatus = "NEEDS_REVISION"
    ctx.job_role.updatedAt = now
    ctx.requirement.status = "UNDER_REVIEW"
    ctx.requirement.updatedAt = now
    ctx.requirement.updatedBy = auth.userId
    db.flush()

    append_audit(
        db,
        entityType="LabourAssignment",
        entityId=a.assignmentId,
        action="LABOUR_STAGE_FAILED",
        fromState=stage,
        toState="OFFER_LETTER_SIGN",
        stageTag=stage,
        remark=reason,
        actor=auth,
        at=now,
        before=before,
        after={
            **serialize_assignment(a),
            "labourStatus": ctx.labour.status,
            "currentStage": ctx.labour.currentStage,
            "requirementStatus": ctx.requirement.status,
            "jobRoleAdminStatus": ctx.job_role.adminStatus,
            "stageHistoryDeleted": True,
        },
    )

    from actions.backup_promotion import promote_backup

    promote_backup(db, cfg, job_role_id=ctx.job_role.jobRoleId, actor=auth)

    message = f"Labour {ctx.labour.name} {summary} for {ctx.job_role.title}. Replacement needed."
    for uid in (ctx.agency_user_id, ctx.client_user_id):
        if not uid:
            continue
        deliver_to_user(
            db,
            cfg,
            uid,
            type="STAGE_FAILED",
            title=title,
            message=message,
            priority="HIGH",
            action_url="/dashboard/agency/recruitment",
            action_text="Review assignment",
            sender_id=auth.userId,
            entity_type="LabourAssignment",
            entity_id=a.assignmentId,
        )
    deliver_to_role(
        db,
        cfg,
        "ADMIN",
        type="STAGE_FAILED",
        title=f"Action needed: {ctx.job_role.title}",
        message=message,
        priority="HIGH",
        sender_id=auth.userId,
        entity_type="LabourAssignment",
        entity_id=a.assignmentId,
    )


def _failure_action(stage: str, row_status: str, reason: str, summary: str, title: str, message: str):
    def handler(data, auth: AuthContext | None, db, cfg):
        auth = require_auth(auth)
        ctx = load_agency_assignment(db, auth, data)
        _require_placed(ctx)
        _fail_and_reset(db, cfg, auth, ctx, stage=stage, row_status=row_status, reason=reason, title=title, summary=summary)
        return {"success": True, "message": message}

    return handler


medical_mark_unfit = _failure_action(
    "MEDICAL_STATUS",
    "FAILED",
    "Labour failed medical examination",
    "failed medical examination",
    "Medical test failed",
    "Medical unfit marked successfully. Labour has been marked as rejected and can be replaced.",
)
fingerprint_mark_fail = _failure_action(
    "FINGERPRINT",
    "FAILED",
    "Labour failed fingerprint verification",
    "failed fingerprint verification",
    "Fingerprint verification failed",
    "Fingerprint failure marked successfully. Labour has been marked as rejected and can be replaced.",
)
contract_refuse = _failure_action(
    "CONTRACT_SIGN",
    "REFUSED",
    "Labour refused the contract",
    "refused the contract",
    "Contract refused",
    "Contract refusal recorded. Labour has been marked as rejected and can be replaced.",
)


def travel_confirm(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    status = str((data or {}).get("status") or "").upper().strip()
    if status not in {"TRAVELED", "RESCHEDULED", "CANCELED"}:
        raise ApiError("BAD_REQUEST", "Invalid status. Must be TRAVELED, RESCHEDULED, or CANCELED")
    notes = str((data or {}).get("notes") or "").strip()

    ctx = load_agency_assignment(db, auth, data)
    _require_placed(ctx)

    if status == "TRAVELED":
        out = _apply_transition(db, cfg, auth, ctx, "TRAVEL_CONFIRM", note=notes)
        ctx.assignment.travelStatus = "TRAVELED"
        return out

    if status == "CANCELED":
        _fail_and_reset(
            db,
            cfg,
            auth,
            ctx,
            stage="TRAVEL_CONFIRMATION",
            row_status="FAILED",
            reason=notes or "Travel cancelled by agency",
            title="Travel cancelled",
            summary="had travel cancelled",
        )
        ctx.assignment.travelStatus = "CANCELED"
        return {"success": True, "message": "Travel status updated to CANCELED"}

    new_date = parse_datetime_maybe((data or {}).get("rescheduledTravelDate"))
    if not new_date:
        raise ApiError("BAD_REQUEST", "Rescheduled travel date is required when status is RESCHEDULED")
    if ctx.labour.currentStage != "TRAVEL_CONFIRMATION":
        raise ApiError("CONFLICT", "Labour is not in TRAVEL_CONFIRMATION stage")

    now = iso_utc_now()
    closed = db.execute(
        update(LabourStageHistory)
        .where(LabourStageHistory.labourId == ctx.labour.labourId)
        .where(LabourStageHistory.stage == "TRAVEL_CONFIRMATION")
        .where(LabourStageHistory.status == "PENDING")
        .values(status="RESCHEDULED", notes=notes or "Travel rescheduled", completedAt=now)
    )
    if int(closed.rowcount or 0) == 0:
        raise ApiError("CONFLICT", "No pending travel confirmation to reschedule")
    db.add(
        LabourStageHistory(
            historyId=new_id("STG"),
            labourId=ctx.labour.labourId,
            stage="TRAVEL_CONFIRMATION",
            status="PENDING",
            notes=f"Travel rescheduled to {iso_utc(new_date)[:10]}",
            documentsJson="[]",
            createdAt=now,
        )
    )
    before_date = ctx.assignment.travelDate
    ctx.assignment.travelDate = iso_utc(new_date)
    ctx.assignment.travelStatus = "RESCHEDULED"
    ctx.assignment.updatedAt = now
    append_audit(
        db,
        entityType="LabourAssignment",
        entityId=ctx.assignment.assignmentId,
        action="TRAVEL_RESCHEDULED",
        fromState="TRAVEL_CONFIRMATION",
        toState="TRAVEL_CONFIRMATION",
        actor=auth,
        at=now,
        before={"travelDate": before_date},
        after={"travelDate": ctx.assignment.travelDate, "status": "RESCHEDULED"},
    )
    _notify_stage(
        db,
        cfg,
        ctx,
        auth,
        type="TRAVEL_UPDATED",
        title="Travel rescheduled",
        message=f"Travel for {ctx.labour.name} ({ctx.job_role.title}) has been rescheduled.",
    )
    return {"success": True, "message": "Travel status updated to RESCHEDULED", "travelDate": ctx.assignment.travelDate}


def travel_date_set(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    ctx = load_client_assignment(db, auth, data)
    _require_placed(ctx)
    dt = parse_datetime_maybe((data or {}).get("travelDate"))
    if not dt:
        raise ApiError("BAD_REQUEST", "Invalid travelDate")

    before = ctx.assignment.travelDate
    ctx.assignment.travelDate = iso_utc(dt)
    ctx.assignment.updatedAt = iso_utc_now()
    append_audit(
        db,
        entityType="LabourAssignment",
        entityId=ctx.assignment.assignmentId,
        action="TRAVEL_DATE_SET",
        actor=auth,
        before={"travelDate": before},
        after={"travelDate": ctx.assignment.travelDate},
    )
    _notify_stage(
        db,
        cfg,
        ctx,
        auth,
        type="TRAVEL_UPDATED",
        title="Travel date set",
        message=f"Travel date for {ctx.labour.name} set to {ctx.assignment.travelDate[:10]}.",
    )
    return {"success": True, "travelDate": ctx.assignment.travelDate}


def _can_view_labour(db, auth: AuthContext, labour: LabourProfile) -> bool:
    role = normalize_role(auth.role)
    if role == "ADMIN":
        return True
    if role == "AGENCY":
        return agency_for_user(db, auth).agencyId == labour.agencyId
    if role == "CLIENT":
        client = client_for_user(db, auth)
        owned = db.execute(
            select(LabourAssignment.assignmentId)
            .join(JobRole, JobRole.jobRoleId == LabourAssignment.jobRoleId)
            .join(Requirement, Requirement.requirementId == JobRole.requirementId)
            .where(LabourAssignment.labourId == labour.labourId)
            .where(Requirement.clientId == client.clientId)
            .limit(1)
        ).first()
        return owned is not None
    return False


def labour_stages_get(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    labour = db.get(LabourProfile, required_str(data, "labourId"))
    if not labour or not _can_view_labour(db, auth, labour):
        raise ApiError("NOT_FOUND", "Labour profile not found")

    rows = (
        db.execute(
            select(LabourStageHistory)
            .where(LabourStageHistory.labourId == labour.labourId)
            .order_by(LabourStageHistory.createdAt.asc(), LabourStageHistory.historyId.asc())
        )
        .scalars()
        .all()
    )
    return {
        "labourId": labour.labourId,
        "currentStage": labour.currentStage or "",
        "stages": [
            {
                "id": r.historyId,
                "stage": r.stage,
                "status": r.status,
                "notes": r.notes or "",
                "documents": json.loads(r.documentsJson or "[]"),
                "completedAt": r.completedAt or "",
                "createdAt": r.createdAt,
            }
            for r in rows
        ],
    }
