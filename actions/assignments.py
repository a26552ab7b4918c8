from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from actions.helpers import agency_for_user, append_audit, client_for_user, require_auth, required_str
from models import Agency, Client, JobRole, LabourAssignment, LabourProfile, LabourStageHistory, Requirement
from services.notifications import deliver_to_role, deliver_to_user, discard_pending_since, pending_mark
from utils import ApiError, AuthContext, clamp_int, iso_utc_now, new_id, normalize_role


_log = logging.getLogger("api")

PARTY_FIELDS = {"AGENCY": "agencyStatus", "ADMIN": "adminStatus", "CLIENT": "clientStatus"}
FEEDBACK_FIELDS = {"AGENCY": "agencyFeedback", "ADMIN": "adminFeedback", "CLIENT": "clientFeedback"}
ASSIGNMENT_STATUSES = {"PENDING", "SUBMITTED", "ACCEPTED", "REJECTED", "NEEDS_REVISION"}

PLACED = "PLACED"
IN_PROGRESS = "IN_PROGRESS"
REJECTED = "REJECTED"


def compute_placement(agency_status: str, admin_status: str, client_status: str) -> str:
    statuses = [str(s or "").upper() for s in (agency_status, admin_status, client_status)]
    if all(s == "ACCEPTED" for s in statuses):
        return PLACED
    if any(s == "REJECTED" for s in statuses):
        return REJECTED
    return IN_PROGRESS


def set_party_status(
    db,
    assignment: LabourAssignment,
    party: str,
    value: str,
    *,
    feedback: Optional[str] = None,
    writer: Optional[str] = None,
) -> str:
    """
    Write one of the three party statuses and recompute ``placementStatus``.

    ``writer`` is the role performing the write (defaults to ``party``); a
    party may only write its own field, ``SYSTEM`` may write any.
    """
    party_u = normalize_role(party) or ""
    field = PARTY_FIELDS.get(party_u)
    if not field:
        raise ApiError("BAD_REQUEST", f"Invalid party: {party}")
    writer_u = normalize_role(writer) or party_u
    if writer_u != "SYSTEM" and writer_u != party_u:
        raise ApiError("UNAUTHORIZED", f"{writer_u} cannot change {field}")

    value_u = str(value or "").upper().strip()
    if value_u not in ASSIGNMENT_STATUSES:
        raise ApiError("BAD_REQUEST", f"Invalid status: {value}")

    setattr(assignment, field, value_u)
    if feedback is not None:
        setattr(assignment, FEEDBACK_FIELDS[party_u], str(feedback or "")[:2000])
    assignment.placementStatus = compute_placement(assignment.agencyStatus, assignment.adminStatus, assignment.clientStatus)
    assignment.updatedAt = iso_utc_now()
    return assignment.placementStatus


def serialize_assignment(a: LabourAssignment, labour: Optional[LabourProfile] = None, job_role: Optional[JobRole] = None) -> dict[str, Any]:
    out = {
        "id": a.assignmentId,
        "jobRoleId": a.jobRoleId,
        "labourId": a.labourId,
        "agencyId": a.agencyId,
        "agencyStatus": a.agencyStatus,
        "adminStatus": a.adminStatus,
        "clientStatus": a.clientStatus,
        "placementStatus": a.placementStatus,
        "isBackup": bool(a.isBackup),
        "agencyFeedback": a.agencyFeedback or "",
        "adminFeedback": a.adminFeedback or "",
        "clientFeedback": a.clientFeedback or "",
        "travelDate": a.travelDate or "",
        "travelStatus": a.travelStatus or "",
        "createdAt": a.createdAt,
        "updatedAt": a.updatedAt,
    }
    if labour is not None:
        out["labour"] = {
            "id": labour.labourId,
            "name": labour.name,
            "nationality": labour.nationality,
            "status": labour.status,
            "currentStage": labour.currentStage or "",
        }
    if job_role is not None:
        out["jobRole"] = {"id": job_role.jobRoleId, "title": job_role.title, "quantity": int(job_role.quantity or 0)}
    return out


@dataclass
class AssignmentContext:
    assignment: LabourAssignment
    job_role: JobRole
    requirement: Requirement
    labour: LabourProfile
    agency: Optional[Agency]
    client: Optional[Client]

    @property
    def agency_user_id(self) -> str:
        return str(self.agency.userId) if self.agency else ""

    @property
    def client_user_id(self) -> str:
        return str(self.client.userId) if self.client else ""


def load_context(db, assignment: LabourAssignment) -> AssignmentContext:
    job_role = db.get(JobRole, assignment.jobRoleId)
    requirement = db.get(Requirement, job_role.requirementId) if job_role else None
    labour = db.get(LabourProfile, assignment.labourId)
    if not job_role or not requirement or not labour:
        raise ApiError("NOT_FOUND", "Assignment not found")
    return AssignmentContext(
        assignment=assignment,
        job_role=job_role,
        requirement=requirement,
        labour=labour,
        agency=db.get(Agency, assignment.agencyId),
        client=db.get(Client, requirement.clientId),
    )


def _lock_assignment(db, assignment_id: str, *, agency_id: str = "") -> Optional[LabourAssignment]:
    q = select(LabourAssignment).where(LabourAssignment.assignmentId == assignment_id)
    if agency_id:
        q = q.where(LabourAssignment.agencyId == agency_id)
    return db.execute(q.with_for_update()).scalar_one_or_none()


def load_agency_assignment(db, auth: AuthContext | None, data: dict) -> AssignmentContext:
    agency = agency_for_user(db, auth)
    assignment = _lock_assignment(db, required_str(data, "assignmentId"), agency_id=agency.agencyId)
    if not assignment:
        raise ApiError("NOT_FOUND", "Assignment not found")
    return load_context(db, assignment)


def load_client_assignment(db, auth: AuthContext | None, data: dict) -> AssignmentContext:
    client = client_for_user(db, auth)
    assignment = _lock_assignment(db, required_str(data, "assignmentId"))
    if not assignment:
        raise ApiError("NOT_FOUND", "Assignment not found")
    ctx = load_context(db, assignment)
    if ctx.requirement.clientId != client.clientId:
        raise ApiError("NOT_FOUND", "Assignment not found")
    return ctx


def load_admin_assignment(db, data: dict) -> AssignmentContext:
    assignment = _lock_assignment(db, required_str(data, "assignmentId"))
    if not assignment:
        raise ApiError("NOT_FOUND", "Assignment not found")
    return load_context(db, assignment)


def release_labour(db, labour: LabourProfile, *, status: str = "APPROVED", reset_stages: bool = False) -> None:
    """Detach a labour profile from its requirement so it can be offered again."""
    labour.status = status
    labour.requirementId = ""
    labour.updatedAt = iso_utc_now()
    if reset_stages:
        labour.currentStage = "OFFER_LETTER_SIGN"
        db.execute(delete(LabourStageHistory).where(LabourStageHistory.labourId == labour.labourId))


def _job_role_assignments(db, job_role_id: str) -> list[LabourAssignment]:
    return (
        db.execute(
            select(LabourAssignment)
            .where(LabourAssignment.jobRoleId == job_role_id)
            .order_by(LabourAssignment.createdAt.asc(), LabourAssignment.assignmentId.asc())
        )
        .scalars()
        .all()
    )


def _is_active(a: LabourAssignment) -> bool:
    return a.placementStatus != REJECTED


def occupied_slots(assignments: list[LabourAssignment]) -> int:
    return sum(
        1 for a in assignments if not a.isBackup and _is_active(a) and a.clientStatus in {"ACCEPTED", "SUBMITTED"}
    )


def rebalance_job_role(db, job_role: JobRole) -> None:
    """
    Admin-accepted assignments fill the requested quantity in creation order;
    the remainder are held as backups. Client-accepted rows keep their slot.
    """
    pool = [a for a in _job_role_assignments(db, job_role.jobRoleId) if a.adminStatus == "ACCEPTED" and _is_active(a)]
    pool.sort(key=lambda a: (a.clientStatus != "ACCEPTED", a.createdAt or "", a.assignmentId))
    quantity = int(job_role.quantity or 0)
    for i, a in enumerate(pool):
        primary = i < quantity
        a.isBackup = not primary
        if a.clientStatus != "ACCEPTED":
            set_party_status(db, a, "CLIENT", "SUBMITTED" if primary else "PENDING", writer="SYSTEM")


def refresh_job_role(db, cfg, job_role: JobRole, *, actor: Optional[AuthContext] = None) -> dict[str, Any]:
    """Recompute ``needsMoreLabour`` and the job role's admin status from its assignments."""
    rows = _job_role_assignments(db, job_role.jobRoleId)
    quantity = int(job_role.quantity or 0)
    primaries = [a for a in rows if not a.isBackup and _is_active(a) and a.adminStatus == "ACCEPTED"]
    all_accepted = len(primaries) >= quantity
    any_rejected = any(a.adminStatus == "REJECTED" for a in rows)

    if all_accepted:
        job_role.adminStatus = "ACCEPTED"
    elif any_rejected:
        job_role.adminStatus = "NEEDS_REVISION"

    prev = bool(job_role.needsMoreLabour)
    job_role.needsMoreLabour = occupied_slots(rows) < quantity
    job_role.updatedAt = iso_utc_now()

    if not prev and job_role.needsMoreLabour and job_role.assignedAgencyId:
        agency = db.get(Agency, job_role.assignedAgencyId)
        if agency:
            deliver_to_user(
                db,
                cfg,
                agency.userId,
                type="REQUIREMENT_NEEDS_REVISION",
                title=f"Urgent: More Labour Needed for {job_role.title}",
                message=f"The requirement needs more labour profiles for the job role: {job_role.title}. Please take action immediately.",
                priority="HIGH",
                action_url="/dashboard/agency/requirements",
                action_text="View Requirement",
                sender_id=actor.userId if actor else "",
                entity_type="JobRole",
                entity_id=job_role.jobRoleId,
            )
    return {"needsMoreLabour": bool(job_role.needsMoreLabour), "allPrimariesAccepted": all_accepted}


# Actions


def assignment_create(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    agency = agency_for_user(db, auth)
    job_role_id = required_str(data, "jobRoleId")
    labour_ids = (data or {}).get("labourIds") or []
    if isinstance(labour_ids, str):
        labour_ids = [labour_ids]
    labour_ids = [str(x).strip() for x in labour_ids if str(x or "").strip()]
    if not labour_ids:
        raise ApiError("BAD_REQUEST", "Missing labourIds")

    job_role = db.execute(select(JobRole).where(JobRole.jobRoleId == job_role_id).with_for_update()).scalar_one_or_none()
    if not job_role or job_role.assignedAgencyId != agency.agencyId:
        raise ApiError("NOT_FOUND", "Job role not found")
    if job_role.agencyStatus != "ACCEPTED":
        raise ApiError("CONFLICT", "Job role must be accepted by the agency first")

    now = iso_utc_now()
    created = []
    for labour_id in labour_ids:
        labour = db.get(LabourProfile, labour_id)
        if not labour or labour.agencyId != agency.agencyId:
            raise ApiError("NOT_FOUND", f"Labour profile not found: {labour_id}")
        if labour.status not in {"RECEIVED", "APPROVED"}:
            raise ApiError("CONFLICT", f"Labour {labour.name} is not available")
        busy = db.execute(
            select(LabourAssignment.assignmentId)
            .where(LabourAssignment.labourId == labour_id)
            .where(LabourAssignment.placementStatus != REJECTED)
            .limit(1)
        ).first()
        if busy is not None:
            raise ApiError("CONFLICT", f"Labour {labour.name} already has an active assignment")

        a = LabourAssignment(
            assignmentId=new_id("ASG"),
            jobRoleId=job_role.jobRoleId,
            labourId=labour_id,
            agencyId=agency.agencyId,
            agencyStatus="PENDING",
            adminStatus="PENDING",
            clientStatus="PENDING",
            isBackup=False,
            createdAt=now,
            updatedAt=now,
        )
        set_party_status(db, a, "AGENCY", "ACCEPTED")
        db.add(a)
        created.append(a)

    try:
        db.flush()
    except IntegrityError:
        raise ApiError("CONFLICT", "Labour already submitted for this job role")

    for a in created:
        append_audit(db, entityType="LabourAssignment", entityId=a.assignmentId, action="ASSIGNMENT_CREATE", toState=a.placementStatus, actor=auth, at=now)

    deliver_to_role(
        db,
        cfg,
        "ADMIN",
        type="LABOUR_SUBMITTED",
        title=f"New labour submitted for {job_role.title}",
        message=f"{agency.agencyName} submitted {len(created)} labour profile(s) for {job_role.title}.",
        priority="NORMAL",
        action_url="/dashboard/admin/labour",
        action_text="Review",
        sender_id=auth.userId,
        entity_type="JobRole",
        entity_id=job_role.jobRoleId,
    )
    return {"assignments": [serialize_assignment(a) for a in created]}


def assignments_list(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    role = normalize_role(auth.role)
    q = select(LabourAssignment, LabourProfile, JobRole).join(
        LabourProfile, LabourProfile.labourId == LabourAssignment.labourId
    ).join(JobRole, JobRole.jobRoleId == LabourAssignment.jobRoleId)

    if role == "AGENCY":
        q = q.where(LabourAssignment.agencyId == agency_for_user(db, auth).agencyId)
    elif role == "CLIENT":
        client = client_for_user(db, auth)
        q = q.join(Requirement, Requirement.requirementId == JobRole.requirementId).where(Requirement.clientId == client.clientId)
        # Clients only see candidates the admin has put forward.
        q = q.where(LabourAssignment.adminStatus == "ACCEPTED")

    job_role_id = str((data or {}).get("jobRoleId") or "").strip()
    if job_role_id:
        q = q.where(LabourAssignment.jobRoleId == job_role_id)
    requirement_id = str((data or {}).get("requirementId") or "").strip()
    if requirement_id:
        q = q.where(JobRole.requirementId == requirement_id)
    placement = str((data or {}).get("placementStatus") or "").upper().strip()
    if placement:
        q = q.where(LabourAssignment.placementStatus == placement)

    limit = clamp_int((data or {}).get("limit"), default=100, min_v=1, max_v=500)
    rows = db.execute(q.order_by(LabourAssignment.createdAt.asc(), LabourAssignment.assignmentId.asc()).limit(limit)).all()
    return {"assignments": [serialize_assignment(a, labour, jr) for a, labour, jr in rows]}


def agency_assignment_status(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    ctx = load_agency_assignment(db, auth, data)
    a = ctx.assignment
    status = str((data or {}).get("status") or "").upper().strip()
    if status not in {"ACCEPTED", "REJECTED", "NEEDS_REVISION"}:
        raise ApiError("BAD_REQUEST", "Invalid status provided")
    if a.placementStatus == PLACED or a.clientStatus == "ACCEPTED":
        raise ApiError("CONFLICT", "Assignment is already placed")
    if a.placementStatus == REJECTED:
        raise ApiError("CONFLICT", "Assignment is already closed")

    before = serialize_assignment(a)
    was_primary = not a.isBackup and a.clientStatus == "SUBMITTED"
    set_party_status(db, a, "AGENCY", status, feedback=str((data or {}).get("feedback") or ""))

    promotion = None
    if status == "REJECTED":
        release_labour(db, ctx.labour)
        if was_primary:
            from actions.backup_promotion import promote_backup

            promotion = promote_backup(db, cfg, job_role_id=ctx.job_role.jobRoleId, actor=auth)
        refresh_job_role(db, cfg, ctx.job_role, actor=auth)

    append_audit(
        db,
        entityType="LabourAssignment",
        entityId=a.assignmentId,
        action="AGENCY_ASSIGNMENT_STATUS",
        fromState=before["agencyStatus"],
        toState=status,
        actor=auth,
        before=before,
        after=serialize_assignment(a),
    )
    return {"success": True, "assignment": serialize_assignment(a), "promotion": promotion}


def _admin_decide(db, cfg, auth: AuthContext, ctx: AssignmentContext, status: str, feedback: str) -> dict[str, Any]:
    a = ctx.assignment
    if status not in {"ACCEPTED", "REJECTED"}:
        raise ApiError("BAD_REQUEST", "Invalid status value")
    if status == "REJECTED" and not feedback:
        raise ApiError("BAD_REQUEST", "Feedback is required for rejection")
    if a.clientStatus == "ACCEPTED":
        raise ApiError("CONFLICT", "Assignment is already accepted by the client")
    if a.agencyStatus == "REJECTED":
        raise ApiError("CONFLICT", "Assignment was withdrawn by the agency")

    before = serialize_assignment(a)
    was_primary = not a.isBackup and a.adminStatus == "ACCEPTED"
    set_party_status(db, a, "ADMIN", status, feedback="" if status == "ACCEPTED" else feedback)

    promotion = None
    if status == "ACCEPTED":
        ctx.labour.status = "SHORTLISTED"
        ctx.labour.requirementId = ctx.requirement.requirementId
        ctx.labour.updatedAt = iso_utc_now()
        db.flush()
        rebalance_job_role(db, ctx.job_role)
    else:
        set_party_status(db, a, "CLIENT", "PENDING", writer="SYSTEM")
        release_labour(db, ctx.labour, status="REJECTED")
        db.flush()
        if was_primary:
            from actions.backup_promotion import promote_backup

            promotion = promote_backup(db, cfg, job_role_id=ctx.job_role.jobRoleId, actor=auth)

    summary = refresh_job_role(db, cfg, ctx.job_role, actor=auth)
    if status == "ACCEPTED" and summary["allPrimariesAccepted"] and ctx.requirement.status != "CLIENT_REVIEW":
        ctx.requirement.status = "CLIENT_REVIEW"
        ctx.requirement.updatedAt = iso_utc_now()
        ctx.requirement.updatedBy = auth.userId
        if ctx.client_user_id:
            deliver_to_user(
                db,
                cfg,
                ctx.client_user_id,
                type="LABOUR_SUBMITTED",
                title=f"Candidates ready for review: {ctx.job_role.title}",
                message=f"Shortlisted labour for {ctx.job_role.title} is ready for your review.",
                action_url="/dashboard/client/requirements",
                action_text="Review candidates",
                sender_id=auth.userId,
                entity_type="Requirement",
                entity_id=ctx.requirement.requirementId,
            )

    append_audit(
        db,
        entityType="LabourAssignment",
        entityId=a.assignmentId,
        action="ADMIN_ASSIGNMENT_STATUS",
        fromState=before["adminStatus"],
        toState=status,
        remark=feedback,
        actor=auth,
        before=before,
        after=serialize_assignment(a),
        meta={"jobRoleId": ctx.job_role.jobRoleId, "requirementStatus": ctx.requirement.status},
    )
    return {
        "success": True,
        "assignment": serialize_assignment(a),
        "needsMoreLabour": summary["needsMoreLabour"],
        "promotion": promotion,
    }


def admin_assignment_status(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    ctx = load_admin_assignment(db, data)
    status = str((data or {}).get("status") or "").upper().strip()
    feedback = str((data or {}).get("feedback") or "").strip()
    return _admin_decide(db, cfg, auth, ctx, status, feedback)


def _open_offer_letter_stage(db, labour: LabourProfile) -> None:
    existing = db.execute(
        select(LabourStageHistory.historyId)
        .where(LabourStageHistory.labourId == labour.labourId)
        .where(LabourStageHistory.stage == "OFFER_LETTER_SIGN")
        .where(LabourStageHistory.status == "PENDING")
        .limit(1)
    ).first()
    now = iso_utc_now()
    if existing is None:
        db.add(
            LabourStageHistory(
                historyId=new_id("STG"),
                labourId=labour.labourId,
                stage="OFFER_LETTER_SIGN",
                status="PENDING",
                notes="Awaiting offer letter signature",
                documentsJson="[]",
                createdAt=now,
            )
        )
    labour.currentStage = "OFFER_LETTER_SIGN"
    labour.updatedAt = now


def _fulfil_job_role(db, ctx: AssignmentContext) -> bool:
    """Close out a job role whose requested quantity is client-accepted; returns True when it is full."""
    rows = _job_role_assignments(db, ctx.job_role.jobRoleId)
    accepted = [a for a in rows if a.clientStatus == "ACCEPTED" and _is_active(a)]
    if len(accepted) < int(ctx.job_role.quantity or 0):
        return False

    for a in rows:
        if a.clientStatus == "ACCEPTED" or a.placementStatus == REJECTED:
            continue
        reason = "Backup candidate - requirement fulfilled" if a.isBackup else "Not selected - requirement fulfilled"
        set_party_status(db, a, "CLIENT", "REJECTED", feedback=reason, writer="SYSTEM")
        a.isBackup = False
        labour = db.get(LabourProfile, a.labourId)
        if labour:
            release_labour(db, labour)

    ctx.job_role.needsMoreLabour = False
    ctx.job_role.updatedAt = iso_utc_now()
    return True


def _requirement_fulfilled(db, requirement_id: str) -> bool:
    roles = db.execute(select(JobRole).where(JobRole.requirementId == requirement_id)).scalars().all()
    for jr in roles:
        accepted = [
            a
            for a in _job_role_assignments(db, jr.jobRoleId)
            if a.clientStatus == "ACCEPTED" and a.placementStatus != REJECTED
        ]
        if len(accepted) < int(jr.quantity or 0):
            return False
    return bool(roles)


def _client_decide(db, cfg, auth: AuthContext, ctx: AssignmentContext, status: str, feedback: str) -> dict[str, Any]:
    a = ctx.assignment
    if status not in {"ACCEPTED", "REJECTED"}:
        raise ApiError("BAD_REQUEST", "Invalid status provided")
    if status == "REJECTED" and not feedback:
        raise ApiError("BAD_REQUEST", "Feedback is required for rejection")
    if a.clientStatus in {"ACCEPTED", "REJECTED"}:
        raise ApiError("CONFLICT", f"Assignment already {a.clientStatus.lower()}")

    before = serialize_assignment(a)
    promotion = None
    fulfilled = False

    if status == "ACCEPTED":
        if a.adminStatus != "ACCEPTED":
            raise ApiError("CONFLICT", "Assignment has not been approved by admin")
        if a.agencyStatus != "ACCEPTED":
            raise ApiError("CONFLICT", "Assignment was withdrawn by the agency")
        set_party_status(db, a, "CLIENT", "ACCEPTED", feedback="")
        a.isBackup = False
        _open_offer_letter_stage(db, ctx.labour)
        db.flush()
        fulfilled = _fulfil_job_role(db, ctx)
        if fulfilled and _requirement_fulfilled(db, ctx.requirement.requirementId):
            ctx.requirement.status = "ACCEPTED"
            ctx.requirement.updatedAt = iso_utc_now()
            ctx.requirement.updatedBy = auth.userId
        notify_type, title = "LABOUR_ACCEPTED", f"Labour accepted: {ctx.labour.name}"
        message = f"{ctx.labour.name} was accepted for {ctx.job_role.title}. Offer letter signature is now pending."
    else:
        was_primary = not a.isBackup
        set_party_status(db, a, "CLIENT", "REJECTED", feedback=feedback)
        release_labour(db, ctx.labour, status="REJECTED")
        db.flush()
        if was_primary:
            from actions.backup_promotion import promote_backup

            promotion = promote_backup(db, cfg, job_role_id=ctx.job_role.jobRoleId, actor=auth)
        notify_type, title = "LABOUR_REJECTED", f"Labour rejected: {ctx.labour.name}"
        message = f"{ctx.labour.name} was rejected for {ctx.job_role.title}: {feedback}"

    if not fulfilled:
        refresh_job_role(db, cfg, ctx.job_role, actor=auth)

    append_audit(
        db,
        entityType="LabourAssignment",
        entityId=a.assignmentId,
        action="CLIENT_ASSIGNMENT_STATUS",
        fromState=before["clientStatus"],
        toState=status,
        remark=feedback,
        actor=auth,
        before=before,
        after=serialize_assignment(a),
        meta={"requirementStatus": ctx.requirement.status, "jobRoleFulfilled": fulfilled},
    )
    notify_parties(db, cfg, ctx, auth, type=notify_type, title=title, message=message)
    return {"success": True, "assignment": serialize_assignment(a), "promotion": promotion, "jobRoleFulfilled": fulfilled}


def notify_parties(db, cfg, ctx: AssignmentContext, auth: AuthContext, *, type: str, title: str, message: str, priority: str = "NORMAL", include_client: bool = False) -> None:
    recipients = [ctx.agency_user_id]
    if include_client:
        recipients.append(ctx.client_user_id)
    for uid in recipients:
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


def client_assignment_status(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    ctx = load_client_assignment(db, auth, data)
    status = str((data or {}).get("status") or "").upper().strip()
    feedback = str((data or {}).get("feedback") or "").strip()
    return _client_decide(db, cfg, auth, ctx, status, feedback)


def _bulk(db, data, run_one) -> dict[str, Any]:
    ids = (data or {}).get("assignmentIds") or (data or {}).get("ids") or []
    ids = [str(i).strip() for i in ids if str(i or "").strip()]
    if not ids:
        raise ApiError("BAD_REQUEST", "Missing assignmentIds")
    results = []
    for assignment_id in ids:
        mark = pending_mark(db)
        sp = db.begin_nested()
        try:
            out = run_one(assignment_id)
            sp.commit()
            results.append({"id": assignment_id, "ok": True, "placementStatus": out["assignment"]["placementStatus"]})
        except ApiError as e:
            sp.rollback()
            discard_pending_since(db, mark)
            _log.info("bulk status skipped assignment=%s code=%s", assignment_id, e.code)
            results.append({"id": assignment_id, "ok": False, "error": {"code": e.code, "message": e.message}})
    return {"results": results, "updated": sum(1 for r in results if r["ok"])}


def admin_assignment_bulk_status(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    status = str((data or {}).get("status") or "").upper().strip()
    feedback = str((data or {}).get("feedback") or "").strip()

    def _one(assignment_id: str):
        ctx = load_admin_assignment(db, {"assignmentId": assignment_id})
        return _admin_decide(db, cfg, auth, ctx, status, feedback)

    return _bulk(db, data, _one)


def client_assignment_bulk_status(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    status = str((data or {}).get("status") or "").upper().strip()
    feedback = str((data or {}).get("feedback") or "").strip()

    def _one(assignment_id: str):
        ctx = load_client_assignment(db, auth, {"assignmentId": assignment_id})
        return _client_decide(db, cfg, auth, ctx, status, feedback)

    return _bulk(db, data, _one)
