from __future__ import annotations

from typing import Any

from sqlalchemy import select

from actions.helpers import agency_for_user, append_audit, client_for_user, require_auth, required_str
from models import Agency, Client, JobRole, Requirement
from services.notifications import deliver_to_role, deliver_to_user
from utils import ApiError, AuthContext, clamp_int, iso_utc_now, new_id, normalize_role


REQUIREMENT_STATUSES = {
    "SUBMITTED",
    "UNDER_REVIEW",
    "FORWARDED",
    "PARTIALLY_ACCEPTED",
    "CLIENT_REVIEW",
    "ACCEPTED",
    "REJECTED",
    "CLOSED",
}


def serialize_job_role(jr: JobRole) -> dict[str, Any]:
    return {
        "id": jr.jobRoleId,
        "requirementId": jr.requirementId,
        "title": jr.title,
        "quantity": int(jr.quantity or 0),
        "nationality": jr.nationality,
        "assignedAgencyId": jr.assignedAgencyId or None,
        "agencyStatus": jr.agencyStatus,
        "adminStatus": jr.adminStatus,
        "needsMoreLabour": bool(jr.needsMoreLabour),
        "createdAt": jr.createdAt,
        "updatedAt": jr.updatedAt,
    }


def serialize_requirement(r: Requirement, job_roles: list[JobRole] | None = None) -> dict[str, Any]:
    out = {
        "id": r.requirementId,
        "clientId": r.clientId,
        "status": r.status,
        "projectLocation": r.projectLocation,
        "notes": r.notes,
        "createdAt": r.createdAt,
        "updatedAt": r.updatedAt,
    }
    if job_roles is not None:
        out["jobRoles"] = [serialize_job_role(jr) for jr in job_roles]
    return out


def _job_roles(db, requirement_id: str) -> list[JobRole]:
    return (
        db.execute(
            select(JobRole)
            .where(JobRole.requirementId == requirement_id)
            .order_by(JobRole.createdAt.asc(), JobRole.jobRoleId.asc())
        )
        .scalars()
        .all()
    )


def _visible_requirement(db, auth: AuthContext, requirement_id: str) -> Requirement:
    requirement = db.get(Requirement, requirement_id)
    if not requirement:
        raise ApiError("NOT_FOUND", "Requirement not found")
    role = normalize_role(auth.role)
    if role == "CLIENT" and requirement.clientId != client_for_user(db, auth).clientId:
        raise ApiError("NOT_FOUND", "Requirement not found")
    if role == "AGENCY":
        agency = agency_for_user(db, auth)
        if not any(jr.assignedAgencyId == agency.agencyId for jr in _job_roles(db, requirement_id)):
            raise ApiError("NOT_FOUND", "Requirement not found")
    return requirement


def _parse_job_roles(raw: Any) -> list[dict[str, Any]]:
    if not isinstance(raw, list) or not raw:
        raise ApiError("BAD_REQUEST", "At least one job role is required")
    out = []
    for i, item in enumerate(raw):
        if not isinstance(item, dict):
            raise ApiError("BAD_REQUEST", f"Invalid job role at index {i}")
        title = str(item.get("title") or "").strip()
        if not title:
            raise ApiError("BAD_REQUEST", f"Missing title for job role {i + 1}")
        try:
            quantity = int(item.get("quantity"))
        except (TypeError, ValueError):
            quantity = 0
        if quantity < 1:
            raise ApiError("BAD_REQUEST", f"Quantity must be at least 1 for {title}")
        out.append({"title": title[:200], "quantity": quantity, "nationality": str(item.get("nationality") or "").strip()})
    return out


def requirement_create(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    client = client_for_user(db, auth)
    roles = _parse_job_roles((data or {}).get("jobRoles"))

    now = iso_utc_now()
    requirement = Requirement(
        requirementId=new_id("REQ"),
        clientId=client.clientId,
        status="SUBMITTED",
        projectLocation=str((data or {}).get("projectLocation") or "").strip(),
        notes=str((data or {}).get("notes") or "").strip()[:4000],
        createdAt=now,
        createdBy=auth.userId,
        updatedAt=now,
        updatedBy=auth.userId,
    )
    db.add(requirement)
    job_roles = []
    for r in roles:
        jr = JobRole(
            jobRoleId=new_id("JR"),
            requirementId=requirement.requirementId,
            title=r["title"],
            quantity=r["quantity"],
            nationality=r["nationality"],
            agencyStatus="PENDING",
            adminStatus="PENDING",
            needsMoreLabour=False,
            createdAt=now,
            updatedAt=now,
        )
        db.add(jr)
        job_roles.append(jr)

    append_audit(
        db,
        entityType="Requirement",
        entityId=requirement.requirementId,
        action="REQUIREMENT_CREATE",
        toState="SUBMITTED",
        actor=auth,
        after=serialize_requirement(requirement, job_roles),
    )
    deliver_to_role(
        db,
        cfg,
        "ADMIN",
        type="REQUIREMENT_SUBMITTED",
        title="New requirement submitted",
        message=f"{client.companyName or 'A client'} submitted a requirement for {sum(r['quantity'] for r in roles)} labour.",
        action_url="/dashboard/admin/requirements",
        action_text="Review requirement",
        sender_id=auth.userId,
        entity_type="Requirement",
        entity_id=requirement.requirementId,
    )
    return serialize_requirement(requirement, job_roles)


def requirements_list(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    role = normalize_role(auth.role)
    q = select(Requirement)
    if role == "CLIENT":
        q = q.where(Requirement.clientId == client_for_user(db, auth).clientId)
    elif role == "AGENCY":
        agency = agency_for_user(db, auth)
        assigned = select(JobRole.requirementId).where(JobRole.assignedAgencyId == agency.agencyId)
        q = q.where(Requirement.requirementId.in_(assigned))

    status = str((data or {}).get("status") or "").upper().strip()
    if status:
        if status not in REQUIREMENT_STATUSES:
            raise ApiError("BAD_REQUEST", f"Invalid status: {status}")
        q = q.where(Requirement.status == status)

    limit = clamp_int((data or {}).get("limit"), default=50, min_v=1, max_v=200)
    rows = db.execute(q.order_by(Requirement.createdAt.desc(), Requirement.requirementId.desc()).limit(limit)).scalars().all()
    return {"requirements": [serialize_requirement(r, _job_roles(db, r.requirementId)) for r in rows]}


def requirement_get(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    requirement = _visible_requirement(db, auth, required_str(data, "requirementId"))
    job_roles = _job_roles(db, requirement.requirementId)
    if normalize_role(auth.role) == "AGENCY":
        agency_id = agency_for_user(db, auth).agencyId
        job_roles = [jr for jr in job_roles if jr.assignedAgencyId == agency_id]
    return serialize_requirement(requirement, job_roles)


def _forward_targets(data: dict, job_roles: list[JobRole]) -> dict[str, str]:
    """Map jobRoleId -> agencyId from either a single agencyId or per-role assignments."""
    by_id = {jr.jobRoleId: jr for jr in job_roles}
    targets: dict[str, str] = {}
    items = data.get("assignments")
    if isinstance(items, list) and items:
        for item in items:
            if not isinstance(item, dict):
                raise ApiError("BAD_REQUEST", "Invalid assignments entry")
            jr_id = str(item.get("jobRoleId") or "").strip()
            agency_id = str(item.get("agencyId") or "").strip()
            if jr_id not in by_id:
                raise ApiError("NOT_FOUND", f"Job role not found: {jr_id}")
            if not agency_id:
                raise ApiError("BAD_REQUEST", "Missing agencyId")
            targets[jr_id] = agency_id
        return targets

    agency_id = required_str(data, "agencyId")
    for jr in job_roles:
        # Roles the agency has already taken on stay with it.
        if jr.agencyStatus != "ACCEPTED":
            targets[jr.jobRoleId] = agency_id
    return targets


def requirement_forward(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    requirement = db.execute(
        select(Requirement).where(Requirement.requirementId == required_str(data, "requirementId")).with_for_update()
    ).scalar_one_or_none()
    if not requirement:
        raise ApiError("NOT_FOUND", "Requirement not found")
    if requirement.status in {"ACCEPTED", "REJECTED", "CLOSED"}:
        raise ApiError("CONFLICT", f"Requirement is {requirement.status}")

    job_roles = _job_roles(db, requirement.requirementId)
    targets = _forward_targets(data or {}, job_roles)
    if not targets:
        raise ApiError("CONFLICT", "No job roles left to forward")

    agencies: dict[str, Agency] = {}
    for agency_id in set(targets.values()):
        agency = db.get(Agency, agency_id)
        if not agency:
            raise ApiError("NOT_FOUND", f"Agency not found: {agency_id}")
        if agency.verificationStatus != "VERIFIED":
            raise ApiError("CONFLICT", f"Agency {agency.agencyName or agency_id} is not verified")
        agencies[agency_id] = agency

    before = serialize_requirement(requirement, job_roles)
    now = iso_utc_now()
    for jr in job_roles:
        if jr.jobRoleId not in targets:
            continue
        jr.assignedAgencyId = targets[jr.jobRoleId]
        jr.agencyStatus = "PENDING"
        jr.updatedAt = now
    requirement.status = "FORWARDED"
    requirement.updatedAt = now
    requirement.updatedBy = auth.userId

    append_audit(
        db,
        entityType="Requirement",
        entityId=requirement.requirementId,
        action="REQUIREMENT_FORWARD",
        fromState=before["status"],
        toState="FORWARDED",
        actor=auth,
        before=before,
        after=serialize_requirement(requirement, job_roles),
    )
    for agency_id, agency in agencies.items():
        titles = ", ".join(jr.title for jr in job_roles if targets.get(jr.jobRoleId) == agency_id)
        deliver_to_user(
            db,
            cfg,
            agency.userId,
            type="REQUIREMENT_FORWARDED",
            title="New requirement assigned",
            message=f"A requirement has been forwarded to you: {titles}.",
            action_url="/dashboard/agency/requirements",
            action_text="View requirement",
            sender_id=auth.userId,
            entity_type="Requirement",
            entity_id=requirement.requirementId,
        )
    return serialize_requirement(requirement, job_roles)


def recompute_requirement_status(requirement: Requirement, job_roles: list[JobRole]) -> str:
    statuses = [jr.agencyStatus for jr in job_roles]
    if statuses and all(s == "ACCEPTED" for s in statuses):
        requirement.status = "ACCEPTED"
    elif any(s == "AGENCY_REJECTED" for s in statuses):
        requirement.status = "UNDER_REVIEW"
    elif any(s == "ACCEPTED" for s in statuses):
        requirement.status = "PARTIALLY_ACCEPTED"
    requirement.updatedAt = iso_utc_now()
    return requirement.status


def job_role_agency_status(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    agency = agency_for_user(db, auth)
    job_role = db.execute(
        select(JobRole).where(JobRole.jobRoleId == required_str(data, "jobRoleId")).with_for_update()
    ).scalar_one_or_none()
    if not job_role or job_role.assignedAgencyId != agency.agencyId:
        raise ApiError("NOT_FOUND", "Job role not found")

    status = str((data or {}).get("status") or "").upper().strip()
    if status not in {"ACCEPTED", "REJECTED"}:
        raise ApiError("BAD_REQUEST", "Status must be ACCEPTED or REJECTED")
    if job_role.agencyStatus != "PENDING":
        raise ApiError("CONFLICT", f"Job role is already {job_role.agencyStatus}")

    requirement = db.get(Requirement, job_role.requirementId)
    before = serialize_job_role(job_role)
    if status == "ACCEPTED":
        job_role.agencyStatus = "ACCEPTED"
        job_role.needsMoreLabour = True
    else:
        job_role.agencyStatus = "AGENCY_REJECTED"
        job_role.assignedAgencyId = ""
    job_role.updatedAt = iso_utc_now()

    db.flush()
    req_status = recompute_requirement_status(requirement, _job_roles(db, requirement.requirementId))
    requirement.updatedBy = auth.userId

    append_audit(
        db,
        entityType="JobRole",
        entityId=job_role.jobRoleId,
        action="JOB_ROLE_AGENCY_STATUS",
        fromState=before["agencyStatus"],
        toState=job_role.agencyStatus,
        remark=str((data or {}).get("reason") or "")[:500],
        actor=auth,
        before=before,
        after=serialize_job_role(job_role),
        meta={"requirementId": requirement.requirementId, "requirementStatus": req_status},
    )

    verb = "accepted" if status == "ACCEPTED" else "declined"
    deliver_to_role(
        db,
        cfg,
        "ADMIN",
        type="REQUIREMENT_ACCEPTED" if status == "ACCEPTED" else "REQUIREMENT_REJECTED",
        title=f"Agency {verb} {job_role.title}",
        message=f"{agency.agencyName or 'An agency'} {verb} the job role {job_role.title}.",
        priority="NORMAL" if status == "ACCEPTED" else "HIGH",
        action_url="/dashboard/admin/requirements",
        action_text="View requirement",
        sender_id=auth.userId,
        entity_type="Requirement",
        entity_id=requirement.requirementId,
    )
    client = db.get(Client, requirement.clientId)
    if client and req_status == "ACCEPTED":
        deliver_to_user(
            db,
            cfg,
            client.userId,
            type="REQUIREMENT_ACCEPTED",
            title="Requirement accepted",
            message="All job roles of your requirement have been accepted by agencies.",
            action_url="/dashboard/client/requirements",
            action_text="View requirement",
            sender_id=auth.userId,
            entity_type="Requirement",
            entity_id=requirement.requirementId,
        )
    return {"jobRole": serialize_job_role(job_role), "requirementStatus": req_status}
