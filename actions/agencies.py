from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import func, select

from actions.helpers import agency_for_user, append_audit, require_auth, required_str
from auth import revoke_user_sessions
from models import Agency, LabourProfile, User
from services.notifications import deliver_to_user
from utils import ApiError, AuthContext, clamp_int, iso_utc, iso_utc_now, new_id, normalize_role


AGENCY_STATUSES = {"VERIFIED", "REJECTED", "NOT_VERIFIED"}
DELETION_TYPES = {"SCHEDULED", "IMMEDIATE"}
LABOUR_STATUSES = {"RECEIVED", "APPROVED", "SHORTLISTED", "REJECTED", "DEPLOYED"}


def serialize_agency(agency: Agency, user: User | None = None) -> dict[str, Any]:
    out = {
        "id": agency.agencyId,
        "userId": agency.userId,
        "agencyName": agency.agencyName,
        "licenseNumber": agency.licenseNumber,
        "country": agency.country,
        "verificationStatus": agency.verificationStatus,
        "updatedAt": agency.updatedAt,
    }
    if user is not None:
        out["user"] = {
            "email": user.email,
            "status": user.status,
            "deleteAt": user.deleteAt or None,
            "deletionType": user.deletionType or None,
        }
    return out


def serialize_labour(p: LabourProfile) -> dict[str, Any]:
    return {
        "id": p.labourId,
        "agencyId": p.agencyId,
        "name": p.name,
        "nationality": p.nationality,
        "passportNumber": p.passportNumber,
        "email": p.email,
        "phone": p.phone,
        "status": p.status,
        "verificationStatus": p.verificationStatus,
        "requirementId": p.requirementId or None,
        "currentStage": p.currentStage or None,
        "createdAt": p.createdAt,
        "updatedAt": p.updatedAt,
    }


def agency_status_update(data, auth: AuthContext | None, db, cfg):
    """
    Admin verification decision for an agency account.

    Rejection locks the account out immediately (sessions revoked) and
    schedules it for deletion; the cleanup sweeps do the actual removal.
    """
    auth = require_auth(auth)
    agency = db.execute(
        select(Agency).where(Agency.agencyId == required_str(data, "agencyId")).with_for_update()
    ).scalar_one_or_none()
    if not agency:
        raise ApiError("NOT_FOUND", "Agency not found")
    user = db.get(User, agency.userId)
    if not user:
        raise ApiError("NOT_FOUND", "Agency user not found")

    status = str((data or {}).get("status") or "").upper().strip()
    if status not in AGENCY_STATUSES:
        raise ApiError("BAD_REQUEST", "Status must be VERIFIED, REJECTED or NOT_VERIFIED")
    reason = str((data or {}).get("reason") or "").strip()
    if len(reason) < 10 or len(reason) > 500:
        raise ApiError("BAD_REQUEST", "Reason must be between 10 and 500 characters")

    deletion_type = ""
    if status == "REJECTED":
        deletion_type = str((data or {}).get("deletionType") or "SCHEDULED").upper().strip()
        if deletion_type not in DELETION_TYPES:
            raise ApiError("BAD_REQUEST", "deletionType must be SCHEDULED or IMMEDIATE")

    before = serialize_agency(agency, user)
    now_dt = datetime.now(timezone.utc)
    now = iso_utc(now_dt)

    agency.verificationStatus = status
    agency.updatedAt = now
    user.updatedAt = now
    user.updatedBy = auth.userId
    revoked = 0
    if status == "VERIFIED":
        user.status = "ACTIVE"
        user.deleteAt = ""
        user.deletionType = ""
        user.deletionRequestedBy = ""
    elif status == "REJECTED":
        user.status = "REJECTED"
        user.deletionType = deletion_type
        user.deletionRequestedBy = auth.userId
        user.deleteAt = now if deletion_type == "IMMEDIATE" else iso_utc(now_dt + timedelta(days=1))
        revoked = revoke_user_sessions(db, user_id=user.userId, revoked_by=auth.userId)
    else:
        user.status = "NOT_VERIFIED"
        user.deleteAt = ""
        user.deletionType = ""

    append_audit(
        db,
        entityType="Agency",
        entityId=agency.agencyId,
        action="AGENCY_UPDATE",
        fromState=before["verificationStatus"],
        toState=status,
        remark=reason,
        actor=auth,
        before=before,
        after=serialize_agency(agency, user),
        meta={"deletionType": deletion_type or None, "sessionsRevoked": revoked},
    )

    if status == "VERIFIED":
        title, message = "Account verified", "Your agency account has been verified. You can now log in."
    elif status == "REJECTED":
        title, message = "Account rejected", f"Your agency account has been rejected. Reason: {reason}"
    else:
        title, message = "Account under review", f"Your agency account verification was reset. Reason: {reason}"
    deliver_to_user(
        db,
        cfg,
        user.userId,
        type="ACCOUNT_VERIFIED" if status == "VERIFIED" else "ACCOUNT_REJECTED",
        title=title,
        message=message,
        priority="HIGH" if status == "REJECTED" else "NORMAL",
        sender_id=auth.userId,
        entity_type="Agency",
        entity_id=agency.agencyId,
    )
    return serialize_agency(agency, user)


def labour_profile_create(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    agency = agency_for_user(db, auth)
    name = required_str(data, "name")
    passport = str((data or {}).get("passportNumber") or "").strip().upper()
    if passport:
        dup = db.execute(
            select(LabourProfile.labourId)
            .where(LabourProfile.agencyId == agency.agencyId)
            .where(func.upper(LabourProfile.passportNumber) == passport)
        ).first()
        if dup:
            raise ApiError("CONFLICT", "A labour profile with this passport number already exists")

    now = iso_utc_now()
    profile = LabourProfile(
        labourId=new_id("LAB"),
        agencyId=agency.agencyId,
        name=name[:200],
        nationality=str((data or {}).get("nationality") or "").strip(),
        passportNumber=passport,
        email=str((data or {}).get("email") or "").strip().lower(),
        phone=str((data or {}).get("phone") or "").strip(),
        status="RECEIVED",
        verificationStatus="PENDING",
        requirementId="",
        currentStage="",
        createdAt=now,
        updatedAt=now,
    )
    db.add(profile)
    append_audit(
        db,
        entityType="LabourProfile",
        entityId=profile.labourId,
        action="LABOUR_PROFILE_CREATE",
        toState="RECEIVED",
        actor=auth,
        after=serialize_labour(profile),
    )
    return serialize_labour(profile)


def labour_profiles_list(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    q = select(LabourProfile)
    if normalize_role(auth.role) == "AGENCY":
        q = q.where(LabourProfile.agencyId == agency_for_user(db, auth).agencyId)
    else:
        agency_id = str((data or {}).get("agencyId") or "").strip()
        if agency_id:
            q = q.where(LabourProfile.agencyId == agency_id)

    status = str((data or {}).get("status") or "").upper().strip()
    if status:
        if status not in LABOUR_STATUSES:
            raise ApiError("BAD_REQUEST", f"Invalid status: {status}")
        q = q.where(LabourProfile.status == status)

    limit = clamp_int((data or {}).get("limit"), default=100, min_v=1, max_v=500)
    rows = db.execute(q.order_by(LabourProfile.createdAt.desc(), LabourProfile.labourId.desc()).limit(limit)).scalars().all()
    return {"labour": [serialize_labour(p) for p in rows]}
