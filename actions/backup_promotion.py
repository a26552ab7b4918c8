from __future__ import annotations

import logging
from typing import Any, Optional

from sqlalchemy import select

from actions.assignments import REJECTED, occupied_slots, refresh_job_role, serialize_assignment, set_party_status
from actions.helpers import append_audit, client_for_user, require_auth, required_str
from models import Client, JobRole, LabourAssignment, LabourProfile, Requirement
from services.notifications import deliver_to_user
from utils import ApiError, AuthContext


_log = logging.getLogger("api")


def eligible_backups(assignments: list[LabourAssignment]) -> list[LabourAssignment]:
    """Backups that can take a primary slot, oldest first."""
    out = [
        a
        for a in assignments
        if a.isBackup
        and a.clientStatus == "PENDING"
        and a.adminStatus == "ACCEPTED"
        and a.agencyStatus == "ACCEPTED"
        and a.placementStatus != REJECTED
    ]
    out.sort(key=lambda a: (a.createdAt or "", a.assignmentId))
    return out


def promote_backup(db, cfg, *, job_role_id: str, actor: Optional[AuthContext] = None) -> dict[str, Any]:
    """
    Fill an open primary slot of a job role with its oldest eligible backup.

    Runs inside the caller's transaction; the job role row is locked first so
    two concurrent promotions for the same role serialize.
    """
    job_role = db.execute(select(JobRole).where(JobRole.jobRoleId == job_role_id).with_for_update()).scalar_one_or_none()
    if not job_role:
        raise ApiError("NOT_FOUND", "Job role not found")

    db.flush()
    rows = (
        db.execute(
            select(LabourAssignment)
            .where(LabourAssignment.jobRoleId == job_role_id)
            .order_by(LabourAssignment.createdAt.asc(), LabourAssignment.assignmentId.asc())
            .with_for_update()
        )
        .scalars()
        .all()
    )

    if occupied_slots(rows) >= int(job_role.quantity or 0):
        return {"promoted": False, "reason": "NO_REPLACEMENT_NEEDED"}

    candidates = eligible_backups(rows)
    if not candidates:
        _log.info("no backup available job_role=%s", job_role_id)
        return {"promoted": False, "reason": "NO_BACKUP_AVAILABLE", "message": "No replacement available"}

    backup = candidates[0]
    before = serialize_assignment(backup)
    backup.isBackup = False
    set_party_status(db, backup, "CLIENT", "SUBMITTED", writer="SYSTEM")

    append_audit(
        db,
        entityType="LabourAssignment",
        entityId=backup.assignmentId,
        action="BACKUP_PROMOTED",
        fromState="BACKUP",
        toState="PRIMARY",
        actor=actor,
        before=before,
        after=serialize_assignment(backup),
        meta={"jobRoleId": job_role_id},
    )

    requirement = db.get(Requirement, job_role.requirementId)
    client = db.get(Client, requirement.clientId) if requirement else None
    labour = db.get(LabourProfile, backup.labourId)
    if client:
        deliver_to_user(
            db,
            cfg,
            client.userId,
            type="BACKUP_PROMOTED",
            title=f"Backup candidate promoted for {job_role.title}",
            message=f"{labour.name if labour else backup.labourId} has been promoted from backup and is ready for your review.",
            action_url="/dashboard/client/requirements",
            action_text="Review candidate",
            sender_id=actor.userId if actor else "",
            entity_type="LabourAssignment",
            entity_id=backup.assignmentId,
        )
    return {"promoted": True, "candidateId": backup.assignmentId, "labourId": backup.labourId}


def replace_rejected(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    client = client_for_user(db, auth)
    job_role = db.get(JobRole, required_str(data, "jobRoleId"))
    requirement = db.get(Requirement, job_role.requirementId) if job_role else None
    if not job_role or not requirement or requirement.clientId != client.clientId:
        raise ApiError("NOT_FOUND", "Job role not found")

    result = promote_backup(db, cfg, job_role_id=job_role.jobRoleId, actor=auth)
    refresh_job_role(db, cfg, job_role, actor=auth)

    if result["promoted"]:
        return {"success": True, "message": "Backup candidate promoted successfully", "candidateId": result["candidateId"]}
    return {"success": True, "message": "No replacement available", "reason": result["reason"]}
