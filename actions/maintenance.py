from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import delete, or_, select

from actions.helpers import append_audit
from models import (
    Admin,
    Agency,
    Client,
    JobRole,
    LabourAssignment,
    LabourProfile,
    LabourStageHistory,
    Notification,
    PasswordResetToken,
    Requirement,
    Session as DbSession,
    User,
    UserSettings,
)
from services.file_store import delete_uploads
from services.notifications import deliver_to_user, purge_archived
from utils import AuthContext, iso_utc


_log = logging.getLogger("cron")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _agency_dependents(db, agency: Agency) -> list[str]:
    """Remove closed assignments and unattached labour of an agency; returns file ids to unlink."""
    closed = (
        db.execute(
            select(LabourAssignment)
            .where(LabourAssignment.agencyId == agency.agencyId)
            .where(LabourAssignment.placementStatus == "REJECTED")
        )
        .scalars()
        .all()
    )
    file_ids = [a.visaFileId for a in closed if a.visaFileId]
    for a in closed:
        db.delete(a)
    db.flush()

    attached = select(LabourAssignment.labourId).where(LabourAssignment.agencyId == agency.agencyId)
    loose = (
        db.execute(
            select(LabourProfile.labourId)
            .where(LabourProfile.agencyId == agency.agencyId)
            .where(LabourProfile.labourId.not_in(attached))
        )
        .scalars()
        .all()
    )
    if loose:
        db.execute(delete(LabourStageHistory).where(LabourStageHistory.labourId.in_(loose)))
        db.execute(delete(LabourProfile).where(LabourProfile.labourId.in_(loose)))
    return file_ids


def delete_account(db, cfg, user: User, *, actor: Optional[AuthContext] = None, reason: str = "") -> None:
    """Hard-delete a user with its role profile and per-user rows. Audited before removal."""
    agency = db.execute(select(Agency).where(Agency.userId == user.userId)).scalar_one_or_none()
    client = db.execute(select(Client).where(Client.userId == user.userId)).scalar_one_or_none()
    admin = db.execute(select(Admin).where(Admin.userId == user.userId)).scalar_one_or_none()

    if agency:
        entity_type, entity_id = "Agency", agency.agencyId
    elif client:
        entity_type, entity_id = "Client", client.clientId
    else:
        entity_type, entity_id = "User", user.userId

    append_audit(
        db,
        entityType=entity_type,
        entityId=entity_id,
        action="ACCOUNT_DELETED",
        fromState=user.status,
        toState="DELETED",
        remark=reason or "Account permanently deleted as scheduled",
        actor=actor,
        before={"userId": user.userId, "email": user.email, "role": user.role, "deletionType": user.deletionType},
        meta={"deletionRequestedBy": user.deletionRequestedBy or "system"},
    )

    file_ids: list[str] = []
    if agency:
        file_ids = _agency_dependents(db, agency)
        db.delete(agency)
    if client:
        db.delete(client)
    if admin:
        db.delete(admin)

    db.execute(delete(UserSettings).where(UserSettings.userId == user.userId))
    db.execute(delete(DbSession).where(DbSession.userId == user.userId))
    db.execute(delete(PasswordResetToken).where(PasswordResetToken.userId == user.userId))
    db.execute(delete(Notification).where(Notification.recipientId == user.userId))
    db.delete(user)
    db.flush()

    if file_ids:
        delete_uploads(cfg, file_ids)


def _due_users(db, cutoff: str, deletion_types: tuple[str, ...] | None = None) -> list[User]:
    q = select(User).where(User.deleteAt != "").where(User.deleteAt <= cutoff)
    if deletion_types:
        q = q.where(User.deletionType.in_(deletion_types))
    return db.execute(q.order_by(User.deleteAt.asc())).scalars().all()


def cron_cleanup(data, auth: AuthContext | None, db, cfg):
    now = iso_utc(_now())
    counts = {"IMMEDIATE": 0, "SCHEDULED": 0}
    for user in _due_users(db, now, ("IMMEDIATE", "SCHEDULED")):
        counts[user.deletionType] += 1
        delete_account(db, cfg, user, actor=auth)

    expired_tokens = db.execute(
        delete(PasswordResetToken).where(or_(PasswordResetToken.expiresAt <= now, PasswordResetToken.usedAt != ""))
    ).rowcount
    expired_sessions = db.execute(
        delete(DbSession).where(or_(DbSession.expiresAt <= now, DbSession.revokedAt != ""))
    ).rowcount

    out = {
        "immediateDeletions": counts["IMMEDIATE"],
        "scheduledDeletions": counts["SCHEDULED"],
        "expiredTokens": int(expired_tokens or 0),
        "expiredSessions": int(expired_sessions or 0),
    }
    _log.info("cleanup %s", out)
    return out


def cron_delete_accounts(data, auth: AuthContext | None, db, cfg):
    cutoff = iso_utc(_now() - timedelta(hours=cfg.ACCOUNT_DELETE_GRACE_HOURS))
    deleted = 0
    for user in _due_users(db, cutoff):
        delete_account(db, cfg, user, actor=auth)
        deleted += 1
    _log.info("delete-accounts deleted=%s", deleted)
    return {"message": f"Deleted {deleted} accounts", "deletedAccounts": deleted}


def cron_overdue_labour_reminders(data, auth: AuthContext | None, db, cfg):
    cutoff = iso_utc(_now() - timedelta(days=cfg.STAGE_REMINDER_DAYS))
    rows = db.execute(
        select(LabourProfile, LabourAssignment, JobRole, Requirement)
        .join(LabourAssignment, LabourAssignment.labourId == LabourProfile.labourId)
        .join(JobRole, JobRole.jobRoleId == LabourAssignment.jobRoleId)
        .join(Requirement, Requirement.requirementId == JobRole.requirementId)
        .where(LabourAssignment.placementStatus == "PLACED")
        .where(LabourProfile.currentStage != "")
        .where(LabourProfile.currentStage != "DEPLOYED")
        .where(LabourProfile.updatedAt < cutoff)
        .order_by(LabourProfile.updatedAt.asc())
    ).all()

    sent = 0
    for labour, assignment, job_role, requirement in rows:
        agency = db.get(Agency, assignment.agencyId)
        client = db.get(Client, requirement.clientId)
        stage = labour.currentStage
        for uid in (agency.userId if agency else "", client.userId if client else ""):
            out = deliver_to_user(
                db,
                cfg,
                uid,
                type="STAGE_PENDING_ACTION",
                title=f"Labour stuck in {stage}",
                message=f"{labour.name} ({job_role.title}) has been in {stage} since {labour.updatedAt[:10]}. Please take action.",
                priority="HIGH",
                action_url="/dashboard/recruitment",
                action_text="View progress",
                sender_id="SYSTEM",
                entity_type="LabourProfile",
                entity_id=labour.labourId,
            )
            if out:
                sent += 1
    _log.info("overdue-labour-reminders candidates=%s sent=%s", len(rows), sent)
    return {"remindersSent": sent}


def notifications_purge_archived(data, auth: AuthContext | None, db, cfg) -> dict[str, Any]:
    deleted = purge_archived(db, days=cfg.NOTIFICATION_ARCHIVE_RETENTION_DAYS)
    _log.info("notifications purge deleted=%s", deleted)
    return {"deleted": deleted}
