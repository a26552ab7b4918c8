from __future__ import annotations

from sqlalchemy import Boolean, Column, Index, Integer, String, Text, UniqueConstraint, text

from db import Base


class User(Base):
    __tablename__ = "users"

    userId = Column(String, primary_key=True)
    email = Column(String, nullable=False, unique=True, index=True)
    fullName = Column(Text, nullable=False, default="")
    role = Column(String, nullable=False, index=True)
    # ACTIVE | NOT_VERIFIED | REJECTED | DISABLED
    status = Column(String, nullable=False, default="ACTIVE", index=True)
    passwordHash = Column(Text, nullable=False, default="")
    # Soft-delete scheduling, consumed by the cleanup sweeps.
    deleteAt = Column(Text, nullable=False, default="", index=True)
    deletionType = Column(String, nullable=False, default="")
    deletionRequestedBy = Column(String, nullable=False, default="")
    lastLoginAt = Column(Text, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")
    createdBy = Column(String, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")
    updatedBy = Column(String, nullable=False, default="")


class Role(Base):
    __tablename__ = "roles"

    roleCode = Column(String, primary_key=True)
    roleName = Column(String, nullable=False, default="")
    status = Column(String, nullable=False, default="ACTIVE")
    createdAt = Column(Text, nullable=False, default="")
    createdBy = Column(String, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")
    updatedBy = Column(String, nullable=False, default="")


class Permission(Base):
    __tablename__ = "permissions"
    __table_args__ = (UniqueConstraint("permType", "permKey", name="uq_permissions_type_key"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    permType = Column(String, nullable=False)
    permKey = Column(String, nullable=False)
    rolesCsv = Column(Text, nullable=False, default="")
    enabled = Column(Boolean, nullable=False, default=True)
    updatedAt = Column(Text, nullable=False, default="")
    updatedBy = Column(String, nullable=False, default="")


class Session(Base):
    __tablename__ = "sessions"

    sessionId = Column(String, primary_key=True)
    tokenHash = Column(String, nullable=False, unique=True, index=True)
    tokenPrefix = Column(String, nullable=False, default="")
    userId = Column(String, nullable=False, default="", index=True)
    email = Column(String, nullable=False, default="")
    role = Column(String, nullable=False, default="")
    userStatus = Column(String, nullable=False, default="")
    authVersion = Column(Integer, nullable=False, default=0)
    issuedAt = Column(Text, nullable=False, default="")
    expiresAt = Column(Text, nullable=False, default="", index=True)
    lastSeenAt = Column(Text, nullable=False, default="")
    revokedAt = Column(Text, nullable=False, default="")
    revokedBy = Column(String, nullable=False, default="")


class PasswordResetToken(Base):
    __tablename__ = "password_reset_tokens"

    tokenId = Column(String, primary_key=True)
    tokenHash = Column(String, nullable=False, unique=True, index=True)
    userId = Column(String, nullable=False, index=True)
    expiresAt = Column(Text, nullable=False, default="", index=True)
    usedAt = Column(Text, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")


class UserSettings(Base):
    __tablename__ = "user_settings"

    userId = Column(String, primary_key=True)
    notifyRequirement = Column(Boolean, nullable=False, default=True)
    notifyLabour = Column(Boolean, nullable=False, default=True)
    notifyDocument = Column(Boolean, nullable=False, default=True)
    notifySystem = Column(Boolean, nullable=False, default=True)
    notifyEmail = Column(Boolean, nullable=False, default=True)
    timezone = Column(String, nullable=False, default="UTC")
    updatedAt = Column(Text, nullable=False, default="")


class Client(Base):
    __tablename__ = "clients"

    clientId = Column(String, primary_key=True)
    userId = Column(String, nullable=False, unique=True, index=True)
    companyName = Column(Text, nullable=False, default="")
    contactName = Column(Text, nullable=False, default="")
    phone = Column(String, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")


class Agency(Base):
    __tablename__ = "agencies"

    agencyId = Column(String, primary_key=True)
    userId = Column(String, nullable=False, unique=True, index=True)
    agencyName = Column(Text, nullable=False, default="")
    licenseNumber = Column(String, nullable=False, default="")
    country = Column(String, nullable=False, default="")
    # NOT_VERIFIED | VERIFIED | REJECTED
    verificationStatus = Column(String, nullable=False, default="NOT_VERIFIED", index=True)
    createdAt = Column(Text, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")


class Admin(Base):
    __tablename__ = "admins"

    adminId = Column(String, primary_key=True)
    userId = Column(String, nullable=False, unique=True, index=True)
    name = Column(Text, nullable=False, default="")
    department = Column(String, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")


class Requirement(Base):
    __tablename__ = "requirements"

    requirementId = Column(String, primary_key=True)
    clientId = Column(String, nullable=False, index=True)
    # SUBMITTED | UNDER_REVIEW | FORWARDED | PARTIALLY_ACCEPTED | CLIENT_REVIEW | ACCEPTED | REJECTED | CLOSED
    status = Column(String, nullable=False, default="SUBMITTED", index=True)
    projectLocation = Column(Text, nullable=False, default="")
    notes = Column(Text, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")
    createdBy = Column(String, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")
    updatedBy = Column(String, nullable=False, default="")


class JobRole(Base):
    __tablename__ = "job_roles"

    jobRoleId = Column(String, primary_key=True)
    requirementId = Column(String, nullable=False, index=True)
    title = Column(Text, nullable=False, default="")
    quantity = Column(Integer, nullable=False, default=1)
    nationality = Column(String, nullable=False, default="")
    assignedAgencyId = Column(String, nullable=False, default="", index=True)
    # PENDING | ACCEPTED | AGENCY_REJECTED
    agencyStatus = Column(String, nullable=False, default="PENDING")
    adminStatus = Column(String, nullable=False, default="PENDING")
    needsMoreLabour = Column(Boolean, nullable=False, default=False)
    createdAt = Column(Text, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")


class LabourProfile(Base):
    __tablename__ = "labour_profiles"

    labourId = Column(String, primary_key=True)
    agencyId = Column(String, nullable=False, index=True)
    name = Column(Text, nullable=False, default="")
    nationality = Column(String, nullable=False, default="")
    passportNumber = Column(String, nullable=False, default="")
    email = Column(String, nullable=False, default="")
    phone = Column(String, nullable=False, default="")
    # RECEIVED | APPROVED | SHORTLISTED | REJECTED | DEPLOYED
    status = Column(String, nullable=False, default="RECEIVED", index=True)
    verificationStatus = Column(String, nullable=False, default="PENDING")
    requirementId = Column(String, nullable=False, default="", index=True)
    currentStage = Column(String, nullable=False, default="", index=True)
    createdAt = Column(Text, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="", index=True)


class LabourAssignment(Base):
    __tablename__ = "labour_assignments"
    __table_args__ = (UniqueConstraint("jobRoleId", "labourId", name="uq_assignment_job_role_labour"),)

    assignmentId = Column(String, primary_key=True)
    jobRoleId = Column(String, nullable=False, index=True)
    labourId = Column(String, nullable=False, index=True)
    agencyId = Column(String, nullable=False, index=True)
    agencyStatus = Column(String, nullable=False, default="PENDING")
    adminStatus = Column(String, nullable=False, default="PENDING")
    clientStatus = Column(String, nullable=False, default="PENDING")
    # Derived from the three status columns; written only by actions.assignments.set_party_status.
    placementStatus = Column(String, nullable=False, default="IN_PROGRESS", index=True)
    isBackup = Column(Boolean, nullable=False, default=False)
    agencyFeedback = Column(Text, nullable=False, default="")
    adminFeedback = Column(Text, nullable=False, default="")
    clientFeedback = Column(Text, nullable=False, default="")
    travelDate = Column(Text, nullable=False, default="")
    travelStatus = Column(String, nullable=False, default="")
    visaFileId = Column(String, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="", index=True)
    updatedAt = Column(Text, nullable=False, default="")


class LabourStageHistory(Base):
    __tablename__ = "labour_stage_history"
    __table_args__ = (
        # At most one open row per (labour, stage).
        Index(
            "uq_stage_history_pending",
            "labourId",
            "stage",
            unique=True,
            sqlite_where=text("status = 'PENDING'"),
            postgresql_where=text("status = 'PENDING'"),
        ),
    )

    historyId = Column(String, primary_key=True)
    labourId = Column(String, nullable=False, index=True)
    stage = Column(String, nullable=False)
    status = Column(String, nullable=False, default="PENDING")
    notes = Column(Text, nullable=False, default="")
    documentsJson = Column(Text, nullable=False, default="[]")
    completedAt = Column(Text, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")


class Notification(Base):
    __tablename__ = "notifications"

    notificationId = Column(String, primary_key=True)
    recipientId = Column(String, nullable=False, index=True)
    senderId = Column(String, nullable=False, default="")
    type = Column(String, nullable=False, default="")
    category = Column(String, nullable=False, default="system", index=True)
    title = Column(Text, nullable=False, default="")
    message = Column(Text, nullable=False, default="")
    # LOW | NORMAL | HIGH | URGENT
    priority = Column(String, nullable=False, default="NORMAL")
    actionUrl = Column(Text, nullable=False, default="")
    actionText = Column(Text, nullable=False, default="")
    entityType = Column(String, nullable=False, default="")
    entityId = Column(String, nullable=False, default="")
    isRead = Column(Boolean, nullable=False, default=False)
    readAt = Column(Text, nullable=False, default="")
    isArchived = Column(Boolean, nullable=False, default=False, index=True)
    archivedAt = Column(Text, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="", index=True)


class AuditLog(Base):
    __tablename__ = "audit_log"

    logId = Column(String, primary_key=True)
    entityType = Column(String, nullable=False, default="", index=True)
    entityId = Column(String, nullable=False, default="", index=True)
    action = Column(String, nullable=False, default="", index=True)
    fromState = Column(String, nullable=False, default="")
    toState = Column(String, nullable=False, default="")
    stageTag = Column(String, nullable=False, default="")
    remark = Column(Text, nullable=False, default="")
    actorUserId = Column(String, nullable=False, default="")
    actorRole = Column(String, nullable=False, default="")
    actorEmail = Column(String, nullable=False, default="")
    at = Column(Text, nullable=False, default="", index=True)
    correlationId = Column(String, nullable=False, default="")
    beforeJson = Column(Text, nullable=False, default="")
    afterJson = Column(Text, nullable=False, default="")
    metaJson = Column(Text, nullable=False, default="")
