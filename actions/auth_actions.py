from __future__ import annotations

from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select

from actions.helpers import append_audit, require_auth, required_str
from auth import ALL_ROLES, issue_session_token, permissions_for_role, revoke_session_token, revoke_user_sessions, verify_google_id_token
from models import Admin, Agency, Client, PasswordResetToken, User, UserSettings
from passwords import hash_password, verify_password
from utils import ApiError, AuthContext, iso_utc, iso_utc_now, new_id, new_uuid, normalize_role, parse_datetime_maybe, sha256_hex


def _find_user_by_email(db, email: str):
    email_lc = str(email or "").strip().lower()
    if not email_lc or "@" not in email_lc:
        return None
    return db.execute(select(User).where(func.lower(User.email) == email_lc)).scalars().first()


def _me(user: User) -> dict:
    return {
        "userId": user.userId,
        "email": user.email or "",
        "fullName": user.fullName or "",
        "role": normalize_role(user.role),
        "status": str(user.status or "").upper(),
    }


def _open_session(db, cfg, user: User, *, action: str, meta: dict | None = None) -> dict:
    status = str(user.status or "").upper()
    if status != "ACTIVE":
        raise ApiError("FORBIDDEN", "User is disabled" if status != "NOT_VERIFIED" else "Account is pending verification")

    user.lastLoginAt = iso_utc_now()
    ses = issue_session_token(db, user=user, session_ttl_minutes=cfg.SESSION_TTL_MINUTES)

    append_audit(
        db,
        entityType="AUTH",
        entityId=str(user.userId),
        action=action,
        stageTag="AUTH_LOGIN",
        actor=AuthContext(valid=True, userId=user.userId, email=user.email, role=normalize_role(user.role) or "", expiresAt=ses["expiresAt"]),
        meta=meta,
    )
    return {"sessionToken": ses["sessionToken"], "expiresAt": ses["expiresAt"], "me": _me(user)}


def login_exchange(data, auth: AuthContext | None, db, cfg):
    google_user = verify_google_id_token(
        (data or {}).get("idToken"),
        google_client_id=cfg.GOOGLE_CLIENT_ID,
        allow_test_tokens=bool(cfg.AUTH_ALLOW_TEST_TOKENS),
    )

    user = _find_user_by_email(db, google_user.get("email") or "")
    if not user:
        raise ApiError("AUTH_INVALID", "User not found")

    if not str(user.fullName or "").strip() and google_user.get("fullName"):
        user.fullName = str(google_user["fullName"])

    return _open_session(db, cfg, user, action="LOGIN_EXCHANGE", meta={"sub": google_user.get("sub") or ""})


def login_password(data, auth: AuthContext | None, db, cfg):
    email = required_str(data, "email")
    password = str((data or {}).get("password") or "")
    if not password:
        raise ApiError("BAD_REQUEST", "Missing password")
    if len(password) > 256:
        raise ApiError("BAD_REQUEST", "Password is too long")

    user = _find_user_by_email(db, email)
    # Same message for unknown email and wrong password.
    if not user or not verify_password(password, str(user.passwordHash or "")):
        raise ApiError("AUTH_INVALID", "Invalid credentials")

    return _open_session(db, cfg, user, action="LOGIN_PASSWORD")


def session_validate(data, auth: AuthContext | None, db, cfg):
    if not auth or not auth.valid:
        raise ApiError("AUTH_INVALID", "Invalid or expired session")
    return {
        "valid": True,
        "expiresAt": auth.expiresAt,
        "me": {"userId": auth.userId, "email": auth.email, "role": normalize_role(auth.role)},
    }


def get_me(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    user = db.get(User, str(auth.userId or ""))
    if not user:
        raise ApiError("AUTH_INVALID", "User missing")

    out = _me(user)
    role = normalize_role(user.role)
    if role == "CLIENT":
        prof = db.execute(select(Client).where(Client.userId == user.userId)).scalar_one_or_none()
        out["clientId"] = prof.clientId if prof else ""
        out["companyName"] = prof.companyName if prof else ""
    elif role == "AGENCY":
        prof = db.execute(select(Agency).where(Agency.userId == user.userId)).scalar_one_or_none()
        out["agencyId"] = prof.agencyId if prof else ""
        out["agencyName"] = prof.agencyName if prof else ""
        out["verificationStatus"] = prof.verificationStatus if prof else ""
    elif role == "ADMIN":
        prof = db.execute(select(Admin).where(Admin.userId == user.userId)).scalar_one_or_none()
        out["adminId"] = prof.adminId if prof else ""
    return {"me": out}


def logout(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    token = str((data or {}).get("sessionToken") or "").strip()
    if token:
        revoked = 1 if revoke_session_token(db, token, revoked_by=auth.userId) else 0
    else:
        revoked = revoke_user_sessions(db, user_id=auth.userId, revoked_by=auth.userId)
    return {"loggedOut": True, "revokedSessions": revoked}


def my_permissions_get(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    return permissions_for_role(db, auth.role)


def user_register(data, auth: AuthContext | None, db, cfg):
    """
    Admin-created accounts. Each user gets its role profile row and default
    notification settings in the same transaction.
    """
    auth = require_auth(auth)
    email = required_str(data, "email").lower()
    if "@" not in email:
        raise ApiError("BAD_REQUEST", "Invalid email")
    role = normalize_role((data or {}).get("role"))
    if role not in ALL_ROLES:
        raise ApiError("BAD_REQUEST", "Invalid role")
    if _find_user_by_email(db, email):
        raise ApiError("CONFLICT", "Email already registered")

    full_name = str((data or {}).get("fullName") or "").strip()
    password = str((data or {}).get("password") or "")
    now = iso_utc_now()
    user = User(
        userId=new_id("USR"),
        email=email,
        fullName=full_name,
        role=role,
        # Agencies log in only after an admin verifies them.
        status="NOT_VERIFIED" if role == "AGENCY" else "ACTIVE",
        passwordHash=hash_password(password) if password else "",
        createdAt=now,
        createdBy=auth.userId,
        updatedAt=now,
        updatedBy=auth.userId,
    )
    db.add(user)
    db.add(UserSettings(userId=user.userId, updatedAt=now))

    profile_id = ""
    if role == "CLIENT":
        profile_id = new_id("CLI")
        db.add(
            Client(
                clientId=profile_id,
                userId=user.userId,
                companyName=str((data or {}).get("companyName") or ""),
                contactName=full_name,
                phone=str((data or {}).get("phone") or ""),
                createdAt=now,
                updatedAt=now,
            )
        )
    elif role == "AGENCY":
        profile_id = new_id("AGY")
        db.add(
            Agency(
                agencyId=profile_id,
                userId=user.userId,
                agencyName=str((data or {}).get("agencyName") or full_name),
                licenseNumber=str((data or {}).get("licenseNumber") or ""),
                country=str((data or {}).get("country") or ""),
                verificationStatus="NOT_VERIFIED",
                createdAt=now,
                updatedAt=now,
            )
        )
    else:
        profile_id = new_id("ADM")
        db.add(
            Admin(
                adminId=profile_id,
                userId=user.userId,
                name=full_name,
                department=str((data or {}).get("department") or ""),
                createdAt=now,
                updatedAt=now,
            )
        )

    append_audit(
        db,
        entityType="USER",
        entityId=user.userId,
        action="USER_REGISTER",
        toState=user.status,
        actor=auth,
        at=now,
        after={"email": email, "role": role, "profileId": profile_id},
    )
    return {"userId": user.userId, "role": role, "status": user.status, "profileId": profile_id}


def password_reset_request(data, auth: AuthContext | None, db, cfg):
    email = required_str(data, "email")
    user = _find_user_by_email(db, email)
    out: dict = {"requested": True}
    # Unknown emails get the same answer.
    if not user:
        return out

    token = "PR-" + new_uuid().replace("-", "")
    now = datetime.now(timezone.utc)
    db.add(
        PasswordResetToken(
            tokenId=new_id("PRT"),
            tokenHash=sha256_hex(token),
            userId=user.userId,
            expiresAt=iso_utc(now + timedelta(minutes=cfg.PASSWORD_RESET_TTL_MINUTES)),
            usedAt="",
            createdAt=iso_utc(now),
        )
    )
    append_audit(db, entityType="AUTH", entityId=user.userId, action="PASSWORD_RESET_REQUEST", stageTag="AUTH_RESET")
    if cfg.AUTH_ALLOW_TEST_TOKENS:
        out["resetToken"] = token
    return out


def password_reset_confirm(data, auth: AuthContext | None, db, cfg):
    token = required_str(data, "resetToken")
    new_password = str((data or {}).get("newPassword") or "")

    row = db.execute(select(PasswordResetToken).where(PasswordResetToken.tokenHash == sha256_hex(token))).scalar_one_or_none()
    if not row or row.usedAt:
        raise ApiError("AUTH_INVALID", "Invalid or used reset token")
    exp = parse_datetime_maybe(row.expiresAt)
    if not exp or exp < datetime.now(timezone.utc):
        raise ApiError("AUTH_INVALID", "Reset token expired")

    user = db.get(User, row.userId)
    if not user:
        raise ApiError("AUTH_INVALID", "User missing")

    now = iso_utc_now()
    user.passwordHash = hash_password(new_password)
    user.updatedAt = now
    user.updatedBy = user.userId
    row.usedAt = now
    revoked = revoke_user_sessions(db, user_id=user.userId, revoked_by=user.userId)

    append_audit(
        db,
        entityType="AUTH",
        entityId=user.userId,
        action="PASSWORD_RESET_CONFIRM",
        stageTag="AUTH_RESET",
        at=now,
        meta={"revokedSessions": revoked},
    )
    return {"reset": True, "requiresReLogin": True}
