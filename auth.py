from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from google.auth.transport import requests as google_requests
from google.oauth2 import id_token as google_id_token
from sqlalchemy import select

from cache_layer import cache_get, cache_set
from models import Permission, Role, Session as DbSession, User
from utils import ApiError, AuthContext, iso_utc, iso_utc_now, new_uuid, normalize_role, parse_datetime_maybe, parse_roles_csv, sha256_hex


ALL_ROLES = ["ADMIN", "CLIENT", "AGENCY"]

PUBLIC_ACTIONS = {
    "LOGIN_EXCHANGE",
    "LOGIN_PASSWORD",
    "PASSWORD_RESET_REQUEST",
    "PASSWORD_RESET_CONFIRM",
}


STATIC_RBAC_PERMISSIONS: dict[str, list[str]] = {
    "LOGIN_EXCHANGE": ["PUBLIC"],
    "LOGIN_PASSWORD": ["PUBLIC"],
    "PASSWORD_RESET_REQUEST": ["PUBLIC"],
    "PASSWORD_RESET_CONFIRM": ["PUBLIC"],
    "SESSION_VALIDATE": ALL_ROLES,
    "GET_ME": ALL_ROLES,
    "LOGOUT": ALL_ROLES,
    "MY_PERMISSIONS_GET": ALL_ROLES,
    "USER_REGISTER": ["ADMIN"],
    # Requirements / job roles
    "REQUIREMENT_CREATE": ["CLIENT"],
    "REQUIREMENTS_LIST": ALL_ROLES,
    "REQUIREMENT_GET": ALL_ROLES,
    "REQUIREMENT_FORWARD": ["ADMIN"],
    "JOB_ROLE_AGENCY_STATUS": ["AGENCY"],
    # Agencies and labour pool
    "AGENCY_STATUS_UPDATE": ["ADMIN"],
    "LABOUR_PROFILE_CREATE": ["AGENCY"],
    "LABOUR_PROFILES_LIST": ["AGENCY", "ADMIN"],
    # Assignments (tri-status)
    "ASSIGNMENT_CREATE": ["AGENCY"],
    "ASSIGNMENTS_LIST": ALL_ROLES,
    "AGENCY_ASSIGNMENT_STATUS": ["AGENCY"],
    "ADMIN_ASSIGNMENT_STATUS": ["ADMIN"],
    "ADMIN_ASSIGNMENT_BULK_STATUS": ["ADMIN"],
    "CLIENT_ASSIGNMENT_STATUS": ["CLIENT"],
    "CLIENT_ASSIGNMENT_BULK_STATUS": ["CLIENT"],
    "REPLACE_REJECTED": ["CLIENT"],
    # Stage workflow (client side)
    "OFFER_LETTER_VERIFY": ["CLIENT"],
    "VISA_MARK_APPLIED": ["CLIENT"],
    "QVC_MARK_PAID": ["CLIENT"],
    "VISA_UPLOAD": ["CLIENT"],
    "TRAVEL_DATE_SET": ["CLIENT"],
    "ARRIVAL_CONFIRM": ["CLIENT"],
    # Stage workflow (agency side)
    "CONTRACT_APPROVE": ["AGENCY"],
    "CONTRACT_REFUSE": ["AGENCY"],
    "MEDICAL_MARK_FIT": ["AGENCY"],
    "MEDICAL_MARK_UNFIT": ["AGENCY"],
    "FINGERPRINT_MARK_PASS": ["AGENCY"],
    "FINGERPRINT_MARK_FAIL": ["AGENCY"],
    "TRAVEL_DOCUMENTS_SUBMIT": ["AGENCY"],
    "TRAVEL_CONFIRM": ["AGENCY"],
    "LABOUR_STAGES_GET": ALL_ROLES,
    "FILES_GET": ALL_ROLES,
    # Notifications
    "NOTIFICATIONS_LIST": ALL_ROLES,
    "NOTIFICATIONS_COUNT": ALL_ROLES,
    "NOTIFICATIONS_UPDATE": ALL_ROLES,
    "NOTIFICATIONS_BULK": ALL_ROLES,
    "NOTIFICATIONS_STREAM": ALL_ROLES,
    "USER_SETTINGS_GET": ALL_ROLES,
    "USER_SETTINGS_UPDATE": ALL_ROLES,
    # Scheduled sweeps (cron secret maps to the SYSTEM admin actor)
    "CRON_CLEANUP": ["ADMIN"],
    "CRON_DELETE_ACCOUNTS": ["ADMIN"],
    "CRON_OVERDUE_LABOUR_REMINDERS": ["ADMIN"],
    "NOTIFICATIONS_PURGE_ARCHIVED": ["ADMIN"],
}


_RBAC_CACHE_PREFIX = "RBAC:"
_RBAC_ROLES_INDEX_KEY = f"{_RBAC_CACHE_PREFIX}ROLES_INDEX"
_RBAC_RULE_PREFIX = f"{_RBAC_CACHE_PREFIX}RULE:"

_INVALID = AuthContext(valid=False, userId="", email="", role="", expiresAt="")


def is_public_action(action: str) -> bool:
    return str(action or "").upper() in PUBLIC_ACTIONS


def verify_google_id_token(id_token: str, google_client_id: str, allow_test_tokens: bool = False) -> dict[str, Any]:
    if not id_token or not isinstance(id_token, str):
        raise ApiError("BAD_REQUEST", "Missing idToken")

    if allow_test_tokens and id_token.startswith("TEST:"):
        email = id_token.split(":", 1)[1].strip().lower()
        if not email:
            raise ApiError("AUTH_INVALID", "Invalid test token")
        return {"email": email, "fullName": "Test User", "sub": "TEST"}

    if not google_client_id:
        raise ApiError("INTERNAL", "Missing GOOGLE_CLIENT_ID")

    try:
        payload = google_id_token.verify_oauth2_token(id_token, google_requests.Request(), audience=google_client_id)
    except Exception:
        raise ApiError("AUTH_INVALID", "Invalid Google ID token")

    if payload.get("aud") != google_client_id:
        raise ApiError("AUTH_INVALID", "Google token audience mismatch")
    if str(payload.get("email_verified", "")).lower() != "true":
        raise ApiError("AUTH_INVALID", "Google email not verified")

    return {
        "email": str(payload.get("email", "")).lower(),
        "fullName": payload.get("name", "") or "",
        "sub": payload.get("sub", "") or "",
    }


def issue_session_token(db, *, user: User, session_ttl_minutes: int) -> dict[str, str]:
    token = "ST-" + new_uuid().replace("-", "") + new_uuid().replace("-", "")
    now = datetime.now(timezone.utc)
    issued_at = iso_utc(now)
    expires_at = iso_utc(now + timedelta(minutes=session_ttl_minutes))

    db.add(
        DbSession(
            sessionId="SES-" + new_uuid(),
            tokenHash=sha256_hex(token),
            tokenPrefix=token[:12],
            userId=str(user.userId),
            email=str(user.email or ""),
            role=str(normalize_role(user.role) or ""),
            userStatus=str(user.status or "").upper(),
            authVersion=0,
            issuedAt=issued_at,
            expiresAt=expires_at,
            lastSeenAt=issued_at,
            revokedAt="",
            revokedBy="",
        )
    )
    return {"sessionToken": token, "expiresAt": expires_at}


def revoke_user_sessions(db, *, user_id: str, revoked_by: str) -> int:
    """Revoke every live session of a user (rejection, deletion, password reset)."""
    uid = str(user_id or "").strip()
    if not uid:
        return 0
    now = iso_utc_now()
    rows = db.execute(select(DbSession).where(DbSession.userId == uid).where(DbSession.revokedAt == "")).scalars().all()
    for s in rows:
        s.revokedAt = now
        s.revokedBy = str(revoked_by or "")
    return len(rows)


def revoke_session_token(db, token: str, *, revoked_by: str) -> bool:
    ses = db.execute(select(DbSession).where(DbSession.tokenHash == sha256_hex(token))).scalar_one_or_none()
    if not ses or ses.revokedAt:
        return False
    ses.revokedAt = iso_utc_now()
    ses.revokedBy = str(revoked_by or "")
    return True


def validate_session_token(db, token: Any, *, action: str | None = None) -> AuthContext:
    if not token or not isinstance(token, str):
        return _INVALID

    ses = db.execute(select(DbSession).where(DbSession.tokenHash == sha256_hex(token))).scalar_one_or_none()
    if not ses:
        return _INVALID

    exp_dt = parse_datetime_maybe(ses.expiresAt)
    if exp_dt and exp_dt < datetime.now(timezone.utc):
        return _INVALID
    if ses.revokedAt:
        return _INVALID

    user_id = str(ses.userId or "").strip()
    usr = db.execute(select(User).where(User.userId == user_id)).scalar_one_or_none()
    if not usr:
        return _INVALID
    if str(usr.status or "").upper().strip() != "ACTIVE":
        raise ApiError("FORBIDDEN", "User is disabled", http_status=403)

    # Avoid writing on every request: update lastSeenAt at most once per interval.
    try:
        interval_s = int(str(os.getenv("SESSION_LAST_SEEN_UPDATE_SECONDS", "300") or "300"))
    except Exception:
        interval_s = 300
    last_dt = parse_datetime_maybe(ses.lastSeenAt)
    if interval_s <= 0 or not last_dt or (datetime.now(timezone.utc) - last_dt).total_seconds() >= interval_s:
        ses.lastSeenAt = iso_utc_now()

    return AuthContext(
        valid=True,
        userId=user_id,
        email=str(ses.email or ""),
        role=str(normalize_role(ses.role) or ""),
        expiresAt=str(ses.expiresAt or ""),
    )


def get_permission_rule(db, perm_type: str, perm_key: str) -> Optional[dict[str, Any]]:
    perm_type_u = str(perm_type or "").upper().strip()
    perm_key_u = str(perm_key or "").upper().strip()
    if not perm_type_u or not perm_key_u:
        return None

    cache_key = f"{_RBAC_RULE_PREFIX}{perm_type_u}:{perm_key_u}"
    cached = cache_get(cache_key)
    if cached is False:
        return None
    if isinstance(cached, dict):
        return cached

    row = (
        db.execute(select(Permission).where(Permission.permType == perm_type_u).where(Permission.permKey == perm_key_u))
        .scalars()
        .first()
    )
    if not row:
        cache_set(cache_key, False)
        return None
    out = {"enabled": bool(row.enabled), "roles": parse_roles_csv(row.rolesCsv or "")}
    cache_set(cache_key, out)
    return out


def _roles_index(db) -> dict[str, dict[str, Any]]:
    cached = cache_get(_RBAC_ROLES_INDEX_KEY)
    if isinstance(cached, dict):
        return cached

    rows = db.execute(select(Role)).scalars().all()
    out: dict[str, dict[str, Any]] = {}
    if not rows:
        for rc in ALL_ROLES:
            out[rc] = {"roleCode": rc, "roleName": rc, "status": "ACTIVE"}
    for r in rows:
        code = normalize_role(r.roleCode)
        if code:
            out[code] = {"roleCode": code, "roleName": str(r.roleName or code), "status": str(r.status or "ACTIVE").upper()}
    cache_set(_RBAC_ROLES_INDEX_KEY, out)
    return out


def is_role_active(db, role: str) -> bool:
    r = normalize_role(role)
    if not r:
        return False
    it = _roles_index(db).get(r)
    return bool(it) and str(it.get("status", "")).upper() == "ACTIVE"


def assert_permission(db, role: str, action: str) -> None:
    role_u = normalize_role(role) or ""
    action_u = str(action or "").upper().strip()

    if is_public_action(action_u):
        return

    allowed_static = STATIC_RBAC_PERMISSIONS.get(action_u)
    rule = get_permission_rule(db, "ACTION", action_u)
    has_dyn = bool(rule and rule.get("enabled") is True)

    if not allowed_static and not has_dyn:
        raise ApiError("BAD_REQUEST", f"Unknown action: {action_u}")

    if not role_u or role_u == "PUBLIC":
        raise ApiError("AUTH_INVALID", "Login required")
    if not is_role_active(db, role_u):
        raise ApiError("UNAUTHORIZED", f"Inactive or unknown role: {role_u}")

    if action_u in {"SESSION_VALIDATE", "GET_ME", "LOGOUT", "MY_PERMISSIONS_GET"}:
        return

    roles = (rule.get("roles") or []) if has_dyn else (allowed_static or [])
    if "PUBLIC" not in roles and role_u not in roles:
        raise ApiError("UNAUTHORIZED", f"Not allowed for role: {role_u}")


def permissions_for_role(db, role: str) -> dict[str, Any]:
    role_u = normalize_role(role)
    if not role_u:
        raise ApiError("AUTH_INVALID", "Login required")

    action_keys: list[str] = []
    for action_key in sorted(STATIC_RBAC_PERMISSIONS):
        try:
            assert_permission(db, role_u, action_key)
        except ApiError:
            continue
        action_keys.append(action_key)
    return {"role": role_u, "actionKeys": action_keys}


def role_or_public(auth: Optional[AuthContext]) -> str:
    if not auth or not auth.valid:
        return "PUBLIC"
    return normalize_role(auth.role) or "PUBLIC"
