from __future__ import annotations

import json
import os
from typing import Any, Optional

from flask import g, has_request_context
from sqlalchemy import select

from models import Agency, AuditLog, Client
from utils import ApiError, AuthContext, iso_utc_now, normalize_role, redact_for_audit


def _correlation_id() -> str:
    if not has_request_context():
        return ""
    return str(getattr(g, "request_id", "") or "")


def _dump(value: Any) -> str:
    if value is None:
        return ""
    try:
        return json.dumps(redact_for_audit(value), default=str)
    except Exception:
        return ""


def append_audit(
    db,
    *,
    entityType: str,
    entityId: str,
    action: str,
    fromState: str = "",
    toState: str = "",
    stageTag: str = "",
    remark: str = "",
    actor: Optional[AuthContext] = None,
    at: str = "",
    before: Any = None,
    after: Any = None,
    meta: Any = None,
) -> AuditLog:
    row = AuditLog(
        logId=f"LOG-{os.urandom(16).hex()}",
        entityType=str(entityType or ""),
        entityId=str(entityId or ""),
        action=str(action or "").upper(),
        fromState=str(fromState or ""),
        toState=str(toState or ""),
        stageTag=str(stageTag or ""),
        remark=str(remark or "")[:2000],
        actorUserId=str(actor.userId) if actor else "SYSTEM",
        actorRole=str(normalize_role(actor.role) or "") if actor else "SYSTEM",
        actorEmail=str(actor.email or "") if actor else "",
        at=at or iso_utc_now(),
        correlationId=_correlation_id(),
        beforeJson=_dump(before),
        afterJson=_dump(after),
        metaJson=_dump(meta),
    )
    db.add(row)
    return row


def require_auth(auth: AuthContext | None) -> AuthContext:
    if not auth or not auth.valid:
        raise ApiError("AUTH_INVALID", "Login required")
    return auth


def agency_for_user(db, auth: AuthContext | None) -> Agency:
    auth = require_auth(auth)
    agency = db.execute(select(Agency).where(Agency.userId == str(auth.userId or ""))).scalar_one_or_none()
    if not agency:
        raise ApiError("NOT_FOUND", "Agency profile not found")
    return agency


def client_for_user(db, auth: AuthContext | None) -> Client:
    auth = require_auth(auth)
    client = db.execute(select(Client).where(Client.userId == str(auth.userId or ""))).scalar_one_or_none()
    if not client:
        raise ApiError("NOT_FOUND", "Client profile not found")
    return client


def required_str(data: dict | None, key: str, *, label: str | None = None) -> str:
    value = str((data or {}).get(key) or "").strip()
    if not value:
        raise ApiError("BAD_REQUEST", f"Missing {label or key}")
    return value
