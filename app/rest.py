from __future__ import annotations

import hmac
import json
import logging
import os
import re
from typing import Any, Optional

from flask import current_app, g, request
from sqlalchemy.exc import DBAPIError

from actions import dispatch
from auth import assert_permission, role_or_public, validate_session_token
from config import Config
from db import SessionLocal
from models import AuditLog
from utils import SYSTEM_ACTOR, ApiError, AuthContext, err, iso_utc_now, now_monotonic, ok, redact_for_audit


_log = logging.getLogger("api")


def rest_token() -> str:
    authz = str(request.headers.get("Authorization") or "").strip()
    if authz.lower().startswith("bearer "):
        return authz.split(" ", 1)[1].strip()
    return (
        str(request.headers.get("X-Session-Token") or "").strip()
        or str(request.args.get("token") or "").strip()
        or str((request.get_json(silent=True) or {}).get("token") or "").strip()
    )


def cron_authorized(cfg: Config) -> bool:
    expected = str(cfg.CRON_SECRET or "").strip()
    if not expected:
        return False
    provided = str(request.headers.get("X-Cron-Secret") or "").strip()
    if not provided:
        authz = str(request.headers.get("Authorization") or "").strip()
        if authz.lower().startswith("bearer "):
            provided = authz.split(" ", 1)[1].strip()
    return bool(provided) and hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def write_api_audit(db, action: str, auth_ctx: Optional[AuthContext], data: Any, *, stage_tag: str) -> None:
    db.add(
        AuditLog(
            logId=f"LOG-{os.urandom(16).hex()}",
            entityType="API",
            entityId=str(auth_ctx.userId or auth_ctx.email or "") if auth_ctx else "PUBLIC",
            action=str(action or "").upper() or "UNKNOWN",
            stageTag=stage_tag,
            actorUserId=str(auth_ctx.userId) if auth_ctx else "PUBLIC",
            actorRole=str(auth_ctx.role) if auth_ctx else "PUBLIC",
            actorEmail=str(getattr(auth_ctx, "email", "") or "") if auth_ctx else "",
            at=iso_utc_now(),
            correlationId=str(getattr(g, "request_id", "") or ""),
            metaJson=json.dumps({"data": redact_for_audit(data or {})}, default=str),
        )
    )


def write_error_audit(action: str, auth_ctx: Optional[AuthContext], data: Any, err_obj: ApiError) -> None:
    """Record a failed call in its own session; the request session has been rolled back."""
    db2 = SessionLocal()
    try:
        db2.add(
            AuditLog(
                logId=f"LOG-{os.urandom(16).hex()}",
                entityType="API",
                entityId=str(auth_ctx.userId or auth_ctx.email or "") if auth_ctx else "PUBLIC",
                action=str(action or "").upper() or "UNKNOWN",
                stageTag="API_ERROR",
                remark=f"{err_obj.code}: {err_obj.message}",
                actorUserId=str(auth_ctx.userId) if auth_ctx else "PUBLIC",
                actorRole=str(auth_ctx.role) if auth_ctx else "PUBLIC",
                actorEmail=str(getattr(auth_ctx, "email", "") or "") if auth_ctx else "",
                at=iso_utc_now(),
                correlationId=str(getattr(g, "request_id", "") or ""),
                metaJson=json.dumps(
                    {
                        "data": redact_for_audit(data or {}),
                        "error": {"code": err_obj.code, "message": err_obj.message},
                    },
                    default=str,
                ),
            )
        )
        db2.commit()
    except Exception:
        db2.rollback()
        _log.exception("failed to write error audit action=%s", action)
    finally:
        db2.close()


def internal_error(cfg: Config, exc: Exception) -> ApiError:
    request_id = str(getattr(g, "request_id", "") or "").strip()
    suffix = f" (requestId: {request_id})" if request_id else ""
    if isinstance(exc, DBAPIError):
        orig = re.sub(r"\s+", " ", str(getattr(exc, "orig", "") or "")).strip()[:300]
        detail = f": {orig}" if orig and not cfg.IS_PRODUCTION else ""
        return ApiError("INTERNAL", f"Database error{detail}{suffix}", http_status=500)
    detail = "" if cfg.IS_PRODUCTION else f": {type(exc).__name__}"
    return ApiError("INTERNAL", f"Unexpected error{detail}{suffix}", http_status=500)


def rest_handle(action: str, data: dict, *, internal: bool = False, success_status: int = 200):
    """
    Run one action for a REST route: session (or cron secret), permission,
    dispatch, audit and commit in a single transaction.
    """
    cfg: Config = current_app.config["CFG"]
    action_u = str(action or "").upper().strip()

    db = None
    auth_ctx = None
    try:
        db = SessionLocal()

        if internal:
            if not cron_authorized(cfg):
                raise ApiError("AUTH_INVALID", "Invalid or missing cron secret")
            auth_ctx = SYSTEM_ACTOR
        else:
            auth_ctx = validate_session_token(db, rest_token(), action=action_u)
            if not auth_ctx or not auth_ctx.valid:
                raise ApiError("AUTH_INVALID", "Invalid or expired session")

        assert_permission(db, role_or_public(auth_ctx), action_u)

        out = dispatch(action_u, data or {}, auth_ctx, db, cfg)

        write_api_audit(db, action_u, auth_ctx, data, stage_tag="API_CALL_REST")
        db.commit()

        _log.info(
            "request_id=%s action=%s user=%s role=%s latency_ms=%s",
            getattr(g, "request_id", ""),
            action_u,
            auth_ctx.userId,
            auth_ctx.role,
            int((now_monotonic() - getattr(g, "start_ts", now_monotonic())) * 1000),
        )
        return ok(out)[0], success_status
    except ApiError as e:
        if db is not None:
            db.rollback()
        write_error_audit(action_u, auth_ctx, data, e)
        return err(e.code, e.message, http_status=e.http_status)
    except Exception as e:
        if db is not None:
            db.rollback()
        api_err = internal_error(cfg, e)
        write_error_audit(action_u, auth_ctx, data, api_err)
        _log.exception("request_id=%s rest action=%s", getattr(g, "request_id", ""), action_u)
        return err(api_err.code, api_err.message, http_status=api_err.http_status)
    finally:
        if db is not None:
            db.close()


def body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}
