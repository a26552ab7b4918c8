from __future__ import annotations

import logging
import mimetypes
import os
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any

from dotenv import load_dotenv
from flask import Flask, g, request, send_file
from sqlalchemy import select
from zoneinfo import ZoneInfo

from actions import dispatch
from actions.helpers import agency_for_user, client_for_user
from app import init_http
from app.rest import internal_error, write_api_audit, write_error_audit
from app.tasks.maintenance import SWEEP_ACTIONS, run_sweep
from auth import STATIC_RBAC_PERMISSIONS, assert_permission, is_public_action, role_or_public, validate_session_token
from config import Config
from db import Base, SessionLocal, init_engine
from models import JobRole, LabourAssignment, Permission, Requirement, Role
from services.file_store import find_upload
from services.notification_bus import init_notification_bus
from utils import ApiError, SimpleRateLimiter, err, iso_utc_now, now_monotonic, ok, parse_json_body


_LOGIN_ACTIONS = {"LOGIN_EXCHANGE", "LOGIN_PASSWORD"}


def _configure_logging(level: str):
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def _seed_roles_and_permissions(db):
    """Insert missing roles and ACTION permissions; existing rows are left as edited."""
    now = iso_utc_now()
    actor = "SYSTEM_INIT"

    existing_roles = {r.roleCode.upper() for r in db.query(Role).all()}
    for rc in ("ADMIN", "CLIENT", "AGENCY"):
        if rc in existing_roles:
            continue
        db.add(
            Role(
                roleCode=rc,
                roleName=rc.title(),
                status="ACTIVE",
                createdAt=now,
                createdBy=actor,
                updatedAt=now,
                updatedBy=actor,
            )
        )

    existing_perm = {
        (str(p.permType or "").upper().strip(), str(p.permKey or "").upper().strip())
        for p in db.query(Permission).all()
    }
    for action, roles in STATIC_RBAC_PERMISSIONS.items():
        if ("ACTION", action.upper()) in existing_perm:
            continue
        db.add(
            Permission(
                permType="ACTION",
                permKey=action.upper(),
                rolesCsv=",".join(roles),
                enabled=True,
                updatedAt=now,
                updatedBy=actor,
            )
        )


def _maybe_start_internal_scheduler(cfg: Config):
    """
    Daily in-process run of every maintenance sweep (APP_TIMEZONE).

    Production deployments should use Celery beat or an external cron hitting
    ``/cron/*`` instead. For a single instance set ENABLE_SCHEDULER=1 and
    optionally SCHEDULER_HOUR / SCHEDULER_MINUTE.
    """
    if not cfg.ENABLE_SCHEDULER:
        return

    try:
        tz = ZoneInfo(cfg.APP_TIMEZONE)
    except Exception:
        tz = timezone.utc

    log = logging.getLogger("scheduler")

    def _loop():
        while True:
            now_local = datetime.now(tz)
            next_run = now_local.replace(hour=cfg.SCHEDULER_HOUR, minute=cfg.SCHEDULER_MINUTE, second=0, microsecond=0)
            if next_run <= now_local:
                next_run = next_run + timedelta(days=1)
            time.sleep(max(1.0, (next_run - now_local).total_seconds()))

            for sweep, action in SWEEP_ACTIONS.items():
                try:
                    run_sweep(action, cfg)
                except Exception:
                    log.exception("scheduled sweep=%s failed", sweep)

    t = threading.Thread(target=_loop, name="scheduler", daemon=True)
    t.start()
    log.info("internal scheduler at %02d:%02d %s", cfg.SCHEDULER_HOUR, cfg.SCHEDULER_MINUTE, cfg.APP_TIMEZONE)


def _file_visible(db, auth_ctx, role: str, file_id: str) -> bool:
    if role == "ADMIN":
        return True
    q = select(LabourAssignment.assignmentId).where(LabourAssignment.visaFileId == file_id)
    if role == "AGENCY":
        agency = agency_for_user(db, auth_ctx)
        q = q.where(LabourAssignment.agencyId == agency.agencyId)
    elif role == "CLIENT":
        client = client_for_user(db, auth_ctx)
        q = (
            q.join(JobRole, JobRole.jobRoleId == LabourAssignment.jobRoleId)
            .join(Requirement, Requirement.requirementId == JobRole.requirementId)
            .where(Requirement.clientId == client.clientId)
        )
    else:
        return False
    return db.execute(q.limit(1)).first() is not None


def create_app() -> Flask:
    load_dotenv()
    cfg = Config()
    cfg.validate()
    _configure_logging(cfg.LOG_LEVEL)

    engine = init_engine(cfg.DATABASE_URL)

    import models  # noqa: F401  registers tables on Base

    Base.metadata.create_all(bind=engine)

    # Columns/indexes added after the first release, plus the placement backfill.
    from schema import ensure_schema

    ensure_schema(engine)

    app = Flask(__name__)
    app.config["CFG"] = cfg
    app.config["JSON_SORT_KEYS"] = False

    init_http(app, cfg)

    limiter = SimpleRateLimiter()

    db0 = SessionLocal()
    try:
        _seed_roles_and_permissions(db0)
        db0.commit()
    finally:
        db0.close()

    init_notification_bus(cfg)

    @app.before_request
    def _before():
        g.request_id = os.urandom(8).hex()
        g.start_ts = now_monotonic()

    @app.after_request
    def _after(resp):
        resp.headers["X-Request-ID"] = str(getattr(g, "request_id", "") or "")
        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        resp.headers.setdefault("X-Frame-Options", "DENY")
        resp.headers.setdefault("Referrer-Policy", "no-referrer")
        resp.headers.setdefault("Cache-Control", "no-store")
        return resp

    @app.get("/files/<file_id>")
    def files_get(file_id: str):
        fid = str(file_id or "").strip().lower()
        if len(fid) != 32 or any(c not in "0123456789abcdef" for c in fid):
            return err("BAD_REQUEST", "Invalid file id", http_status=400)

        token = str(request.args.get("token") or "").strip()
        authz = str(request.headers.get("Authorization") or "").strip()
        if authz.lower().startswith("bearer "):
            token = authz[7:].strip()
        if not token:
            return err("AUTH_INVALID", "Missing token", http_status=401)

        db = SessionLocal()
        try:
            auth_ctx = validate_session_token(db, token, action="FILES_GET")
            if not auth_ctx.valid:
                return err("AUTH_INVALID", "Invalid or expired session", http_status=401)
            role = role_or_public(auth_ctx)
            assert_permission(db, role, "FILES_GET")
            if not _file_visible(db, auth_ctx, role, fid):
                return err("FORBIDDEN", "File not accessible", http_status=403)

            path = find_upload(cfg, fid)
            if not path:
                return err("NOT_FOUND", "File not found", http_status=404)

            name = os.path.basename(path)
            download_name = name[len(fid) + 1:] if name.startswith(fid + "_") else name
            mime, _enc = mimetypes.guess_type(download_name)

            resp = send_file(
                path,
                mimetype=mime or "application/octet-stream",
                as_attachment=False,
                download_name=download_name,
            )
            resp.headers["X-Content-Type-Options"] = "nosniff"
            return resp
        except ApiError as e:
            return err(e.code, e.message, http_status=e.http_status)
        finally:
            db.close()

    @app.errorhandler(404)
    def not_found(_e):
        return err("NOT_FOUND", f"Unknown endpoint: {request.path}", http_status=404)

    @app.errorhandler(405)
    def method_not_allowed(_e):
        return err("METHOD_NOT_ALLOWED", "Method not allowed", http_status=405)

    @app.post("/api")
    def api_route():
        db = None
        auth_ctx = None
        action_u = ""
        data: Any = {}

        try:
            body = parse_json_body(request.get_data(as_text=True))
            action_u = str(body.get("action") or "").upper().strip()
            token = body.get("token")
            if not token:
                authz = str(request.headers.get("Authorization") or "").strip()
                if authz.lower().startswith("bearer "):
                    token = authz.split(" ", 1)[1].strip()
                if not token:
                    token = str(request.headers.get("X-Session-Token") or "").strip()

            data = body.get("data") or {}

            if not action_u:
                raise ApiError("BAD_REQUEST", "Missing action")

            ip = request.headers.get("X-Forwarded-For", request.remote_addr or "")
            if action_u in _LOGIN_ACTIONS:
                limiter.check(f"{ip}:LOGIN", cfg.RATE_LIMIT_LOGIN)
            else:
                limiter.check(f"{ip}:GLOBAL", cfg.RATE_LIMIT_GLOBAL)
                limiter.check(f"{ip}:API:{action_u}", cfg.RATE_LIMIT_DEFAULT)

            db = SessionLocal()

            if not is_public_action(action_u):
                auth_ctx = validate_session_token(db, token, action=action_u)
                if not auth_ctx.valid:
                    raise ApiError("AUTH_INVALID", "Invalid or expired session")
            elif token:
                maybe = validate_session_token(db, token, action=action_u)
                auth_ctx = maybe if maybe.valid else None

            assert_permission(db, role_or_public(auth_ctx), action_u)

            out = dispatch(action_u, data, auth_ctx, db, cfg)

            write_api_audit(db, action_u, auth_ctx, data, stage_tag="API_CALL")
            db.commit()

            logging.getLogger("api").info(
                "request_id=%s action=%s user=%s role=%s latency_ms=%s",
                g.request_id,
                action_u,
                (auth_ctx.userId if auth_ctx else "PUBLIC"),
                (auth_ctx.role if auth_ctx else "PUBLIC"),
                int((now_monotonic() - g.start_ts) * 1000),
            )
            return ok(out)[0]
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
            logging.getLogger("api").exception("request_id=%s action=%s", g.request_id, action_u)
            return err(api_err.code, api_err.message, http_status=api_err.http_status)
        finally:
            if db is not None:
                db.close()

    _maybe_start_internal_scheduler(cfg)
    return app


if __name__ == "__main__":
    app = create_app()
    cfg = app.config["CFG"]

    os.makedirs(cfg.UPLOAD_DIR, exist_ok=True)
    app.run(host=cfg.HOST, port=cfg.PORT, threaded=True)
