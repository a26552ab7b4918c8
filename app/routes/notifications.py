from __future__ import annotations

import json
import logging
import queue

from flask import Blueprint, Response, current_app, request, stream_with_context

from app.rest import body, rest_handle, rest_token
from auth import assert_permission, role_or_public, validate_session_token
from db import SessionLocal
from services.notification_bus import get_notification_bus
from utils import ApiError, err

notifications_bp = Blueprint("notifications", __name__)

_log = logging.getLogger("notifications")

_STREAM_QUEUE_SIZE = 256


def _sse(payload: dict) -> str:
    return f"data: {json.dumps(payload, default=str)}\n\n"


@notifications_bp.get("/notifications")
def notifications_list():
    data = {k: v for k, v in request.args.items() if k != "token"}
    return rest_handle("NOTIFICATIONS_LIST", data)


@notifications_bp.patch("/notifications")
def notifications_update():
    return rest_handle("NOTIFICATIONS_UPDATE", body())


@notifications_bp.patch("/notifications/bulk")
def notifications_bulk():
    return rest_handle("NOTIFICATIONS_BULK", body())


@notifications_bp.get("/notifications/count")
def notifications_count():
    return rest_handle("NOTIFICATIONS_COUNT", {})


@notifications_bp.get("/users/settings")
def user_settings_get():
    return rest_handle("USER_SETTINGS_GET", {})


@notifications_bp.put("/users/settings")
def user_settings_update():
    return rest_handle("USER_SETTINGS_UPDATE", body())


@notifications_bp.route("/notifications/cleanup", methods=["GET", "POST"])
def notifications_cleanup():
    return rest_handle("NOTIFICATIONS_PURGE_ARCHIVED", {}, internal=True)


@notifications_bp.get("/notifications/stream")
def notifications_stream():
    """
    Server-sent events for the caller's notifications.

    The listener is attached before the response starts so nothing published
    after the handshake is lost; it is detached when the client goes away.
    """
    cfg = current_app.config["CFG"]
    db = SessionLocal()
    try:
        auth_ctx = validate_session_token(db, rest_token(), action="NOTIFICATIONS_STREAM")
        if not auth_ctx.valid:
            raise ApiError("AUTH_INVALID", "Invalid or expired session")
        assert_permission(db, role_or_public(auth_ctx), "NOTIFICATIONS_STREAM")
    except ApiError as e:
        return err(e.code, e.message, http_status=e.http_status)
    finally:
        db.close()

    inbox: queue.Queue = queue.Queue(maxsize=_STREAM_QUEUE_SIZE)

    def _listener(payload: dict) -> None:
        try:
            inbox.put_nowait(payload)
        except queue.Full:
            _log.warning("stream inbox full, dropping push user=%s", auth_ctx.userId)

    unsubscribe = get_notification_bus().subscribe(auth_ctx.userId, _listener)
    keepalive = float(cfg.SSE_KEEPALIVE_SECONDS)
    _log.info("stream opened user=%s", auth_ctx.userId)

    def _events():
        try:
            yield _sse({"type": "hello"})
            while True:
                try:
                    payload = inbox.get(timeout=keepalive)
                except queue.Empty:
                    yield ":keep-alive\n\n"
                    continue
                yield _sse(payload)
        finally:
            unsubscribe()
            _log.info("stream closed user=%s", auth_ctx.userId)

    resp = Response(stream_with_context(_events()), mimetype="text/event-stream")
    # A client that drops before the first chunk never starts the generator.
    resp.call_on_close(unsubscribe)
    resp.headers["Cache-Control"] = "no-cache"
    resp.headers["X-Accel-Buffering"] = "no"
    return resp
