from __future__ import annotations

import logging

from flask import Blueprint, current_app, jsonify
from sqlalchemy import text

from cache_layer import cache_stats
from db import get_engine, get_pool_stats
from services.notification_bus import get_notification_bus
from utils import iso_utc_now, ok

core_bp = Blueprint("core", __name__)

_log = logging.getLogger("http")


def _ping_db() -> bool:
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception:
        _log.warning("readiness: database ping failed", exc_info=True)
        return False


def _ping_redis(cfg) -> bool:
    """Only checked when notifications fan out through Redis."""
    if cfg.NOTIFICATION_BUS != "redis":
        return True
    try:
        import redis

        r = redis.from_url(cfg.REDIS_URL, socket_connect_timeout=2)
        r.ping()
        return True
    except Exception:
        _log.warning("readiness: redis ping failed", exc_info=True)
        return False


@core_bp.get("/")
def index():
    return ok(
        {
            "status": "ok",
            "message": "Labour placement backend. Use /health for a quick check and POST /api for actions.",
            "endpoints": {"health": "/health", "ready": "/ready", "api": "/api"},
        }
    )[0]


@core_bp.get("/health")
def health():
    """Process is alive; includes pool and cache counters."""
    cfg = current_app.config["CFG"]
    return ok(
        {
            "status": "ok",
            "time": iso_utc_now(),
            "version": cfg.APP_VERSION,
            "db_pool": get_pool_stats(),
            "cache": cache_stats(),
            "streams": get_notification_bus().listener_count(),
        }
    )[0]


@core_bp.get("/ready")
def ready():
    cfg = current_app.config["CFG"]
    db_ok = _ping_db()
    redis_ok = _ping_redis(cfg)
    all_ok = db_ok and redis_ok
    return (
        jsonify(
            {
                "status": "ok" if all_ok else "degraded",
                "time": iso_utc_now(),
                "version": cfg.APP_VERSION,
                "checks": {
                    "db": "ok" if db_ok else "error",
                    "redis": "ok" if redis_ok else "error",
                },
            }
        ),
        200 if all_ok else 503,
    )


@core_bp.get("/version")
def version():
    cfg = current_app.config["CFG"]
    return jsonify({"version": cfg.APP_VERSION, "env": cfg.APP_ENV, "time": iso_utc_now()})
