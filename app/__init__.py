from __future__ import annotations

from flask import Flask
from flask_cors import CORS

from app.middlewares.compression import init_compression
from app.routes.core import core_bp
from app.routes.cron import cron_bp
from app.routes.jobs import jobs_bp
from app.routes.notifications import notifications_bp
from app.routes.workflow import workflow_bp
from config import Config


def init_http(app: Flask, cfg: Config) -> None:
    """CORS, compression and the REST blueprints."""
    CORS(
        app,
        origins=cfg.ALLOWED_ORIGINS,
        supports_credentials=False,
        allow_headers=["Content-Type", "Authorization", "X-Request-ID", "X-Session-Token", "X-Cron-Secret"],
        expose_headers=["X-Request-ID"],
        methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        max_age=3600,
    )

    init_compression(app, cfg)

    app.register_blueprint(core_bp)
    app.register_blueprint(workflow_bp)
    app.register_blueprint(notifications_bp)
    app.register_blueprint(cron_bp)
    app.register_blueprint(jobs_bp, url_prefix="/jobs")
