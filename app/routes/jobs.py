"""
Background sweep endpoints backed by Celery.

All routes require the cron secret; they enqueue or inspect maintenance
tasks and never run a sweep inline.
"""
from __future__ import annotations

from flask import Blueprint, current_app, jsonify

from app.rest import cron_authorized
from app.tasks import celery_app
from app.tasks.maintenance import SWEEP_TASKS
from utils import err

jobs_bp = Blueprint("jobs", __name__)


def _denied():
    return err("AUTH_INVALID", "Invalid or missing cron secret", http_status=401)


@jobs_bp.post("/<sweep>")
def enqueue_sweep(sweep: str):
    """
    Enqueue one maintenance sweep.

    Returns:
        { "ok": true, "data": { "job_id": "...", "sweep": "cleanup", "status": "queued" } }
    """
    if not cron_authorized(current_app.config["CFG"]):
        return _denied()
    task = SWEEP_TASKS.get(sweep)
    if task is None:
        return err("NOT_FOUND", f"Unknown sweep: {sweep}", http_status=404)

    res = task.apply_async()
    return jsonify({"ok": True, "data": {"job_id": res.id, "sweep": sweep, "status": "queued"}}), 202


@jobs_bp.get("/<job_id>")
def get_job_status(job_id: str):
    if not cron_authorized(current_app.config["CFG"]):
        return _denied()
    task = celery_app.AsyncResult(job_id)

    data = {"job_id": job_id, "status": task.state}
    if task.state == "PENDING":
        data["message"] = "Job is queued or unknown"
    elif task.state == "SUCCESS":
        data["result"] = task.result
    elif task.state == "FAILURE":
        data["error"] = str(task.info) if task.info else "Unknown error"
    elif task.state == "REVOKED":
        data["message"] = "Job was cancelled"

    return jsonify({"ok": True, "data": data})


@jobs_bp.delete("/<job_id>")
def cancel_job(job_id: str):
    if not cron_authorized(current_app.config["CFG"]):
        return _denied()
    celery_app.control.revoke(job_id, terminate=True)
    return jsonify({"ok": True, "data": {"job_id": job_id, "status": "revoked"}})
