from __future__ import annotations

from flask import Blueprint

from app.rest import rest_handle

cron_bp = Blueprint("cron", __name__, url_prefix="/cron")


@cron_bp.route("/cleanup", methods=["GET", "POST"])
def cleanup():
    return rest_handle("CRON_CLEANUP", {}, internal=True)


@cron_bp.route("/delete-accounts", methods=["GET", "POST"])
def delete_accounts():
    return rest_handle("CRON_DELETE_ACCOUNTS", {}, internal=True)


@cron_bp.route("/overdue-labour-reminders", methods=["GET", "POST"])
def overdue_labour_reminders():
    return rest_handle("CRON_OVERDUE_LABOUR_REMINDERS", {}, internal=True)
