from __future__ import annotations

from typing import Any, Callable

from actions import agencies, assignments, auth_actions, backup_promotion, maintenance, notifications, requirements, stage_workflow
from utils import ApiError, AuthContext


Handler = Callable[[dict, "AuthContext | None", Any, Any], Any]


ACTION_HANDLERS: dict[str, Handler] = {
    # Auth
    "LOGIN_EXCHANGE": auth_actions.login_exchange,
    "LOGIN_PASSWORD": auth_actions.login_password,
    "SESSION_VALIDATE": auth_actions.session_validate,
    "GET_ME": auth_actions.get_me,
    "LOGOUT": auth_actions.logout,
    "MY_PERMISSIONS_GET": auth_actions.my_permissions_get,
    "USER_REGISTER": auth_actions.user_register,
    "PASSWORD_RESET_REQUEST": auth_actions.password_reset_request,
    "PASSWORD_RESET_CONFIRM": auth_actions.password_reset_confirm,
    # Requirements
    "REQUIREMENT_CREATE": requirements.requirement_create,
    "REQUIREMENTS_LIST": requirements.requirements_list,
    "REQUIREMENT_GET": requirements.requirement_get,
    "REQUIREMENT_FORWARD": requirements.requirement_forward,
    "JOB_ROLE_AGENCY_STATUS": requirements.job_role_agency_status,
    # Agencies / labour pool
    "AGENCY_STATUS_UPDATE": agencies.agency_status_update,
    "LABOUR_PROFILE_CREATE": agencies.labour_profile_create,
    "LABOUR_PROFILES_LIST": agencies.labour_profiles_list,
    # Assignments
    "ASSIGNMENT_CREATE": assignments.assignment_create,
    "ASSIGNMENTS_LIST": assignments.assignments_list,
    "AGENCY_ASSIGNMENT_STATUS": assignments.agency_assignment_status,
    "ADMIN_ASSIGNMENT_STATUS": assignments.admin_assignment_status,
    "ADMIN_ASSIGNMENT_BULK_STATUS": assignments.admin_assignment_bulk_status,
    "CLIENT_ASSIGNMENT_STATUS": assignments.client_assignment_status,
    "CLIENT_ASSIGNMENT_BULK_STATUS": assignments.client_assignment_bulk_status,
    "REPLACE_REJECTED": backup_promotion.replace_rejected,
    # Stage workflow
    "OFFER_LETTER_VERIFY": stage_workflow.offer_letter_verify,
    "VISA_MARK_APPLIED": stage_workflow.visa_mark_applied,
    "QVC_MARK_PAID": stage_workflow.qvc_mark_paid,
    "VISA_UPLOAD": stage_workflow.visa_upload,
    "TRAVEL_DATE_SET": stage_workflow.travel_date_set,
    "ARRIVAL_CONFIRM": stage_workflow.arrival_confirm,
    "CONTRACT_APPROVE": stage_workflow.contract_approve,
    "CONTRACT_REFUSE": stage_workflow.contract_refuse,
    "MEDICAL_MARK_FIT": stage_workflow.medical_mark_fit,
    "MEDICAL_MARK_UNFIT": stage_workflow.medical_mark_unfit,
    "FINGERPRINT_MARK_PASS": stage_workflow.fingerprint_mark_pass,
    "FINGERPRINT_MARK_FAIL": stage_workflow.fingerprint_mark_fail,
    "TRAVEL_DOCUMENTS_SUBMIT": stage_workflow.travel_documents_submit,
    "TRAVEL_CONFIRM": stage_workflow.travel_confirm,
    "LABOUR_STAGES_GET": stage_workflow.labour_stages_get,
    # Notifications
    "NOTIFICATIONS_LIST": notifications.notifications_list,
    "NOTIFICATIONS_COUNT": notifications.notifications_count,
    "NOTIFICATIONS_UPDATE": notifications.notifications_update,
    "NOTIFICATIONS_BULK": notifications.notifications_bulk,
    "USER_SETTINGS_GET": notifications.user_settings_get,
    "USER_SETTINGS_UPDATE": notifications.user_settings_update,
    # Scheduled sweeps
    "CRON_CLEANUP": maintenance.cron_cleanup,
    "CRON_DELETE_ACCOUNTS": maintenance.cron_delete_accounts,
    "CRON_OVERDUE_LABOUR_REMINDERS": maintenance.cron_overdue_labour_reminders,
    "NOTIFICATIONS_PURGE_ARCHIVED": maintenance.notifications_purge_archived,
}


def dispatch(action: str, data: dict, auth: AuthContext | None, db, cfg) -> Any:
    action_u = str(action or "").upper().strip()
    handler = ACTION_HANDLERS.get(action_u)
    if handler is None:
        raise ApiError("BAD_REQUEST", f"Unknown action: {action_u}")
    if data is not None and not isinstance(data, dict):
        raise ApiError("BAD_REQUEST", "data must be an object")
    return handler(data or {}, auth, db, cfg)
