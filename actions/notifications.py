from __future__ import annotations

from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from actions.helpers import require_auth, required_str
from models import UserSettings
from services.notifications import PRIORITIES, apply_action, bulk_action, list_notifications, unread_count
from utils import ApiError, AuthContext, clamp_int, iso_utc_now, to_bool


_SETTINGS_FLAGS = ("notifyRequirement", "notifyLabour", "notifyDocument", "notifySystem", "notifyEmail")
_CATEGORIES = {"requirement", "labour", "document", "system"}


def notifications_list(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    data = data or {}
    category = str(data.get("category") or "").strip().lower()
    if category and category not in _CATEGORIES:
        raise ApiError("BAD_REQUEST", f"Invalid category: {category}")
    priority = str(data.get("priority") or "").strip().upper()
    if priority and priority not in PRIORITIES:
        raise ApiError("BAD_REQUEST", f"Invalid priority: {priority}")

    out = list_notifications(
        db,
        auth.userId,
        limit=clamp_int(data.get("limit"), default=30, min_v=1, max_v=100),
        include_read=to_bool(data.get("includeRead", True)),
        archived=to_bool(data.get("archived", False)),
        category=category,
        priority=priority,
        q=str(data.get("q") or "").strip()[:200],
        cursor=str(data.get("cursor") or "").strip(),
    )
    out["unreadCount"] = unread_count(db, auth.userId)
    return out


def notifications_count(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    return {"count": unread_count(db, auth.userId)}


def notifications_update(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    action = required_str(data, "action")
    updated = apply_action(db, auth.userId, action, str((data or {}).get("notificationId") or ""))
    return {"updated": updated, "unreadCount": unread_count(db, auth.userId)}


def notifications_bulk(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    ids = (data or {}).get("ids")
    if not isinstance(ids, list):
        raise ApiError("BAD_REQUEST", "ids must be a list")
    updated = bulk_action(db, auth.userId, required_str(data, "action"), ids)
    return {"updated": updated, "unreadCount": unread_count(db, auth.userId)}


def _settings_row(db, user_id: str) -> UserSettings:
    row = db.get(UserSettings, user_id)
    if row is None:
        row = UserSettings(userId=user_id, updatedAt=iso_utc_now())
        db.add(row)
        db.flush()
    return row


def _serialize_settings(row: UserSettings) -> dict:
    out = {k: bool(getattr(row, k)) for k in _SETTINGS_FLAGS}
    out["timezone"] = row.timezone or "UTC"
    out["updatedAt"] = row.updatedAt
    return out


def user_settings_get(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    return _serialize_settings(_settings_row(db, auth.userId))


def user_settings_update(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    row = _settings_row(db, auth.userId)
    data = data or {}
    for key in _SETTINGS_FLAGS:
        if key in data:
            setattr(row, key, to_bool(data.get(key)))
    if "timezone" in data:
        tz = str(data.get("timezone") or "").strip() or "UTC"
        try:
            ZoneInfo(tz)
        except (ZoneInfoNotFoundError, ValueError):
            raise ApiError("BAD_REQUEST", f"Unknown timezone: {tz}")
        row.timezone = tz
    row.updatedAt = iso_utc_now()
    return _serialize_settings(row)
