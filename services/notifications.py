from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional
from zoneinfo import ZoneInfo

from sqlalchemy import and_, delete, event, func, or_, select, update

from db import SessionLocal
from models import Notification, User, UserSettings
from services.notification_bus import get_notification_bus
from utils import ApiError, iso_utc, iso_utc_now, new_id, normalize_role


_log = logging.getLogger("notifications")

PRIORITIES = ("LOW", "NORMAL", "HIGH", "URGENT")

TYPE_CATEGORY = {
    "REQUIREMENT_SUBMITTED": "requirement",
    "REQUIREMENT_FORWARDED": "requirement",
    "REQUIREMENT_ACCEPTED": "requirement",
    "REQUIREMENT_REJECTED": "requirement",
    "REQUIREMENT_NEEDS_REVISION": "requirement",
    "REQUIREMENT_FULFILLED": "requirement",
    "LABOUR_SUBMITTED": "labour",
    "LABOUR_ACCEPTED": "labour",
    "LABOUR_REJECTED": "labour",
    "BACKUP_PROMOTED": "labour",
    "STAGE_COMPLETED": "labour",
    "STAGE_FAILED": "labour",
    "STAGE_PENDING_ACTION": "labour",
    "TRAVEL_UPDATED": "labour",
    "ARRIVAL_CONFIRMED": "labour",
    "VISA_UPLOADED": "document",
    "TRAVEL_DOCUMENTS_UPLOADED": "document",
    "DOCUMENT_VERIFIED": "document",
    "ACCOUNT_VERIFIED": "system",
    "ACCOUNT_REJECTED": "system",
    "SYSTEM_ANNOUNCEMENT": "system",
}

_CATEGORY_FLAG = {
    "requirement": "notifyRequirement",
    "labour": "notifyLabour",
    "document": "notifyDocument",
    "system": "notifySystem",
}

_PENDING_KEY = "pending_notifications"


def category_for(notification_type: str) -> str:
    return TYPE_CATEGORY.get(str(notification_type or "").upper(), "system")


def serialize_notification(row: Notification) -> dict[str, Any]:
    return {
        "id": str(row.notificationId),
        "recipientId": str(row.recipientId or ""),
        "senderId": str(row.senderId or ""),
        "type": str(row.type or ""),
        "category": str(row.category or ""),
        "title": str(row.title or ""),
        "message": str(row.message or ""),
        "priority": str(row.priority or "NORMAL"),
        "actionUrl": str(row.actionUrl or ""),
        "actionText": str(row.actionText or ""),
        "entityType": str(row.entityType or ""),
        "entityId": str(row.entityId or ""),
        "isRead": bool(row.isRead),
        "readAt": str(row.readAt or ""),
        "isArchived": bool(row.isArchived),
        "archivedAt": str(row.archivedAt or ""),
        "createdAt": str(row.createdAt or ""),
    }


# Live pushes are queued on the session and sent only once the outermost
# transaction commits. SAVEPOINT commits and rollbacks leave the queue alone;
# callers trim a rolled-back savepoint with discard_pending_since.


@event.listens_for(SessionLocal, "after_commit")
def _publish_after_commit(session) -> None:
    if session.in_nested_transaction():
        return
    pending = session.info.pop(_PENDING_KEY, None)
    if not pending:
        return
    bus = get_notification_bus()
    for recipient_id, payload in pending:
        try:
            bus.publish(recipient_id, {"type": "notification", "payload": payload})
        except Exception:
            _log.exception("notification publish failed recipient=%s", recipient_id)


@event.listens_for(SessionLocal, "after_rollback")
def _discard_after_rollback(session) -> None:
    if session.in_nested_transaction():
        return
    session.info.pop(_PENDING_KEY, None)


def pending_mark(db) -> int:
    return len(db.info.get(_PENDING_KEY, []))


def discard_pending_since(db, mark: int) -> None:
    """Drop pushes queued after ``mark`` (used when a savepoint is rolled back)."""
    pending = db.info.get(_PENDING_KEY)
    if pending:
        del pending[mark:]


def create_notification(
    db,
    *,
    type: str,
    title: str,
    message: str,
    recipient_id: str,
    priority: str = "NORMAL",
    action_url: str = "",
    action_text: str = "",
    sender_id: str = "",
    entity_type: str = "",
    entity_id: str = "",
) -> dict[str, Any]:
    rid = str(recipient_id or "").strip()
    if not rid:
        raise ApiError("BAD_REQUEST", "Missing recipientId")
    prio = str(priority or "NORMAL").upper()
    if prio not in PRIORITIES:
        prio = "NORMAL"

    row = Notification(
        notificationId=new_id("NTF"),
        recipientId=rid,
        senderId=str(sender_id or ""),
        type=str(type or "").upper(),
        category=category_for(type),
        title=str(title or "")[:300],
        message=str(message or "")[:2000],
        priority=prio,
        actionUrl=str(action_url or ""),
        actionText=str(action_text or ""),
        entityType=str(entity_type or ""),
        entityId=str(entity_id or ""),
        isRead=False,
        readAt="",
        isArchived=False,
        archivedAt="",
        createdAt=iso_utc_now(),
    )
    db.add(row)
    payload = serialize_notification(row)
    db.info.setdefault(_PENDING_KEY, []).append((rid, payload))
    return payload


def _is_duplicate(db, cfg, *, recipient_id: str, type: str, entity_id: str, message: str) -> bool:
    minutes = int(getattr(cfg, "NOTIFICATION_DEDUPE_MINUTES", 10) or 0)
    if minutes <= 0:
        return False
    since = iso_utc(datetime.now(timezone.utc) - timedelta(minutes=minutes))
    q = (
        select(Notification.notificationId)
        .where(Notification.recipientId == recipient_id)
        .where(Notification.type == str(type or "").upper())
        .where(Notification.entityId == str(entity_id or ""))
        .where(Notification.message == str(message or "")[:2000])
        .where(Notification.isArchived == False)  # noqa: E712
        .where(Notification.createdAt >= since)
        .limit(1)
    )
    if db.execute(q).first() is not None:
        return True
    # Rows added earlier in this transaction are not visible to the query until flushed.
    for rid, payload in db.info.get(_PENDING_KEY, []):
        if (
            rid == recipient_id
            and payload.get("type") == str(type or "").upper()
            and payload.get("entityId") == str(entity_id or "")
            and payload.get("message") == str(message or "")[:2000]
        ):
            return True
    return False


def _in_quiet_hours(tz_name: str, now: datetime) -> bool:
    try:
        tz = ZoneInfo(tz_name or "UTC")
    except Exception:
        tz = timezone.utc
    hour = now.astimezone(tz).hour
    return hour >= 22 or hour < 7


def email_eligible(settings: Optional[UserSettings], category: str, priority: str, *, now: Optional[datetime] = None) -> bool:
    """Whether a notification would also go out by email (delivery itself is not wired)."""
    if settings is None or not bool(settings.notifyEmail):
        return False
    if not bool(getattr(settings, _CATEGORY_FLAG.get(category, "notifySystem"), True)):
        return False
    prio = str(priority or "").upper()
    if prio not in {"HIGH", "URGENT"}:
        return False
    if _in_quiet_hours(str(settings.timezone or "UTC"), now or datetime.now(timezone.utc)):
        return prio == "URGENT"
    return True


def deliver_to_user(
    db,
    cfg,
    recipient_id: str,
    *,
    type: str,
    title: str,
    message: str,
    priority: str = "NORMAL",
    action_url: str = "",
    action_text: str = "",
    sender_id: str = "",
    entity_type: str = "",
    entity_id: str = "",
) -> Optional[dict[str, Any]]:
    rid = str(recipient_id or "").strip()
    if not rid:
        return None

    if _is_duplicate(db, cfg, recipient_id=rid, type=type, entity_id=entity_id, message=message):
        _log.debug("notification deduped recipient=%s type=%s entity=%s", rid, type, entity_id)
        return None

    category = category_for(type)
    settings = db.get(UserSettings, rid)
    if settings is not None and not bool(getattr(settings, _CATEGORY_FLAG.get(category, "notifySystem"), True)):
        _log.debug("notification muted by preferences recipient=%s category=%s", rid, category)
        return None

    out = create_notification(
        db,
        type=type,
        title=title,
        message=message,
        recipient_id=rid,
        priority=priority,
        action_url=action_url,
        action_text=action_text,
        sender_id=sender_id,
        entity_type=entity_type,
        entity_id=entity_id,
    )
    if email_eligible(settings, category, out["priority"]):
        _log.info("email channel not configured; skipped recipient=%s type=%s", rid, out["type"])
    return out


def deliver_to_users(db, cfg, recipient_ids: Iterable[str], **kwargs) -> list[dict[str, Any]]:
    seen: set[str] = set()
    out: list[dict[str, Any]] = []
    for rid in recipient_ids:
        rid = str(rid or "").strip()
        if not rid or rid in seen:
            continue
        seen.add(rid)
        row = deliver_to_user(db, cfg, rid, **kwargs)
        if row:
            out.append(row)
    return out


def deliver_to_role(db, cfg, role: str, **kwargs) -> list[dict[str, Any]]:
    role_u = normalize_role(role) or ""
    user_ids = db.execute(select(User.userId).where(User.role == role_u).where(User.status == "ACTIVE")).scalars().all()
    return deliver_to_users(db, cfg, user_ids, **kwargs)


# Read side


def list_notifications(
    db,
    user_id: str,
    *,
    limit: int = 30,
    include_read: bool = True,
    archived: bool = False,
    category: str = "",
    priority: str = "",
    q: str = "",
    cursor: str = "",
) -> dict[str, Any]:
    limit = max(1, min(100, int(limit or 30)))
    stmt = select(Notification).where(Notification.recipientId == user_id).where(Notification.isArchived == bool(archived))
    if not include_read:
        stmt = stmt.where(Notification.isRead == False)  # noqa: E712
    if category:
        stmt = stmt.where(Notification.category == str(category).lower())
    if priority:
        stmt = stmt.where(Notification.priority == str(priority).upper())
    if q:
        like = f"%{q}%"
        stmt = stmt.where(or_(Notification.title.ilike(like), Notification.message.ilike(like)))
    if cursor:
        anchor = db.get(Notification, cursor)
        if anchor is None or anchor.recipientId != user_id:
            raise ApiError("BAD_REQUEST", "Invalid cursor")
        stmt = stmt.where(
            or_(
                Notification.createdAt < anchor.createdAt,
                and_(Notification.createdAt == anchor.createdAt, Notification.notificationId < anchor.notificationId),
            )
        )

    rows = (
        db.execute(stmt.order_by(Notification.createdAt.desc(), Notification.notificationId.desc()).limit(limit + 1))
        .scalars()
        .all()
    )
    next_cursor = rows[limit - 1].notificationId if len(rows) > limit else None
    return {"notifications": [serialize_notification(r) for r in rows[:limit]], "nextCursor": next_cursor}


def unread_count(db, user_id: str) -> int:
    return int(
        db.execute(
            select(func.count())
            .select_from(Notification)
            .where(Notification.recipientId == user_id)
            .where(Notification.isRead == False)  # noqa: E712
            .where(Notification.isArchived == False)  # noqa: E712
        ).scalar_one()
    )


_ACTION_VALUES = {
    "read": lambda now: {"isRead": True, "readAt": now},
    "unread": lambda now: {"isRead": False, "readAt": ""},
    "archive": lambda now: {"isArchived": True, "archivedAt": now},
    "unarchive": lambda now: {"isArchived": False, "archivedAt": ""},
}

_SINGLE_ACTIONS = {
    "MARKASREAD": "read",
    "MARKASUNREAD": "unread",
    "ARCHIVE": "archive",
    "UNARCHIVE": "unarchive",
}


def bulk_action(db, user_id: str, action: str, ids: Iterable[str]) -> int:
    kind = str(action or "").strip().lower()
    if kind not in _ACTION_VALUES:
        raise ApiError("BAD_REQUEST", f"Invalid action: {action}")
    id_list = [str(i).strip() for i in (ids or []) if str(i or "").strip()]
    if not id_list:
        raise ApiError("BAD_REQUEST", "Missing ids")
    res = db.execute(
        update(Notification)
        .where(Notification.recipientId == user_id)
        .where(Notification.notificationId.in_(id_list))
        .values(**_ACTION_VALUES[kind](iso_utc_now()))
    )
    return int(res.rowcount or 0)


def apply_action(db, user_id: str, action: str, notification_id: str = "") -> int:
    key = str(action or "").strip().replace("_", "").upper()
    if key == "MARKALLASREAD":
        res = db.execute(
            update(Notification)
            .where(Notification.recipientId == user_id)
            .where(Notification.isRead == False)  # noqa: E712
            .values(isRead=True, readAt=iso_utc_now())
        )
        return int(res.rowcount or 0)

    kind = _SINGLE_ACTIONS.get(key)
    if not kind:
        raise ApiError("BAD_REQUEST", f"Invalid action: {action}")
    nid = str(notification_id or "").strip()
    if not nid:
        raise ApiError("BAD_REQUEST", "Missing notificationId")
    updated = bulk_action(db, user_id, kind, [nid])
    if not updated:
        raise ApiError("NOT_FOUND", "Notification not found")
    return updated


def purge_archived(db, *, days: int = 30, now: Optional[datetime] = None) -> int:
    cutoff = iso_utc((now or datetime.now(timezone.utc)) - timedelta(days=int(days)))
    res = db.execute(
        delete(Notification)
        .where(Notification.isArchived == True)  # noqa: E712
        .where(Notification.archivedAt != "")
        .where(Notification.archivedAt < cutoff)
    )
    return int(res.rowcount or 0)
