from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

from sqlalchemy import select

from db import SessionLocal
from factories import CRON_HEADERS, auth_headers, seed_assignment, seed_placed_at_stage, seed_world
from models import LabourAssignment, Notification
from services.notification_bus import RedisNotificationBus, get_notification_bus
from services.notifications import create_notification, deliver_to_user, discard_pending_since, pending_mark, purge_archived
from utils import iso_utc, iso_utc_now


def _seed_notification(nid: str, recipient: str, *, type: str = "SYSTEM_ANNOUNCEMENT", archived_at: str = "", created_at: str = "") -> None:
    with SessionLocal() as db:
        db.add(
            Notification(
                notificationId=nid,
                recipientId=recipient,
                type=type,
                category="system",
                title=f"Title {nid}",
                message=f"Message {nid}",
                priority="NORMAL",
                isRead=False,
                isArchived=bool(archived_at),
                archivedAt=archived_at,
                createdAt=created_at or iso_utc_now(),
            )
        )
        db.commit()


def test_read_archive_and_count(app_client):
    _app, client = app_client
    w = seed_world(client)
    for i in range(3):
        _seed_notification(f"NTF-{i}", w.client_user, created_at=f"2026-03-0{i + 1}T00:00:00.000Z")
    headers = auth_headers(w.client_token)

    assert client.get("/notifications/count", headers=headers).get_json()["data"] == {"count": 3}

    res = client.patch("/notifications", json={"action": "markAsRead", "notificationId": "NTF-0"}, headers=headers)
    assert res.status_code == 200
    assert res.get_json()["data"] == {"updated": 1, "unreadCount": 2}

    res = client.patch("/notifications/bulk", json={"action": "archive", "ids": ["NTF-1", "NTF-2"]}, headers=headers)
    assert res.get_json()["data"] == {"updated": 2, "unreadCount": 0}

    listed = client.get("/notifications", headers=headers).get_json()["data"]
    assert [n["id"] for n in listed["notifications"]] == ["NTF-0"]
    archived = client.get("/notifications?archived=true", headers=headers).get_json()["data"]
    assert [n["id"] for n in archived["notifications"]] == ["NTF-2", "NTF-1"]


def test_updates_are_scoped_to_recipient(app_client):
    _app, client = app_client
    w = seed_world(client)
    _seed_notification("NTF-OTHER", w.agency_user)

    res = client.patch(
        "/notifications",
        json={"action": "markAsRead", "notificationId": "NTF-OTHER"},
        headers=auth_headers(w.client_token),
    )
    assert res.status_code == 404
    with SessionLocal() as db:
        assert db.get(Notification, "NTF-OTHER").isRead is False


def test_invalid_filters_rejected(app_client):
    _app, client = app_client
    w = seed_world(client)
    res = client.get("/notifications?category=weather", headers=auth_headers(w.client_token))
    assert res.status_code == 400
    res = client.patch("/notifications/bulk", json={"action": "explode", "ids": ["x"]}, headers=auth_headers(w.client_token))
    assert res.status_code == 400


def test_purge_respects_thirty_day_retention(app_client):
    _app, client = app_client
    w = seed_world(client)
    now = datetime.now(timezone.utc)
    _seed_notification("NTF-OLD", w.client_user, archived_at=iso_utc(now - timedelta(days=31)))
    _seed_notification("NTF-RECENT", w.client_user, archived_at=iso_utc(now - timedelta(days=29)))
    _seed_notification("NTF-LIVE", w.client_user)

    assert client.post("/notifications/cleanup").status_code == 401

    res = client.post("/notifications/cleanup", headers=CRON_HEADERS)
    assert res.status_code == 200
    assert res.get_json()["data"] == {"deleted": 1}
    with SessionLocal() as db:
        left = set(db.execute(select(Notification.notificationId)).scalars().all())
    assert left == {"NTF-RECENT", "NTF-LIVE"}


def test_purge_archived_uses_cutoff(app_client):
    app, _client = app_client
    fixed = datetime(2026, 6, 1, tzinfo=timezone.utc)
    _seed_notification("NTF-A", "USR-X", archived_at=iso_utc(fixed - timedelta(days=30, minutes=1)))
    _seed_notification("NTF-B", "USR-X", archived_at=iso_utc(fixed - timedelta(days=29, hours=23)))
    with SessionLocal() as db:
        assert purge_archived(db, days=30, now=fixed) == 1
        db.commit()


def test_settings_mute_category(app_client):
    app, client = app_client
    w = seed_world(client)
    headers = auth_headers(w.client_token)

    res = client.put("/users/settings", json={"notifyLabour": False, "timezone": "Asia/Kolkata"}, headers=headers)
    assert res.status_code == 200, res.get_json()
    assert res.get_json()["data"]["notifyLabour"] is False
    assert client.get("/users/settings", headers=headers).get_json()["data"]["timezone"] == "Asia/Kolkata"

    bad = client.put("/users/settings", json={"timezone": "Mars/Olympus"}, headers=headers)
    assert bad.status_code == 400

    cfg = app.config["CFG"]
    with SessionLocal() as db:
        assert deliver_to_user(db, cfg, w.client_user, type="LABOUR_ACCEPTED", title="t", message="m") is None
        assert deliver_to_user(db, cfg, w.client_user, type="SYSTEM_ANNOUNCEMENT", title="t", message="m") is not None
        db.commit()


def test_commit_publishes_and_conflict_does_not(app_client):
    _app, client = app_client
    w = seed_world(client)
    seed_placed_at_stage(assignment_id="ASG-1", labour_id="LAB-1", stage="MEDICAL_STATUS")

    received = []
    unsubscribe = get_notification_bus().subscribe(w.client_user, received.append)
    try:
        ok_res = client.post("/assignments/ASG-1/mark-medical-fit", json={}, headers=auth_headers(w.agency_token))
        assert ok_res.status_code == 200
        assert [m["type"] for m in received] == ["notification"]
        assert received[0]["payload"]["type"] == "STAGE_COMPLETED"
        assert received[0]["payload"]["recipientId"] == w.client_user

        received.clear()
        again = client.post("/assignments/ASG-1/mark-medical-fit", json={}, headers=auth_headers(w.agency_token))
        assert again.status_code == 409
        assert received == []
    finally:
        unsubscribe()


def test_savepoint_commit_does_not_publish_before_outer_commit(app_client):
    _app, client = app_client
    w = seed_world(client)
    received = []
    unsubscribe = get_notification_bus().subscribe(w.client_user, received.append)
    try:
        with SessionLocal() as db:
            sp = db.begin_nested()
            create_notification(db, type="SYSTEM_ANNOUNCEMENT", title="inner", message="m", recipient_id=w.client_user)
            db.flush()
            sp.commit()
            assert received == []
            db.rollback()
        assert received == []
        with SessionLocal() as db:
            assert db.execute(select(Notification).where(Notification.title == "inner")).first() is None
    finally:
        unsubscribe()


def test_rolled_back_savepoint_keeps_outer_pushes(app_client):
    _app, client = app_client
    w = seed_world(client)
    received = []
    unsubscribe = get_notification_bus().subscribe(w.client_user, received.append)
    try:
        with SessionLocal() as db:
            create_notification(db, type="SYSTEM_ANNOUNCEMENT", title="outer", message="m", recipient_id=w.client_user)
            mark = pending_mark(db)
            sp = db.begin_nested()
            create_notification(db, type="SYSTEM_ANNOUNCEMENT", title="inner", message="m", recipient_id=w.client_user)
            db.flush()
            sp.rollback()
            discard_pending_since(db, mark)
            db.commit()
        assert [m["payload"]["title"] for m in received] == ["outer"]
        with SessionLocal() as db:
            titles = db.execute(select(Notification.title).where(Notification.recipientId == w.client_user)).scalars().all()
        assert titles == ["outer"]
    finally:
        unsubscribe()


def test_bulk_pushes_follow_the_request_transaction(app_client):
    _app, client = app_client
    w = seed_world(client)
    seed_assignment(
        assignment_id="ASG-1",
        labour_id="LAB-1",
        created_at="2026-01-01T00:00:00.000Z",
        admin="PENDING",
        client="PENDING",
    )
    body = {"assignmentIds": ["ASG-MISSING", "ASG-1"], "status": "ACCEPTED"}
    received = []
    unsubscribe = get_notification_bus().subscribe(w.client_user, received.append)
    try:
        # The audit write fails after both items ran, so the whole request rolls back.
        with patch("app.rest.write_api_audit", side_effect=RuntimeError("audit store down")):
            failed = client.put("/admin/assignments/bulk-status", json=body, headers=auth_headers(w.admin_token))
        assert failed.status_code == 500
        assert received == []
        with SessionLocal() as db:
            assert db.get(LabourAssignment, "ASG-1").adminStatus == "PENDING"

        res = client.put("/admin/assignments/bulk-status", json=body, headers=auth_headers(w.admin_token))
        assert res.status_code == 200, res.get_json()
        assert res.get_json()["data"]["updated"] == 1
        assert [m["payload"]["type"] for m in received] == ["LABOUR_SUBMITTED"]
    finally:
        unsubscribe()


def test_stream_sends_hello_then_pushes(app_client):
    _app, client = app_client
    w = seed_world(client)
    bus = get_notification_bus()

    resp = client.get(f"/notifications/stream?token={w.client_token}", buffered=False)
    assert resp.status_code == 200
    assert resp.mimetype == "text/event-stream"
    assert resp.headers["Cache-Control"] == "no-cache"
    assert bus.listener_count(w.client_user) == 1

    chunks = iter(resp.response)
    first = next(chunks)
    assert json.loads(first.decode().removeprefix("data: ").strip()) == {"type": "hello"}

    bus.publish(w.client_user, {"type": "notification", "payload": {"id": "NTF-1"}})
    pushed = next(chunks).decode()
    assert pushed.startswith("data: ")
    assert json.loads(pushed[len("data: "):].strip())["payload"]["id"] == "NTF-1"

    # Nothing queued: the next frame is a keep-alive comment.
    assert next(chunks).decode() == ":keep-alive\n\n"

    resp.close()
    assert bus.listener_count(w.client_user) == 0


def test_stream_closed_before_first_frame_unsubscribes(app_client):
    _app, client = app_client
    w = seed_world(client)
    bus = get_notification_bus()

    resp = client.get(f"/notifications/stream?token={w.client_token}", buffered=False)
    assert bus.listener_count(w.client_user) == 1
    resp.close()
    assert bus.listener_count(w.client_user) == 0


def test_stream_requires_session(app_client):
    _app, client = app_client
    res = client.get("/notifications/stream?token=bogus")
    assert res.status_code == 401
    assert get_notification_bus().listener_count() == 0


def test_redis_bus_publishes_to_user_channel():
    fake = MagicMock()
    fake.publish.return_value = 1
    bus = RedisNotificationBus("redis://unused", client=fake)

    assert bus.publish("USR-1", {"type": "notification", "payload": {"id": "N1"}}) == 1
    channel, raw = fake.publish.call_args.args
    assert channel == "notifications:USR-1"
    assert json.loads(raw)["payload"]["id"] == "N1"


def test_redis_bus_relays_incoming_messages():
    bus = RedisNotificationBus("redis://unused", client=MagicMock())
    got = []
    bus.subscribe("USR-2", got.append)

    bus._on_message({"channel": b"notifications:USR-2", "data": b'{"type": "notification"}'})
    bus._on_message({"channel": b"notifications:USR-3", "data": b'{"type": "notification"}'})
    bus._on_message({"channel": b"notifications:USR-2", "data": b"not json"})

    assert got == [{"type": "notification"}]
