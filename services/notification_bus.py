from __future__ import annotations

import json
import logging
import threading
from typing import Any, Callable, Optional

import redis


Listener = Callable[[dict], None]

_log = logging.getLogger("notifications")


class InMemoryNotificationBus:
    """
    Per-user listener registry.

    Publishes reach only listeners attached to this process; the persisted
    notification row stays the source of truth for anything missed.
    """

    def __init__(self) -> None:
        self._channels: dict[str, set[Listener]] = {}
        self._lock = threading.Lock()

    def subscribe(self, user_id: str, listener: Listener) -> Callable[[], None]:
        uid = str(user_id or "").strip()
        if not uid:
            raise ValueError("user_id is required")
        with self._lock:
            self._channels.setdefault(uid, set()).add(listener)

        def _unsubscribe() -> None:
            with self._lock:
                listeners = self._channels.get(uid)
                if not listeners:
                    return
                listeners.discard(listener)
                if not listeners:
                    self._channels.pop(uid, None)

        return _unsubscribe

    def _dispatch_local(self, user_id: str, payload: dict) -> int:
        with self._lock:
            listeners = list(self._channels.get(str(user_id or ""), ()))
        delivered = 0
        for listener in listeners:
            try:
                listener(payload)
                delivered += 1
            except Exception:
                _log.exception("notification listener failed user=%s", user_id)
        return delivered

    def publish(self, user_id: str, payload: dict) -> int:
        return self._dispatch_local(user_id, payload)

    def listener_count(self, user_id: Optional[str] = None) -> int:
        with self._lock:
            if user_id is not None:
                return len(self._channels.get(str(user_id), ()))
            return sum(len(v) for v in self._channels.values())

    def close(self) -> None:
        with self._lock:
            self._channels.clear()


class RedisNotificationBus(InMemoryNotificationBus):
    """
    Redis pub/sub fan-out across server instances.

    Every instance holds one pattern subscription on ``notifications:*`` and
    relays incoming messages to its own local listeners.
    """

    CHANNEL_PREFIX = "notifications:"

    def __init__(self, redis_url: str, *, client: Any = None) -> None:
        super().__init__()
        self._redis = client if client is not None else redis.from_url(redis_url)
        self._pubsub = None
        self._worker = None
        self._start_lock = threading.Lock()

    def _channel(self, user_id: str) -> str:
        return f"{self.CHANNEL_PREFIX}{user_id}"

    def _on_message(self, message: dict) -> None:
        channel = message.get("channel")
        data = message.get("data")
        if isinstance(channel, bytes):
            channel = channel.decode("utf-8")
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        channel = str(channel or "")
        if not channel.startswith(self.CHANNEL_PREFIX):
            return
        try:
            payload = json.loads(data or "{}")
        except Exception:
            _log.warning("dropping malformed bus message channel=%s", channel)
            return
        self._dispatch_local(channel[len(self.CHANNEL_PREFIX):], payload)

    def _ensure_worker(self) -> None:
        if self._worker is not None:
            return
        with self._start_lock:
            if self._worker is not None:
                return
            pubsub = self._redis.pubsub(ignore_subscribe_messages=True)
            pubsub.psubscribe(**{f"{self.CHANNEL_PREFIX}*": self._on_message})
            self._pubsub = pubsub
            self._worker = pubsub.run_in_thread(sleep_time=0.5, daemon=True)

    def subscribe(self, user_id: str, listener: Listener) -> Callable[[], None]:
        self._ensure_worker()
        return super().subscribe(user_id, listener)

    def publish(self, user_id: str, payload: dict) -> int:
        return int(self._redis.publish(self._channel(str(user_id)), json.dumps(payload, default=str)) or 0)

    def close(self) -> None:
        worker, pubsub = self._worker, self._pubsub
        self._worker = None
        self._pubsub = None
        if worker is not None:
            try:
                worker.stop()
            except Exception:
                _log.exception("failed to stop redis bus worker")
        if pubsub is not None:
            try:
                pubsub.close()
            except Exception:
                _log.exception("failed to close redis pubsub")
        super().close()


_bus: InMemoryNotificationBus = InMemoryNotificationBus()


def init_notification_bus(cfg) -> InMemoryNotificationBus:
    global _bus
    old = _bus
    if str(getattr(cfg, "NOTIFICATION_BUS", "memory") or "memory").lower() == "redis":
        _bus = RedisNotificationBus(cfg.REDIS_URL)
    else:
        _bus = InMemoryNotificationBus()
    if old is not _bus:
        old.close()
    _log.info("notification bus=%s", type(_bus).__name__)
    return _bus


def get_notification_bus() -> InMemoryNotificationBus:
    return _bus
