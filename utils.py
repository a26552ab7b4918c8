from __future__ import annotations

import hashlib
import json
import re
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional


_HTTP_STATUS_BY_CODE = {
    "BAD_REQUEST": 400,
    "AUTH_INVALID": 401,
    "UNAUTHORIZED": 401,
    "FORBIDDEN": 403,
    "NOT_FOUND": 404,
    "METHOD_NOT_ALLOWED": 405,
    "CONFLICT": 409,
    "RATE_LIMITED": 429,
    "INTERNAL": 500,
}


class ApiError(Exception):
    def __init__(self, code: str, message: str, http_status: int | None = None):
        super().__init__(message)
        self.code = str(code or "INTERNAL").upper()
        self.message = str(message or "")
        self.http_status = int(http_status or _HTTP_STATUS_BY_CODE.get(self.code, 400))


@dataclass
class AuthContext:
    valid: bool
    userId: str
    email: str
    role: str
    expiresAt: str


SYSTEM_ACTOR = AuthContext(valid=True, userId="SYSTEM", email="SYSTEM", role="ADMIN", expiresAt="")


def ok(data: Any):
    return {"ok": True, "data": data}, 200


def err(code: str, message: str, http_status: int = 400):
    return {"ok": False, "error": {"code": str(code), "message": str(message)}}, int(http_status)


def iso_utc(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def iso_utc_now() -> str:
    return iso_utc(datetime.now(timezone.utc))


def parse_datetime_maybe(value: Any) -> Optional[datetime]:
    s = str(value or "").strip()
    if not s:
        return None
    try:
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        dt = datetime.fromisoformat(s)
    except Exception:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def new_uuid() -> str:
    return str(uuid.uuid4())


def new_id(prefix: str) -> str:
    return f"{str(prefix).upper()}-{uuid.uuid4().hex[:20]}"


def sha256_hex(value: str) -> str:
    return hashlib.sha256(str(value or "").encode("utf-8")).hexdigest()


def now_monotonic() -> float:
    return time.monotonic()


_ROLE_ALIASES = {
    "RECRUITMENT_ADMIN": "ADMIN",
    "CLIENT_ADMIN": "CLIENT",
    "RECRUITMENT_AGENCY": "AGENCY",
}


def normalize_role(role: Any) -> Optional[str]:
    r = str(role or "").strip().upper()
    if not r:
        return None
    return _ROLE_ALIASES.get(r, r)


def parse_roles_csv(raw: str) -> list[str]:
    out: list[str] = []
    for part in str(raw or "").split(","):
        r = normalize_role(part)
        if r and r not in out:
            out.append(r)
    return out


def parse_json_body(raw: str) -> dict[str, Any]:
    s = str(raw or "").strip()
    if not s:
        raise ApiError("BAD_REQUEST", "Empty body")
    try:
        body = json.loads(s)
    except Exception:
        raise ApiError("BAD_REQUEST", "Invalid JSON")
    if not isinstance(body, dict):
        raise ApiError("BAD_REQUEST", "Body must be a JSON object")
    return body


_REDACT_KEYS = re.compile(r"(password|token|secret|idtoken|authorization)", re.IGNORECASE)


def redact_for_audit(value: Any, _depth: int = 0) -> Any:
    if _depth > 6:
        return "..."
    if isinstance(value, dict):
        out = {}
        for k, v in value.items():
            if _REDACT_KEYS.search(str(k)):
                out[k] = "***"
            else:
                out[k] = redact_for_audit(v, _depth + 1)
        return out
    if isinstance(value, list):
        return [redact_for_audit(v, _depth + 1) for v in value[:50]]
    if isinstance(value, (bytes, bytearray)):
        return f"<{len(value)} bytes>"
    if isinstance(value, str) and len(value) > 500:
        return value[:500] + "..."
    return value


_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def sanitize_filename(name: str, default: str = "file") -> str:
    base = str(name or "").replace("\\", "/").rsplit("/", 1)[-1].strip()
    base = _UNSAFE_FILENAME_CHARS.sub("_", base).strip("._")
    return (base or default)[:120]


def to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in {"1", "true", "yes", "y", "on"}


def clamp_int(value: Any, *, default: int, min_v: int, max_v: int) -> int:
    try:
        n = int(value)
    except Exception:
        n = int(default)
    return max(int(min_v), min(int(max_v), n))


class SimpleRateLimiter:
    """Fixed-window per-key limiter, process local."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._windows: dict[str, tuple[float, int]] = {}

    def check(self, key: str, rule: tuple[int, int]) -> None:
        limit, window_s = rule
        now = now_monotonic()
        with self._lock:
            start, count = self._windows.get(key, (now, 0))
            if now - start >= window_s:
                start, count = now, 0
            count += 1
            self._windows[key] = (start, count)
            if len(self._windows) > 50_000:
                cutoff = now - window_s
                self._windows = {k: v for k, v in self._windows.items() if v[0] >= cutoff}
        if count > limit:
            raise ApiError("RATE_LIMITED", "Too many requests, slow down")
