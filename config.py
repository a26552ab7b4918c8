from __future__ import annotations

import os


def _env(name: str, default: str = "") -> str:
    return str(os.getenv(name, default) or default).strip()


def _env_int(name: str, default: int) -> int:
    try:
        return int(_env(name, str(default)) or default)
    except Exception:
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = _env(name).lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "y", "on"}


def _parse_rate(raw: str, default: tuple[int, int]) -> tuple[int, int]:
    """Parse "count/seconds" into a tuple; falls back to default on junk."""
    s = str(raw or "").strip()
    if "/" not in s:
        return default
    left, right = s.split("/", 1)
    try:
        count, window = int(left), int(right)
    except Exception:
        return default
    if count <= 0 or window <= 0:
        return default
    return count, window


class Config:
    def __init__(self) -> None:
        self.APP_ENV = _env("APP_ENV", "development").lower()
        self.IS_PRODUCTION = self.APP_ENV in {"prod", "production"}
        self.APP_VERSION = _env("APP_VERSION", "1.0.0")
        self.APP_TIMEZONE = _env("APP_TIMEZONE", "UTC")
        self.HOST = _env("HOST", "0.0.0.0")
        self.PORT = _env_int("PORT", 5002)
        self.LOG_LEVEL = _env("LOG_LEVEL", "INFO").upper()

        self.DATABASE_URL = _env("DATABASE_URL", "sqlite:///./labourflow.db")
        self.ALLOWED_ORIGINS = [o.strip() for o in _env("ALLOWED_ORIGINS", "*").split(",") if o.strip()]

        self.GOOGLE_CLIENT_ID = _env("GOOGLE_CLIENT_ID")
        self.AUTH_ALLOW_TEST_TOKENS = _env_bool("AUTH_ALLOW_TEST_TOKENS", False)
        self.SESSION_TTL_MINUTES = max(5, _env_int("SESSION_TTL_MINUTES", 720))
        self.PASSWORD_RESET_TTL_MINUTES = max(5, _env_int("PASSWORD_RESET_TTL_MINUTES", 60))

        self.UPLOAD_DIR = _env("UPLOAD_DIR", os.path.join(".", "uploads"))
        self.MAX_UPLOAD_MB = max(1, _env_int("MAX_UPLOAD_MB", 10))

        self.CRON_SECRET = _env("CRON_SECRET")

        self.RATE_LIMIT_GLOBAL = _parse_rate(_env("RATE_LIMIT_GLOBAL"), (600, 60))
        self.RATE_LIMIT_DEFAULT = _parse_rate(_env("RATE_LIMIT_DEFAULT"), (120, 60))
        self.RATE_LIMIT_LOGIN = _parse_rate(_env("RATE_LIMIT_LOGIN"), (10, 60))

        # Notifications
        self.NOTIFICATION_BUS = _env("NOTIFICATION_BUS", "memory").lower()
        self.REDIS_URL = _env("REDIS_URL", "redis://localhost:6379/0")
        self.SSE_KEEPALIVE_SECONDS = max(1, _env_int("SSE_KEEPALIVE_SECONDS", 25))
        self.NOTIFICATION_DEDUPE_MINUTES = max(0, _env_int("NOTIFICATION_DEDUPE_MINUTES", 10))
        self.NOTIFICATION_ARCHIVE_RETENTION_DAYS = max(1, _env_int("NOTIFICATION_ARCHIVE_RETENTION_DAYS", 30))

        # Maintenance sweeps
        self.STAGE_REMINDER_DAYS = max(1, _env_int("STAGE_REMINDER_DAYS", 7))
        self.ACCOUNT_DELETE_GRACE_HOURS = max(0, _env_int("ACCOUNT_DELETE_GRACE_HOURS", 24))
        self.ENABLE_SCHEDULER = _env_bool("ENABLE_SCHEDULER", False)
        self.SCHEDULER_HOUR = min(23, max(0, _env_int("SCHEDULER_HOUR", 0)))
        self.SCHEDULER_MINUTE = min(59, max(0, _env_int("SCHEDULER_MINUTE", 10)))

        # HTTP
        self.ENABLE_COMPRESSION = _env_bool("ENABLE_COMPRESSION", True)
        self.COMPRESSION_MIN_SIZE = max(0, _env_int("COMPRESSION_MIN_SIZE", 500))
        self.COMPRESSION_LEVEL = min(9, max(1, _env_int("COMPRESSION_LEVEL", 6)))

    def validate(self) -> None:
        if not self.DATABASE_URL:
            raise RuntimeError("Missing DATABASE_URL")
        if self.NOTIFICATION_BUS not in {"memory", "redis"}:
            raise RuntimeError(f"Unsupported NOTIFICATION_BUS: {self.NOTIFICATION_BUS}")
        if self.IS_PRODUCTION:
            if self.AUTH_ALLOW_TEST_TOKENS:
                raise RuntimeError("AUTH_ALLOW_TEST_TOKENS must be disabled in production")
            if not self.CRON_SECRET:
                raise RuntimeError("Missing CRON_SECRET")
            if "*" in self.ALLOWED_ORIGINS:
                raise RuntimeError("ALLOWED_ORIGINS must be explicit in production")
