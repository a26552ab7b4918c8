import os


def _env_int(name: str, default: int) -> int:
    try:
        return int(str(os.getenv(name, "") or "").strip() or default)
    except Exception:
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = str(os.getenv(name, "") or "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "y", "on"}


wsgi_app = "server:create_app()"

bind = f"0.0.0.0:{_env_int('PORT', 5002)}"

# gthread: each open notification stream holds a thread, so size threads for
# the expected number of concurrent dashboards.
worker_class = os.getenv("GUNICORN_WORKER_CLASS", "gthread").strip() or "gthread"
workers = max(1, _env_int("WEB_CONCURRENCY", 2))
threads = max(1, _env_int("PYTHON_THREADS", 8))

preload_app = _env_bool("GUNICORN_PRELOAD_APP", False)

# Streams send a keep-alive every SSE_KEEPALIVE_SECONDS; keep the worker
# timeout above that.
timeout = max(10, _env_int("GUNICORN_TIMEOUT", 120))
graceful_timeout = max(5, _env_int("GUNICORN_GRACEFUL_TIMEOUT", 30))
keepalive = max(1, _env_int("GUNICORN_KEEPALIVE", 30))

accesslog = "-"
errorlog = "-"
loglevel = os.getenv("GUNICORN_LOG_LEVEL", "info").strip().lower()

# Recycling a worker drops every stream it holds; off unless asked for.
max_requests = max(0, _env_int("GUNICORN_MAX_REQUESTS", 0))
max_requests_jitter = max(0, _env_int("GUNICORN_MAX_REQUESTS_JITTER", 50))

reload = _env_bool("GUNICORN_RELOAD", False)


def when_ready(server):
    bus = (os.getenv("NOTIFICATION_BUS", "memory") or "memory").strip().lower()
    if workers > 1 and bus != "redis":
        server.log.warning(
            "workers=%s with NOTIFICATION_BUS=%s: live pushes only reach streams in the publishing worker; "
            "set NOTIFICATION_BUS=redis",
            workers,
            bus,
        )
