from __future__ import annotations

import os
from typing import Any

from sqlalchemy import create_engine, event
from sqlalchemy.orm import declarative_base, sessionmaker


Base = declarative_base()

# Bound in init_engine(); importing modules keep a reference to the same factory.
SessionLocal = sessionmaker(autoflush=False, expire_on_commit=False)

_engine = None


def init_engine(database_url: str):
    global _engine

    url = str(database_url or "").strip()
    if not url:
        raise RuntimeError("Missing DATABASE_URL")

    kwargs: dict[str, Any] = {"future": True, "pool_pre_ping": True}
    if url.startswith("sqlite"):
        # The event stream and the scheduler thread share the sqlite file.
        kwargs["connect_args"] = {"check_same_thread": False}
    else:
        kwargs["pool_size"] = int(os.getenv("DB_POOL_SIZE", "10") or "10")
        kwargs["max_overflow"] = int(os.getenv("DB_MAX_OVERFLOW", "20") or "20")
        kwargs["pool_recycle"] = int(os.getenv("DB_POOL_RECYCLE", "1800") or "1800")

    if _engine is not None:
        _engine.dispose()

    _engine = create_engine(url, **kwargs)
    if url.startswith("sqlite"):
        _sqlite_transactions(_engine)
    SessionLocal.configure(bind=_engine)
    return _engine


def _sqlite_transactions(engine) -> None:
    """Let SQLAlchemy emit BEGIN itself so SAVEPOINTs nest correctly under pysqlite."""

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, _record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def get_engine():
    if _engine is None:
        raise RuntimeError("DB not initialized")
    return _engine


def get_pool_stats() -> dict[str, Any]:
    if _engine is None:
        return {"initialized": False}
    pool = _engine.pool
    out: dict[str, Any] = {"initialized": True, "class": type(pool).__name__}
    for name in ("size", "checkedin", "checkedout", "overflow"):
        fn = getattr(pool, name, None)
        if callable(fn):
            try:
                out[name] = fn()
            except Exception:
                out[name] = None
    return out
