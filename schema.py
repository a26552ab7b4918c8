from __future__ import annotations

import logging

from sqlalchemy import inspect, text
from sqlalchemy.orm import Session


_log = logging.getLogger("schema")


def _quoted(name: str) -> str:
    escaped = str(name).replace('"', '""')
    return f'"{escaped}"'


def _ensure_column(engine, *, table: str, column: str, ddl_type: str, default_sql: str = "''") -> bool:
    insp = inspect(engine)
    if table not in set(insp.get_table_names()):
        return False
    cols = {c.get("name") for c in insp.get_columns(table)}
    if column in cols:
        return False
    ddl = f"ALTER TABLE {_quoted(table)} ADD COLUMN {_quoted(column)} {ddl_type} NOT NULL DEFAULT {default_sql}"
    with engine.begin() as conn:
        conn.execute(text(ddl))
    _log.info("added column %s.%s", table, column)
    return True


def _ensure_index(engine, *, name: str, table: str, column: str) -> None:
    ddl = f"CREATE INDEX IF NOT EXISTS {_quoted(name)} ON {_quoted(table)}({_quoted(column)})"
    with engine.begin() as conn:
        conn.execute(text(ddl))


def _ensure_ddl(engine, ddl: str) -> None:
    with engine.begin() as conn:
        conn.execute(text(ddl))


def ensure_schema(engine) -> None:
    """
    Lightweight, idempotent schema evolution (no Alembic).

    Runs after ``create_all``: adds columns introduced after the first deploy,
    the partial unique index guarding one PENDING stage row per labour and
    stage, and backfills the derived placement status.
    """
    # Users: soft-delete scheduling
    _ensure_column(engine, table="users", column="deleteAt", ddl_type="TEXT")
    _ensure_column(engine, table="users", column="deletionType", ddl_type="TEXT")
    _ensure_column(engine, table="users", column="deletionRequestedBy", ddl_type="TEXT")
    _ensure_index(engine, name="ix_users_deleteAt", table="users", column="deleteAt")

    # Assignments: derived placement + travel/visa bookkeeping
    added_placement = _ensure_column(
        engine, table="labour_assignments", column="placementStatus", ddl_type="TEXT", default_sql="'IN_PROGRESS'"
    )
    _ensure_column(engine, table="labour_assignments", column="travelDate", ddl_type="TEXT")
    _ensure_column(engine, table="labour_assignments", column="travelStatus", ddl_type="TEXT")
    _ensure_column(engine, table="labour_assignments", column="visaFileId", ddl_type="TEXT")
    _ensure_index(engine, name="ix_labour_assignments_placementStatus", table="labour_assignments", column="placementStatus")

    # Job roles: replacement flag
    _ensure_column(engine, table="job_roles", column="needsMoreLabour", ddl_type="BOOLEAN", default_sql="FALSE")

    # Notifications: category filter + archive purge
    _ensure_column(engine, table="notifications", column="category", ddl_type="TEXT", default_sql="'system'")
    _ensure_column(engine, table="notifications", column="archivedAt", ddl_type="TEXT")
    _ensure_index(engine, name="ix_notifications_archivedAt", table="notifications", column="archivedAt")

    # Audit log: correlation + diffs (append-only)
    _ensure_column(engine, table="audit_log", column="correlationId", ddl_type="TEXT")
    _ensure_column(engine, table="audit_log", column="beforeJson", ddl_type="TEXT")
    _ensure_column(engine, table="audit_log", column="afterJson", ddl_type="TEXT")
    _ensure_index(engine, name="ix_audit_log_correlationId", table="audit_log", column="correlationId")

    # One open row per (labour, stage); databases created before the model
    # declared the index get it here.
    _ensure_ddl(
        engine,
        ddl=(
            f"CREATE UNIQUE INDEX IF NOT EXISTS {_quoted('uq_stage_history_pending')} "
            f"ON {_quoted('labour_stage_history')}({_quoted('labourId')}, {_quoted('stage')}) "
            f"WHERE {_quoted('status')} = 'PENDING'"
        ),
    )

    _backfill_placement_status(engine, full=added_placement)


def _backfill_placement_status(engine, *, full: bool = False) -> None:
    """
    Recompute ``placementStatus`` from the three party statuses.

    On a fresh column every row is rewritten; otherwise only rows whose stored
    value disagrees with the party statuses are touched.
    """
    a, d, c, p = (_quoted(x) for x in ("agencyStatus", "adminStatus", "clientStatus", "placementStatus"))
    derived = (
        f"CASE WHEN {a} = 'ACCEPTED' AND {d} = 'ACCEPTED' AND {c} = 'ACCEPTED' THEN 'PLACED' "
        f"WHEN {a} = 'REJECTED' OR {d} = 'REJECTED' OR {c} = 'REJECTED' THEN 'REJECTED' "
        f"ELSE 'IN_PROGRESS' END"
    )
    sql = f"UPDATE {_quoted('labour_assignments')} SET {p} = {derived}"
    if not full:
        sql += f" WHERE {p} IS NULL OR {p} <> {derived}"

    with Session(engine) as db:
        try:
            res = db.execute(text(sql))
            db.commit()
        except Exception:
            db.rollback()
            _log.exception("placementStatus backfill failed")
            return
    if res.rowcount:
        _log.info("placementStatus backfill updated=%s", res.rowcount)
