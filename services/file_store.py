from __future__ import annotations

import glob
import logging
import os
import re
from typing import Any, Iterable, Optional

from sqlalchemy import event

from db import SessionLocal
from utils import ApiError, sanitize_filename


_log = logging.getLogger("files")

_FILE_ID_RE = re.compile(r"[0-9a-f]{32}")

_WRITTEN_KEY = "uploads_written"


def _upload_dir(cfg: Any) -> str:
    return str(getattr(cfg, "UPLOAD_DIR", "./uploads") or "./uploads")


def store_upload(
    cfg: Any,
    *,
    file_bytes: bytes,
    file_name: str,
    mime_type: str,
    allowed_mime: Optional[set[str]] = None,
    db=None,
) -> dict[str, Any]:
    """
    Write an upload to local disk as ``<fileId>_<name>`` and return its descriptor.

    When ``db`` is given the file belongs to that session's transaction and is
    removed again if the transaction rolls back.
    """
    size = len(file_bytes or b"")
    if size <= 0:
        raise ApiError("BAD_REQUEST", "Empty file")
    max_mb = int(getattr(cfg, "MAX_UPLOAD_MB", 10) or 10)
    if size > max_mb * 1024 * 1024:
        raise ApiError("BAD_REQUEST", f"Max upload size is {max_mb}MB", http_status=413)

    mime = str(mime_type or "").strip().lower() or "application/octet-stream"
    if allowed_mime and mime not in allowed_mime:
        raise ApiError("BAD_REQUEST", f"Unsupported file type: {mime}")

    safe_name = sanitize_filename(file_name or "file")
    file_id = os.urandom(16).hex()
    root = _upload_dir(cfg)
    os.makedirs(root, exist_ok=True)
    path = os.path.join(root, f"{file_id}_{safe_name}")
    with open(path, "wb") as f:
        f.write(file_bytes)
    if db is not None:
        db.info.setdefault(_WRITTEN_KEY, []).append(path)
    return {"fileId": file_id, "fileName": safe_name, "mimeType": mime, "size": size}


def find_upload(cfg: Any, file_id: str) -> Optional[str]:
    fid = str(file_id or "").strip().lower()
    if not _FILE_ID_RE.fullmatch(fid):
        return None
    matches = sorted(glob.glob(os.path.join(_upload_dir(cfg), f"{fid}_*")))
    return matches[0] if matches else None


def delete_uploads(cfg: Any, file_ids: Iterable[str]) -> int:
    removed = 0
    for fid in file_ids:
        path = find_upload(cfg, fid)
        if not path:
            continue
        try:
            os.remove(path)
            removed += 1
        except OSError:
            _log.warning("could not remove upload file_id=%s", fid)
    return removed


@event.listens_for(SessionLocal, "after_commit")
def _keep_uploads(session) -> None:
    if session.in_nested_transaction():
        return
    session.info.pop(_WRITTEN_KEY, None)


@event.listens_for(SessionLocal, "after_rollback")
def _remove_uploads(session) -> None:
    if session.in_nested_transaction():
        return
    for path in session.info.pop(_WRITTEN_KEY, None) or []:
        try:
            os.remove(path)
        except OSError:
            _log.warning("could not remove rolled back upload path=%s", path)
