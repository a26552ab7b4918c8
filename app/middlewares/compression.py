from __future__ import annotations

import gzip
import logging
from io import BytesIO

from flask import Flask, request

from config import Config


_log = logging.getLogger("http")


def init_compression(app: Flask, cfg: Config) -> None:
    """
    Gzip JSON responses above COMPRESSION_MIN_SIZE bytes.

    Streams (the notification event stream, file downloads) run in
    passthrough mode or carry other content types and are left alone.
    """
    if not cfg.ENABLE_COMPRESSION:
        return

    min_size = cfg.COMPRESSION_MIN_SIZE
    level = cfg.COMPRESSION_LEVEL

    @app.after_request
    def _compress(response):
        if "gzip" not in request.headers.get("Accept-Encoding", "").lower():
            return response

        if (
            response.status_code < 200
            or response.status_code >= 300
            or response.direct_passthrough
            or response.is_streamed
            or "Content-Encoding" in response.headers
        ):
            return response

        if "application/json" not in response.headers.get("Content-Type", "").lower():
            return response

        data = response.get_data()
        if len(data) < min_size:
            return response

        try:
            buf = BytesIO()
            with gzip.GzipFile(fileobj=buf, mode="wb", compresslevel=level) as gz:
                gz.write(data)
            compressed = buf.getvalue()
        except OSError:
            _log.warning("gzip failed path=%s, sending uncompressed", request.path)
            return response

        if len(compressed) < len(data):
            response.set_data(compressed)
            response.headers["Content-Encoding"] = "gzip"
            response.headers["Content-Length"] = str(len(compressed))
            response.headers["Vary"] = "Accept-Encoding"
        return response
