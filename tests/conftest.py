from __future__ import annotations

import pytest

from cache_layer import cache_clear


@pytest.fixture()
def app_client(tmp_path, monkeypatch):
    monkeypatch.setenv("APP_ENV", "test")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'labourflow.db'}")
    monkeypatch.setenv("AUTH_ALLOW_TEST_TOKENS", "1")
    monkeypatch.setenv("CRON_SECRET", "test-cron-secret")
    monkeypatch.setenv("NOTIFICATION_BUS", "memory")
    monkeypatch.setenv("UPLOAD_DIR", str(tmp_path / "uploads"))
    monkeypatch.setenv("ENABLE_SCHEDULER", "0")
    monkeypatch.setenv("ENABLE_COMPRESSION", "0")
    monkeypatch.setenv("SSE_KEEPALIVE_SECONDS", "1")
    monkeypatch.setenv("NOTIFICATION_DEDUPE_MINUTES", "0")
    cache_clear()

    from server import create_app

    app = create_app()
    app.testing = True
    yield app, app.test_client()
    cache_clear()
