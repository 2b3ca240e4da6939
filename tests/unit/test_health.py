"""Unit tests for GET /health after startup.

  - 200 body carries every field, with status "ok" when a valid key exists
  - "degraded" when no valid key exists or the store is unreachable
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import aiosqlite
from starlette.testclient import TestClient

from newsportal.config import Config
from newsportal.keys.errors import KeyStoreError
from newsportal.main import create_app

REQUIRED_FIELDS = {
    "status",
    "database",
    "active_key",
    "key_expires_at",
    "connections",
    "uptime_seconds",
    "rotation_policy",
    "scheduler_jobs",
}


class TestHealth:
    def test_all_fields_present(self, config: Config) -> None:
        with TestClient(create_app(config)) as client:
            body = client.get("/health").json()

        assert set(body) == REQUIRED_FIELDS
        assert body["database"] == "ok"
        assert body["connections"] == 0
        assert body["rotation_policy"] == "single"
        assert body["scheduler_jobs"] == []
        assert body["uptime_seconds"] >= 0

    def test_degraded_without_valid_key(self, config: Config) -> None:
        application = create_app(config)
        with TestClient(application) as client:
            application.state.key_manager.current = AsyncMock(return_value=None)
            response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "degraded"
        assert body["active_key"] is False
        assert body["key_expires_at"] is None

    def test_degraded_when_store_unreachable(self, config: Config) -> None:
        application = create_app(config)
        with TestClient(application) as client:
            application.state.store.health_check = AsyncMock(return_value=False)
            body = client.get("/health").json()

        assert body["status"] == "degraded"
        assert body["database"] == "error"

    def test_key_lookup_error_reported_as_database_error(self, config: Config) -> None:
        application = create_app(config)
        with TestClient(application) as client:
            application.state.key_manager.current = AsyncMock(
                side_effect=KeyStoreError("newest_valid", aiosqlite.OperationalError("locked"))
            )
            body = client.get("/health").json()

        assert body["status"] == "degraded"
        assert body["database"] == "error"
        assert "locked" not in str(body)
