"""Unit tests for authenticate_request() and resolve_api_key().

Key invariants:
  - missing x-api-key → 401 before the key manager or store is touched
  - every failure → identical body {"success": false, "message": "Invalid API key"}
  - store errors fail closed
  - every failure is recorded in the AuthFailureTracker
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import aiosqlite
import pytest
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from httpx import ASGITransport, AsyncClient

from newsportal.auth.failures import AuthFailureTracker
from newsportal.auth.middleware import authenticate_request, resolve_api_key
from newsportal.keys.errors import KeyStoreError
from newsportal.keys.manager import KeyManager
from newsportal.keys.models import ApiKeyRecord

pytestmark = pytest.mark.asyncio

UNIFORM_BODY = {"success": False, "message": "Invalid API key"}


def _app(manager) -> FastAPI:
    app = FastAPI()
    app.state.key_manager = manager
    app.state.auth_failures = AuthFailureTracker()

    @app.exception_handler(HTTPException)
    async def _handler(request: Request, exc: HTTPException) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"success": False, "message": exc.detail})

    @app.get("/protected")
    async def protected(record: ApiKeyRecord = Depends(authenticate_request)) -> dict:
        return {"key_id": record.id}

    @app.get("/state")
    async def state(request: Request, _: ApiKeyRecord = Depends(authenticate_request)) -> dict:
        return {"attached": request.state.api_key.id}

    return app


async def _get(app: FastAPI, path: str = "/protected", headers: dict | None = None):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        return await client.get(path, headers=headers or {})


class TestAuthenticateRequest:
    async def test_missing_header_rejected_without_store_query(self) -> None:
        manager = AsyncMock(spec=KeyManager)
        app = _app(manager)

        response = await _get(app)

        assert response.status_code == 401
        assert response.json() == UNIFORM_BODY
        manager.find_valid.assert_not_awaited()
        assert len(app.state.auth_failures) == 1

    async def test_valid_key_passes_and_attaches_record(self, manager) -> None:
        record = await manager.rotate()
        app = _app(manager)

        response = await _get(app, headers={"x-api-key": record.key})
        assert response.status_code == 200
        assert response.json() == {"key_id": record.id}

        response = await _get(app, "/state", headers={"x-api-key": record.key})
        assert response.json() == {"attached": record.id}

    async def test_unknown_key_rejected_uniformly(self, manager) -> None:
        await manager.rotate()
        response = await _get(_app(manager), headers={"x-api-key": "nonexistent"})
        assert response.status_code == 401
        assert response.json() == UNIFORM_BODY

    async def test_expired_key_rejected_uniformly(self, manager, clock) -> None:
        record = await manager.rotate()
        clock.advance(hours=2)
        response = await _get(_app(manager), headers={"x-api-key": record.key})
        assert response.status_code == 401
        assert response.json() == UNIFORM_BODY

    async def test_revoked_key_rejected_uniformly(self, manager) -> None:
        record = await manager.rotate()
        await manager.revoke(record.id)
        response = await _get(_app(manager), headers={"x-api-key": record.key})
        assert response.status_code == 401
        assert response.json() == UNIFORM_BODY

    async def test_superseded_key_rejected_after_rotation(self, manager, clock) -> None:
        old = await manager.rotate()
        clock.advance(seconds=1)
        new = await manager.rotate()
        app = _app(manager)

        assert (await _get(app, headers={"x-api-key": old.key})).status_code == 401
        assert (await _get(app, headers={"x-api-key": new.key})).status_code == 200

    async def test_store_error_fails_closed(self) -> None:
        manager = AsyncMock(spec=KeyManager)
        manager.find_valid.side_effect = KeyStoreError("find_valid", aiosqlite.OperationalError("locked"))
        app = _app(manager)

        response = await _get(app, headers={"x-api-key": "anything"})

        assert response.status_code == 401
        assert response.json() == UNIFORM_BODY
        assert "locked" not in response.text
        assert len(app.state.auth_failures) == 1


class TestResolveApiKey:
    async def test_reasons(self, manager) -> None:
        record = await manager.rotate()
        tracker = AuthFailureTracker()

        assert await resolve_api_key(record.key, manager, tracker) == (record, "")
        assert await resolve_api_key(None, manager, tracker) == (None, "missing")
        assert await resolve_api_key("", manager, tracker) == (None, "missing")
        assert await resolve_api_key("bogus", manager, tracker) == (None, "invalid")
        assert len(tracker) == 3

    async def test_without_tracker(self, manager) -> None:
        assert await resolve_api_key("bogus", manager) == (None, "invalid")
