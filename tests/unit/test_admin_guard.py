"""Unit tests for the admin token guard."""

from __future__ import annotations

import bcrypt
from fastapi import Depends, FastAPI
from httpx import ASGITransport, AsyncClient

from newsportal.auth.admin import require_admin, verify_admin_token
from newsportal.config import Config

TOKEN = "s3cret-admin"
TOKEN_HASH = bcrypt.hashpw(TOKEN.encode(), bcrypt.gensalt(rounds=4)).decode()


def _app(token_hash: str | None) -> FastAPI:
    app = FastAPI()
    config = Config.defaults()
    config.security.admin_token_hash = token_hash
    app.state.config = config

    @app.get("/admin", dependencies=[Depends(require_admin)])
    async def admin_only() -> dict:
        return {"ok": True}

    return app


async def _get(app: FastAPI, headers: dict | None = None):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        return await client.get("/admin", headers=headers or {})


class TestVerifyAdminToken:
    def test_correct_token(self) -> None:
        assert verify_admin_token(TOKEN, TOKEN_HASH) is True

    def test_wrong_token(self) -> None:
        assert verify_admin_token("nope", TOKEN_HASH) is False

    def test_missing_inputs(self) -> None:
        assert verify_admin_token(None, TOKEN_HASH) is False
        assert verify_admin_token(TOKEN, None) is False

    def test_malformed_hash(self) -> None:
        assert verify_admin_token(TOKEN, "not-a-bcrypt-hash") is False


class TestRequireAdmin:
    async def test_valid_token_allowed(self) -> None:
        response = await _get(_app(TOKEN_HASH), {"x-admin-token": TOKEN})
        assert response.status_code == 200

    async def test_missing_token_rejected(self) -> None:
        response = await _get(_app(TOKEN_HASH))
        assert response.status_code == 401
        assert response.json()["detail"] == "Admin authentication required"

    async def test_wrong_token_rejected(self) -> None:
        response = await _get(_app(TOKEN_HASH), {"x-admin-token": "guess"})
        assert response.status_code == 401

    async def test_no_hash_configured_fails_closed(self) -> None:
        response = await _get(_app(None), {"x-admin-token": TOKEN})
        assert response.status_code == 401
