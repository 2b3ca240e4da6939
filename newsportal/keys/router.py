"""Key management endpoints.

Provides:
  GET    /api/keys              — list active keys (admin; no plaintext)
  POST   /api/keys              — create a key with a custom lifetime (admin)
  DELETE /api/keys/{key_id}     — revoke a key (admin)
  POST   /api/keys/{key_id}/rotate — replace a key (admin)
  GET    /api/keys/verify?key=  — public validity check
  GET    /api/keys/current      — newest valid key metadata (admin)

Plaintext keys appear only in the create and rotate responses.
Store failures are not caught here; the app-level KeyStoreError handler turns
them into a generic 500.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field, StrictInt, field_validator

from newsportal.auth.admin import require_admin
from newsportal.auth.limiter import KEY_MANAGEMENT_RATE_LIMIT, limiter
from newsportal.constants import MAX_EXPIRES_IN_DAYS, MIN_EXPIRES_IN_DAYS
from newsportal.keys.errors import KeyNotFoundError
from newsportal.keys.manager import KeyManager, RotationPolicy
from newsportal.keys.models import ApiKeyRecord
from newsportal.realtime.dispatcher import NotificationDispatcher
from newsportal.utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/keys", tags=["api-keys"])

KEY_NOT_FOUND_MESSAGE = "API key not found"


# ─── Request Models ───────────────────────────────────────────────────────────


class CreateKeyRequest(BaseModel):
    """Request body for POST /api/keys."""

    name: str
    expires_in_days: StrictInt = Field(ge=MIN_EXPIRES_IN_DAYS, le=MAX_EXPIRES_IN_DAYS)

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("name must not be empty")
        return stripped


def _manager(request: Request) -> KeyManager:
    return request.app.state.key_manager


async def _notify_rotated(request: Request, record: ApiKeyRecord) -> None:
    dispatcher: Optional[NotificationDispatcher] = getattr(request.app.state, "dispatcher", None)
    if dispatcher is not None:
        await dispatcher.notify_key_rotated(record)


# ─── Endpoints ────────────────────────────────────────────────────────────────


@router.get("", dependencies=[Depends(require_admin)])
@limiter.limit(KEY_MANAGEMENT_RATE_LIMIT)
async def list_keys(request: Request) -> dict[str, Any]:
    """Active keys, newest first. The ``key`` column is never returned here."""
    records = await _manager(request).list_active()
    return {"success": True, "data": [record.to_public_dict() for record in records]}


@router.post("", status_code=201, dependencies=[Depends(require_admin)])
@limiter.limit(KEY_MANAGEMENT_RATE_LIMIT)
async def create_key(body: CreateKeyRequest, request: Request) -> dict[str, Any]:
    """Create a key valid for ``expires_in_days``. Plaintext returned once.

    Under the single policy the new key retires every other one, so connected
    clients are sent it the same way a rotation is.
    """
    manager = _manager(request)
    record = await manager.issue(
        description=body.name,
        ttl=timedelta(days=body.expires_in_days),
    )
    logger.info("API key created by admin", key_id=record.id[:8], expires_in_days=body.expires_in_days)

    if manager.policy is RotationPolicy.SINGLE:
        await _notify_rotated(request, record)
    return {"success": True, "data": record.to_secret_dict()}


@router.delete("/{key_id}", dependencies=[Depends(require_admin)])
@limiter.limit(KEY_MANAGEMENT_RATE_LIMIT)
async def revoke_key(key_id: str, request: Request) -> dict[str, Any]:
    if not await _manager(request).revoke(key_id):
        raise HTTPException(status_code=404, detail=KEY_NOT_FOUND_MESSAGE)
    return {"success": True, "message": "API key revoked"}


@router.post("/{key_id}/rotate", dependencies=[Depends(require_admin)])
@limiter.limit(KEY_MANAGEMENT_RATE_LIMIT)
async def rotate_key(key_id: str, request: Request) -> dict[str, Any]:
    """Replace ``key_id`` with a fresh key of the same name and lifetime.

    Connected clients receive the new key, since the source may no longer be
    accepted once this returns.
    """
    try:
        record = await _manager(request).rotate_from(key_id)
    except KeyNotFoundError as exc:
        raise HTTPException(status_code=404, detail=KEY_NOT_FOUND_MESSAGE) from exc

    await _notify_rotated(request, record)
    return {"success": True, "data": record.to_secret_dict()}


@router.get("/verify")
@limiter.limit(KEY_MANAGEMENT_RATE_LIMIT)
async def verify_key(request: Request, key: Optional[str] = None) -> dict[str, Any]:
    """Public: is ``key`` currently accepted? Never reveals why not."""
    if not key:
        raise HTTPException(status_code=400, detail="API key not provided")
    record = await _manager(request).find_valid(key)
    return {
        "success": True,
        "valid": record is not None,
        "expires_at": record.expires_at.isoformat() if record is not None else None,
    }


@router.get("/current", dependencies=[Depends(require_admin)])
@limiter.limit(KEY_MANAGEMENT_RATE_LIMIT)
async def current_key(request: Request) -> dict[str, Any]:
    manager = _manager(request)
    record = await manager.current()
    if record is None:
        raise HTTPException(status_code=404, detail="No active API key")
    return {
        "success": True,
        "data": {
            "id": record.id,
            "name": record.description,
            "expires_at": record.expires_at.isoformat(),
            "days_remaining": record.days_remaining(manager.now()),
        },
    }
