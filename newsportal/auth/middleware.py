"""API key authentication dependency for protected routes.

Provides ``authenticate_request()``: a FastAPI Depends()-compatible async
dependency that extracts and validates the ``x-api-key`` header.

CRITICAL INVARIANT: authenticate_request() raises HTTP 401 BEFORE the route
handler runs. A missing header is rejected without touching the key store.

Every failure — missing, unknown, expired, revoked, or a store error — produces
the same response body, so a caller cannot tell why a key was refused:

    401 {"success": false, "message": "Invalid API key"}
"""

from __future__ import annotations

from typing import Optional

from fastapi import HTTPException, Request

from newsportal.auth.failures import AuthFailureTracker
from newsportal.constants import API_KEY_HEADER, INVALID_API_KEY_MESSAGE
from newsportal.keys.errors import KeyStoreError
from newsportal.keys.manager import KeyManager
from newsportal.keys.models import ApiKeyRecord
from newsportal.utils.logger import get_logger

logger = get_logger(__name__)


def _reject(tracker: Optional[AuthFailureTracker], reason: str) -> HTTPException:
    if tracker is not None:
        tracker.record(reason)
    return HTTPException(status_code=401, detail=INVALID_API_KEY_MESSAGE)


async def resolve_api_key(
    key: Optional[str],
    manager: KeyManager,
    tracker: Optional[AuthFailureTracker] = None,
) -> tuple[Optional[ApiKeyRecord], str]:
    """Shared HTTP/WebSocket credential check.

    Returns:
        (record, "") on success, (None, reason) on failure. Reasons are for
        server-side logs and the failure tracker only — never for the caller.
    """
    if not key:
        reason = "missing"
    else:
        try:
            record = await manager.find_valid(key)
        except KeyStoreError as exc:
            logger.error(
                "Key validation store error — failing closed",
                operation=exc.operation,
                error=str(exc.cause),
            )
            record = None
            reason = "store_error"
        else:
            if record is not None:
                return record, ""
            reason = "invalid"

    if tracker is not None:
        tracker.record(reason)
    return None, reason


async def authenticate_request(request: Request) -> ApiKeyRecord:
    """FastAPI dependency: authenticate the ``x-api-key`` header.

    On success the resolved record is attached to ``request.state.api_key``
    for downstream handlers and returned.

    Raises:
        HTTPException(401): Missing or invalid key (uniform detail).
    """
    tracker: Optional[AuthFailureTracker] = getattr(request.app.state, "auth_failures", None)
    key = request.headers.get(API_KEY_HEADER)

    # Missing header: fail closed before the manager is even looked up.
    if not key:
        logger.warning(
            "Authentication failed: no API key",
            path=str(request.url.path),
            method=request.method,
        )
        raise _reject(tracker, "missing")

    manager: KeyManager = request.app.state.key_manager
    record, reason = await resolve_api_key(key, manager, tracker)
    if record is None:
        logger.warning(
            "Authentication failed",
            reason=reason,
            path=str(request.url.path),
            method=request.method,
        )
        raise HTTPException(status_code=401, detail=INVALID_API_KEY_MESSAGE)

    request.state.api_key = record
    logger.debug("API key accepted", key_id=record.id[:8], path=str(request.url.path))
    return record
