"""Health endpoint.

  GET /health — 503 before ``app.state.ready``; 200 with key and connection
                status afterwards.

Response body (200):
    {
      "status": "ok" | "degraded",
      "database": "ok" | "error",
      "active_key": true | false,
      "key_expires_at": "..." | null,
      "connections": 3,
      "uptime_seconds": 1234.5,
      "rotation_policy": "single" | "overlap",
      "scheduler_jobs": ["rotate_keys", ...]
    }

"degraded" means the store is unreachable or no valid key exists; clients
cannot authenticate in either case.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Request

from newsportal.keys.errors import KeyStoreError
from newsportal.keys.manager import KeyManager
from newsportal.utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(request: Request) -> dict[str, Any]:
    state = request.app.state
    if not getattr(state, "ready", False):
        raise HTTPException(status_code=503, detail="Service is starting up")

    manager: KeyManager = state.key_manager
    database_ok = await state.store.health_check()

    current = None
    if database_ok:
        try:
            current = await manager.current()
        except KeyStoreError as exc:
            logger.warning("Health check key lookup failed", error=str(exc.cause))
            database_ok = False

    scheduler = getattr(state, "scheduler", None)
    return {
        "status": "ok" if database_ok and current is not None else "degraded",
        "database": "ok" if database_ok else "error",
        "active_key": current is not None,
        "key_expires_at": current.expires_at.isoformat() if current is not None else None,
        "connections": len(state.registry),
        "uptime_seconds": round((manager.now() - state.started_at).total_seconds(), 1),
        "rotation_policy": manager.policy.value,
        "scheduler_jobs": scheduler.job_names if scheduler is not None else [],
    }
