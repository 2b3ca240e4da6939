"""Request authentication package.

Public API:
  - authenticate_request()  — FastAPI Depends() for x-api-key protected routes
  - resolve_api_key()       — shared HTTP/WebSocket credential check
  - require_admin()         — FastAPI Depends() for key-management routes
  - AuthFailureTracker      — rolling in-memory failure log
"""

from __future__ import annotations

from newsportal.auth.admin import require_admin, verify_admin_token
from newsportal.auth.failures import AuthFailureTracker
from newsportal.auth.middleware import authenticate_request, resolve_api_key

__all__ = [
    "AuthFailureTracker",
    "authenticate_request",
    "require_admin",
    "resolve_api_key",
    "verify_admin_token",
]
