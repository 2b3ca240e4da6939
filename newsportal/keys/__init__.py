"""API key storage and lifecycle package.

Public API:
  - KeyStore          — aiosqlite persistence for the api_keys table
  - KeyManager        — rotation, expiry, revocation, validation
  - RotationPolicy    — SINGLE (one active key) or OVERLAP (grace period)
  - ApiKeyRecord      — immutable view of one row
  - KeyStoreError     — persistence failure
  - KeyNotFoundError  — unknown key id
"""

from __future__ import annotations

from newsportal.keys.errors import KeyNotFoundError, KeyStoreError
from newsportal.keys.manager import KeyManager, RotationPolicy, generate_key
from newsportal.keys.models import ApiKeyRecord, utc_now
from newsportal.keys.store import KeyStore

__all__ = [
    "ApiKeyRecord",
    "KeyManager",
    "KeyNotFoundError",
    "KeyStore",
    "KeyStoreError",
    "RotationPolicy",
    "generate_key",
    "utc_now",
]
