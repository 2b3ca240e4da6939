"""Root test configuration for the key service.

Shared fixtures:
  - clock / FakeClock       — controllable "now" for expiry and cadence tests
  - store                   — initialised KeyStore on a tmp_path SQLite file
  - manager                 — KeyManager (single policy) bound to ``store`` and ``clock``
  - make_socket             — factory for fake WebSocket handles
  - admin_token / config    — Config pointing at tmp_path with a known admin token
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import bcrypt
import pytest

from newsportal.config import Config
from newsportal.keys.manager import KeyManager, RotationPolicy
from newsportal.keys.store import KeyStore

TEST_ENCRYPTION_KEY = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"
TEST_ADMIN_TOKEN = "test-admin-token"

# bcrypt is deliberately slow; hash once per session with the minimum cost.
_ADMIN_HASH = bcrypt.hashpw(TEST_ADMIN_TOKEN.encode(), bcrypt.gensalt(rounds=4)).decode()


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.current = start or datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


class FakeSocket:
    """Stands in for starlette's WebSocket in registry/dispatcher tests."""

    def __init__(self, fail: bool = False, delay: float = 0.0) -> None:
        self.sent: list[str] = []
        self.fail = fail
        self.delay = delay
        self.closed_code: Optional[int] = None

    async def send_text(self, data: str) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(data)

    async def close(self, code: int = 1000) -> None:
        self.closed_code = code


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def store(tmp_path: Path):
    key_store = KeyStore(tmp_path / "keys.db")
    await key_store.initialize()
    yield key_store
    await key_store.close()


@pytest.fixture
def manager(store: KeyStore, clock: FakeClock) -> KeyManager:
    return KeyManager(store, policy=RotationPolicy.SINGLE, key_ttl=timedelta(hours=1), clock=clock)


@pytest.fixture
def overlap_manager(store: KeyStore, clock: FakeClock) -> KeyManager:
    return KeyManager(store, policy=RotationPolicy.OVERLAP, key_ttl=timedelta(minutes=70), clock=clock)


@pytest.fixture
def make_socket():
    def _make(fail: bool = False, delay: float = 0.0) -> FakeSocket:
        return FakeSocket(fail=fail, delay=delay)

    return _make


@pytest.fixture
def admin_token() -> str:
    return TEST_ADMIN_TOKEN


@pytest.fixture
def config(tmp_path: Path) -> Config:
    """Config for full-app tests: tmp store, fixed cipher key, scheduler loops off."""
    cfg = Config.defaults()
    cfg.database.path = str(tmp_path / "keys.db")
    cfg.database.backup_dir = str(tmp_path / "backups")
    cfg.security.admin_token_hash = _ADMIN_HASH
    cfg.websocket.encryption_key = TEST_ENCRYPTION_KEY
    cfg.schedule.enabled = False
    return cfg


@pytest.fixture(autouse=True)
def reset_rate_limiter() -> None:
    """Reset the in-memory rate limiter storage between tests.

    Prevents test-to-test rate limit bleed where multiple tests hitting the
    same endpoint within the same minute would trigger a 429.
    """
    from newsportal.auth.limiter import limiter

    limiter.reset()
