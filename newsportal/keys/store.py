"""KeyStore — aiosqlite-backed persistence for API key records.

Pure data access: no policy decisions live here. The lifecycle manager
decides *what* to write; the store guarantees each write is one transaction.

Features:
  - WAL mode: PRAGMA journal_mode=WAL (concurrent readers during a rotation)
  - Schema version guard: PRAGMA user_version=1 — RuntimeError on mismatch
  - Long-lived connection: opened in initialize(), closed in close()
  - Write transactions serialised by an asyncio.Lock; a rotation's INSERT and
    UPDATE commit together, and the INSERT always runs first
  - Every aiosqlite.Error surfaces as KeyStoreError(operation)
  - ``now`` is always passed in by the caller — the store never reads a clock
"""

from __future__ import annotations

import asyncio
import os
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator, Optional

import aiosqlite

from newsportal.keys.errors import KeyStoreError
from newsportal.keys.models import ApiKeyRecord, to_db_timestamp
from newsportal.utils.logger import get_logger

logger = get_logger(__name__)

# ─── Schema DDL ───────────────────────────────────────────────────────────────

_CREATE_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS api_keys (
    id              TEXT PRIMARY KEY,
    key             TEXT NOT NULL UNIQUE,
    description     TEXT NOT NULL DEFAULT '',
    is_active       INTEGER NOT NULL DEFAULT 1,
    expires_at      TEXT NOT NULL,
    created_at      TEXT NOT NULL,
    updated_at      TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_api_keys_active_expires
    ON api_keys(is_active, expires_at);

CREATE INDEX IF NOT EXISTS idx_api_keys_created
    ON api_keys(created_at DESC);
"""

_SCHEMA_VERSION = 1

_SELECT_COLUMNS = "id, key, description, is_active, expires_at, created_at, updated_at"


# ─── KeyStore ─────────────────────────────────────────────────────────────────


class KeyStore:
    """Async SQLite store for the ``api_keys`` table.

    Usage:
        store = KeyStore("~/.newsportal/keys.db")
        await store.initialize()     # raises RuntimeError on schema mismatch
        record = await store.find_valid(key, now)
        await store.close()
    """

    def __init__(self, db_path: str | Path = "~/.newsportal/keys.db") -> None:
        self._db_path: str = os.path.expanduser(str(db_path))
        self._db: Optional[aiosqlite.Connection] = None
        self._write_lock = asyncio.Lock()

    @property
    def db_path(self) -> str:
        return self._db_path

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Open the SQLite connection, enable WAL mode, and create/verify schema.

        Raises:
            RuntimeError: If PRAGMA user_version is neither 0 nor 1.
            aiosqlite.Error: If the database cannot be opened at all. The
                             lifespan lets this propagate — startup is refused.
        """
        parent_dir = os.path.dirname(self._db_path)
        if parent_dir:
            os.makedirs(parent_dir, exist_ok=True)

        self._db = await aiosqlite.connect(self._db_path)
        self._db.row_factory = aiosqlite.Row

        await self._db.execute("PRAGMA journal_mode=WAL;")

        cursor = await self._db.execute("PRAGMA user_version;")
        row = await cursor.fetchone()
        current_version: int = row[0] if row else 0

        if current_version == 0:
            await self._db.executescript(_CREATE_SCHEMA_SQL)
            await self._db.execute(f"PRAGMA user_version = {_SCHEMA_VERSION};")
            await self._db.commit()
            logger.info(
                "key_store_schema_created",
                db_path=self._db_path,
                schema_version=_SCHEMA_VERSION,
            )
        elif current_version == _SCHEMA_VERSION:
            logger.info(
                "key_store_schema_ok",
                db_path=self._db_path,
                schema_version=current_version,
            )
        else:
            await self._db.close()
            self._db = None
            raise RuntimeError(
                f"Unsupported key store schema version: {current_version}. "
                f"Delete {self._db_path} to reset."
            )

        if self._db_path != ":memory:":
            os.chmod(self._db_path, 0o600)

    async def close(self) -> None:
        """Close the aiosqlite connection gracefully."""
        if self._db is not None:
            await self._db.close()
            self._db = None
            logger.debug("key_store_closed", db_path=self._db_path)

    async def health_check(self) -> bool:
        """Returns True if the DB connection is alive and queryable."""
        try:
            await self._conn.execute("SELECT 1")
            return True
        except Exception:
            return False

    @property
    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise KeyStoreError("connect", RuntimeError("store not initialized"))
        return self._db

    @asynccontextmanager
    async def _transaction(self, operation: str) -> AsyncIterator[aiosqlite.Connection]:
        """Serialised write transaction: commit on success, rollback on error."""
        async with self._write_lock:
            db = self._conn
            try:
                yield db
                await db.commit()
            except aiosqlite.Error as exc:
                await self._rollback(db, operation)
                raise KeyStoreError(operation, exc) from exc
            except BaseException:
                await self._rollback(db, operation)
                raise

    @staticmethod
    async def _rollback(db: aiosqlite.Connection, operation: str) -> None:
        try:
            await db.rollback()
        except aiosqlite.Error as exc:
            logger.warning("key_store_rollback_failed", operation=operation, error=str(exc))

    async def _fetch_all(self, operation: str, sql: str, params: tuple = ()) -> list[ApiKeyRecord]:
        try:
            cursor = await self._conn.execute(sql, params)
            rows = await cursor.fetchall()
        except aiosqlite.Error as exc:
            raise KeyStoreError(operation, exc) from exc
        return [ApiKeyRecord.from_row(row) for row in rows]

    async def _fetch_one(self, operation: str, sql: str, params: tuple = ()) -> Optional[ApiKeyRecord]:
        try:
            cursor = await self._conn.execute(sql, params)
            row = await cursor.fetchone()
        except aiosqlite.Error as exc:
            raise KeyStoreError(operation, exc) from exc
        return ApiKeyRecord.from_row(row) if row is not None else None

    # ── Writes ────────────────────────────────────────────────────────────────

    async def insert(self, record: ApiKeyRecord, deactivate_others: bool) -> int:
        """Insert ``record`` and optionally deactivate every other active key.

        Both statements commit as one transaction. The INSERT runs first, so a
        reader on another connection sees either the old state or the new key
        already active — never zero active keys.

        Returns:
            Number of previously active keys that were deactivated.
        """
        async with self._transaction("insert") as db:
            await db.execute(
                f"INSERT INTO api_keys ({_SELECT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    record.id,
                    record.key,
                    record.description,
                    int(record.is_active),
                    to_db_timestamp(record.expires_at),
                    to_db_timestamp(record.created_at),
                    to_db_timestamp(record.updated_at),
                ),
            )
            deactivated = 0
            if deactivate_others:
                cursor = await db.execute(
                    "UPDATE api_keys SET is_active = 0, updated_at = ? "
                    "WHERE is_active = 1 AND id != ?",
                    (to_db_timestamp(record.created_at), record.id),
                )
                deactivated = cursor.rowcount
        return deactivated

    async def deactivate(self, key_id: str, now: datetime) -> bool:
        """Set is_active=0 on one key. Returns False if the id does not exist."""
        async with self._transaction("deactivate") as db:
            cursor = await db.execute(
                "UPDATE api_keys SET is_active = 0, updated_at = ? WHERE id = ?",
                (to_db_timestamp(now), key_id),
            )
            count = cursor.rowcount
        return count > 0

    async def deactivate_all_but_newest(self, now: datetime) -> int:
        """Deactivate every active key except the most recently created one."""
        async with self._transaction("deactivate_all_but_newest") as db:
            cursor = await db.execute(
                "UPDATE api_keys SET is_active = 0, updated_at = ? "
                "WHERE is_active = 1 AND id != ("
                "  SELECT id FROM api_keys WHERE is_active = 1 "
                "  ORDER BY created_at DESC, id DESC LIMIT 1"
                ")",
                (to_db_timestamp(now),),
            )
            count = cursor.rowcount
        return count

    async def delete_expired(self, now: datetime) -> int:
        """Delete rows whose expires_at <= now, active or not."""
        async with self._transaction("delete_expired") as db:
            cursor = await db.execute(
                "DELETE FROM api_keys WHERE expires_at <= ?",
                (to_db_timestamp(now),),
            )
            count = cursor.rowcount
        return count

    async def delete_inactive_before(self, cutoff: datetime) -> int:
        """Delete inactive rows last updated strictly before ``cutoff``."""
        async with self._transaction("delete_inactive_before") as db:
            cursor = await db.execute(
                "DELETE FROM api_keys WHERE is_active = 0 AND updated_at < ?",
                (to_db_timestamp(cutoff),),
            )
            count = cursor.rowcount
        return count

    # ── Reads ─────────────────────────────────────────────────────────────────

    async def get(self, key_id: str) -> Optional[ApiKeyRecord]:
        return await self._fetch_one(
            "get",
            f"SELECT {_SELECT_COLUMNS} FROM api_keys WHERE id = ?",
            (key_id,),
        )

    async def find_valid(self, key: str, now: datetime) -> Optional[ApiKeyRecord]:
        """Return the row matching ``key`` iff it is active and unexpired."""
        return await self._fetch_one(
            "find_valid",
            f"SELECT {_SELECT_COLUMNS} FROM api_keys "
            "WHERE key = ? AND is_active = 1 AND expires_at > ?",
            (key, to_db_timestamp(now)),
        )

    async def newest_valid(self, now: datetime) -> Optional[ApiKeyRecord]:
        return await self._fetch_one(
            "newest_valid",
            f"SELECT {_SELECT_COLUMNS} FROM api_keys "
            "WHERE is_active = 1 AND expires_at > ? "
            "ORDER BY created_at DESC, id DESC LIMIT 1",
            (to_db_timestamp(now),),
        )

    async def list_active(self) -> list[ApiKeyRecord]:
        """Active rows, newest first (expired-but-not-yet-swept rows included)."""
        return await self._fetch_all(
            "list_active",
            f"SELECT {_SELECT_COLUMNS} FROM api_keys "
            "WHERE is_active = 1 ORDER BY created_at DESC, id DESC",
        )

    async def list_all(self) -> list[ApiKeyRecord]:
        return await self._fetch_all(
            "list_all",
            f"SELECT {_SELECT_COLUMNS} FROM api_keys ORDER BY created_at DESC, id DESC",
        )

    async def list_expiring(self, now: datetime, until: datetime) -> list[ApiKeyRecord]:
        """Active rows with now < expires_at <= until."""
        return await self._fetch_all(
            "list_expiring",
            f"SELECT {_SELECT_COLUMNS} FROM api_keys "
            "WHERE is_active = 1 AND expires_at > ? AND expires_at <= ? "
            "ORDER BY expires_at ASC",
            (to_db_timestamp(now), to_db_timestamp(until)),
        )

    async def count(self) -> int:
        try:
            cursor = await self._conn.execute("SELECT COUNT(*) FROM api_keys")
            row = await cursor.fetchone()
        except aiosqlite.Error as exc:
            raise KeyStoreError("count", exc) from exc
        return row[0] if row else 0

    # ── Maintenance ───────────────────────────────────────────────────────────

    async def backup(self, target_path: str | Path) -> Path:
        """Copy the live database to ``target_path`` with the SQLite backup API.

        Holds the write lock so the copy is a consistent snapshot between
        transactions.
        """
        target = Path(os.path.expanduser(str(target_path)))
        target.parent.mkdir(parents=True, exist_ok=True)
        async with self._write_lock:
            try:
                async with aiosqlite.connect(str(target)) as dest:
                    await self._conn.backup(dest)
            except aiosqlite.Error as exc:
                raise KeyStoreError("backup", exc) from exc
        os.chmod(target, 0o600)
        return target
