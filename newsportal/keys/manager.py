"""Key lifecycle manager — creation, rotation, expiry and retirement of API keys.

Implements:
  - rotate()                 — mint a new active key; single policy retires the rest
  - issue()                  — admin-created key with a custom lifetime
  - rotate_from()            — admin rotation of a specific key id
  - deactivate_superseded()  — overlap policy: retire all but the newest key
  - delete_expired()         — hard-delete keys whose expires_at has passed
  - purge_inactive()         — hard-delete keys inactive beyond a retention window
  - find_valid()             — the authentication check
  - revoke()                 — administrative deactivation of one key

Non-negotiables:
  - expires_at is written once at creation and never updated
  - the new key is inserted before any other key is deactivated, in one
    transaction — at no instant are there zero valid keys
  - plaintext keys are never logged; only the 8-char id prefix
"""

from __future__ import annotations

import enum
import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional

from newsportal.constants import API_KEY_BYTES, AUTO_ROTATED_DESCRIPTION
from newsportal.keys.errors import KeyNotFoundError, KeyStoreError
from newsportal.keys.models import ApiKeyRecord, utc_now
from newsportal.keys.store import KeyStore
from newsportal.utils.logger import get_logger
from newsportal.utils.ulid import generate_ulid

logger = get_logger(__name__)

Clock = Callable[[], datetime]


class RotationPolicy(str, enum.Enum):
    """How many keys may be active at once.

    SINGLE:  rotation deactivates every other key in the same transaction.
    OVERLAP: rotation leaves the previous key active; deactivate_superseded()
             retires it after a grace period.
    """

    SINGLE = "single"
    OVERLAP = "overlap"


def generate_key() -> str:
    """Return a new 256-bit secret as 64 lowercase hex characters."""
    return secrets.token_hex(API_KEY_BYTES)


class KeyManager:
    """Owns every state transition of an ApiKeyRecord.

    Args:
        store:   Initialised KeyStore.
        policy:  RotationPolicy for this deployment (never changes at runtime).
        key_ttl: Lifetime of scheduler-minted keys.
        clock:   Returns "now" as an aware UTC datetime. Tests inject a fake.
    """

    def __init__(
        self,
        store: KeyStore,
        policy: RotationPolicy = RotationPolicy.SINGLE,
        key_ttl: timedelta = timedelta(hours=1),
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.policy = RotationPolicy(policy)
        self.key_ttl = key_ttl
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    # ── Creation ──────────────────────────────────────────────────────────────

    async def rotate(
        self,
        description: str = AUTO_ROTATED_DESCRIPTION,
        ttl: Optional[timedelta] = None,
    ) -> ApiKeyRecord:
        """Mint a new active key and, under the single policy, retire the others.

        Returns:
            The new record, plaintext key included.

        Raises:
            KeyStoreError: If the transaction fails. Nothing is committed.
        """
        now = self.now()
        record = ApiKeyRecord(
            id=generate_ulid(),
            key=generate_key(),
            description=description,
            is_active=True,
            expires_at=now + (ttl if ttl is not None else self.key_ttl),
            created_at=now,
            updated_at=now,
        )
        deactivate_others = self.policy is RotationPolicy.SINGLE

        try:
            deactivated = await self.store.insert(record, deactivate_others=deactivate_others)
        except KeyStoreError as exc:
            logger.error(
                "API key rotation failed",
                operation=exc.operation,
                error=str(exc.cause),
            )
            raise

        logger.info(
            "API key rotated",
            key_id=record.id[:8],
            policy=self.policy.value,
            expires_at=record.expires_at.isoformat(),
            deactivated=deactivated,
        )
        return record

    async def issue(self, description: str, ttl: timedelta) -> ApiKeyRecord:
        """Create an admin-requested key with a custom lifetime."""
        return await self.rotate(description=description, ttl=ttl)

    async def rotate_from(self, key_id: str) -> ApiKeyRecord:
        """Replace a specific key, keeping its description and lifetime length.

        Raises:
            KeyNotFoundError: If ``key_id`` does not exist.
        """
        source = await self.store.get(key_id)
        if source is None:
            raise KeyNotFoundError(key_id)
        record = await self.rotate(description=source.description, ttl=source.lifetime)
        if self.policy is RotationPolicy.OVERLAP and source.is_active:
            # An explicit admin rotation retires the source immediately.
            await self.store.deactivate(source.id, self.now())
        logger.info("API key rotated from source", source_id=key_id[:8], new_key_id=record.id[:8])
        return record

    # ── Retirement ────────────────────────────────────────────────────────────

    async def deactivate_superseded(self) -> int:
        """Deactivate every active key except the most recently created one."""
        count = await self.store.deactivate_all_but_newest(self.now())
        logger.info("Superseded API keys deactivated", count=count)
        return count

    async def revoke(self, key_id: str) -> bool:
        """Deactivate one key. Returns False if the id does not exist."""
        revoked = await self.store.deactivate(key_id, self.now())
        if revoked:
            logger.info("API key revoked", key_id=key_id[:8])
        else:
            logger.debug("revoke: no such key", key_id=key_id[:8])
        return revoked

    async def delete_expired(self) -> int:
        """Hard-delete keys with expires_at <= now. A repeat call returns 0."""
        count = await self.store.delete_expired(self.now())
        logger.info("Expired API keys deleted", count=count)
        return count

    async def purge_inactive(self, retention: timedelta) -> int:
        """Hard-delete keys that have been inactive for longer than ``retention``."""
        cutoff = self.now() - retention
        count = await self.store.delete_inactive_before(cutoff)
        logger.info(
            "Stale inactive API keys purged",
            count=count,
            retention_days=retention.days,
        )
        return count

    # ── Lookup ────────────────────────────────────────────────────────────────

    async def find_valid(self, key: str) -> Optional[ApiKeyRecord]:
        """Return the record iff ``key`` matches an active, unexpired row."""
        if not key:
            return None
        return await self.store.find_valid(key, self.now())

    async def get(self, key_id: str) -> Optional[ApiKeyRecord]:
        return await self.store.get(key_id)

    async def current(self) -> Optional[ApiKeyRecord]:
        """The newest valid key — what clients should be using right now."""
        return await self.store.newest_valid(self.now())

    async def list_active(self) -> list[ApiKeyRecord]:
        return await self.store.list_active()

    async def list_expiring(self, lookahead: timedelta) -> list[ApiKeyRecord]:
        """Long-lived active keys that expire within ``lookahead``.

        Keys whose whole lifetime is shorter than the lookahead (every
        scheduler-minted key) are excluded; their expiry is routine.
        """
        now = self.now()
        candidates = await self.store.list_expiring(now, now + lookahead)
        return [record for record in candidates if record.lifetime > lookahead]

    async def count_expiring(self, lookahead: timedelta) -> int:
        return len(await self.list_expiring(lookahead))
