"""ApiKeyRecord — one row of the ``api_keys`` table.

Timestamps are timezone-aware UTC datetimes in memory and fixed-precision
ISO-8601 strings on disk (see ``to_db_timestamp``), so SQL string comparison
orders them chronologically.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import aiosqlite


def utc_now() -> datetime:
    """Default clock for the key pipeline."""
    return datetime.now(timezone.utc)


def to_db_timestamp(value: datetime) -> str:
    """Serialise a datetime as UTC ISO-8601 with microseconds always present."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class ApiKeyRecord:
    """A stored API key.

    Frozen: ``id``, ``key``, ``description`` and ``expires_at`` never change once
    created. A state change (deactivation) is observed by re-reading the row.
    """

    id: str
    key: str
    description: str
    is_active: bool
    expires_at: datetime
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_row(cls, row: aiosqlite.Row) -> "ApiKeyRecord":
        return cls(
            id=row["id"],
            key=row["key"],
            description=row["description"],
            is_active=bool(row["is_active"]),
            expires_at=from_db_timestamp(row["expires_at"]),
            created_at=from_db_timestamp(row["created_at"]),
            updated_at=from_db_timestamp(row["updated_at"]),
        )

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        """True iff the key may authenticate a request at ``now``."""
        return self.is_active and self.expires_at > (now or utc_now())

    @property
    def lifetime(self) -> timedelta:
        """Original validity span (expires_at - created_at)."""
        return self.expires_at - self.created_at

    def days_remaining(self, now: Optional[datetime] = None) -> int:
        """Whole days until expiry, rounded up (0 once expired)."""
        seconds = (self.expires_at - (now or utc_now())).total_seconds()
        return max(0, math.ceil(seconds / 86400))

    def to_public_dict(self) -> dict[str, Any]:
        """Metadata safe to list — the secret ``key`` is never included."""
        return {
            "id": self.id,
            "name": self.description,
            "description": self.description,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }

    def to_secret_dict(self) -> dict[str, Any]:
        """Creation/rotation response — the only place the plaintext key leaves."""
        return {
            "id": self.id,
            "key": self.key,
            "name": self.description,
            "expires_at": self.expires_at.isoformat(),
        }

    def __repr__(self) -> str:
        # Keep the secret out of logs and tracebacks.
        return (
            f"ApiKeyRecord(id={self.id!r}, description={self.description!r}, "
            f"is_active={self.is_active}, expires_at={self.expires_at.isoformat()})"
        )
