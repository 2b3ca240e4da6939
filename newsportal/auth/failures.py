"""Rolling record of authentication failures for the security posture check.

Kept in memory so that recording a failure never issues a store query: an
unauthenticated request must not reach the database.

Thread-safety:
    Safe for single-threaded asyncio use (all access from the event loop).
"""

from __future__ import annotations

from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from newsportal.constants import AUTH_FAILURE_HISTORY


class AuthFailureTracker:
    """Bounded deque of (timestamp, reason) failure events.

    Args:
        maxlen: Oldest events are dropped beyond this many.
        clock:  Returns "now" as an aware UTC datetime.

    Usage::

        tracker = AuthFailureTracker()
        tracker.record("missing")
        tracker.count_since(timedelta(hours=1))  # → 1
    """

    def __init__(
        self,
        maxlen: int = AUTH_FAILURE_HISTORY,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._events: deque[tuple[datetime, str]] = deque(maxlen=maxlen)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def record(self, reason: str) -> None:
        self._events.append((self._clock(), reason))

    def count_since(self, window: timedelta) -> int:
        """Failures within the last ``window``."""
        cutoff = self._clock() - window
        return sum(1 for ts, _ in self._events if ts >= cutoff)

    def breakdown_since(self, window: timedelta) -> dict[str, int]:
        cutoff = self._clock() - window
        counts: dict[str, int] = {}
        for ts, reason in self._events:
            if ts >= cutoff:
                counts[reason] = counts.get(reason, 0) + 1
        return counts

    def __len__(self) -> int:
        return len(self._events)
