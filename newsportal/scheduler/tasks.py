"""Scheduled maintenance tasks for the key pipeline.

Each task is a plain coroutine function that takes its collaborators as
arguments and returns a TaskResult. Tasks NEVER raise (except
asyncio.CancelledError, which is a BaseException and propagates for clean
shutdown): every failure is logged with the task name and reported in the
result, so one failing task cannot disturb the scheduler or other tasks.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from newsportal.auth.failures import AuthFailureTracker
from newsportal.keys.manager import KeyManager
from newsportal.keys.store import KeyStore
from newsportal.realtime.dispatcher import NotificationDispatcher
from newsportal.utils.logger import PerformanceLogger, get_logger

logger = get_logger(__name__)


@dataclass
class TaskResult:
    """Outcome of one task run."""

    name: str
    ok: bool
    value: Any = None
    error: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)


async def _guarded(name: str, body: Callable[[], Awaitable[TaskResult]]) -> TaskResult:
    try:
        with PerformanceLogger(f"task:{name}", logger):
            return await body()
    except Exception as exc:
        logger.error(
            "Scheduled task failed",
            task=name,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        return TaskResult(name=name, ok=False, error=f"{type(exc).__name__}: {exc}")


# ─── Key lifecycle ────────────────────────────────────────────────────────────


async def rotate_keys(
    manager: KeyManager,
    dispatcher: Optional[NotificationDispatcher] = None,
) -> TaskResult:
    """Mint a new key and push it to every connected client.

    value: the new ApiKeyRecord on success.
    """

    async def body() -> TaskResult:
        record = await manager.rotate()
        delivered = 0
        if dispatcher is not None:
            delivered = await dispatcher.notify_key_rotated(record)
        return TaskResult(
            name="rotate_keys",
            ok=True,
            value=record,
            details={"key_id": record.id, "delivered": delivered},
        )

    return await _guarded("rotate_keys", body)


async def ensure_active_key(
    manager: KeyManager,
    dispatcher: Optional[NotificationDispatcher] = None,
) -> TaskResult:
    """Rotate only if no valid key exists. value: True if a key was minted."""

    async def body() -> TaskResult:
        if await manager.current() is not None:
            return TaskResult(name="ensure_active_key", ok=True, value=False)
        logger.info("No valid API key present — rotating")
        rotated = await rotate_keys(manager, dispatcher)
        if not rotated.ok:
            return TaskResult(name="ensure_active_key", ok=False, error=rotated.error)
        return TaskResult(name="ensure_active_key", ok=True, value=True)

    return await _guarded("ensure_active_key", body)


async def deactivate_superseded_keys(manager: KeyManager) -> TaskResult:
    """Overlap policy follow-up: retire everything but the newest key."""

    async def body() -> TaskResult:
        count = await manager.deactivate_superseded()
        return TaskResult(name="deactivate_superseded_keys", ok=True, value=count)

    return await _guarded("deactivate_superseded_keys", body)


async def cleanup_expired_keys(manager: KeyManager) -> TaskResult:
    async def body() -> TaskResult:
        count = await manager.delete_expired()
        return TaskResult(name="cleanup_expired_keys", ok=True, value=count)

    return await _guarded("cleanup_expired_keys", body)


async def purge_inactive_keys(manager: KeyManager, retention: timedelta) -> TaskResult:
    async def body() -> TaskResult:
        count = await manager.purge_inactive(retention)
        return TaskResult(name="purge_inactive_keys", ok=True, value=count)

    return await _guarded("purge_inactive_keys", body)


# ─── Posture & status ─────────────────────────────────────────────────────────


async def security_check(
    manager: KeyManager,
    dispatcher: Optional[NotificationDispatcher],
    failures: AuthFailureTracker,
    expiry_lookahead: timedelta,
    failure_window: timedelta,
    failure_threshold: int,
) -> TaskResult:
    """Count long-lived keys about to expire and recent auth failures.

    Either breach raises a ``system/security_alert`` broadcast. value: list of
    alert strings (empty when healthy).
    """

    async def body() -> TaskResult:
        expiring = await manager.list_expiring(expiry_lookahead)
        failure_count = failures.count_since(failure_window)

        alerts: list[str] = []
        if expiring:
            alerts.append(
                f"{len(expiring)} API key(s) expire within {expiry_lookahead.days} day(s)"
            )
        if failure_count >= failure_threshold:
            alerts.append(
                f"{failure_count} authentication failures in the last "
                f"{int(failure_window.total_seconds() // 60)} minutes"
            )

        details = {
            "expiring_keys": [record.id for record in expiring],
            "auth_failures": failure_count,
            "auth_failure_reasons": failures.breakdown_since(failure_window),
        }
        if alerts and dispatcher is not None:
            await dispatcher.notify_security_alert(alerts, details)
        elif not alerts:
            logger.info("Security check passed", auth_failures=failure_count)
        return TaskResult(name="security_check", ok=True, value=alerts, details=details)

    return await _guarded("security_check", body)


async def broadcast_status(
    dispatcher: NotificationDispatcher,
    started_at: datetime,
    clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
) -> TaskResult:
    """Heartbeat: connection count and uptime. value: delivered count."""

    async def body() -> TaskResult:
        uptime = (clock() - started_at).total_seconds()
        delivered = await dispatcher.notify_status(uptime)
        return TaskResult(name="broadcast_status", ok=True, value=delivered)

    return await _guarded("broadcast_status", body)


# ─── Backup ───────────────────────────────────────────────────────────────────


async def backup_database(
    store: KeyStore,
    backup_dir: str | Path,
    keep: int,
    clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
) -> TaskResult:
    """Write a snapshot of the key store and keep only the newest ``keep``.

    value: Path of the new backup file.
    """

    async def body() -> TaskResult:
        directory = Path(os.path.expanduser(str(backup_dir)))
        stamp = clock().strftime("%Y%m%d-%H%M%S")
        target = await store.backup(directory / f"keys-{stamp}.db")

        snapshots = sorted(directory.glob("keys-*.db"))
        removed = 0
        for old in snapshots[:-keep] if keep > 0 else []:
            old.unlink(missing_ok=True)
            removed += 1
        logger.info("Key store backup written", path=str(target), pruned=removed)
        return TaskResult(name="backup_database", ok=True, value=target, details={"pruned": removed})

    return await _guarded("backup_database", body)
