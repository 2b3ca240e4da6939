"""NotificationDispatcher — typed system messages to WebSocket clients.

Message shapes (inner payload, before optional encryption):

    {"type": "system", "action": "connected", "clientId": ..., "message": ..., "timestamp": ...}
    {"type": "system", "action": "api_key_rotated", "data": {id, key, expires_at}, "timestamp": ...}
    {"type": "system", "action": "api_key_response", "data": {id, key, expires_at}, "timestamp": ...}
    {"type": "system", "action": "status_update", "data": {connections, uptime_seconds}, "timestamp": ...}
    {"type": "system", "action": "security_alert", "data": {...}, "timestamp": ...}
    {"type": "pong", "timestamp": ...}
    {"type": "error", "message": ..., "timestamp": ...}

When ``encrypt`` is on every outbound frame is sealed into
``{"encrypted": true, "data": "<iv>:<ciphertext>"}``.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Optional

from newsportal.keys.models import ApiKeyRecord
from newsportal.realtime.cipher import MessageCipher
from newsportal.realtime.registry import ConnectionRegistry, SocketHandle
from newsportal.utils.logger import get_logger

logger = get_logger(__name__)


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def system_message(action: str, **fields: Any) -> dict[str, Any]:
    return {"type": "system", "action": action, **fields, "timestamp": _timestamp()}


def error_message(message: str, action: Optional[str] = None) -> dict[str, Any]:
    payload: dict[str, Any] = {"type": "error", "message": message}
    if action is not None:
        payload["action"] = action
    payload["timestamp"] = _timestamp()
    return payload


def pong_message() -> dict[str, Any]:
    return {"type": "pong", "timestamp": _timestamp()}


def _key_payload(record: ApiKeyRecord) -> dict[str, Any]:
    return {
        "id": record.id,
        "key": record.key,
        "expires_at": record.expires_at.isoformat(),
    }


class NotificationDispatcher:
    """Builds lifecycle notifications and pushes them through the registry.

    Args:
        registry: Process-wide ConnectionRegistry.
        cipher:   MessageCipher used when ``encrypt`` is True.
        encrypt:  Seal outbound frames in an encrypted envelope.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        cipher: Optional[MessageCipher] = None,
        encrypt: bool = True,
    ) -> None:
        if encrypt and cipher is None:
            raise ValueError("encrypt=True requires a MessageCipher")
        self.registry = registry
        self.cipher = cipher
        self.encrypt = encrypt

    def wrap(self, message: dict[str, Any]) -> dict[str, Any]:
        if self.encrypt and self.cipher is not None:
            return self.cipher.seal(message)
        return message

    # ── Delivery ──────────────────────────────────────────────────────────────

    async def broadcast(self, message: dict[str, Any]) -> int:
        return await self.registry.broadcast(self.wrap(message))

    async def send(self, client_id: str, message: dict[str, Any], plain: bool = False) -> bool:
        return await self.registry.send(client_id, message if plain else self.wrap(message))

    async def send_direct(self, socket: SocketHandle, message: dict[str, Any], plain: bool = False) -> None:
        """Send to a socket that is not (or not yet) registered.

        ``plain`` skips encryption — used for handshake errors, where the
        client may not hold the shared key.
        """
        payload = message if plain else self.wrap(message)
        await socket.send_text(json.dumps(payload))

    # ── Lifecycle notifications ───────────────────────────────────────────────

    async def notify_key_rotated(self, record: ApiKeyRecord) -> int:
        delivered = await self.broadcast(
            system_message(
                "api_key_rotated",
                message="API key rotated",
                data=_key_payload(record),
            )
        )
        logger.info("Key rotation broadcast", key_id=record.id[:8], delivered=delivered)
        return delivered

    async def notify_status(self, uptime_seconds: float) -> int:
        return await self.broadcast(
            system_message(
                "status_update",
                data={
                    "connections": len(self.registry),
                    "uptime_seconds": round(uptime_seconds, 1),
                },
            )
        )

    async def notify_security_alert(self, alerts: list[str], details: dict[str, Any]) -> int:
        logger.warning("Security alert raised", alerts=alerts, **details)
        return await self.broadcast(
            system_message(
                "security_alert",
                message="; ".join(alerts),
                data={"alerts": alerts, **details},
            )
        )

    def connected_message(self, client_id: str) -> dict[str, Any]:
        return system_message(
            "connected",
            clientId=client_id,
            message="Connection established",
        )

    def key_response_message(self, record: ApiKeyRecord) -> dict[str, Any]:
        return system_message("api_key_response", data=_key_payload(record))
