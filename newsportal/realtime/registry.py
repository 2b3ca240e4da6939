"""In-process registry of live WebSocket clients.

One ConnectionRegistry is created per process in the lifespan and handed to
everything that needs to reach clients. It is the single source of truth for
"who is connected". Broadcasts reach only clients of this process.

Thread-safety:
    Safe for single-threaded asyncio use (all access from the event loop).
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

from newsportal.constants import WS_INTERNAL_ERROR, WS_SEND_TIMEOUT_SECONDS
from newsportal.utils.logger import get_logger

logger = get_logger(__name__)


class SocketHandle(Protocol):
    """The part of starlette.websockets.WebSocket the registry relies on."""

    async def send_text(self, data: str) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


@dataclass
class ClientConnection:
    client_id: str
    socket: SocketHandle
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class ConnectionRegistry:
    """Map of client_id → ClientConnection with self-healing broadcast.

    Args:
        send_timeout: Seconds a single send may take before that client is
                      treated as dead and dropped.
    """

    def __init__(self, send_timeout: float = WS_SEND_TIMEOUT_SECONDS) -> None:
        self._connections: dict[str, ClientConnection] = {}
        self._send_timeout = send_timeout

    def add(self, client_id: str, socket: SocketHandle) -> ClientConnection:
        connection = ClientConnection(client_id=client_id, socket=socket)
        self._connections[client_id] = connection
        logger.info("WebSocket client registered", client_id=client_id, total=len(self))
        return connection

    def remove(self, client_id: str) -> bool:
        """Drop a client. Returns False if it was not registered."""
        removed = self._connections.pop(client_id, None) is not None
        if removed:
            logger.info("WebSocket client removed", client_id=client_id, total=len(self))
        return removed

    def get(self, client_id: str) -> Optional[ClientConnection]:
        return self._connections.get(client_id)

    def client_ids(self) -> list[str]:
        return list(self._connections)

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, client_id: object) -> bool:
        return client_id in self._connections

    async def send(self, client_id: str, message: dict[str, Any] | str) -> bool:
        """Deliver to one client. A failed send removes the client."""
        connection = self._connections.get(client_id)
        if connection is None:
            return False
        payload = message if isinstance(message, str) else json.dumps(message)
        return await self._deliver(connection, payload)

    async def broadcast(self, message: dict[str, Any] | str) -> int:
        """Send ``message`` to every registered client concurrently.

        A client whose send raises or exceeds the send timeout is removed and
        its socket closed with 1011.
        Failures are logged, never raised.

        Returns:
            Number of clients the message was delivered to.
        """
        if not self._connections:
            return 0

        payload = message if isinstance(message, str) else json.dumps(message)
        # Snapshot: registrations during the gather do not receive this message.
        targets = list(self._connections.values())
        results = await asyncio.gather(
            *(self._deliver(connection, payload) for connection in targets)
        )
        delivered = sum(1 for ok in results if ok)
        logger.info(
            "Broadcast complete",
            delivered=delivered,
            failed=len(targets) - delivered,
            active=len(self),
        )
        return delivered

    async def _deliver(self, connection: ClientConnection, payload: str) -> bool:
        try:
            await asyncio.wait_for(connection.socket.send_text(payload), timeout=self._send_timeout)
            return True
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning(
                "WebSocket send failed — dropping client",
                client_id=connection.client_id,
                error=str(exc) or type(exc).__name__,
            )
            if self._connections.get(connection.client_id) is connection:
                self.remove(connection.client_id)
                await self._close(connection)
            return False

    async def _close(self, connection: ClientConnection) -> None:
        # A timed-out send may have left a partial frame; the socket is unusable.
        try:
            await asyncio.wait_for(
                connection.socket.close(code=WS_INTERNAL_ERROR), timeout=self._send_timeout
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.debug(
                "Close after failed send did not complete",
                client_id=connection.client_id,
                error=str(exc) or type(exc).__name__,
            )
