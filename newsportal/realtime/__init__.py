"""WebSocket notification channel.

Public API:
  - ConnectionRegistry      — process-scoped map of live clients
  - MessageCipher           — AES-256-CBC envelope encryption
  - NotificationDispatcher  — typed system messages and fan-out
"""

from __future__ import annotations

from newsportal.realtime.cipher import CipherError, MessageCipher
from newsportal.realtime.dispatcher import NotificationDispatcher
from newsportal.realtime.registry import ClientConnection, ConnectionRegistry

__all__ = [
    "CipherError",
    "ClientConnection",
    "ConnectionRegistry",
    "MessageCipher",
    "NotificationDispatcher",
]
