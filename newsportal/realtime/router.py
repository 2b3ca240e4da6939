"""Real-time routes.

  WS  /ws                    — authenticated notification channel
  GET /api/realtime/status   — connection count and uptime (x-api-key)

Handshake: the ``x-api-key`` header is checked with the same resolver the HTTP
routes use. On failure the socket is accepted, sent one plaintext ``error``
frame, and closed with 1008; nothing is registered.

Inbound frames (JSON):
  {"encrypted": true, "data": "<iv>:<ct>"}  → decrypted, then dispatched by type
  {"type": ...}                             → processed only when
                                              websocket.require_encrypted is off
Types: ping → pong; request_api_key → system/api_key_response;
subscribe → accepted, no reply; anything else → ignored.
Binary frames get a plaintext ``error`` reply. A client evicted after a failed
send has already been closed with 1011 and is no longer served.
"""

from __future__ import annotations

import json
import secrets
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Request, WebSocket, WebSocketDisconnect

from newsportal.auth.middleware import authenticate_request, resolve_api_key
from newsportal.constants import (
    API_KEY_HEADER,
    CLIENT_ID_BYTES,
    INVALID_API_KEY_MESSAGE,
    WS_POLICY_VIOLATION,
)
from newsportal.keys.errors import KeyStoreError
from newsportal.keys.manager import KeyManager
from newsportal.realtime.cipher import CipherError, MessageCipher, is_envelope
from newsportal.realtime.dispatcher import NotificationDispatcher, error_message, pong_message
from newsportal.utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["realtime"])

NON_TEXT_FRAME_MESSAGE = "Message must be text"


# ─── Status ───────────────────────────────────────────────────────────────────


@router.get("/api/realtime/status", dependencies=[Depends(authenticate_request)])
async def realtime_status(request: Request) -> dict[str, Any]:
    state = request.app.state
    started_at: datetime = state.started_at
    uptime = (state.key_manager.now() - started_at).total_seconds()
    return {
        "success": True,
        "data": {
            "connections": len(state.registry),
            "uptime_seconds": round(uptime, 1),
        },
    }


# ─── Inbound message handling ─────────────────────────────────────────────────


async def handle_client_message(
    client_id: str,
    raw: str,
    dispatcher: NotificationDispatcher,
    manager: KeyManager,
    cipher: MessageCipher,
    require_encrypted: bool = True,
) -> None:
    """Decode one inbound frame and respond. Never raises for bad input."""
    try:
        frame = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("WebSocket received invalid JSON", client_id=client_id)
        await dispatcher.send(client_id, error_message("Message must be valid JSON"), plain=True)
        return

    if is_envelope(frame):
        try:
            message = cipher.open(frame)
        except CipherError as exc:
            logger.warning("WebSocket message could not be decrypted", client_id=client_id, error=str(exc))
            await dispatcher.send(client_id, error_message("Failed to decrypt message"), plain=True)
            return
    elif require_encrypted:
        logger.warning("WebSocket received unencrypted message", client_id=client_id)
        await dispatcher.send(client_id, error_message("All messages must be encrypted"), plain=True)
        return
    elif isinstance(frame, dict):
        message = frame
    else:
        await dispatcher.send(client_id, error_message("Message must be a JSON object"), plain=True)
        return

    message_type = message.get("type")
    if message_type == "ping":
        await dispatcher.send(client_id, pong_message())

    elif message_type == "request_api_key":
        await _send_current_key(client_id, dispatcher, manager)

    elif message_type == "subscribe":
        logger.debug("WebSocket subscribe", client_id=client_id, topic=message.get("topic"))

    else:
        logger.debug("WebSocket message type ignored", client_id=client_id, message_type=message_type)


async def _send_current_key(
    client_id: str,
    dispatcher: NotificationDispatcher,
    manager: KeyManager,
) -> None:
    try:
        record = await manager.current()
    except KeyStoreError as exc:
        logger.error("Current key lookup failed", client_id=client_id, operation=exc.operation)
        await dispatcher.send(
            client_id,
            error_message("Could not retrieve API key", action="api_key_response"),
        )
        return

    if record is None:
        logger.warning("No active API key available for client", client_id=client_id)
        await dispatcher.send(
            client_id,
            error_message("No active API key available", action="api_key_response"),
        )
        return

    await dispatcher.send(client_id, dispatcher.key_response_message(record))
    logger.info("API key sent to client", client_id=client_id, key_id=record.id[:8])


# ─── /ws ──────────────────────────────────────────────────────────────────────


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """Authenticated notification channel.

    Lifecycle:
      1. accept, then authenticate the ``x-api-key`` header
      2. register under a fresh random client id
      3. send ``system/connected``
      4. answer inbound frames until the client disconnects
      5. deregister
    """
    state = websocket.app.state
    manager: KeyManager = state.key_manager
    dispatcher: NotificationDispatcher = state.dispatcher

    await websocket.accept()

    record, reason = await resolve_api_key(
        websocket.headers.get(API_KEY_HEADER),
        manager,
        getattr(state, "auth_failures", None),
    )
    if record is None:
        logger.warning("WebSocket connection rejected", reason=reason)
        await dispatcher.send_direct(
            websocket,
            error_message(INVALID_API_KEY_MESSAGE, action="auth"),
            plain=True,
        )
        await websocket.close(code=WS_POLICY_VIOLATION)
        return

    client_id = secrets.token_hex(CLIENT_ID_BYTES)
    state.registry.add(client_id, websocket)

    try:
        await dispatcher.send(client_id, dispatcher.connected_message(client_id))
        # A failed send evicts and closes the client; stop serving it then.
        while client_id in state.registry:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))

            raw = message.get("text")
            if raw is None:
                logger.warning("WebSocket received binary frame", client_id=client_id)
                await dispatcher.send(client_id, error_message(NON_TEXT_FRAME_MESSAGE), plain=True)
                continue

            await handle_client_message(
                client_id,
                raw,
                dispatcher,
                manager,
                state.cipher,
                require_encrypted=state.config.websocket.require_encrypted,
            )
    except WebSocketDisconnect:
        logger.info("WebSocket client disconnected", client_id=client_id)
    finally:
        state.registry.remove(client_id)
