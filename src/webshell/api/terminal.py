"""Terminal WebSocket endpoint.

Connect with: ws://host/ws?token=<auth_token>

Client -> Server messages (JSON):
- {"type": "create-session", "cols": 80, "rows": 24, "shell": "bash", "environment": "default"}
- {"type": "input", "data": "..."}
- {"type": "resize", "cols": 120, "rows": 40}
- {"type": "ping"}

Server -> Client messages (JSON):
- session-created, output, error, pong, termination-notice, session-ended
"""

import logging
from typing import Any

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from webshell.api.auth import get_current_user, resolve_user
from webshell.orchestrator.connections import ConnectionClosed
from webshell.orchestrator.multiplexer import ProtocolMultiplexer
from webshell.orchestrator.protocol import CLOSE_NORMAL, CLOSE_POLICY_VIOLATION
from webshell.orchestrator.services import get_services

logger = logging.getLogger(__name__)

router = APIRouter(tags=["terminal"])


class WebSocketTransport:
    """FrameTransport over a Starlette WebSocket."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        client = websocket.client
        self.client_ip = client.host if client else "unknown"

    async def receive(self) -> str:
        try:
            message = await self.websocket.receive()
        except RuntimeError as e:
            raise ConnectionClosed(str(e)) from e
        if message["type"] == "websocket.disconnect":
            raise ConnectionClosed(str(message.get("code", "")))
        text = message.get("text")
        if text is None:
            data = message.get("bytes") or b""
            text = data.decode("utf-8", errors="replace")
        return text

    async def send(self, frame: dict[str, Any]) -> None:
        if self.websocket.application_state != WebSocketState.CONNECTED:
            raise ConnectionClosed("WebSocket is not connected")
        try:
            await self.websocket.send_json(frame)
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            raise ConnectionClosed(str(e)) from e

    async def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None:
        if self.websocket.application_state == WebSocketState.DISCONNECTED:
            return
        try:
            await self.websocket.close(code=code, reason=reason)
        except (RuntimeError, OSError) as e:
            logger.debug(f"Error closing WebSocket: {e}")


@router.websocket("/ws")
async def terminal_socket(websocket: WebSocket):
    user_id = resolve_user(websocket)
    if not user_id:
        await websocket.close(code=CLOSE_POLICY_VIOLATION, reason="Invalid or expired token")
        return

    await websocket.accept()
    services = get_services()
    transport = WebSocketTransport(websocket)
    logger.info(f"Terminal connection from {transport.client_ip} for user {user_id}")

    multiplexer = ProtocolMultiplexer(
        transport,
        services.registry,
        user_id,
        connections=services.connections,
        limits=services.limits,
    )
    await multiplexer.run()
    await transport.close()
    logger.info(f"Terminal connection closed for user {user_id}")


@router.get("/api/sessions")
async def list_my_sessions(user_id: str = Depends(get_current_user)):
    services = get_services()
    return {
        "sessions": [s.serialize() for s in services.registry.list_by_user(user_id)],
    }
