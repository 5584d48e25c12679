"""Tracking of the client connection attached to each session.

Lets the admin surface reach a session's client (termination notice, forced
close) and lets the monitor report who is connected from where.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Protocol

from webshell.orchestrator.protocol import CLOSE_NORMAL, OutboundMessage, TerminationNotice

logger = logging.getLogger(__name__)


class ConnectionClosed(Exception):
    """The peer went away."""


class FrameTransport(Protocol):
    """A bidirectional channel of JSON text frames (normally a WebSocket)."""

    client_ip: str

    async def receive(self) -> str: ...

    async def send(self, frame: dict[str, Any]) -> None: ...

    async def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None: ...


class Peer(Protocol):
    """The connection-side endpoint a session is bound to."""

    @property
    def closed(self) -> bool: ...

    async def send(self, message: OutboundMessage) -> bool: ...

    async def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None: ...


@dataclass
class ConnectionInfo:
    session_id: str
    user_id: str
    client_ip: str
    connected_at: datetime
    peer: Peer

    def serialize(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "userId": self.user_id,
            "clientIp": self.client_ip,
            "connectedAt": self.connected_at.isoformat(),
        }


class ConnectionManager:
    def __init__(self):
        self._connections: dict[str, ConnectionInfo] = {}

    def __len__(self) -> int:
        return len(self._connections)

    def register(self, session_id: str, user_id: str, client_ip: str, peer: Peer) -> ConnectionInfo:
        existing = self._connections.get(session_id)
        if existing is not None:
            logger.warning(f"Connection already registered for session {session_id}")
            return existing
        info = ConnectionInfo(
            session_id=session_id,
            user_id=user_id,
            client_ip=client_ip,
            connected_at=datetime.now(timezone.utc),
            peer=peer,
        )
        self._connections[session_id] = info
        logger.debug(f"Registered connection for session {session_id} from {client_ip}")
        return info

    def unregister(self, session_id: str) -> None:
        if self._connections.pop(session_id, None) is not None:
            logger.debug(f"Unregistered connection for session {session_id}")

    def get(self, session_id: str) -> ConnectionInfo | None:
        return self._connections.get(session_id)

    def all(self) -> list[ConnectionInfo]:
        return list(self._connections.values())

    def is_connected(self, session_id: str) -> bool:
        info = self._connections.get(session_id)
        return info is not None and not info.peer.closed

    async def send(self, session_id: str, message: OutboundMessage) -> bool:
        info = self._connections.get(session_id)
        if info is None:
            logger.warning(f"Cannot send message: no connection for session {session_id}")
            return False
        if info.peer.closed:
            logger.warning(f"Cannot send message: connection closed for session {session_id}")
            return False
        return await info.peer.send(message)

    async def notify_termination(self, session_id: str, reason: str) -> bool:
        return await self.send(session_id, TerminationNotice(session_id=session_id, reason=reason))

    async def close(self, session_id: str, code: int = CLOSE_NORMAL, reason: str = "") -> None:
        info = self._connections.pop(session_id, None)
        if info is None:
            logger.debug(f"No connection to close for session {session_id}")
            return
        if not info.peer.closed:
            await info.peer.close(code, reason)
            logger.debug(f"Closed connection for session {session_id} ({code} {reason})")

    def stats(self) -> dict[str, Any]:
        by_user: dict[str, int] = {}
        for info in self._connections.values():
            by_user[info.user_id] = by_user.get(info.user_id, 0) + 1
        return {"total": len(self._connections), "byUser": by_user}
