"""Live and historical resource statistics."""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.responses import PlainTextResponse

from webshell.api.auth import is_admin, require_admin, resolve_user
from webshell.common import settings
from webshell.orchestrator.monitor import ResourceMonitor, summary_text
from webshell.orchestrator.protocol import CLOSE_POLICY_VIOLATION
from webshell.orchestrator.services import get_services

logger = logging.getLogger(__name__)

router = APIRouter(tags=["resources"])

Subscriber = Callable[[dict[str, Any]], Awaitable[None]]


class ResourceStreamer:
    """Pushes resource snapshots to subscribers at a fixed interval.

    The broadcast loop runs only while there is at least one subscriber.
    """

    def __init__(self, monitor: ResourceMonitor, interval: float = settings.RESOURCE_STREAM_INTERVAL):
        self.monitor = monitor
        self.interval = interval
        self.subscribers: set[Subscriber] = set()
        self._task: asyncio.Task | None = None

    @property
    def streaming(self) -> bool:
        return self._task is not None and not self._task.done()

    async def make_update(self) -> dict[str, Any]:
        stats = await self.monitor.current()
        return {
            "type": "resource-update",
            "data": stats.serialize(),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    async def subscribe(self, subscriber: Subscriber) -> None:
        self.subscribers.add(subscriber)
        logger.info(f"Resource client connected ({len(self.subscribers)} total)")
        try:
            await subscriber(await self.make_update())
        except Exception as e:
            logger.error(f"Failed to send resource update: {e}")
        if not self.streaming:
            self._task = asyncio.create_task(self._broadcast_loop())
            logger.info("Resource streaming started")

    async def unsubscribe(self, subscriber: Subscriber) -> None:
        self.subscribers.discard(subscriber)
        logger.info(f"Resource client disconnected ({len(self.subscribers)} total)")
        if not self.subscribers and self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("Resource streaming stopped")

    async def broadcast(self) -> None:
        try:
            update = await self.make_update()
        except Exception as e:
            logger.error(f"Failed to broadcast resource updates: {e}")
            return
        for subscriber in list(self.subscribers):
            try:
                await subscriber(update)
            except Exception as e:
                logger.debug(f"Dropping resource subscriber: {e}")
                self.subscribers.discard(subscriber)

    async def _broadcast_loop(self) -> None:
        while self.subscribers:
            await asyncio.sleep(self.interval)
            await self.broadcast()


_streamer: ResourceStreamer | None = None


def get_streamer() -> ResourceStreamer:
    global _streamer
    monitor = get_services().monitor
    if _streamer is None or _streamer.monitor is not monitor:
        _streamer = ResourceStreamer(monitor)
    return _streamer


@router.get("/api/resources/stats", dependencies=[Depends(require_admin)])
async def get_stats():
    stats = await get_services().monitor.current()
    return stats.serialize()


@router.get("/api/resources/stats/{session_id}", dependencies=[Depends(require_admin)])
async def get_session_stats(session_id: str):
    stats = await get_services().monitor.session_stats(session_id)
    if stats is None:
        raise HTTPException(status_code=404, detail=f"No statistics for session {session_id}")
    return stats.serialize()


@router.get(
    "/api/resources/summary",
    response_class=PlainTextResponse,
    dependencies=[Depends(require_admin)],
)
async def get_summary():
    stats = await get_services().monitor.current()
    return summary_text(stats)


@router.get("/api/resources/historical", dependencies=[Depends(require_admin)])
async def get_historical(minutes: float = Query(60, gt=0)):
    history = await get_services().monitor.history(minutes)
    return [s.serialize() for s in history]


@router.websocket("/ws/resources")
async def resource_socket(websocket: WebSocket):
    user_id = resolve_user(websocket)
    if not user_id or not is_admin(user_id):
        await websocket.close(code=CLOSE_POLICY_VIOLATION, reason="Admin access required")
        return

    await websocket.accept()
    streamer = get_streamer()
    subscriber = websocket.send_json
    await streamer.subscribe(subscriber)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        await streamer.unsubscribe(subscriber)
