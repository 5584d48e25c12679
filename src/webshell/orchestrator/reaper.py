"""Periodic expiry of idle, over-age and dead sessions."""

import logging
from datetime import timedelta

from webshell.common import settings
from webshell.orchestrator.registry import (
    REASON_EXITED,
    REASON_EXPIRED,
    REASON_IDLE,
    Session,
    SessionRegistry,
)
from webshell.orchestrator.workers import PeriodicWorker

logger = logging.getLogger(__name__)


class Reaper(PeriodicWorker):
    name = "reaper"

    def __init__(
        self,
        registry: SessionRegistry,
        idle_timeout: float = settings.IDLE_TIMEOUT,
        interval: float = settings.REAPER_INTERVAL,
    ):
        super().__init__(interval)
        self.registry = registry
        self.idle_timeout = timedelta(seconds=idle_timeout)

    def expiry_reason(self, session: Session) -> str | None:
        now = self.registry.clock()
        if session.handle.closed:
            return REASON_EXITED
        if now > session.expires_at:
            return REASON_EXPIRED
        if now - session.last_activity > self.idle_timeout:
            return REASON_IDLE
        return None

    async def sweep(self) -> list[str]:
        """Terminate every expired session. Returns the terminated ids."""
        reaped = []
        for session in self.registry.list_all():
            reason = self.expiry_reason(session)
            if reason is None:
                continue
            if await self.registry.terminate(session.session_id, reason):
                logger.info(f"Reaped session {session.session_id} ({reason})")
                reaped.append(session.session_id)
        if reaped:
            logger.info(f"Reaper removed {len(reaped)} session(s)")
        return reaped

    async def run_once(self) -> None:
        await self.sweep()
