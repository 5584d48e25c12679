"""In-memory registry of live terminal sessions.

The registry is the single source of truth for which sessions exist. Every
mutation of the session map happens under one asyncio.Lock; the map itself
is never handed out, callers only get list snapshots.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable

from webshell.common import settings
from webshell.common.catalog import ResourceLimits
from webshell.common.errors import SessionLimitExceeded, SessionNotFound
from webshell.orchestrator.protocol import DEFAULT_LIMITS, ValidationLimits, validate_geometry
from webshell.orchestrator.runtime import ExecutionHandle, RuntimeAdapter

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

# Termination reasons
REASON_CLOSED = "Connection closed"
REASON_ADMIN = "Session terminated by administrator"
REASON_IDLE = "Session idle timeout"
REASON_EXPIRED = "Session expired"
REASON_EXITED = "Process exited"
REASON_SHUTDOWN = "Server shutting down"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionState(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    TERMINATING = "terminating"
    GONE = "gone"


@dataclass
class Session:
    session_id: str
    user_id: str
    shell: str
    environment: str
    cols: int
    rows: int
    handle: ExecutionHandle
    created_at: datetime
    last_activity: datetime
    expires_at: datetime
    state: SessionState = SessionState.ACTIVE
    end_reason: str | None = None
    # Serializes writes and resizes
    io_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)
    gone: asyncio.Event = field(default_factory=asyncio.Event, repr=False, compare=False)

    @property
    def runtime_id(self) -> str:
        return self.handle.runtime_id

    @property
    def container_name(self) -> str:
        return self.handle.name

    def idle_seconds(self, now: datetime) -> float:
        return (now - self.last_activity).total_seconds()

    def serialize(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "userId": self.user_id,
            "shell": self.shell,
            "environment": self.environment,
            "cols": self.cols,
            "rows": self.rows,
            "containerId": self.runtime_id,
            "containerName": self.container_name,
            "state": self.state.value,
            "createdAt": self.created_at.isoformat(),
            "lastActivity": self.last_activity.isoformat(),
            "expiresAt": self.expires_at.isoformat(),
        }


class SessionRegistry:
    def __init__(
        self,
        runtime: RuntimeAdapter,
        *,
        max_sessions_per_user: int = settings.MAX_SESSIONS_PER_USER,
        session_max_age: float = settings.SESSION_MAX_AGE,
        limits: ValidationLimits = DEFAULT_LIMITS,
        clock: Clock = utcnow,
    ):
        self.runtime = runtime
        self.max_sessions_per_user = max_sessions_per_user
        self.session_max_age = timedelta(seconds=session_max_age)
        self.limits = limits
        self.clock = clock
        self._lock = asyncio.Lock()
        self._sessions: dict[str, Session] = {}
        # session id -> user id, for sessions still materializing
        self._pending: dict[str, str] = {}
        self._background: set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._sessions)

    def _new_session_id(self) -> str:
        while True:
            session_id = str(uuid.uuid4())
            if session_id not in self._sessions and session_id not in self._pending:
                return session_id

    def _owned_count(self, user_id: str) -> int:
        live = sum(1 for s in self._sessions.values() if s.user_id == user_id)
        pending = sum(1 for owner in self._pending.values() if owner == user_id)
        return live + pending

    async def create_session(
        self,
        user_id: str,
        *,
        cols: int = 80,
        rows: int = 24,
        shell: str = "bash",
        environment: str = "default",
        limits: ResourceLimits | None = None,
    ) -> Session:
        """Materialize a new environment and register it.

        Raises SessionLimitExceeded before touching the runtime. Adapter errors
        propagate unchanged and leave nothing registered. If the caller is
        cancelled mid-materialize, the environment is destroyed as soon as it
        comes up.
        """
        async with self._lock:
            if self._owned_count(user_id) >= self.max_sessions_per_user:
                logger.warning(
                    f"Session limit reached for user {user_id} ({self.max_sessions_per_user})"
                )
                raise SessionLimitExceeded(self.max_sessions_per_user)
            session_id = self._new_session_id()
            self._pending[session_id] = user_id

        materialize = asyncio.ensure_future(
            self.runtime.materialize(
                environment,
                limits,
                session_id=session_id,
                user_id=user_id,
                shell=shell,
                cols=cols,
                rows=rows,
            )
        )
        try:
            handle = await asyncio.shield(materialize)
        except asyncio.CancelledError:
            logger.info(f"Requester for session {session_id} went away during creation")
            self._spawn(self._discard_abandoned(session_id, materialize))
            raise
        except Exception:
            self._pending.pop(session_id, None)
            raise

        now = self.clock()
        session = Session(
            session_id=session_id,
            user_id=user_id,
            shell=shell,
            environment=environment,
            cols=cols,
            rows=rows,
            handle=handle,
            created_at=now,
            last_activity=now,
            expires_at=now + self.session_max_age,
        )
        # No await between releasing the reservation and inserting the session
        self._pending.pop(session_id, None)
        self._sessions[session_id] = session
        logger.info(
            f"Created session {session_id} for user {user_id} "
            f"({environment}/{shell}, container {handle.name})"
        )
        return session

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _discard_abandoned(self, session_id: str, materialize: asyncio.Future) -> None:
        try:
            handle = await materialize
        except Exception as e:
            logger.info(f"Abandoned session {session_id} failed to materialize: {e}")
            return
        finally:
            self._pending.pop(session_id, None)
        await self.runtime.destroy(handle, session_id=session_id)
        logger.info(f"Destroyed abandoned session {session_id}")

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def _active(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None or session.state is not SessionState.ACTIVE:
            raise SessionNotFound(session_id)
        return session

    async def write(self, session_id: str, data: bytes) -> None:
        session = self._active(session_id)
        async with session.io_lock:
            if session.state is not SessionState.ACTIVE:
                raise SessionNotFound(session_id)
            await session.handle.write(data)
            session.last_activity = self.clock()

    async def resize(self, session_id: str, cols: int, rows: int) -> None:
        cols, rows = validate_geometry(cols, rows, self.limits)
        session = self._active(session_id)
        async with session.io_lock:
            if session.state is not SessionState.ACTIVE:
                raise SessionNotFound(session_id)
            await session.handle.resize(cols, rows)
            session.cols, session.rows = cols, rows
            session.last_activity = self.clock()

    def touch(self, session_id: str) -> None:
        """Record activity. Never moves the absolute expiry."""
        session = self._active(session_id)
        now = self.clock()
        if now > session.last_activity:
            session.last_activity = now

    async def terminate(self, session_id: str, reason: str = REASON_CLOSED) -> bool:
        """Remove a session and destroy its environment.

        Returns False if the session is unknown or already terminating; in the
        latter case it still waits until the other termination has finished.
        Never raises for runtime failures; destroy errors are logged.
        """
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return False
            if session.state is not SessionState.ACTIVE:
                waiting = session
            else:
                waiting = None
                session.state = SessionState.TERMINATING
                if session.end_reason is None:
                    session.end_reason = reason

        if waiting is not None:
            await asyncio.shield(waiting.gone.wait())
            return False
        # Finish even if the caller is cancelled, so the handle is never leaked
        await asyncio.shield(self._finish_termination(session))
        return True

    async def _finish_termination(self, session: Session) -> None:
        try:
            # Unblocks a write stuck on a full TTY; TERMINATING already stops new I/O
            session.handle.close()
            await self.runtime.destroy(session.handle, session_id=session.session_id)
        except Exception:
            logger.exception(
                f"Failed to destroy session={session.session_id} container={session.runtime_id}"
            )
        finally:
            session.state = SessionState.GONE
            async with self._lock:
                self._sessions.pop(session.session_id, None)
            session.gone.set()
        logger.info(f"Terminated session {session.session_id}: {session.end_reason}")

    async def terminate_all(self, reason: str = REASON_SHUTDOWN) -> int:
        results = await asyncio.gather(
            *(self.terminate(session_id, reason) for session_id in list(self._sessions))
        )
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        return sum(results)

    def list_by_user(self, user_id: str) -> list[Session]:
        return [s for s in self._sessions.values() if s.user_id == user_id]

    def list_all(self) -> list[Session]:
        return list(self._sessions.values())

    def owned_runtime_ids(self) -> set[str]:
        return {s.runtime_id for s in self._sessions.values()}

    def known_session_ids(self) -> set[str]:
        return set(self._sessions) | set(self._pending)

    def count_by_user(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for session in self._sessions.values():
            counts[session.user_id] = counts.get(session.user_id, 0) + 1
        return counts
