"""Per-connection router between a frame transport and the session registry.

One multiplexer serves one client connection. It validates inbound frames,
creates and binds at most one session at a time, forwards input/resize/ping
and pumps the session's output back as ordered ``output`` frames. Closing the
connection tears the bound session down.
"""

from __future__ import annotations

import asyncio
import codecs
import logging

from webshell.common.errors import (
    HandleClosed,
    RuntimeAdapterError,
    SessionLimitExceeded,
    SessionNotFound,
    ValidationError,
)
from webshell.orchestrator.connections import ConnectionClosed, ConnectionManager, FrameTransport
from webshell.orchestrator.protocol import (
    CLOSE_NORMAL,
    CLOSE_POLICY_VIOLATION,
    DEFAULT_LIMITS,
    CreateSessionMessage,
    ErrorMessage,
    InboundMessage,
    InputMessage,
    OutboundMessage,
    Output,
    PingMessage,
    Pong,
    ResizeMessage,
    SessionCreated,
    SessionEnded,
    TerminationNotice,
    ValidationLimits,
    parse_inbound,
)
from webshell.orchestrator.registry import REASON_CLOSED, REASON_EXITED, Session, SessionRegistry

logger = logging.getLogger(__name__)

NO_ACTIVE_SESSION = "No active session"
REASON_REPLACED = "Replaced by a new session"
CLOSE_INTERNAL_ERROR = 1011
REASON_INTERNAL_ERROR = "Internal error"


class ProtocolMultiplexer:
    def __init__(
        self,
        transport: FrameTransport,
        registry: SessionRegistry,
        user_id: str,
        connections: ConnectionManager | None = None,
        limits: ValidationLimits = DEFAULT_LIMITS,
    ):
        self.transport = transport
        self.registry = registry
        self.user_id = user_id
        self.connections = connections
        self.limits = limits
        self.session: Session | None = None
        self._pump: asyncio.Task | None = None
        self._send_lock = asyncio.Lock()
        self._closed = asyncio.Event()
        self._notified: set[str] = set()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def session_id(self) -> str | None:
        return self.session.session_id if self.session else None

    async def send(self, message: OutboundMessage) -> bool:
        """Send one frame. Frames never interleave; returns False once closed."""
        if self.closed:
            return False
        async with self._send_lock:
            try:
                await self.transport.send(message.to_frame())
            except ConnectionClosed:
                self._closed.set()
                return False
        if isinstance(message, TerminationNotice) and message.session_id:
            self._notified.add(message.session_id)
        return True

    async def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None:
        if self.closed:
            return
        self._closed.set()
        try:
            await self.transport.close(code, reason)
        except ConnectionClosed:
            pass

    async def run(self) -> None:
        """Serve the connection until either side closes it."""
        reader = asyncio.create_task(self._read_loop())
        closer = asyncio.create_task(self._closed.wait())
        try:
            await asyncio.wait([reader, closer], return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (reader, closer):
                if not task.done():
                    task.cancel()
            # Completes even when the handler itself is being cancelled
            await asyncio.shield(self._finish(reader, closer))

    async def _finish(self, reader: asyncio.Task, closer: asyncio.Task) -> None:
        await asyncio.gather(reader, closer, return_exceptions=True)
        if not reader.cancelled() and reader.exception():
            logger.error(
                f"Connection handler for user {self.user_id} failed",
                exc_info=reader.exception(),
            )
            session = self.session
            if session is not None:
                await self.send(
                    SessionEnded(session_id=session.session_id, reason=REASON_INTERNAL_ERROR)
                )
            await self.close(CLOSE_INTERNAL_ERROR, REASON_INTERNAL_ERROR)
        await self._teardown()

    async def _read_loop(self) -> None:
        while not self.closed:
            try:
                raw = await self.transport.receive()
            except ConnectionClosed:
                return
            await self.handle_frame(raw)

    async def handle_frame(self, raw: str) -> None:
        try:
            message = parse_inbound(raw, self.limits)
        except ValidationError as e:
            await self.send(ErrorMessage(session_id=self.session_id, error=str(e)))
            return
        if message is None:
            return
        await self.dispatch(message)

    async def dispatch(self, message: InboundMessage) -> None:
        if isinstance(message, CreateSessionMessage):
            await self._create_session(message)
        elif isinstance(message, InputMessage):
            await self._input(message)
        elif isinstance(message, ResizeMessage):
            await self._resize(message)
        elif isinstance(message, PingMessage):
            await self._ping()
        else:
            raise TypeError(f"Unhandled message type: {type(message).__name__}")

    async def _create_session(self, message: CreateSessionMessage) -> None:
        if self.session is not None:
            await self._release_session(REASON_REPLACED)

        try:
            session = await self.registry.create_session(
                self.user_id,
                cols=message.cols,
                rows=message.rows,
                shell=message.shell,
                environment=message.environment,
            )
        except SessionLimitExceeded as e:
            await self.send(ErrorMessage(error=str(e)))
            await self.close(CLOSE_POLICY_VIOLATION, str(e))
            return
        except RuntimeAdapterError as e:
            logger.error(f"Failed to create session for user {self.user_id}: {e}")
            await self.send(ErrorMessage(error=f"Failed to create session: {e}"))
            return

        self.session = session
        if self.connections is not None:
            self.connections.register(
                session.session_id, self.user_id, self.transport.client_ip, self
            )
        await self.send(
            SessionCreated(
                session_id=session.session_id,
                environment=session.environment,
                shell=session.shell,
                cols=session.cols,
                rows=session.rows,
            )
        )
        self._pump = asyncio.create_task(self._pump_output(session))

    async def _input(self, message: InputMessage) -> None:
        session = self.session
        if session is None:
            await self.send(ErrorMessage(error=NO_ACTIVE_SESSION))
            return
        logger.debug(f"Input for session {session.session_id}: {len(message.data)} chars")
        try:
            await self.registry.write(session.session_id, message.data.encode("utf-8"))
        except SessionNotFound as e:
            await self.send(ErrorMessage(session_id=session.session_id, error=str(e)))
        except RuntimeAdapterError as e:
            logger.error(f"Input to session {session.session_id} failed: {e}")
            await self.send(
                ErrorMessage(session_id=session.session_id, error=f"Failed to write input: {e}")
            )
        except HandleClosed:
            logger.info(f"Input to ended session {session.session_id}")
            # Unblocks the output pump, which then ends the session
            session.handle.close()

    async def _resize(self, message: ResizeMessage) -> None:
        session = self.session
        if session is None:
            await self.send(ErrorMessage(error=NO_ACTIVE_SESSION))
            return
        try:
            await self.registry.resize(session.session_id, message.cols, message.rows)
        except (SessionNotFound, ValidationError) as e:
            await self.send(ErrorMessage(session_id=session.session_id, error=str(e)))
        except HandleClosed:
            session.handle.close()
        except RuntimeAdapterError as e:
            logger.error(f"Resize of session {session.session_id} failed: {e}")
            await self.send(
                ErrorMessage(session_id=session.session_id, error=f"Failed to resize: {e}")
            )

    async def _ping(self) -> None:
        session = self.session
        if session is not None:
            try:
                self.registry.touch(session.session_id)
            except SessionNotFound:
                pass
        await self.send(Pong(session_id=self.session_id))

    async def _pump_output(self, session: Session) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        sid = session.session_id
        try:
            async for chunk in session.handle.output():
                text = decoder.decode(chunk)
                if text and not await self.send(Output(session_id=sid, data=text)):
                    return
            tail = decoder.decode(b"", final=True)
            if tail:
                await self.send(Output(session_id=sid, data=tail))
        except Exception as e:
            logger.warning(f"Output stream of session {sid} failed: {e}")

        if self.session is not session:
            return
        await self._end_session(session)

    async def _end_session(self, session: Session) -> None:
        """The environment's stream ended: notify, terminate and close."""
        self.session = None
        sid = session.session_id
        reason = session.end_reason or REASON_EXITED
        logger.info(f"Session {sid} ended: {reason}")

        if session.end_reason and sid not in self._notified:
            await self.send(TerminationNotice(session_id=sid, reason=reason))
        await self.send(SessionEnded(session_id=sid, reason=reason))
        self._unregister(session)
        await self.registry.terminate(sid, REASON_EXITED)
        await self.close(CLOSE_NORMAL, reason)

    def _unregister(self, session: Session) -> None:
        if self.connections is None:
            return
        info = self.connections.get(session.session_id)
        if info is not None and info.peer is self:
            self.connections.unregister(session.session_id)

    async def _release_session(self, reason: str) -> None:
        session, pump = self.session, self._pump
        self.session = None
        if session is None:
            return
        self._pump = None
        if pump is not None and pump is not asyncio.current_task():
            pump.cancel()
            await asyncio.gather(pump, return_exceptions=True)
        self._unregister(session)
        await self.registry.terminate(session.session_id, reason)

    async def _teardown(self) -> None:
        await self._release_session(REASON_CLOSED)
        pump = self._pump
        if pump is not None and pump is not asyncio.current_task():
            await asyncio.gather(pump, return_exceptions=True)
        self._pump = None
