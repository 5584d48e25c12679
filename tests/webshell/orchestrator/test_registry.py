import asyncio
import uuid

import pytest

from webshell.common.errors import (
    HandleClosed,
    ProfileNotFound,
    ResourceExhausted,
    SessionLimitExceeded,
    SessionNotFound,
    ValidationError,
)
from webshell.orchestrator.registry import REASON_ADMIN, SessionRegistry, SessionState


@pytest.mark.asyncio
async def test_create_session_registers_one_session_with_one_handle(registry, runtime, clock):
    session = await registry.create_session("alice", cols=100, rows=30, shell="zsh", environment="minimal")

    assert uuid.UUID(session.session_id).version == 4
    assert registry.get(session.session_id) is session
    assert session.state is SessionState.ACTIVE
    assert len(runtime.handles) == 1
    assert session.runtime_id in runtime.handles
    assert (session.cols, session.rows, session.shell, session.environment) == (100, 30, "zsh", "minimal")
    assert session.created_at == session.last_activity == clock.now
    assert (session.expires_at - session.created_at).total_seconds() == 24 * 3600
    assert runtime.materialized[0]["session_id"] == session.session_id


@pytest.mark.asyncio
async def test_session_ids_are_unique(registry):
    registry.max_sessions_per_user = 100
    sessions = [await registry.create_session("alice") for _ in range(50)]
    assert len({s.session_id for s in sessions}) == 50


@pytest.mark.asyncio
async def test_colliding_session_id_is_redrawn(registry, monkeypatch):
    live = await registry.create_session("alice")
    fresh = uuid.uuid4()
    draws = iter([uuid.UUID(live.session_id), fresh])
    monkeypatch.setattr(uuid, "uuid4", lambda: next(draws))

    session = await registry.create_session("alice")

    assert session.session_id == str(fresh)
    assert registry.get(live.session_id) is live


@pytest.mark.asyncio
async def test_session_limit_is_per_user(registry, runtime):
    for _ in range(5):
        await registry.create_session("alice")

    with pytest.raises(SessionLimitExceeded) as exc_info:
        await registry.create_session("alice")
    assert str(exc_info.value) == "Maximum 5 sessions exceeded"
    assert len(registry.list_by_user("alice")) == 5
    assert len(runtime.materialized) == 5

    # Other users are unaffected
    await registry.create_session("bob")


@pytest.mark.asyncio
async def test_concurrent_creates_respect_limit(registry, runtime):
    runtime.materialize_delay = 0.01
    results = await asyncio.gather(
        *(registry.create_session("alice") for _ in range(8)), return_exceptions=True
    )
    created = [r for r in results if not isinstance(r, Exception)]
    rejected = [r for r in results if isinstance(r, SessionLimitExceeded)]
    assert len(created) == 5
    assert len(rejected) == 3
    assert len(runtime.materialized) == 5


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [ResourceExhausted("no space left"), ProfileNotFound("gone")])
async def test_adapter_failure_registers_nothing(registry, runtime, error):
    runtime.materialize_error = error

    with pytest.raises(type(error)):
        await registry.create_session("alice")

    assert registry.list_all() == []
    assert registry.known_session_ids() == set()
    # The failed attempt does not count towards the limit
    runtime.materialize_error = None
    for _ in range(5):
        await registry.create_session("alice")


@pytest.mark.asyncio
async def test_cancelled_requester_tears_down_environment(registry, runtime, eventually):
    runtime.materialize_delay = 0.05
    task = asyncio.create_task(registry.create_session("alice"))
    await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    await eventually(lambda: len(runtime.destroyed) == 1)
    assert registry.list_all() == []
    assert runtime.handles == {}
    assert registry.known_session_ids() == set()


@pytest.mark.asyncio
async def test_write_forwards_and_updates_activity(registry, clock):
    session = await registry.create_session("alice")
    clock.advance(60)

    await registry.write(session.session_id, b"ls\n")

    assert session.handle.written == [b"ls\n"]
    assert session.last_activity == clock.now


@pytest.mark.asyncio
async def test_write_unknown_session(registry):
    with pytest.raises(SessionNotFound):
        await registry.write("missing", b"x")


@pytest.mark.asyncio
async def test_resize_updates_geometry(registry):
    session = await registry.create_session("alice")
    await registry.resize(session.session_id, 132, 43)
    assert session.handle.sizes == [(132, 43)]
    assert (session.cols, session.rows) == (132, 43)


@pytest.mark.asyncio
@pytest.mark.parametrize("cols, rows", [(0, 24), (80, 0), (0, 0)])
async def test_resize_with_zero_is_rejected_and_geometry_unchanged(registry, cols, rows):
    session = await registry.create_session("alice", cols=80, rows=24)
    with pytest.raises(ValidationError):
        await registry.resize(session.session_id, cols, rows)
    assert (session.cols, session.rows) == (80, 24)
    assert session.handle.sizes == []


@pytest.mark.asyncio
async def test_resize_failure_keeps_geometry(registry):
    session = await registry.create_session("alice", cols=80, rows=24)
    session.handle.fail_resize = True
    with pytest.raises(Exception):
        await registry.resize(session.session_id, 100, 50)
    assert (session.cols, session.rows) == (80, 24)


@pytest.mark.asyncio
async def test_touch_never_moves_expiry(registry, clock):
    session = await registry.create_session("alice")
    expires_at = session.expires_at
    clock.advance(600)

    registry.touch(session.session_id)

    assert session.last_activity >= clock.now
    assert session.expires_at == expires_at


@pytest.mark.asyncio
async def test_terminate_is_idempotent(registry, runtime):
    session = await registry.create_session("alice")

    assert await registry.terminate(session.session_id, REASON_ADMIN) is True
    assert await registry.terminate(session.session_id) is False
    assert registry.get(session.session_id) is None
    assert session.state is SessionState.GONE
    assert session.end_reason == REASON_ADMIN
    assert runtime.destroyed == [session.runtime_id]


@pytest.mark.asyncio
async def test_terminate_unknown_session(registry):
    assert await registry.terminate("never-existed") is False


@pytest.mark.asyncio
async def test_terminating_session_rejects_io(registry, runtime):
    session = await registry.create_session("alice")
    gate = asyncio.Event()
    original_destroy = runtime.destroy

    async def slow_destroy(handle, *, session_id=None):
        await gate.wait()
        return await original_destroy(handle, session_id=session_id)

    runtime.destroy = slow_destroy
    task = asyncio.create_task(registry.terminate(session.session_id))
    await asyncio.sleep(0)

    assert session.state is SessionState.TERMINATING
    with pytest.raises(SessionNotFound):
        await registry.write(session.session_id, b"x")
    with pytest.raises(SessionNotFound):
        await registry.resize(session.session_id, 100, 40)

    gate.set()
    assert await task is True


@pytest.mark.asyncio
async def test_terminate_unblocks_stuck_write(registry, runtime):
    session = await registry.create_session("alice")
    handle = session.handle
    shut_down = asyncio.Event()
    original_close = handle.close

    # Like sendall on a full TTY socket: returns only once the socket is shut down
    async def stuck_write(data):
        await shut_down.wait()
        raise HandleClosed(f"Stream for {handle.name} has ended")

    def close():
        shut_down.set()
        original_close()

    handle.write = stuck_write
    handle.close = close
    writer = asyncio.create_task(registry.write(session.session_id, b"x" * 10_000))
    await asyncio.sleep(0)
    assert session.io_lock.locked()

    assert await asyncio.wait_for(registry.terminate(session.session_id), timeout=2) is True
    assert registry.get(session.session_id) is None
    assert session.state is SessionState.GONE
    assert runtime.destroyed == [session.runtime_id]
    with pytest.raises(HandleClosed):
        await writer


@pytest.mark.asyncio
async def test_concurrent_terminate_waits_for_first(registry, runtime):
    session = await registry.create_session("alice")
    first, second = await asyncio.gather(
        registry.terminate(session.session_id), registry.terminate(session.session_id)
    )
    assert (first, second) == (True, False)
    assert registry.get(session.session_id) is None
    assert runtime.destroyed == [session.runtime_id]


@pytest.mark.asyncio
async def test_terminate_survives_destroy_errors(registry, runtime):
    session = await registry.create_session("alice")

    async def broken_destroy(handle, *, session_id=None):
        raise RuntimeError("daemon exploded")

    runtime.destroy = broken_destroy
    assert await registry.terminate(session.session_id) is True
    assert registry.get(session.session_id) is None
    assert session.state is SessionState.GONE


@pytest.mark.asyncio
async def test_snapshots_are_copies(registry):
    await registry.create_session("alice")
    await registry.create_session("bob")

    snapshot = registry.list_all()
    snapshot.clear()

    assert len(registry.list_all()) == 2
    assert [s.user_id for s in registry.list_by_user("bob")] == ["bob"]
    assert registry.count_by_user() == {"alice": 1, "bob": 1}


@pytest.mark.asyncio
async def test_terminate_all(registry, runtime):
    for user in ("alice", "bob", "carol"):
        await registry.create_session(user)
    assert await registry.terminate_all() == 3
    assert registry.list_all() == []
    assert len(runtime.destroyed) == 3


@pytest.mark.asyncio
async def test_serialize(runtime, clock):
    registry = SessionRegistry(runtime, clock=clock)
    session = await registry.create_session("alice")
    data = session.serialize()
    assert data["sessionId"] == session.session_id
    assert data["userId"] == "alice"
    assert data["containerId"] == session.runtime_id
    assert data["state"] == "active"
    assert data["createdAt"] == clock.now.isoformat()
