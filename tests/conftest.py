import asyncio
import hashlib
import json
from datetime import datetime, timedelta, timezone

import pytest

from webshell.common.catalog import DEFAULT_CATALOG, ResourceLimits
from webshell.common.errors import BuildFailed, HandleClosed, ProfileNotFound, RuntimeAdapterError
from webshell.orchestrator.connections import ConnectionClosed, ConnectionManager
from webshell.orchestrator.registry import SessionRegistry
from webshell.orchestrator.runtime import RunningEnvironment


SAMPLE_STATS = {
    "cpu_stats": {
        "cpu_usage": {"total_usage": 300_000_000},
        "system_cpu_usage": 20_000_000_000,
        "online_cpus": 2,
    },
    "precpu_stats": {
        "cpu_usage": {"total_usage": 200_000_000},
        "system_cpu_usage": 10_000_000_000,
    },
    "memory_stats": {"usage": 64 * 1024 * 1024, "limit": 256 * 1024 * 1024},
    "networks": {
        "eth0": {"rx_bytes": 1000, "tx_bytes": 500},
        "eth1": {"rx_bytes": 24, "tx_bytes": 12},
    },
    "blkio_stats": {
        "io_service_bytes_recursive": [
            {"op": "Read", "value": 4096},
            {"op": "Write", "value": 8192},
            {"op": "Total", "value": 12288},
        ]
    },
    "pids_stats": {"current": 3},
}


class FakeClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeHandle:
    """In-memory execution handle; feed() pushes output, end() ends the stream."""

    def __init__(self, runtime_id: str, name: str, limits: ResourceLimits | None = None):
        self.runtime_id = runtime_id
        self.name = name
        self.limits = limits or ResourceLimits()
        self.written: list[bytes] = []
        self.sizes: list[tuple[int, int]] = []
        self.fail_resize = False
        self._queue: asyncio.Queue[bytes | None] = asyncio.Queue()
        self._ended = False

    @property
    def closed(self) -> bool:
        return self._ended

    def feed(self, data: bytes) -> None:
        self._queue.put_nowait(data)

    def end(self) -> None:
        self._queue.put_nowait(None)

    async def write(self, data: bytes) -> None:
        if self._ended:
            raise HandleClosed(f"Stream for {self.name} has ended")
        self.written.append(data)

    async def resize(self, cols: int, rows: int) -> None:
        if self._ended:
            raise HandleClosed(f"Stream for {self.name} has ended")
        if self.fail_resize:
            raise RuntimeAdapterError("resize failed")
        self.sizes.append((cols, rows))

    async def output(self):
        while True:
            chunk = await self._queue.get()
            if chunk is None:
                break
            yield chunk
        self._ended = True

    def close(self) -> None:
        if not self._ended:
            self._ended = True
            self._queue.put_nowait(None)


class FakeRuntime:
    """RuntimeAdapter that keeps its "containers" in memory."""

    def __init__(self):
        self.handles: dict[str, FakeHandle] = {}
        self.labels: dict[str, tuple[str, str, str]] = {}
        self.foreign: list[RunningEnvironment] = []
        self.destroyed: list[str] = []
        self.materialized: list[dict] = []
        self.materialize_error: Exception | None = None
        self.materialize_delay = 0.0
        self.prompt = b"user@web-shell /workspace $ "
        self.stats_errors: set[str] = set()
        self.available = True
        self.images = {"web-shell-backend:default"}
        self.build_chunks = [{"stream": "Step 1/3 : FROM debian"}, {"stream": "Step 2/3 : RUN apt-get"}]
        self.build_error: str | None = None
        self._counter = 0

    def _next_id(self) -> str:
        return hashlib.sha256(str(self._counter).encode()).hexdigest()

    async def materialize(
        self, profile, limits=None, *, session_id, user_id, shell="bash", cols=80, rows=24
    ):
        if self.materialize_delay:
            await asyncio.sleep(self.materialize_delay)
        if self.materialize_error is not None:
            raise self.materialize_error
        if profile not in DEFAULT_CATALOG:
            raise ProfileNotFound(f"Unknown environment profile: {profile}")
        self._counter += 1
        runtime_id = self._next_id()
        handle = FakeHandle(runtime_id, f"web-shell-session-{session_id}", limits)
        if self.prompt:
            handle.feed(self.prompt)
        self.handles[runtime_id] = handle
        self.labels[runtime_id] = (session_id, user_id, profile)
        self.materialized.append(
            {"profile": profile, "session_id": session_id, "user_id": user_id,
             "shell": shell, "cols": cols, "rows": rows}
        )
        return handle

    async def destroy(self, handle, *, session_id=None):
        handle.close()
        if self.handles.pop(handle.runtime_id, None) is None:
            return False
        self.destroyed.append(handle.runtime_id)
        return True

    async def destroy_container(self, runtime_id):
        for env in list(self.foreign):
            if env.runtime_id.startswith(runtime_id):
                self.foreign.remove(env)
                self.destroyed.append(env.runtime_id)
                return True
        for known_id, handle in list(self.handles.items()):
            if known_id.startswith(runtime_id):
                return await self.destroy(handle)
        return False

    async def list_running(self):
        if not self.available:
            raise RuntimeAdapterError("list containers: connection refused")
        running = []
        for runtime_id, handle in self.handles.items():
            session_id, user_id, profile = self.labels[runtime_id]
            running.append(
                RunningEnvironment(
                    runtime_id=runtime_id,
                    name=handle.name,
                    status="running",
                    session_id=session_id,
                    user_id=user_id,
                    environment=profile,
                )
            )
        return running + list(self.foreign)

    def add_foreign(self, count: int = 1) -> list[RunningEnvironment]:
        """Containers running in the runtime that no session knows about."""
        added = []
        for _ in range(count):
            self._counter += 1
            env = RunningEnvironment(
                runtime_id=self._next_id(),
                name=f"web-shell-session-stale-{self._counter}",
                status="running",
                session_id=f"stale-{self._counter}",
                user_id="someone",
                environment="default",
            )
            self.foreign.append(env)
            added.append(env)
        return added

    async def stats(self, runtime_id):
        if runtime_id in self.stats_errors:
            raise RuntimeAdapterError(f"stats {runtime_id[:12]}: no such container")
        return SAMPLE_STATS

    async def ping(self):
        return self.available

    async def prepare(self):
        return []

    async def info(self):
        return {
            "NCPU": 4,
            "MemTotal": 8 * 1024**3,
            "ContainersRunning": len(self.handles) + len(self.foreign),
            "Containers": len(self.handles) + len(self.foreign),
            "Images": len(self.images),
            "ServerVersion": "24.0.7",
        }

    async def list_images(self):
        return sorted(self.images)

    async def image_status(self, profile):
        image = f"web-shell-backend:{profile}"
        return {"image": image, "exists": image in self.images, "outdated": False}

    async def image_exists(self, profile):
        return f"web-shell-backend:{profile}" in self.images

    async def build_image(self, profile, on_progress=None):
        for chunk in self.build_chunks:
            if on_progress is not None:
                on_progress(chunk)
        if self.build_error is not None:
            raise BuildFailed(self.build_error)
        self.images.add(f"web-shell-backend:{profile}")


class FakeTransport:
    """FrameTransport fed from a queue; frames sent are recorded as dicts."""

    def __init__(self, client_ip: str = "10.0.0.7"):
        self.client_ip = client_ip
        self.inbound: asyncio.Queue[str | None] = asyncio.Queue()
        self.sent: list[dict] = []
        self.closed_with: tuple[int, str] | None = None

    def push(self, frame) -> None:
        self.inbound.put_nowait(frame if isinstance(frame, str) else json.dumps(frame))

    def disconnect(self) -> None:
        self.inbound.put_nowait(None)

    async def receive(self) -> str:
        item = await self.inbound.get()
        if item is None:
            raise ConnectionClosed("client disconnected")
        return item

    async def send(self, frame: dict) -> None:
        if self.closed_with is not None:
            raise ConnectionClosed("closed")
        self.sent.append(frame)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed_with = (code, reason)

    def types(self) -> list[str]:
        return [frame["type"] for frame in self.sent]

    def frames(self, frame_type: str) -> list[dict]:
        return [frame for frame in self.sent if frame["type"] == frame_type]


async def wait_until(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.001)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def registry(runtime, clock):
    return SessionRegistry(runtime, max_sessions_per_user=5, session_max_age=24 * 3600, clock=clock)


@pytest.fixture
def connections():
    return ConnectionManager()


@pytest.fixture
def make_transport():
    return FakeTransport


@pytest.fixture
def make_handle():
    return FakeHandle


@pytest.fixture
def eventually():
    return wait_until


@pytest.fixture
def sample_stats():
    return SAMPLE_STATS
