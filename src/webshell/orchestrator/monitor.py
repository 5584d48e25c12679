"""Read-only resource utilization of running session environments.

Each poll fetches one stats snapshot per managed container, joins it with the
owning session and connection (if any) and keeps a bounded history of polls.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

from webshell.common import settings
from webshell.orchestrator.connections import ConnectionManager
from webshell.orchestrator.registry import Session, SessionRegistry
from webshell.orchestrator.runtime import RunningEnvironment, RuntimeAdapter
from webshell.orchestrator.workers import PeriodicWorker

logger = logging.getLogger(__name__)


def format_bytes(size: float) -> str:
    if size <= 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB", "TB"]
    index = 0
    while size >= 1024 and index < len(units) - 1:
        size /= 1024
        index += 1
    return f"{round(size, 2):g} {units[index]}"


@dataclass
class EnvironmentStats:
    container_id: str
    container_name: str
    cpu_percent: float = 0.0
    memory_usage: int = 0
    memory_limit: int = 0
    memory_percent: float = 0.0
    network_rx: int = 0
    network_tx: int = 0
    block_read: int = 0
    block_write: int = 0
    pids: int = 0
    orphaned: bool = False
    session_id: str | None = None
    user_id: str | None = None
    environment: str | None = None
    created_at: str | None = None
    connected_at: str | None = None
    client_ip: str | None = None

    def serialize(self) -> dict[str, Any]:
        data = {
            "containerId": self.container_id,
            "containerName": self.container_name,
            "cpuPercent": self.cpu_percent,
            "memoryUsage": self.memory_usage,
            "memoryLimit": self.memory_limit,
            "memoryPercent": self.memory_percent,
            "networkRx": self.network_rx,
            "networkTx": self.network_tx,
            "blockRead": self.block_read,
            "blockWrite": self.block_write,
            "pids": self.pids,
            "orphaned": self.orphaned,
            "sessionId": self.session_id,
            "userId": self.user_id,
            "environment": self.environment,
            "createdAt": self.created_at,
            "connectedAt": self.connected_at,
            "clientIp": self.client_ip,
        }
        return {k: v for k, v in data.items() if v is not None}


def parse_stats(container_id: str, container_name: str, raw: dict[str, Any]) -> EnvironmentStats:
    """Turn a raw Docker stats document into utilization numbers."""
    cpu = raw.get("cpu_stats") or {}
    precpu = raw.get("precpu_stats") or {}
    cpu_delta = (cpu.get("cpu_usage") or {}).get("total_usage", 0) - (
        precpu.get("cpu_usage") or {}
    ).get("total_usage", 0)
    system_delta = cpu.get("system_cpu_usage", 0) - precpu.get("system_cpu_usage", 0)
    online_cpus = cpu.get("online_cpus") or len(
        (cpu.get("cpu_usage") or {}).get("percpu_usage") or [1]
    )
    cpu_percent = 0.0
    if system_delta > 0 and cpu_delta > 0:
        cpu_percent = cpu_delta / system_delta * online_cpus * 100

    memory = raw.get("memory_stats") or {}
    memory_usage = memory.get("usage", 0)
    memory_limit = memory.get("limit", 0)
    memory_percent = memory_usage / memory_limit * 100 if memory_limit > 0 else 0.0

    networks = (raw.get("networks") or {}).values()
    network_rx = sum(net.get("rx_bytes", 0) for net in networks)
    network_tx = sum(net.get("tx_bytes", 0) for net in networks)

    block_read = block_write = 0
    for item in (raw.get("blkio_stats") or {}).get("io_service_bytes_recursive") or []:
        op = str(item.get("op", "")).lower()
        if op == "read":
            block_read += item.get("value", 0)
        elif op == "write":
            block_write += item.get("value", 0)

    return EnvironmentStats(
        container_id=container_id,
        container_name=container_name,
        cpu_percent=round(cpu_percent, 2),
        memory_usage=memory_usage,
        memory_limit=memory_limit,
        memory_percent=round(memory_percent, 2),
        network_rx=network_rx,
        network_tx=network_tx,
        block_read=block_read,
        block_write=block_write,
        pids=(raw.get("pids_stats") or {}).get("current", 0),
    )


@dataclass
class SystemStats:
    timestamp: datetime
    sessions: list[EnvironmentStats] = field(default_factory=list)
    total_environments: int = 0
    host: dict[str, Any] | None = None
    active_threshold: float = settings.ACTIVE_CPU_THRESHOLD

    @property
    def total_memory_usage(self) -> int:
        return sum(s.memory_usage for s in self.sessions)

    @property
    def total_cpu_percent(self) -> float:
        return round(sum(s.cpu_percent for s in self.sessions), 2)

    @property
    def active_sessions(self) -> int:
        return sum(1 for s in self.sessions if s.cpu_percent > self.active_threshold)

    @property
    def idle_sessions(self) -> int:
        return len(self.sessions) - self.active_sessions

    def summary(self) -> dict[str, Any]:
        return {
            "totalSessions": self.total_environments,
            "totalMemoryUsage": self.total_memory_usage,
            "totalCpuPercent": self.total_cpu_percent,
            "activeSessions": self.active_sessions,
            "idleSessions": self.idle_sessions,
            "orphanedSessions": sum(1 for s in self.sessions if s.orphaned),
        }

    def serialize(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "host": self.host,
            "sessions": [s.serialize() for s in self.sessions],
            "summary": self.summary(),
        }


def summary_text(stats: SystemStats) -> str:
    lines = [f"=== Resource Monitor ({stats.timestamp.isoformat()}) ==="]
    if stats.host:
        lines.append(
            f"Host: {stats.host.get('cpus', '?')} CPUs, "
            f"{format_bytes(stats.host.get('memoryTotal', 0))} RAM, "
            f"{stats.host.get('containersRunning', '?')} running containers"
        )
    lines += [
        f"Sessions: {stats.total_environments} total "
        f"({stats.active_sessions} active, {stats.idle_sessions} idle)",
        f"Total Session Resources: {format_bytes(stats.total_memory_usage)} RAM, "
        f"{stats.total_cpu_percent:.1f}% CPU",
    ]
    if stats.sessions:
        lines.append("")
        lines.append("Session Details:")
        for s in stats.sessions:
            orphan = " [orphaned]" if s.orphaned else ""
            lines.append(
                f"  {s.container_name}{orphan}: {s.memory_percent:.1f}% RAM "
                f"({format_bytes(s.memory_usage)}), {s.cpu_percent:.1f}% CPU, {s.pids} PIDs"
            )
    return "\n".join(lines)


class ResourceMonitor(PeriodicWorker):
    name = "resource-monitor"

    def __init__(
        self,
        runtime: RuntimeAdapter,
        registry: SessionRegistry,
        connections: ConnectionManager | None = None,
        interval: float = settings.RESOURCE_POLL_INTERVAL,
        history_size: int = settings.RESOURCE_HISTORY_SIZE,
        active_threshold: float = settings.ACTIVE_CPU_THRESHOLD,
        clock: Callable[[], datetime] | None = None,
    ):
        super().__init__(interval)
        self.runtime = runtime
        self.registry = registry
        self.connections = connections
        self.active_threshold = active_threshold
        self.clock = clock or registry.clock
        self.latest: SystemStats | None = None
        self._history: deque[SystemStats] = deque(maxlen=history_size)

    async def _environment_stats(
        self, env: RunningEnvironment, session: Session | None
    ) -> EnvironmentStats | None:
        try:
            raw = await self.runtime.stats(env.runtime_id)
        except Exception as e:
            logger.debug(f"Failed to get stats for {env.name}: {e}")
            return None

        stats = parse_stats(env.runtime_id, env.name, raw)
        stats.created_at = env.created_at
        if session is None:
            stats.orphaned = env.session_id not in self.registry.known_session_ids()
            stats.session_id = env.session_id
            stats.user_id = env.user_id
            stats.environment = env.environment
            return stats

        stats.session_id = session.session_id
        stats.user_id = session.user_id
        stats.environment = session.environment
        stats.created_at = session.created_at.isoformat()
        connection = self.connections.get(session.session_id) if self.connections else None
        if connection is not None:
            stats.connected_at = connection.connected_at.isoformat()
            stats.client_ip = connection.client_ip
        return stats

    async def _host_stats(self) -> dict[str, Any] | None:
        try:
            data = await self.runtime.info()
        except Exception as e:
            logger.debug(f"Failed to get host info: {e}")
            return None
        return {
            "cpus": data.get("NCPU"),
            "memoryTotal": data.get("MemTotal"),
            "containersRunning": data.get("ContainersRunning"),
            "containers": data.get("Containers"),
            "images": data.get("Images"),
            "serverVersion": data.get("ServerVersion"),
        }

    async def poll(self) -> SystemStats:
        running = await self.runtime.list_running()
        by_runtime_id = {s.runtime_id: s for s in self.registry.list_all()}
        results, host = await asyncio.gather(
            asyncio.gather(
                *(self._environment_stats(env, by_runtime_id.get(env.runtime_id)) for env in running)
            ),
            self._host_stats(),
        )
        snapshot = SystemStats(
            timestamp=self.clock(),
            sessions=[r for r in results if r is not None],
            total_environments=len(running),
            host=host,
            active_threshold=self.active_threshold,
        )
        self.latest = snapshot
        self._history.append(snapshot)
        return snapshot

    async def current(self) -> SystemStats:
        """Latest poll, or a fresh one when the background poll is not running."""
        if self.latest is None or not self.running:
            return await self.poll()
        return self.latest

    async def session_stats(self, session_id: str) -> EnvironmentStats | None:
        stats = await self.current()
        return next((s for s in stats.sessions if s.session_id == session_id), None)

    async def history(self, minutes: float = 60) -> list[SystemStats]:
        if not self._history:
            return [await self.poll()]
        cutoff = self.clock() - timedelta(minutes=minutes)
        return [s for s in self._history if s.timestamp >= cutoff]

    async def run_once(self) -> None:
        await self.poll()
