"""Process-wide wiring of the orchestration components."""

import logging
from dataclasses import dataclass, field

from webshell.common.catalog import DEFAULT_CATALOG, EnvironmentCatalog
from webshell.common.errors import RuntimeAdapterError
from webshell.orchestrator.connections import ConnectionManager
from webshell.orchestrator.monitor import ResourceMonitor
from webshell.orchestrator.protocol import ValidationLimits
from webshell.orchestrator.reaper import Reaper
from webshell.orchestrator.reconciler import OrphanReconciler
from webshell.orchestrator.registry import REASON_SHUTDOWN, SessionRegistry
from webshell.orchestrator.runtime import DockerRuntime, RuntimeAdapter

logger = logging.getLogger(__name__)


@dataclass
class Services:
    runtime: RuntimeAdapter
    catalog: EnvironmentCatalog
    registry: SessionRegistry
    connections: ConnectionManager
    reaper: Reaper
    reconciler: OrphanReconciler
    monitor: ResourceMonitor
    limits: ValidationLimits = field(default_factory=ValidationLimits)

    @classmethod
    def create(
        cls,
        runtime: RuntimeAdapter | None = None,
        catalog: EnvironmentCatalog = DEFAULT_CATALOG,
    ) -> "Services":
        runtime = runtime or DockerRuntime(catalog=catalog)
        limits = ValidationLimits(catalog=catalog)
        registry = SessionRegistry(runtime, limits=limits)
        connections = ConnectionManager()
        return cls(
            runtime=runtime,
            catalog=catalog,
            registry=registry,
            connections=connections,
            reaper=Reaper(registry),
            reconciler=OrphanReconciler(runtime, registry),
            monitor=ResourceMonitor(runtime, registry, connections),
            limits=limits,
        )

    async def start(self) -> None:
        try:
            removed = await self.runtime.prepare()
            if removed:
                logger.info(f"Removed {len(removed)} exited container(s)")
        except RuntimeAdapterError as e:
            logger.error(f"Runtime preparation failed: {e}")

        try:
            report = await self.reconciler.reconcile()
            if report.orphans:
                logger.warning(
                    f"{len(report.orphans)} orphaned container(s) running at startup"
                    + (f", destroyed {len(report.destroyed)}" if report.destroyed else "")
                )
        except RuntimeAdapterError as e:
            logger.error(f"Startup reconcile failed: {e}")

        self.reaper.start()
        self.reconciler.start()
        self.monitor.start()
        logger.info("Session orchestration started")

    async def stop(self) -> None:
        await self.monitor.stop()
        await self.reconciler.stop()
        await self.reaper.stop()
        terminated = await self.registry.terminate_all(REASON_SHUTDOWN)
        logger.info(f"Session orchestration stopped ({terminated} session(s) terminated)")


_services: Services | None = None


def get_services() -> Services:
    """Get or create the process-wide services."""
    global _services
    if _services is None:
        _services = Services.create()
    return _services


def set_services(services: Services | None) -> None:
    global _services
    _services = services
