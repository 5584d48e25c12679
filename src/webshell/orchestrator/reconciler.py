"""Detection and cleanup of containers no session owns.

Orphans appear when the process restarts while containers keep running, or
when a destroy failed. The reconciler only reads the registry.
"""

import logging
from dataclasses import asdict, dataclass

from webshell.common import settings
from webshell.orchestrator.registry import SessionRegistry
from webshell.orchestrator.runtime import RunningEnvironment, RuntimeAdapter
from webshell.orchestrator.workers import PeriodicWorker

logger = logging.getLogger(__name__)

MIN_RUNTIME_ID_LENGTH = 12


@dataclass
class Orphan:
    runtime_id: str
    name: str
    status: str
    session_id: str | None = None
    user_id: str | None = None
    environment: str | None = None
    created_at: str | None = None

    @classmethod
    def from_running(cls, env: RunningEnvironment) -> "Orphan":
        return cls(
            runtime_id=env.runtime_id,
            name=env.name,
            status=env.status,
            session_id=env.session_id,
            user_id=env.user_id,
            environment=env.environment,
            created_at=env.created_at,
        )

    def serialize(self) -> dict:
        return asdict(self)


@dataclass
class ReconcileReport:
    orphans: list[Orphan]
    destroyed: list[str]

    def serialize(self) -> dict:
        return {
            "orphans": [o.serialize() for o in self.orphans],
            "destroyed": self.destroyed,
            "count": len(self.orphans),
        }


class OrphanReconciler(PeriodicWorker):
    name = "reconciler"

    def __init__(
        self,
        runtime: RuntimeAdapter,
        registry: SessionRegistry,
        interval: float = settings.RECONCILE_INTERVAL,
        auto_destroy: bool = settings.RECONCILE_AUTO_DESTROY,
    ):
        super().__init__(interval)
        self.runtime = runtime
        self.registry = registry
        self.auto_destroy = auto_destroy

    def is_owned(self, runtime_id: str) -> bool:
        return any(
            owned == runtime_id or owned.startswith(runtime_id)
            for owned in self.registry.owned_runtime_ids()
        )

    async def find_orphans(self) -> list[Orphan]:
        running = await self.runtime.list_running()
        owned = self.registry.owned_runtime_ids()
        known = self.registry.known_session_ids()
        orphans = [
            Orphan.from_running(env)
            for env in running
            if env.runtime_id not in owned and env.session_id not in known
        ]
        if orphans:
            logger.warning(f"Found {len(orphans)} orphaned container(s)")
        return orphans

    async def destroy_orphan(self, runtime_id: str) -> bool:
        """Destroy a container directly, bypassing the registry.

        Refuses ids that belong to a live session.
        """
        if len(runtime_id) < MIN_RUNTIME_ID_LENGTH:
            raise ValueError(f"Invalid container ID: {runtime_id}")
        if self.is_owned(runtime_id):
            raise ValueError(f"Container {runtime_id} belongs to an active session")
        removed = await self.runtime.destroy_container(runtime_id)
        if removed:
            logger.info(f"Destroyed orphaned container {runtime_id[:12]}")
        return removed

    async def reconcile(self, destroy: bool | None = None) -> ReconcileReport:
        if destroy is None:
            destroy = self.auto_destroy
        orphans = await self.find_orphans()
        destroyed = []
        if destroy:
            for orphan in orphans:
                # The session may have been registered since the listing
                if self.is_owned(orphan.runtime_id):
                    continue
                if await self.runtime.destroy_container(orphan.runtime_id):
                    destroyed.append(orphan.runtime_id)
        return ReconcileReport(orphans=orphans, destroyed=destroyed)

    async def run_once(self) -> None:
        report = await self.reconcile()
        if report.destroyed:
            logger.info(f"Reconciler destroyed {len(report.destroyed)} orphan(s)")
