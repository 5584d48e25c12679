import asyncio
import logging

logger = logging.getLogger(__name__)


class PeriodicWorker:
    """Runs ``run_once`` every ``interval`` seconds in a background task.

    A failing iteration is logged and the loop keeps going.
    """

    name = "worker"

    def __init__(self, interval: float):
        self.interval = interval
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> None:
        raise NotImplementedError

    async def run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.run_once()
            except Exception:
                logger.exception(f"{self.name} iteration failed")

    def start(self) -> None:
        if self.running:
            return
        if self.interval <= 0:
            logger.info(f"{self.name} disabled (interval={self.interval})")
            return
        self._task = asyncio.create_task(self.run(), name=self.name)
        logger.info(f"{self.name} started (every {self.interval}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info(f"{self.name} stopped")
