"""
Background jobs: periodic reconcile and cache eviction sweeps.
"""
import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

from ..core.config import settings
from ..core.errors import FungiScanError

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Runs the repository's periodic housekeeping while the service is up.

    An interval of 0 disables the corresponding job.
    """

    def __init__(
        self,
        repository,
        reconcile_interval: Optional[float] = None,
        eviction_interval: Optional[float] = None,
    ):
        self.repository = repository
        self.reconcile_interval = (
            reconcile_interval if reconcile_interval is not None else settings.RECONCILE_INTERVAL_SECONDS
        )
        self.eviction_interval = (
            eviction_interval if eviction_interval is not None else settings.EVICTION_INTERVAL_SECONDS
        )
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    def start(self) -> None:
        if self.running:
            return
        if self.reconcile_interval > 0:
            self._tasks.append(asyncio.create_task(
                self._every(self.reconcile_interval, "reconcile", self.repository.reconcile)
            ))
        if self.eviction_interval > 0:
            self._tasks.append(asyncio.create_task(
                self._every(self.eviction_interval, "eviction", self.repository.evict_expired_cache)
            ))

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

    async def _every(self, interval: float, name: str, job: Callable[[], Awaitable]) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await job()
            except FungiScanError as exc:
                # Keep the loop alive; the next tick retries
                logger.error("Scheduled %s failed: %s", name, exc)
            except Exception:
                logger.exception("Scheduled %s crashed", name)
