"""
Connectivity oracle: "can we reach the backend right now?", answered cheaply.

Two tiers: a local network-reachability check first, then the backend health
endpoint. The verdict is cached for a short freshness window and the probe is
single-flight, so racing callers on an expired cache share one health check.
"""
import asyncio
import inspect
import logging
import socket
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, List, Optional, Protocol, Union

from ..core.clock import Clock, utcnow
from ..core.config import settings

logger = logging.getLogger(__name__)

ReconnectListener = Callable[[], Union[None, Awaitable[None]]]


@dataclass(frozen=True)
class ConnectivitySnapshot:
    is_online: bool
    checked_at: datetime


def is_stale(snapshot: Optional[ConnectivitySnapshot], now: datetime, window: timedelta) -> bool:
    """A missing snapshot, or one at least ``window`` old, must not be trusted."""
    if snapshot is None:
        return True
    return now - snapshot.checked_at >= window


class NetworkReachability(Protocol):
    async def has_network(self) -> bool: ...


class HealthProbe(Protocol):
    async def health_check(self) -> bool: ...


class HostResolver:
    """Device-level check: can the backend host name be resolved at all?"""

    def __init__(self, host: str, timeout: float = 2.0):
        self.host = host
        self.timeout = timeout

    async def has_network(self) -> bool:
        loop = asyncio.get_running_loop()
        try:
            await asyncio.wait_for(
                loop.getaddrinfo(self.host, None, type=socket.SOCK_STREAM), self.timeout
            )
            return True
        except (OSError, asyncio.TimeoutError) as exc:
            logger.debug("No network route to %s: %s", self.host, exc)
            return False


class ConnectivityOracle:
    def __init__(
        self,
        probe: HealthProbe,
        reachability: NetworkReachability,
        window_seconds: Optional[float] = None,
        clock: Clock = utcnow,
    ):
        self._probe = probe
        self._reachability = reachability
        self._window = timedelta(
            seconds=window_seconds if window_seconds is not None else settings.CONNECTIVITY_CACHE_SECONDS
        )
        self._clock = clock
        self._snapshot: Optional[ConnectivitySnapshot] = None
        self._last_verdict: Optional[bool] = None  # survives invalidate()
        self._lock = asyncio.Lock()
        self._listeners: List[ReconnectListener] = []

    @property
    def snapshot(self) -> Optional[ConnectivitySnapshot]:
        return self._snapshot

    def on_reconnect(self, listener: ReconnectListener) -> None:
        """Call ``listener`` whenever a probe flips the verdict from offline to online."""
        self._listeners.append(listener)

    def invalidate(self) -> None:
        self._snapshot = None

    async def is_online(self) -> bool:
        snapshot = self._snapshot
        if not is_stale(snapshot, self._clock(), self._window):
            return snapshot.is_online

        async with self._lock:
            # Another caller may have refreshed while we waited
            snapshot = self._snapshot
            if not is_stale(snapshot, self._clock(), self._window):
                return snapshot.is_online
            verdict = await self._probe_backend()
            previous = self._last_verdict
            self._last_verdict = verdict
            self._snapshot = ConnectivitySnapshot(is_online=verdict, checked_at=self._clock())

        if verdict and previous is False:
            logger.info("Connectivity restored")
            await self._notify_reconnect()
        return verdict

    async def _probe_backend(self) -> bool:
        if not await self._reachability.has_network():
            return False
        return await self._probe.health_check()

    async def _notify_reconnect(self) -> None:
        for listener in list(self._listeners):
            try:
                result = listener()
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Reconnect listener %r failed", listener)
