"""Named collection of per-service clients.

Callers build one ``AsyncResilientClient`` per integration and hand the
registry around explicitly; nothing here is process-global.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Iterator

from .client import AsyncResilientClient
from .models import HealthStatus, Metrics

logger = logging.getLogger(__name__)


class ServiceRegistry:
    def __init__(self) -> None:
        self._clients: dict[str, AsyncResilientClient] = {}
        self._statuses: dict[str, HealthStatus] = {}
        self._snapshots: dict[str, Metrics] = {}
        self._monitor: asyncio.Task[None] | None = None

    def register(self, name: str, client: AsyncResilientClient) -> AsyncResilientClient:
        if name in self._clients:
            raise ValueError(f"Service already registered: {name}")
        self._clients[name] = client
        logger.info("Registered service %r", name)
        return client

    def get(self, name: str) -> AsyncResilientClient:
        try:
            return self._clients[name]
        except KeyError:
            raise KeyError(f"Unknown service: {name}") from None

    def __contains__(self, name: object) -> bool:
        return name in self._clients

    def __iter__(self) -> Iterator[str]:
        return iter(self._clients)

    def __len__(self) -> int:
        return len(self._clients)

    async def health_check_all(self) -> dict[str, HealthStatus]:
        """Probe every service concurrently and remember each result."""
        names = list(self._clients)
        results = await asyncio.gather(*(self._clients[name].health_check() for name in names))
        statuses = dict(zip(names, results))
        self._statuses.update(statuses)
        return statuses

    def status(self, name: str | None = None) -> HealthStatus | dict[str, HealthStatus] | None:
        """Last recorded health for ``name``, or for every service when omitted."""
        if name is None:
            return dict(self._statuses)
        return self._statuses.get(name)

    def last_metrics(self) -> dict[str, Metrics]:
        return dict(self._snapshots)

    @property
    def monitoring(self) -> bool:
        return self._monitor is not None and not self._monitor.done()

    def start_monitoring(self, interval: float = 30.0) -> None:
        """Check health and collect metrics every ``interval`` seconds until stopped."""
        if interval <= 0:
            raise ValueError("interval must be positive")
        if self.monitoring:
            return
        self._monitor = asyncio.get_running_loop().create_task(self._monitor_loop(interval))
        logger.info("Monitoring %d service(s) every %.1fs", len(self._clients), interval)

    async def stop_monitoring(self) -> None:
        if self._monitor is None:
            return
        self._monitor.cancel()
        try:
            await self._monitor
        except asyncio.CancelledError:
            pass
        self._monitor = None

    async def _monitor_loop(self, interval: float) -> None:
        while True:
            statuses = await self.health_check_all()
            self._snapshots.update(self.metrics())
            for name, health in statuses.items():
                if not health.healthy:
                    logger.warning("Service %r is unhealthy: %s", name, health.error)
            await asyncio.sleep(interval)

    def metrics(self) -> dict[str, Metrics]:
        return {name: client.get_metrics() for name, client in self._clients.items()}

    def cancel_all(self) -> int:
        return sum(client.cancel_all() for client in self._clients.values())

    async def aclose(self) -> None:
        await self.stop_monitoring()
        for name, client in list(self._clients.items()):
            await client.aclose()
            logger.info("Closed service %r", name)
        self._clients.clear()
        self._statuses.clear()
        self._snapshots.clear()
