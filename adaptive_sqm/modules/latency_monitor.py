"""Latency Monitor: fixed-cadence ping probe per WAN link.

Runs independently of the Sampler: ping picks up transient congestion far
sooner than a scheduled speed test, and sustained congestion goes straight
to the controller's emergency backoff.
"""

import asyncio
from datetime import datetime

from ..core.errors import MeasurementUnavailable
from ..core.scheduler import Scheduler
from ..engine.controller import AdaptiveSqmController
from ..engine.registry import WanLinkRegistry
from ..measurement.providers import PingProvider, PingResult
from .base_module import BaseModule


class LatencyMonitor(BaseModule):
    def __init__(
        self,
        controller: AdaptiveSqmController,
        provider: PingProvider,
        registry: WanLinkRegistry,
        scheduler: Scheduler,
        config: dict | None = None,
        db_session_factory=None,
    ):
        super().__init__(name="latency", registry=registry, scheduler=scheduler, config=config)
        self._controller = controller
        self._provider = provider
        self._db_session_factory = db_session_factory
        self._interval = float(self.config.get("ping_interval_seconds", 300.0))
        self._timeout = float(self.config.get("ping_timeout_seconds", 30.0))
        self._probes = 0
        self._congested = 0

    def set_db_session_factory(self, factory) -> None:
        self._db_session_factory = factory

    def next_interval(self, link_id: int, now: datetime) -> float:
        return self._interval

    async def run_job(self, link_id: int) -> None:
        await self.probe(link_id)

    async def probe(self, link_id: int) -> bool | None:
        """Ping once. Returns the congestion flag, or None when the probe failed."""
        runtime = self.registry.get(link_id)
        at = self.clock.now()
        try:
            result = await asyncio.wait_for(self._provider.ping(runtime.link), timeout=self._timeout)
        except asyncio.TimeoutError:
            await self._controller.on_ping_failed(link_id, MeasurementUnavailable("ping timed out"))
            return None
        except MeasurementUnavailable as e:
            await self._controller.on_ping_failed(link_id, e)
            return None

        self._probes += 1
        self.heartbeat()
        congested = await self._controller.on_ping(link_id, result, at=at)
        if congested:
            self._congested += 1
        await self._persist(link_id, at, result, congested)
        return congested

    async def _persist(self, link_id: int, at: datetime, result: PingResult, congested: bool) -> None:
        if not self._db_session_factory:
            return
        from ..models.samples import PingSample

        try:
            async with self._db_session_factory() as session:
                session.add(PingSample(
                    wan_link_id=link_id,
                    timestamp=at,
                    latency_ms=result.latency_ms,
                    jitter_ms=result.jitter_ms,
                    congested=congested,
                ))
                await session.commit()
        except Exception as e:
            self.logger.error("ping_sample_persist_failed", link_id=link_id, error=str(e))

    async def health_check(self) -> dict:
        return {
            "status": self.health_status,
            "details": {
                "attached_links": self.attached_links(),
                "interval_seconds": self._interval,
                "probes": self._probes,
                "congested_probes": self._congested,
            },
        }
