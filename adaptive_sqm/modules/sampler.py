"""Sampler: schedules speed tests per WAN link.

Dense cadence (every ``dense_interval_minutes``) for the first
``learning_days`` after a link is created, then the two configured times of
day. Manual "test now" requests merge with an in-flight sample or, inside
the debounce window, return the last result instead of running another
test.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from ..core.errors import MeasurementUnavailable
from ..core.scheduler import Scheduler
from ..engine.controller import AdaptiveSqmController
from ..engine.registry import WanLinkRegistry
from ..engine.state import LinkRuntime, WanLinkConfig
from ..measurement.providers import SpeedTestProvider, SpeedTestResult
from .base_module import BaseModule


class Sampler(BaseModule):
    """Speed-test cadence and dispatch for every enabled link.

    Config keys:
        learning_days: length of the dense phase (default 7)
        dense_interval_minutes: dense cadence (default 120)
        measurement_timeout_seconds: hard timeout per speed test (default 120)
        manual_test_debounce_seconds: window for merging manual tests (default 120)
        timezone: wall clock for the twice-daily times (default UTC)
    """

    def __init__(
        self,
        controller: AdaptiveSqmController,
        provider: SpeedTestProvider,
        registry: WanLinkRegistry,
        scheduler: Scheduler,
        config: dict | None = None,
        db_session_factory=None,
    ):
        super().__init__(name="sampler", registry=registry, scheduler=scheduler, config=config)
        self._controller = controller
        self._provider = provider
        self._db_session_factory = db_session_factory
        self._learning_days = self.config.get("learning_days", 7)
        self._dense_interval = self.config.get("dense_interval_minutes", 120) * 60
        self._timeout = self.config.get("measurement_timeout_seconds", 120.0)
        self._debounce = self.config.get("manual_test_debounce_seconds", 120.0)
        self._tz = ZoneInfo(self.config.get("timezone", "UTC"))
        self._completed = 0
        self._failed = 0

    def set_db_session_factory(self, factory) -> None:
        self._db_session_factory = factory

    # --- Cadence ---

    def in_learning_phase(self, link: WanLinkConfig, now: datetime) -> bool:
        if link.created_at is None:
            return True
        return now < link.created_at + timedelta(days=self._learning_days)

    def next_interval(self, link_id: int, now: datetime) -> float:
        link = self.registry.get_link(link_id)
        if self.in_learning_phase(link, now):
            return float(self._dense_interval)
        return self.seconds_until_next_slot(link, now)

    def seconds_until_next_slot(self, link: WanLinkConfig, now: datetime) -> float:
        """Seconds until the next morning/evening test time, strictly after ``now``."""
        now_utc = now.astimezone(timezone.utc)
        local_day = now.astimezone(self._tz).date()
        upcoming = []
        for offset in (0, 1, 2):
            day = local_day + timedelta(days=offset)
            for hour, minute in (
                (link.speedtest_morning_hour, link.speedtest_morning_minute),
                (link.speedtest_evening_hour, link.speedtest_evening_minute),
            ):
                slot = datetime(day.year, day.month, day.day, hour, minute, tzinfo=self._tz).astimezone(timezone.utc)
                if slot > now_utc:
                    upcoming.append(slot)
        return (min(upcoming) - now_utc).total_seconds()

    def run_immediately(self, link_id: int) -> bool:
        # Cold start: nothing to shape with until the first test succeeds
        return not self.registry.get(link_id).has_rate_source

    def sampling_phase(self, link_id: int) -> str:
        link = self.registry.get_link(link_id)
        return "dense" if self.in_learning_phase(link, self.clock.now()) else "sparse"

    # --- Sampling ---

    async def run_job(self, link_id: int) -> None:
        await self.run_sample(link_id)

    async def run_sample(self, link_id: int, manual: bool = False) -> Optional[dict]:
        """Run (or join) a speed test for one link.

        Returns the latest measurement dict, or None when the test failed.
        """
        runtime = self.registry.get(link_id)
        if runtime.sample_task is not None and not runtime.sample_task.done():
            self.logger.info("sample_merged", link_id=link_id, manual=manual)
            return await asyncio.shield(runtime.sample_task)

        now = self.clock.now()
        last = runtime.last_sample_completed_at
        if last is not None and (now - last).total_seconds() < self._debounce:
            self.logger.info("sample_debounced", link_id=link_id, manual=manual)
            return runtime.last_measurement

        task = asyncio.create_task(self._measure(runtime, manual), name=f"sqm:sample:{link_id}")
        runtime.sample_task = task
        return await asyncio.shield(task)

    async def _measure(self, runtime: LinkRuntime, manual: bool) -> Optional[dict]:
        link_id = runtime.link_id
        source = "manual" if manual else "scheduled"
        started = self.clock.now()
        try:
            result = await asyncio.wait_for(self._provider.run_speed_test(runtime.link), timeout=self._timeout)
        except asyncio.TimeoutError:
            error = MeasurementUnavailable(f"speed test timed out after {self._timeout}s")
        except MeasurementUnavailable as e:
            error = e
        else:
            error = None

        self.heartbeat()
        if error is not None:
            self._failed += 1
            await self._controller.on_measurement_failed(link_id, error, at=started)
            return None

        self._completed += 1
        self.logger.info(
            "speed_test_completed",
            link_id=link_id,
            source=source,
            download_mbps=result.download_mbps,
            upload_mbps=result.upload_mbps,
        )
        await self._persist(link_id, started, result, source)
        await self._controller.on_speed_test(link_id, result, at=started, source=source)
        runtime.last_sample_completed_at = self.clock.now()
        return runtime.last_measurement

    async def _persist(self, link_id: int, at: datetime, result: SpeedTestResult, source: str) -> None:
        if not self._db_session_factory:
            return
        from ..models.samples import SpeedSample

        try:
            async with self._db_session_factory() as session:
                session.add(SpeedSample(
                    wan_link_id=link_id,
                    timestamp=at,
                    download_mbps=result.download_mbps,
                    upload_mbps=result.upload_mbps,
                    latency_ms=result.latency_ms,
                    source=source,
                ))
                await session.commit()
        except Exception as e:
            self.logger.error("speed_sample_persist_failed", link_id=link_id, error=str(e))

    async def stop(self) -> None:
        await super().stop()
        for runtime in self.registry.runtimes():
            if runtime.sample_task is not None and not runtime.sample_task.done():
                runtime.sample_task.cancel()

    async def health_check(self) -> dict:
        return {
            "status": self.health_status,
            "details": {
                "attached_links": self.attached_links(),
                "completed": self._completed,
                "failed": self._failed,
                "last_heartbeat": self.last_heartbeat.isoformat() if self.last_heartbeat else None,
            },
        }
