"""Adaptive SQM controller: the per-link control loop.

Speed tests flow through the baseline store, blending and decision engines
into the actuator. Ping results feed the congestion detector, which can
short-circuit straight into an emergency backoff. Failures are counted per
link and kind, and surfaced as alerts once they persist.
"""

from datetime import datetime, timedelta
from typing import Optional

from ..config import SqmConfig
from ..core.clock import Clock, SystemClock
from ..core.errors import (
    DeploymentRefused,
    DeploymentRejected,
    InvalidShapingParameter,
    RemoteUnreachable,
)
from ..core.profiles import Direction
from ..measurement.providers import PingResult, SpeedTestResult
from ..utils.logging import get_logger
from .actuator import DeployResult, GatewayActuator
from .baseline_store import BaselineStore
from .blending import BlendingEngine, BlendResult
from .decision import (
    REASON_BACKOFF,
    REASON_BASELINE_ONLY,
    REASON_BLEND,
    REASON_MANUAL,
    REASON_RECONFIGURED,
    REASON_RECOVERY,
    DecisionEngine,
    ShapingDecision,
)
from .registry import WanLinkRegistry
from .state import LinkRuntime

logger = get_logger("engine.controller")

FAILURE_MEASUREMENT = "measurement"
FAILURE_PING = "ping"
FAILURE_DEPLOY = "deploy"


class AdaptiveSqmController:
    def __init__(
        self,
        registry: WanLinkRegistry,
        baseline_store: BaselineStore,
        blending: BlendingEngine,
        decision: DecisionEngine,
        actuator: GatewayActuator,
        alert_manager=None,
        config: Optional[SqmConfig] = None,
        clock: Optional[Clock] = None,
    ):
        self.registry = registry
        self.baseline_store = baseline_store
        self.blending = blending
        self.decision = decision
        self.actuator = actuator
        self._alert_manager = alert_manager
        self._config = config or SqmConfig()
        self.clock = clock or SystemClock()
        self._sampler = None
        self._latency_monitor = None

    def set_alert_manager(self, manager) -> None:
        self._alert_manager = manager

    def set_modules(self, sampler=None, latency_monitor=None) -> None:
        """Attach the background modules that run each link's schedules."""
        if sampler is not None:
            self._sampler = sampler
        if latency_monitor is not None:
            self._latency_monitor = latency_monitor

    # --- Link lifecycle ---

    def activate_link(self, link_id: int) -> None:
        runtime = self.registry.get(link_id)
        if not runtime.link.enabled:
            self.deactivate_link(link_id)
            return
        if self.baseline_store.has_baseline(link_id):
            runtime.has_rate_source = True
        if self._sampler is not None and self._sampler.running:
            self._sampler.attach(link_id)
        if self._latency_monitor is not None and self._latency_monitor.running:
            self._latency_monitor.attach(link_id)

    def deactivate_link(self, link_id: int) -> None:
        if self._sampler is not None:
            self._sampler.detach(link_id)
        if self._latency_monitor is not None:
            self._latency_monitor.detach(link_id)

    async def teardown_link(self, link_id: int) -> None:
        """Registry teardown hook: stop schedules, remove the boot script and drop learned state."""
        self.deactivate_link(link_id)
        runtime = self.registry.get(link_id)
        try:
            await self.actuator.remove(link_id)
        except (RemoteUnreachable, DeploymentRejected, InvalidShapingParameter) as e:
            logger.error("boot_script_remove_failed", link_id=link_id, error=str(e))
            await self._alert(
                "high",
                "Boot script not removed",
                f"{runtime.link.name}: the shaping script could not be removed from the gateway ({e}); "
                "it will be re-applied at the next reboot until deleted by hand.",
                runtime,
                {"path": runtime.shaping.deployed_path, "error": str(e)},
            )
        await self.baseline_store.forget(link_id)

    async def reconcile_link(self, link_id: int) -> Optional[DeployResult]:
        """Bring the deployed fragment in line with an edited link definition.

        Applied rates are clamped into the new [floor, nominal] range and
        re-rendered; an unchanged fragment is a no-op on the content hash.
        A renamed link moves to its new boot script and the old one is removed.
        """
        runtime = self.registry.get(link_id)
        shaping = runtime.shaping
        if not shaping.is_applied:
            return None
        link = runtime.link
        decision = ShapingDecision(
            down_mbps=self.decision.clamp(shaping.applied_down_mbps, link, Direction.DOWNLOAD),
            up_mbps=self.decision.clamp(shaping.applied_up_mbps, link, Direction.UPLOAD),
            apply=True,
            reason=REASON_RECONFIGURED,
        )
        if (decision.down_mbps, decision.up_mbps) != (shaping.applied_down_mbps, shaping.applied_up_mbps):
            logger.info("applied_rates_clamped", link_id=link_id, down_mbps=decision.down_mbps,
                        up_mbps=decision.up_mbps)
        return await self._deploy(runtime, decision)

    # --- Speed tests ---

    async def on_speed_test(
        self,
        link_id: int,
        result: SpeedTestResult,
        at: Optional[datetime] = None,
        source: str = "scheduled",
    ) -> Optional[ShapingDecision]:
        """Handle a successful speed test.

        The blend uses the baseline as it stood before this sample, then the
        sample is folded into its bucket.
        """
        runtime = self.registry.get(link_id)
        now = at or self.clock.now()
        self._clear_failure(runtime, FAILURE_MEASUREMENT)
        runtime.has_rate_source = True

        blend_down = self.blending.compute_effective_rate(
            link_id, now, result.download_mbps, Direction.DOWNLOAD, runtime.link.params.variance_threshold
        )
        blend_up = self.blending.compute_effective_rate(
            link_id, now, result.upload_mbps, Direction.UPLOAD, runtime.link.params.variance_threshold
        )
        await self._check_drift(runtime, now, result)
        await self.baseline_store.record_sample(link_id, now, result.download_mbps, result.upload_mbps)

        runtime.last_measurement = {
            "timestamp": now.isoformat(),
            "download_mbps": result.download_mbps,
            "upload_mbps": result.upload_mbps,
            "latency_ms": result.latency_ms,
            "source": source,
        }
        decision = await self._apply_blend(runtime, blend_down, blend_up, REASON_BLEND, now)
        runtime.last_speedtest = {
            "timestamp": now.isoformat(),
            "measured": {"download_mbps": result.download_mbps, "upload_mbps": result.upload_mbps},
            "adjusted": {
                "download_mbps": runtime.shaping.applied_down_mbps,
                "upload_mbps": runtime.shaping.applied_up_mbps,
            },
            "latency_ms": result.latency_ms,
            "source": source,
        }
        return decision

    async def on_measurement_failed(self, link_id: int, error: Exception, at: Optional[datetime] = None):
        """A speed test failed: fall back to the baseline alone, never to zero."""
        runtime = self.registry.get(link_id)
        now = at or self.clock.now()
        streak = runtime.bump_failure(FAILURE_MEASUREMENT)
        logger.warning("speed_test_failed", link_id=link_id, streak=streak, error=str(error))
        if streak == self._config.failure_alert_cycles:
            await self._alert(
                "medium",
                "Speed tests failing",
                f"{runtime.link.name}: {streak} consecutive speed tests failed ({error}).",
                runtime,
                {"streak": streak, "error": str(error)},
            )

        blend_down = self.blending.compute_effective_rate(
            link_id, now, None, Direction.DOWNLOAD, runtime.link.params.variance_threshold
        )
        blend_up = self.blending.compute_effective_rate(
            link_id, now, None, Direction.UPLOAD, runtime.link.params.variance_threshold
        )
        if blend_down is None or blend_up is None:
            logger.info("no_rate_source", link_id=link_id)
            return None
        runtime.has_rate_source = True
        return await self._apply_blend(runtime, blend_down, blend_up, REASON_BASELINE_ONLY, now)

    async def _check_drift(self, runtime: LinkRuntime, now: datetime, result: SpeedTestResult) -> None:
        """Informational alert when measurements keep landing far from the baseline."""
        drifting = []
        for direction, measured in ((Direction.DOWNLOAD, result.download_mbps), (Direction.UPLOAD, result.upload_mbps)):
            estimate = self.baseline_store.get_baseline(runtime.link_id, now, direction)
            key = direction.value
            if (
                estimate is None
                or estimate.sample_count < self._config.min_bucket_samples
                or estimate.stddev <= 0
            ):
                runtime.drift_streaks.pop(key, None)
                continue
            deviation = abs(measured - estimate.mean) / estimate.stddev
            if deviation > self._config.drift_sigma:
                runtime.drift_streaks[key] = runtime.drift_streaks.get(key, 0) + 1
                if runtime.drift_streaks[key] == self._config.drift_cycles:
                    drifting.append((key, measured, estimate.mean, deviation))
            else:
                runtime.drift_streaks.pop(key, None)

        for key, measured, mean, deviation in drifting:
            logger.info("baseline_drift_detected", link_id=runtime.link_id, direction=key,
                        measured=measured, baseline=round(mean, 2))
            await self._alert(
                "info",
                "Possible ISP change",
                f"{runtime.link.name}: {key} measurements have deviated from the learned baseline "
                f"for {self._config.drift_cycles} consecutive tests ({measured:.1f} vs {mean:.1f} Mbps).",
                runtime,
                {"direction": key, "measured": measured, "baseline_mean": mean, "sigma": round(deviation, 2)},
            )

    # --- Latency ---

    async def on_ping(self, link_id: int, result: PingResult, at: Optional[datetime] = None) -> bool:
        """Feed one ping sample into the congestion detector. Returns True when congested."""
        runtime = self.registry.get(link_id)
        now = at or self.clock.now()
        self._clear_failure(runtime, FAILURE_PING)

        observed = list(runtime.latency_window) + [result.latency_ms]
        if runtime.link.baseline_latency_ms is not None:
            observed.append(runtime.link.baseline_latency_ms)
        unloaded = min(observed)
        threshold = runtime.link.params.latency_threshold_ms
        congested = result.latency_ms - unloaded > threshold
        runtime.latency_window.append(result.latency_ms)

        runtime.last_ping = {
            "timestamp": now.isoformat(),
            "latency_ms": result.latency_ms,
            "jitter_ms": result.jitter_ms,
            "baseline_latency_ms": unloaded,
            "congested": congested,
            "rate_down_mbps": runtime.shaping.applied_down_mbps,
            "rate_up_mbps": runtime.shaping.applied_up_mbps,
        }

        if congested:
            runtime.congestion_streak += 1
            runtime.normal_latency_since = None
            logger.info("latency_congestion", link_id=link_id, latency_ms=result.latency_ms,
                        baseline_ms=unloaded, streak=runtime.congestion_streak)
            if runtime.congestion_streak >= self._config.congestion_consecutive_samples:
                runtime.congestion_streak = 0
                await self.emergency_backoff(link_id, now)
        else:
            runtime.congestion_streak = 0
            if runtime.backoff_active:
                if runtime.normal_latency_since is None:
                    runtime.normal_latency_since = now
                cooldown = timedelta(minutes=runtime.link.params.cooldown_minutes)
                if now - runtime.normal_latency_since >= cooldown:
                    await self._recover_from_backoff(runtime, now)
        return congested

    async def on_ping_failed(self, link_id: int, error: Exception) -> None:
        runtime = self.registry.get(link_id)
        streak = runtime.bump_failure(FAILURE_PING)
        logger.warning("ping_failed", link_id=link_id, streak=streak, error=str(error))
        if streak == self._config.failure_alert_cycles:
            await self._alert(
                "medium",
                "Latency probe failing",
                f"{runtime.link.name}: {streak} consecutive ping probes failed ({error}).",
                runtime,
                {"streak": streak, "error": str(error)},
            )

    async def emergency_backoff(self, link_id: int, at: Optional[datetime] = None) -> Optional[ShapingDecision]:
        """Drop the applied rate by the profile's backoff percent, bypassing hysteresis."""
        runtime = self.registry.get(link_id)
        now = at or self.clock.now()
        decision = self.decision.compute_backoff(runtime.link, runtime.shaping)
        if decision is None:
            logger.info("backoff_skipped_nothing_applied", link_id=link_id)
            return None

        logger.warning("emergency_backoff", link_id=link_id, down_mbps=decision.down_mbps,
                       up_mbps=decision.up_mbps, at_floor=not decision.apply)
        if decision.apply and await self._deploy(runtime, decision) is None:
            # Nothing was backed off; the next congested streak tries again
            logger.warning("emergency_backoff_not_applied", link_id=link_id)
            return decision

        runtime.backoff_active = True
        runtime.backoff_started_at = now
        runtime.normal_latency_since = None
        return decision

    async def _recover_from_backoff(self, runtime: LinkRuntime, now: datetime) -> None:
        runtime.backoff_active = False
        runtime.backoff_started_at = None
        runtime.normal_latency_since = None

        measurement = runtime.last_measurement or {}
        threshold = runtime.link.params.variance_threshold
        blend_down = self.blending.compute_effective_rate(
            runtime.link_id, now, measurement.get("download_mbps"), Direction.DOWNLOAD, threshold
        )
        blend_up = self.blending.compute_effective_rate(
            runtime.link_id, now, measurement.get("upload_mbps"), Direction.UPLOAD, threshold
        )
        logger.info("backoff_cooldown_complete", link_id=runtime.link_id)
        if blend_down is None or blend_up is None:
            return
        await self._apply_blend(runtime, blend_down, blend_up, REASON_RECOVERY, now, force=True)

    # --- Decisions and deploys ---

    async def _apply_blend(
        self,
        runtime: LinkRuntime,
        blend_down: Optional[BlendResult],
        blend_up: Optional[BlendResult],
        reason: str,
        now: datetime,
        force: bool = False,
    ) -> Optional[ShapingDecision]:
        if blend_down is None or blend_up is None:
            return None
        runtime.last_blend = {"download": blend_down.to_dict(), "upload": blend_up.to_dict(), "at": now.isoformat()}

        ceiling_down = ceiling_up = None
        if runtime.backoff_active and not force:
            # Until the cooldown completes a blend may lower the rate but not raise it
            ceiling_down = runtime.shaping.applied_down_mbps
            ceiling_up = runtime.shaping.applied_up_mbps

        decision = self.decision.decide(
            blend_down.effective_rate,
            blend_up.effective_rate,
            runtime.link,
            runtime.shaping,
            reason=reason,
            force=force,
            ceiling_down=ceiling_down,
            ceiling_up=ceiling_up,
        )
        if decision.apply:
            await self._deploy(runtime, decision)
        return decision

    async def _deploy(self, runtime: LinkRuntime, decision: ShapingDecision, force: bool = False) -> Optional[DeployResult]:
        """Deploy and classify the outcome. Never raises for gateway failures."""
        link_id = runtime.link_id
        try:
            result = await self.actuator.deploy(
                link_id, decision.down_mbps, decision.up_mbps, decision.reason, force=force
            )
        except RemoteUnreachable as e:
            streak = runtime.bump_failure(FAILURE_DEPLOY)
            logger.warning("deploy_cycle_failed", link_id=link_id, streak=streak, error=str(e))
            if streak == self._config.failure_alert_cycles:
                await self._alert(
                    "high",
                    "Gateway unreachable",
                    f"{runtime.link.name}: shaping could not be deployed for {streak} consecutive cycles; "
                    "the last applied rates remain in effect.",
                    runtime,
                    {"streak": streak, "error": str(e)},
                )
            return None
        except DeploymentRejected as e:
            runtime.bump_failure(FAILURE_DEPLOY)
            logger.error("deploy_rejected", link_id=link_id, exit_code=e.exit_code, output=e.output[:500])
            await self._alert(
                "high",
                "Shaping deployment rejected",
                f"{runtime.link.name}: the gateway rejected the shaping configuration ({e}).",
                runtime,
                {"exit_code": e.exit_code, "output": e.output[:500]},
            )
            return None
        except InvalidShapingParameter as e:
            logger.error("deploy_invalid_parameter", link_id=link_id, error=str(e))
            await self._alert("high", "Invalid shaping parameter", f"{runtime.link.name}: {e}", runtime)
            return None
        except DeploymentRefused as e:
            logger.warning("deploy_refused", link_id=link_id, error=str(e))
            return None

        streak = self._clear_failure(runtime, FAILURE_DEPLOY)
        if streak:
            logger.info("deploy_recovered", link_id=link_id, failed_cycles=streak)
        return result

    async def redeploy(self, link_id: int, force: bool = True) -> DeployResult:
        """Push the current shaping state again (manual operation).

        Errors propagate to the caller. With nothing applied yet the rates
        come from the latest blend; with no rate source at all the deploy is
        refused.
        """
        runtime = self.registry.get(link_id)
        link = runtime.link
        if runtime.shaping.is_applied:
            down = self.decision.clamp(runtime.shaping.applied_down_mbps, link, Direction.DOWNLOAD)
            up = self.decision.clamp(runtime.shaping.applied_up_mbps, link, Direction.UPLOAD)
        else:
            now = self.clock.now()
            measurement = runtime.last_measurement or {}
            threshold = link.params.variance_threshold
            blend_down = self.blending.compute_effective_rate(
                link_id, now, measurement.get("download_mbps"), Direction.DOWNLOAD, threshold
            )
            blend_up = self.blending.compute_effective_rate(
                link_id, now, measurement.get("upload_mbps"), Direction.UPLOAD, threshold
            )
            if blend_down is None or blend_up is None:
                raise DeploymentRefused(f"link {link_id} has no measurement or baseline yet")
            runtime.has_rate_source = True
            down = self.decision.candidate_rate(blend_down.effective_rate, link, Direction.DOWNLOAD)
            up = self.decision.candidate_rate(blend_up.effective_rate, link, Direction.UPLOAD)

        result = await self.actuator.deploy(link_id, down, up, REASON_MANUAL, force=force)
        self._clear_failure(runtime, FAILURE_DEPLOY)
        return result

    # --- Status ---

    def status_snapshot(self) -> dict:
        """Live status keyed by interface: ifb<iface> carries download, <iface> upload."""
        now = self.clock.now()
        status = {}
        for runtime in self.registry.runtimes():
            link = runtime.link
            shaping = runtime.shaping
            speedtest = runtime.last_speedtest or {}
            ping = runtime.last_ping or {}
            for direction, iface in ((Direction.DOWNLOAD, link.ifb_device), (Direction.UPLOAD, link.interface)):
                key = "download_mbps" if direction == Direction.DOWNLOAD else "upload_mbps"
                estimate = self.baseline_store.get_baseline(link.id, now, direction)
                status[iface] = {
                    "link_id": link.id,
                    "link_name": link.name,
                    "direction": direction.value,
                    "current_rate": shaping.applied(direction),
                    "baseline_rate": round(estimate.mean, 2) if estimate else None,
                    "last_speedtest": {
                        "measured": (speedtest.get("measured") or {}).get(key),
                        "adjusted": (speedtest.get("adjusted") or {}).get(key),
                    },
                    "last_ping": {
                        "rate": ping.get("rate_down_mbps" if direction == Direction.DOWNLOAD else "rate_up_mbps"),
                        "latency": ping.get("latency_ms"),
                    },
                    "backoff_active": runtime.backoff_active,
                }
        return status

    def link_status(self, link_id: int) -> dict:
        runtime = self.registry.get(link_id)
        return {
            "link": runtime.link.to_dict(),
            "shaping": runtime.shaping.to_dict(),
            "backoff_active": runtime.backoff_active,
            "backoff_started_at": runtime.backoff_started_at.isoformat() if runtime.backoff_started_at else None,
            "congestion_streak": runtime.congestion_streak,
            "failure_streaks": dict(runtime.failure_streaks),
            "last_measurement": runtime.last_measurement,
            "last_ping": runtime.last_ping,
            "last_blend": runtime.last_blend,
            "recent_adjustments": list(reversed(runtime.adjustments)),
            "learning": self.baseline_store.learning_summary(link_id),
        }

    def learning_progress(self) -> list[dict]:
        progress = []
        for runtime in self.registry.runtimes():
            summary = self.baseline_store.learning_summary(runtime.link_id)
            summary["link_name"] = runtime.link.name
            created = runtime.link.created_at
            summary["dense_sampling_until"] = (
                (created + timedelta(days=self._config.learning_days)).isoformat() if created else None
            )
            progress.append(summary)
        return progress

    # --- Helpers ---

    @staticmethod
    def _clear_failure(runtime: LinkRuntime, kind: str) -> int:
        return runtime.clear_failure(kind)

    async def _alert(
        self,
        severity: str,
        title: str,
        description: str,
        runtime: LinkRuntime,
        details: dict | None = None,
    ) -> None:
        if self._alert_manager is None:
            return
        try:
            await self._alert_manager.create_alert(
                severity=severity,
                source="adaptive_sqm",
                title=f"{title}: {runtime.link.name}",
                description=description,
                details=details,
                wan_link_id=runtime.link_id,
            )
        except Exception as e:
            logger.error("alert_dispatch_failed", link_id=runtime.link_id, error=str(e))
