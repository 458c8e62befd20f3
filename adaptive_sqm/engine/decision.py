"""Decision Engine: turns an effective rate into a safe shaping rate.

Applies the profile safety margin, clamps to [floor, nominal], suppresses
noise-level changes with a relative hysteresis band and computes the
emergency backoff rate on sustained latency congestion.
"""

import math
from dataclasses import dataclass
from typing import Optional

from ..core.profiles import Direction
from ..utils.logging import get_logger
from .state import ShapingState, WanLinkConfig

logger = get_logger("engine.decision")

REASON_INITIAL = "initial"
REASON_BLEND = "blended_adjustment"
REASON_BASELINE_ONLY = "baseline_only"
REASON_BACKOFF = "latency_backoff"
REASON_RECOVERY = "backoff_recovered"
REASON_MANUAL = "manual_redeploy"
REASON_RECONFIGURED = "link_reconfigured"


@dataclass(frozen=True)
class RateDecision:
    rate: float
    candidate: float
    changed: bool


@dataclass(frozen=True)
class ShapingDecision:
    down_mbps: float
    up_mbps: float
    apply: bool
    reason: str

    def to_dict(self) -> dict:
        return {
            "down_mbps": self.down_mbps,
            "up_mbps": self.up_mbps,
            "apply": self.apply,
            "reason": self.reason,
        }


class DecisionEngine:
    def __init__(self, hysteresis_min_delta: float = 0.03):
        self._min_delta = hysteresis_min_delta

    @staticmethod
    def clamp(value: float, link: WanLinkConfig, direction: Direction) -> float:
        """Clamp to [floor, nominal]. Non-numbers land on the floor."""
        floor = link.floor(direction)
        nominal = link.nominal(direction)
        if value is None or math.isnan(value):
            return floor
        return min(max(value, floor), nominal)

    def candidate_rate(self, effective_rate: float, link: WanLinkConfig, direction: Direction) -> float:
        if effective_rate is None or not math.isfinite(effective_rate):
            raw = effective_rate
        else:
            raw = round(effective_rate * link.params.safety_margin_factor, 2)
        return self.clamp(raw, link, direction)

    def exceeds_hysteresis(self, candidate: float, previous: Optional[float]) -> bool:
        if previous is None or previous <= 0:
            return True
        return abs(candidate - previous) / previous > self._min_delta

    def compute_shaping_rate(
        self,
        effective_rate: float,
        link: WanLinkConfig,
        previous: ShapingState,
        direction: Direction = Direction.DOWNLOAD,
        ceiling: Optional[float] = None,
    ) -> RateDecision:
        """Shaping rate for one direction.

        ``changed`` is False when the candidate sits inside the hysteresis
        band around the applied rate; ``rate`` then stays at the applied rate.
        """
        candidate = self.candidate_rate(effective_rate, link, direction)
        if ceiling is not None:
            candidate = self.clamp(min(candidate, ceiling), link, direction)
        applied = previous.applied(direction)
        if self.exceeds_hysteresis(candidate, applied):
            return RateDecision(rate=candidate, candidate=candidate, changed=True)
        return RateDecision(rate=applied, candidate=candidate, changed=False)

    def decide(
        self,
        effective_down: float,
        effective_up: float,
        link: WanLinkConfig,
        previous: ShapingState,
        reason: str = REASON_BLEND,
        force: bool = False,
        ceiling_down: Optional[float] = None,
        ceiling_up: Optional[float] = None,
    ) -> ShapingDecision:
        """Combine both directions into one deploy decision.

        A direction that moved less than the hysteresis band keeps its applied
        rate, so noise on one side does not drag the other along. ``force``
        takes both candidates regardless of the band.
        """
        down = self.compute_shaping_rate(effective_down, link, previous, Direction.DOWNLOAD, ceiling_down)
        up = self.compute_shaping_rate(effective_up, link, previous, Direction.UPLOAD, ceiling_up)

        if not previous.is_applied:
            reason = REASON_INITIAL if reason == REASON_BLEND else reason
            return ShapingDecision(down.candidate, up.candidate, True, reason)

        if force:
            changed = down.candidate != previous.applied_down_mbps or up.candidate != previous.applied_up_mbps
            return ShapingDecision(down.candidate, up.candidate, changed or reason == REASON_RECOVERY, reason)

        apply = down.changed or up.changed
        if not apply:
            logger.debug(
                "adjustment_within_hysteresis",
                link_id=link.id,
                candidate_down=down.candidate,
                candidate_up=up.candidate,
            )
        return ShapingDecision(down.rate, up.rate, apply, reason)

    def compute_backoff(self, link: WanLinkConfig, previous: ShapingState) -> Optional[ShapingDecision]:
        """Emergency backoff: applied rate x (1 - backoff_percent), bypassing hysteresis.

        None when nothing has been applied yet.
        """
        if not previous.is_applied:
            return None
        factor = 1.0 - link.params.backoff_percent
        down = self.clamp(round(previous.applied_down_mbps * factor, 2), link, Direction.DOWNLOAD)
        up = self.clamp(round(previous.applied_up_mbps * factor, 2), link, Direction.UPLOAD)
        at_floor = down == previous.applied_down_mbps and up == previous.applied_up_mbps
        return ShapingDecision(down, up, not at_floor, REASON_BACKOFF)
