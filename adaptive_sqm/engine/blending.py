"""Blending Engine: combines the learned baseline with the latest measurement."""

import math
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Optional

from ..core.profiles import Direction
from ..utils.logging import get_logger
from .baseline_store import BaselineStore

logger = get_logger("engine.blending")


@dataclass(frozen=True)
class BlendResult:
    effective_rate: float
    source: str  # blended, measurement_only, baseline_only
    measurement: Optional[float] = None
    baseline_mean: Optional[float] = None
    baseline_level: Optional[str] = None
    coefficient_of_variation: Optional[float] = None
    baseline_weight: float = 0.0
    measurement_weight: float = 0.0

    def to_dict(self) -> dict:
        data = asdict(self)
        cv = data["coefficient_of_variation"]
        if cv is not None and not math.isfinite(cv):
            data["coefficient_of_variation"] = None
        return data


def _usable(value: Optional[float]) -> bool:
    return value is not None and math.isfinite(value) and value > 0


class BlendingEngine:
    """Weights the baseline by how stable it has been.

    A bucket whose coefficient of variation is under the stability threshold
    is a good predictor and gets the stable weight (default 0.8); a volatile
    or reduced-confidence baseline gets the volatile weight (default 0.6)
    and recent data counts for more.
    """

    def __init__(
        self,
        baseline_store: BaselineStore,
        stable_baseline_weight: float = 0.8,
        volatile_baseline_weight: float = 0.6,
        default_variance_threshold: float = 0.10,
    ):
        self._store = baseline_store
        self._stable_weight = stable_baseline_weight
        self._volatile_weight = volatile_baseline_weight
        self._default_threshold = default_variance_threshold

    def weights_for(self, cv: float, reduced_confidence: bool, variance_threshold: float) -> tuple[float, float]:
        """Return (baseline_weight, measurement_weight)."""
        if not reduced_confidence and cv < variance_threshold:
            w = self._stable_weight
        else:
            w = self._volatile_weight
        return w, round(1.0 - w, 6)

    def compute_effective_rate(
        self,
        link_id: int,
        now: datetime,
        latest_measurement: Optional[float],
        direction: Direction | str = Direction.DOWNLOAD,
        variance_threshold: Optional[float] = None,
    ) -> Optional[BlendResult]:
        """Blend the baseline for ``now`` with the latest measurement.

        No baseline: the raw measurement. No measurement: the baseline mean.
        Neither: None, and the caller must not deploy.
        """
        threshold = self._default_threshold if variance_threshold is None else variance_threshold
        measurement = float(latest_measurement) if _usable(latest_measurement) else None
        estimate = self._store.get_baseline(link_id, now, direction)
        if estimate is not None and estimate.mean <= 0:
            estimate = None

        if estimate is None:
            if measurement is None:
                return None
            return BlendResult(
                effective_rate=measurement,
                source="measurement_only",
                measurement=measurement,
                measurement_weight=1.0,
            )

        cv = estimate.coefficient_of_variation
        if measurement is None:
            return BlendResult(
                effective_rate=estimate.mean,
                source="baseline_only",
                baseline_mean=estimate.mean,
                baseline_level=estimate.level,
                coefficient_of_variation=cv,
                baseline_weight=1.0,
            )

        w_baseline, w_measurement = self.weights_for(cv, estimate.reduced_confidence, threshold)
        effective = w_baseline * estimate.mean + w_measurement * measurement
        logger.debug(
            "rate_blended",
            link_id=link_id,
            direction=Direction(direction).value,
            baseline=round(estimate.mean, 2),
            measurement=round(measurement, 2),
            cv=round(cv, 4),
            weight=w_baseline,
            effective=round(effective, 2),
        )
        return BlendResult(
            effective_rate=effective,
            source="blended",
            measurement=measurement,
            baseline_mean=estimate.mean,
            baseline_level=estimate.level,
            coefficient_of_variation=cv,
            baseline_weight=w_baseline,
            measurement_weight=w_measurement,
        )
