"""Baseline Store: learns per hour-of-week throughput using Welford's algorithm.

Keeps 168 buckets (day_of_week x hour_of_day) per WAN link per direction.
Buckets are online aggregates: each sample updates count, mean and the sum
of squared deviations in place, so raw history is never needed to rebuild
them.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from ..core.profiles import Direction
from ..utils.logging import get_logger

logger = get_logger("engine.baseline_store")

BUCKETS_PER_WEEK = 7 * 24


class _WelfordState:
    """Running mean/std via Welford's online algorithm."""

    __slots__ = ("count", "mean", "m2", "min_val", "max_val", "last_updated")

    def __init__(self, count=0, mean=0.0, m2=0.0, min_val=float("inf"), max_val=float("-inf"), last_updated=None):
        self.count = count
        self.mean = mean
        self.m2 = m2
        self.min_val = min_val
        self.max_val = max_val
        self.last_updated = last_updated

    def update(self, value: float, at: datetime | None = None) -> None:
        self.count += 1
        delta = value - self.mean
        self.mean += delta / self.count
        delta2 = value - self.mean
        self.m2 += delta * delta2
        self.min_val = min(self.min_val, value)
        self.max_val = max(self.max_val, value)
        self.last_updated = at

    def merged(self, other: "_WelfordState") -> "_WelfordState":
        """Combine two states (Chan et al. parallel variance)."""
        if other.count == 0:
            return _WelfordState(self.count, self.mean, self.m2, self.min_val, self.max_val, self.last_updated)
        if self.count == 0:
            return _WelfordState(other.count, other.mean, other.m2, other.min_val, other.max_val, other.last_updated)
        n = self.count + other.count
        delta = other.mean - self.mean
        return _WelfordState(
            count=n,
            mean=self.mean + delta * other.count / n,
            m2=self.m2 + other.m2 + delta * delta * self.count * other.count / n,
            min_val=min(self.min_val, other.min_val),
            max_val=max(self.max_val, other.max_val),
            last_updated=max(
                (t for t in (self.last_updated, other.last_updated) if t is not None), default=None
            ),
        )

    @property
    def std(self) -> float:
        if self.count < 2:
            return 0.0
        return math.sqrt(self.m2 / (self.count - 1))


@dataclass(frozen=True)
class BaselineEstimate:
    """A baseline lookup result.

    level is "bucket" for the exact hour-of-week slot, "hour" for the same
    hour across all days and "global" for the link-wide mean; anything but
    "bucket" is reduced confidence.
    """

    mean: float
    stddev: float
    sample_count: int
    level: str

    @property
    def reduced_confidence(self) -> bool:
        return self.level != "bucket"

    @property
    def coefficient_of_variation(self) -> float:
        if self.mean <= 0:
            return float("inf")
        return self.stddev / self.mean


class BaselineStore:
    """Hour-of-week throughput statistics for every managed WAN link."""

    def __init__(
        self,
        min_bucket_samples: int = 3,
        single_sample_cv: float = 0.15,
        tz: str = "UTC",
        db_session_factory=None,
    ):
        self._min_bucket_samples = min_bucket_samples
        self._single_sample_cv = single_sample_cv
        self._tz = ZoneInfo(tz)
        self._db_session_factory = db_session_factory
        # Key: (link_id, direction) -> {(day_of_week, hour_of_day): _WelfordState}
        self._buckets: dict[tuple[int, str], dict[tuple[int, int], _WelfordState]] = {}

    def set_db_session_factory(self, factory) -> None:
        self._db_session_factory = factory

    def bucket_for(self, timestamp: datetime) -> tuple[int, int]:
        """Map a timestamp to (day_of_week, hour_of_day) on the baseline wall clock."""
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        local = timestamp.astimezone(self._tz)
        return local.weekday(), local.hour

    def _grid(self, link_id: int, direction: Direction) -> dict[tuple[int, int], _WelfordState]:
        return self._buckets.setdefault((link_id, Direction(direction).value), {})

    # --- Updates ---

    async def record_sample(
        self,
        link_id: int,
        timestamp: datetime,
        down_mbps: float,
        up_mbps: float,
    ) -> tuple[int, int]:
        """Fold one successful speed test into its hour-of-week bucket."""
        for name, value in (("down_mbps", down_mbps), ("up_mbps", up_mbps)):
            if value is None or not math.isfinite(value) or value < 0:
                raise ValueError(f"{name} must be a finite non-negative number, got {value!r}")

        key = self.bucket_for(timestamp)
        for direction, value in ((Direction.DOWNLOAD, down_mbps), (Direction.UPLOAD, up_mbps)):
            grid = self._grid(link_id, direction)
            state = grid.get(key)
            if state is None:
                state = grid[key] = _WelfordState()
            state.update(float(value), timestamp)

        await self._persist_buckets(link_id, key)
        return key

    def restore_bucket(
        self,
        link_id: int,
        direction: Direction | str,
        day_of_week: int,
        hour_of_day: int,
        sample_count: int,
        mean: float,
        stddev: float,
        min_val: float | None = None,
        max_val: float | None = None,
        last_updated: datetime | None = None,
    ) -> None:
        """Rebuild a bucket from its stored summary (m2 = std^2 * (n - 1))."""
        if not (0 <= day_of_week <= 6 and 0 <= hour_of_day <= 23):
            raise ValueError(f"invalid bucket ({day_of_week}, {hour_of_day})")
        self._grid(link_id, Direction(direction))[(day_of_week, hour_of_day)] = _WelfordState(
            count=sample_count,
            mean=mean,
            m2=stddev ** 2 * max(sample_count - 1, 0),
            min_val=min_val if min_val is not None else mean,
            max_val=max_val if max_val is not None else mean,
            last_updated=last_updated,
        )

    async def forget(self, link_id: int) -> None:
        for direction in Direction:
            self._buckets.pop((link_id, direction.value), None)
        logger.info("baselines_forgotten", link_id=link_id)

    # --- Queries ---

    def _estimate(self, state: _WelfordState, level: str) -> BaselineEstimate:
        stddev = state.std
        if state.count == 1:
            # A single sample says nothing about spread
            stddev = abs(state.mean) * self._single_sample_cv
        return BaselineEstimate(mean=state.mean, stddev=stddev, sample_count=state.count, level=level)

    def get_baseline(
        self,
        link_id: int,
        timestamp: datetime,
        direction: Direction | str,
    ) -> Optional[BaselineEstimate]:
        """Return the bucket for ``timestamp``, falling back to coarser aggregates.

        Order: exact hour-of-week bucket, the same hour across all days,
        then the link-wide mean. None when the link has no samples at all.
        """
        grid = self._buckets.get((link_id, Direction(direction).value))
        if not grid:
            return None

        dow, hour = self.bucket_for(timestamp)
        state = grid.get((dow, hour))
        if state is not None and state.count >= self._min_bucket_samples:
            return self._estimate(state, "bucket")

        same_hour = _WelfordState()
        for (_, h), s in grid.items():
            if h == hour:
                same_hour = same_hour.merged(s)
        if same_hour.count >= self._min_bucket_samples:
            return self._estimate(same_hour, "hour")

        overall = _WelfordState()
        for s in grid.values():
            overall = overall.merged(s)
        if overall.count == 0:
            return None
        return self._estimate(overall, "global")

    def has_baseline(self, link_id: int) -> bool:
        return any(self._buckets.get((link_id, d.value)) for d in Direction)

    def get_bucket(self, link_id: int, direction: Direction | str, day_of_week: int, hour_of_day: int) -> Optional[dict]:
        state = self._buckets.get((link_id, Direction(direction).value), {}).get((day_of_week, hour_of_day))
        if state is None:
            return None
        return _bucket_dict(day_of_week, hour_of_day, state)

    def get_grid(self, link_id: int, direction: Direction | str) -> list[dict]:
        grid = self._buckets.get((link_id, Direction(direction).value), {})
        return [_bucket_dict(dow, hour, state) for (dow, hour), state in sorted(grid.items())]

    def get_learning_progress(self, link_id: int) -> float:
        """Fraction of the 168 buckets holding at least one sample (worst direction)."""
        filled = min(
            sum(1 for s in self._buckets.get((link_id, d.value), {}).values() if s.count >= 1)
            for d in Direction
        )
        return filled / BUCKETS_PER_WEEK

    def is_learning(self, link_id: int) -> bool:
        return self.get_learning_progress(link_id) < 1.0

    def learning_summary(self, link_id: int) -> dict:
        progress = self.get_learning_progress(link_id)
        return {
            "link_id": link_id,
            "filled_buckets": round(progress * BUCKETS_PER_WEEK),
            "total_buckets": BUCKETS_PER_WEEK,
            "progress": round(progress, 4),
            "mode": "learning" if progress < 1.0 else "active",
            "total_samples": sum(
                s.count for s in self._buckets.get((link_id, Direction.DOWNLOAD.value), {}).values()
            ),
        }

    # --- Persistence ---

    async def initialize(self) -> int:
        """Load stored buckets from the database."""
        if not self._db_session_factory:
            return 0
        from sqlalchemy import select
        from ..models.hourly_baseline import HourlyBaseline

        async with self._db_session_factory() as session:
            rows = (await session.execute(select(HourlyBaseline))).scalars().all()

        for row in rows:
            self.restore_bucket(
                row.wan_link_id,
                row.direction,
                row.day_of_week,
                row.hour_of_day,
                row.sample_count,
                row.mean,
                row.stddev,
                row.min_val,
                row.max_val,
                row.last_updated,
            )
        logger.info("hourly_baselines_loaded", buckets=len(rows))
        return len(rows)

    async def _persist_buckets(self, link_id: int, key: tuple[int, int]) -> None:
        if not self._db_session_factory:
            return
        from sqlalchemy import select
        from ..models.hourly_baseline import HourlyBaseline

        dow, hour = key
        try:
            async with self._db_session_factory() as session:
                for direction in Direction:
                    state = self._buckets.get((link_id, direction.value), {}).get(key)
                    if state is None:
                        continue
                    result = await session.execute(
                        select(HourlyBaseline).where(
                            HourlyBaseline.wan_link_id == link_id,
                            HourlyBaseline.day_of_week == dow,
                            HourlyBaseline.hour_of_day == hour,
                            HourlyBaseline.direction == direction.value,
                        )
                    )
                    row = result.scalar_one_or_none()
                    if row is None:
                        row = HourlyBaseline(
                            wan_link_id=link_id,
                            day_of_week=dow,
                            hour_of_day=hour,
                            direction=direction.value,
                        )
                        session.add(row)
                    row.mean = state.mean
                    row.stddev = state.std
                    row.sample_count = state.count
                    row.min_val = state.min_val if state.min_val != float("inf") else 0.0
                    row.max_val = state.max_val if state.max_val != float("-inf") else 0.0
                    if state.last_updated is not None:
                        row.last_updated = state.last_updated
                await session.commit()
        except Exception as e:
            # In-memory state stays authoritative; the next sample rewrites the row
            logger.error("baseline_persist_failed", link_id=link_id, bucket=key, error=str(e))


def _bucket_dict(dow: int, hour: int, state: _WelfordState) -> dict:
    return {
        "day_of_week": dow,
        "hour_of_day": hour,
        "mean": state.mean,
        "stddev": state.std,
        "min": state.min_val if state.min_val != float("inf") else 0.0,
        "max": state.max_val if state.max_val != float("-inf") else 0.0,
        "sample_count": state.count,
        "last_updated": state.last_updated.isoformat() if state.last_updated else None,
    }
