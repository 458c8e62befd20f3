"""Data retention manager: rollup and cleanup of aged measurement records.

Baselines are online aggregates and never need raw history, so raw samples
only live as long as they are useful for diagnostics.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import SqmConfig
from ..models.alert import Alert
from ..models.samples import PingRollup, PingSample, SpeedSample
from ..utils.logging import get_logger

logger = get_logger("maintenance.retention")


def _hour_start(ts: datetime) -> datetime:
    return ts.replace(minute=0, second=0, microsecond=0)


class RetentionManager:
    """Deletes records older than their configured thresholds."""

    def __init__(
        self,
        db_session_factory: async_sessionmaker[AsyncSession],
        config: SqmConfig,
    ):
        self._session_factory = db_session_factory
        self._config = config

    async def run_cleanup(self, now: Optional[datetime] = None) -> dict:
        """Run rollup and retention across all measurement tables.

        Returns a summary dict with counts per table.
        """
        summary = {}
        now = now or datetime.now(timezone.utc)

        async with self._session_factory() as session:
            summary["ping_rollups_written"], summary["ping_samples"] = await self._rollup_pings(
                session, now - timedelta(days=self._config.ping_rollup_after_days)
            )

            for table, model, column, days in (
                ("speed_samples", SpeedSample, SpeedSample.timestamp, self._config.retention_speed_samples_days),
                ("ping_rollups", PingRollup, PingRollup.hour_start, self._config.retention_ping_rollups_days),
                ("alerts", Alert, Alert.timestamp, self._config.retention_alerts_days),
            ):
                cutoff = now - timedelta(days=days)
                result = await session.execute(delete(model).where(column < cutoff))
                summary[table] = result.rowcount
                logger.info("retention_cleanup", table=table, deleted=result.rowcount, cutoff_days=days)

            # Raw pings that escaped rollup (e.g. rollup disabled by a long window)
            cutoff = now - timedelta(days=self._config.retention_ping_samples_days)
            result = await session.execute(delete(PingSample).where(PingSample.timestamp < cutoff))
            summary["ping_samples"] += result.rowcount

            await session.commit()

        logger.info("retention_cleanup_complete", summary=summary)
        return summary

    async def _rollup_pings(self, session: AsyncSession, cutoff: datetime) -> tuple[int, int]:
        """Fold raw pings older than ``cutoff`` into hourly rows, then delete them.

        Only whole hours are rolled up so an hour is never split across two
        runs. An existing rollup row for the same hour is merged into.
        """
        cutoff = _hour_start(cutoff)
        rows = (
            await session.execute(select(PingSample).where(PingSample.timestamp < cutoff))
        ).scalars().all()
        if not rows:
            return 0, 0

        groups: dict[tuple[int, datetime], list[PingSample]] = {}
        for row in rows:
            groups.setdefault((row.wan_link_id, _hour_start(row.timestamp)), []).append(row)

        written = 0
        for (link_id, hour), samples in groups.items():
            latencies = [s.latency_ms for s in samples]
            count = len(samples)
            avg_latency = sum(latencies) / count
            avg_jitter = sum(s.jitter_ms for s in samples) / count
            congested = sum(1 for s in samples if s.congested)

            existing = (
                await session.execute(
                    select(PingRollup).where(PingRollup.wan_link_id == link_id, PingRollup.hour_start == hour)
                )
            ).scalar_one_or_none()
            if existing is None:
                session.add(PingRollup(
                    wan_link_id=link_id,
                    hour_start=hour,
                    sample_count=count,
                    avg_latency_ms=avg_latency,
                    min_latency_ms=min(latencies),
                    max_latency_ms=max(latencies),
                    avg_jitter_ms=avg_jitter,
                    congested_count=congested,
                ))
            else:
                total = existing.sample_count + count
                existing.avg_latency_ms = (
                    existing.avg_latency_ms * existing.sample_count + avg_latency * count
                ) / total
                existing.avg_jitter_ms = (existing.avg_jitter_ms * existing.sample_count + avg_jitter * count) / total
                existing.min_latency_ms = min(existing.min_latency_ms, min(latencies))
                existing.max_latency_ms = max(existing.max_latency_ms, max(latencies))
                existing.congested_count += congested
                existing.sample_count = total
            written += 1

        result = await session.execute(delete(PingSample).where(PingSample.timestamp < cutoff))
        logger.info("ping_rollup", hours=written, samples=len(rows))
        return written, result.rowcount
