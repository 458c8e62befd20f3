"""Hourly baseline: online throughput statistics per hour-of-week bucket."""

from datetime import datetime

from sqlalchemy import DateTime, Float, ForeignKey, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class HourlyBaseline(Base):
    __tablename__ = "hourly_baselines"
    __table_args__ = (
        UniqueConstraint(
            "wan_link_id", "day_of_week", "hour_of_day", "direction", name="uq_hourly_baseline_bucket"
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    wan_link_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("wan_links.id", ondelete="CASCADE"), nullable=False, index=True
    )
    day_of_week: Mapped[int] = mapped_column(Integer, nullable=False)  # 0-6, Monday = 0
    hour_of_day: Mapped[int] = mapped_column(Integer, nullable=False)  # 0-23
    direction: Mapped[str] = mapped_column(String(10), nullable=False)  # download / upload
    mean: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    stddev: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    min_val: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    max_val: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    sample_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_updated: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now(), nullable=False
    )
