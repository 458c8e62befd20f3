"""Raw measurement history and its hourly rollups."""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Float, ForeignKey, Index, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class SpeedSample(Base):
    __tablename__ = "speed_samples"
    __table_args__ = (
        Index("ix_speed_samples_link_timestamp", "wan_link_id", "timestamp"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    wan_link_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("wan_links.id", ondelete="CASCADE"), nullable=False
    )
    timestamp: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), nullable=False)
    download_mbps: Mapped[float] = mapped_column(Float, nullable=False)
    upload_mbps: Mapped[float] = mapped_column(Float, nullable=False)
    latency_ms: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    source: Mapped[str] = mapped_column(String(20), nullable=False, default="scheduled")  # scheduled / manual


class PingSample(Base):
    __tablename__ = "ping_samples"
    __table_args__ = (
        Index("ix_ping_samples_link_timestamp", "wan_link_id", "timestamp"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    wan_link_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("wan_links.id", ondelete="CASCADE"), nullable=False
    )
    timestamp: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), nullable=False)
    latency_ms: Mapped[float] = mapped_column(Float, nullable=False)
    jitter_ms: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    congested: Mapped[bool] = mapped_column(default=False, nullable=False)
    source: Mapped[str] = mapped_column(String(20), nullable=False, default="scheduled")


class PingRollup(Base):
    """One row per link per hour once raw ping samples age out."""

    __tablename__ = "ping_rollups"
    __table_args__ = (
        Index("ix_ping_rollups_link_hour", "wan_link_id", "hour_start", unique=True),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    wan_link_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("wan_links.id", ondelete="CASCADE"), nullable=False
    )
    hour_start: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    sample_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    avg_latency_ms: Mapped[float] = mapped_column(Float, nullable=False)
    min_latency_ms: Mapped[float] = mapped_column(Float, nullable=False)
    max_latency_ms: Mapped[float] = mapped_column(Float, nullable=False)
    avg_jitter_ms: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    congested_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
