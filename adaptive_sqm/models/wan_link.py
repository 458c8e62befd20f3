"""WAN link configuration model."""

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Float, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class WanLink(Base):
    __tablename__ = "wan_links"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    interface: Mapped[str] = mapped_column(String(15), nullable=False)
    profile: Mapped[str] = mapped_column(String(20), nullable=False)  # docsis, fiber, wireless, starlink, cellular
    nominal_download_mbps: Mapped[float] = mapped_column(Float, nullable=False)
    nominal_upload_mbps: Mapped[float] = mapped_column(Float, nullable=False)
    floor_download_mbps: Mapped[float] = mapped_column(Float, nullable=False)
    floor_upload_mbps: Mapped[float] = mapped_column(Float, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    ping_host: Mapped[str] = mapped_column(String(255), nullable=False, default="1.1.1.1")
    speedtest_server_id: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    baseline_latency_ms: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    speedtest_morning_hour: Mapped[int] = mapped_column(Integer, nullable=False, default=6)
    speedtest_morning_minute: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    speedtest_evening_hour: Mapped[int] = mapped_column(Integer, nullable=False, default=18)
    speedtest_evening_minute: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now(), nullable=False
    )
