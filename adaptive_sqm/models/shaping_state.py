"""Applied shaping state: one row per WAN link."""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Float, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class ShapingStateRecord(Base):
    __tablename__ = "shaping_states"

    wan_link_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("wan_links.id", ondelete="CASCADE"), primary_key=True
    )
    applied_down_mbps: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    applied_up_mbps: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    last_applied_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_adjustment_reason: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    last_deployed_content_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    deployed_path: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
