"""SQLAlchemy models package."""

from .base import Base
from .wan_link import WanLink
from .hourly_baseline import HourlyBaseline
from .samples import PingRollup, PingSample, SpeedSample
from .shaping_state import ShapingStateRecord
from .alert import Alert

__all__ = [
    "Base",
    "WanLink",
    "HourlyBaseline",
    "SpeedSample",
    "PingSample",
    "PingRollup",
    "ShapingStateRecord",
    "Alert",
]
