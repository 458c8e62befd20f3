"""Per-link domain objects shared by the pipeline stages."""

import asyncio
from collections import deque
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from typing import Optional

from ..core.profiles import ConnectionProfile, Direction, ProfileParameters, get_profile_parameters


@dataclass(frozen=True)
class WanLinkConfig:
    id: int
    name: str
    interface: str
    profile: ConnectionProfile
    nominal_download_mbps: float
    nominal_upload_mbps: float
    floor_download_mbps: float
    floor_upload_mbps: float
    enabled: bool = True
    ping_host: str = "1.1.1.1"
    speedtest_server_id: Optional[str] = None
    baseline_latency_ms: Optional[float] = None
    speedtest_morning_hour: int = 6
    speedtest_morning_minute: int = 0
    speedtest_evening_hour: int = 18
    speedtest_evening_minute: int = 30
    created_at: Optional[datetime] = None

    @property
    def params(self) -> ProfileParameters:
        return get_profile_parameters(self.profile)

    @property
    def ifb_device(self) -> str:
        return f"ifb{self.interface}"

    def nominal(self, direction: Direction) -> float:
        if direction == Direction.DOWNLOAD:
            return self.nominal_download_mbps
        return self.nominal_upload_mbps

    def floor(self, direction: Direction) -> float:
        if direction == Direction.DOWNLOAD:
            return self.floor_download_mbps
        return self.floor_upload_mbps

    def to_dict(self) -> dict:
        data = asdict(self)
        data["profile"] = self.profile.value
        data["created_at"] = self.created_at.isoformat() if self.created_at else None
        return data


@dataclass(frozen=True)
class ShapingState:
    """Last shaping rates known to be applied on the gateway.

    Immutable: writers swap in a new instance, readers never see a
    half-written state.
    """

    applied_down_mbps: Optional[float] = None
    applied_up_mbps: Optional[float] = None
    last_applied_at: Optional[datetime] = None
    last_adjustment_reason: Optional[str] = None
    last_deployed_content_hash: Optional[str] = None
    deployed_path: Optional[str] = None

    @property
    def is_applied(self) -> bool:
        return self.applied_down_mbps is not None and self.applied_up_mbps is not None

    def applied(self, direction: Direction) -> Optional[float]:
        if direction == Direction.DOWNLOAD:
            return self.applied_down_mbps
        return self.applied_up_mbps

    def with_changes(self, **changes) -> "ShapingState":
        return replace(self, **changes)

    def to_dict(self) -> dict:
        return {
            "applied_down_mbps": self.applied_down_mbps,
            "applied_up_mbps": self.applied_up_mbps,
            "last_applied_at": self.last_applied_at.isoformat() if self.last_applied_at else None,
            "last_adjustment_reason": self.last_adjustment_reason,
            "last_deployed_content_hash": self.last_deployed_content_hash,
            "deployed_path": self.deployed_path,
        }


@dataclass
class LinkRuntime:
    """Mutable per-link state owned by the registry.

    Constructed when a link is created or loaded and discarded on delete.
    Holds the deployment mutex, the rolling ping window, the backoff state
    machine, failure streaks and the latest observations for status.
    """

    link: WanLinkConfig
    shaping: ShapingState = field(default_factory=ShapingState)
    latency_window_size: int = 12
    deploy_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    latency_window: deque = field(init=False)
    congestion_streak: int = 0
    backoff_active: bool = False
    backoff_started_at: Optional[datetime] = None
    normal_latency_since: Optional[datetime] = None
    failure_streaks: dict[str, int] = field(default_factory=dict)
    drift_streaks: dict[str, int] = field(default_factory=dict)
    last_measurement: Optional[dict] = None
    last_speedtest: Optional[dict] = None
    last_ping: Optional[dict] = None
    last_blend: dict[str, dict] = field(default_factory=dict)
    adjustments: deque = field(default_factory=lambda: deque(maxlen=20))
    has_rate_source: bool = False
    sample_task: Optional[asyncio.Task] = None
    last_sample_completed_at: Optional[datetime] = None

    def __post_init__(self):
        self.latency_window = deque(maxlen=self.latency_window_size)

    @property
    def link_id(self) -> int:
        return self.link.id

    def bump_failure(self, kind: str) -> int:
        self.failure_streaks[kind] = self.failure_streaks.get(kind, 0) + 1
        return self.failure_streaks[kind]

    def clear_failure(self, kind: str) -> int:
        """Reset a failure streak and return how long it was."""
        return self.failure_streaks.pop(kind, 0)

    def record_adjustment(self, at: datetime, down: float, up: float, reason: str) -> None:
        self.adjustments.append({
            "timestamp": at.isoformat(),
            "download_mbps": down,
            "upload_mbps": up,
            "reason": reason,
        })
