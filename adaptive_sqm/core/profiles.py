"""Connection profile presets.

A profile is a closed set of tagged variants: the enum names the link type
and ``PROFILE_PRESETS`` maps each one to its constant tuning record.
"""

from dataclasses import asdict, dataclass
from enum import Enum


class ConnectionProfile(str, Enum):
    DOCSIS = "docsis"
    FIBER = "fiber"
    WIRELESS = "wireless"
    STARLINK = "starlink"
    CELLULAR = "cellular"


class Direction(str, Enum):
    DOWNLOAD = "download"
    UPLOAD = "upload"


@dataclass(frozen=True)
class ProfileParameters:
    """Tuning constants for one connection profile.

    safety_margin_factor: fraction of the blended rate actually provisioned.
    variance_threshold: coefficient of variation under which a baseline
        bucket counts as stable for blending.
    backoff_percent: rate cut applied on sustained loaded-latency congestion.
    cooldown_minutes: normal-latency time required before leaving backoff.
    latency_threshold_ms: latency rise over the unloaded baseline that
        counts as congestion.
    """

    safety_margin_factor: float
    variance_threshold: float
    backoff_percent: float
    cooldown_minutes: int
    latency_threshold_ms: float

    def to_dict(self) -> dict:
        return asdict(self)


# Cable upstream contention warrants a wider margin than fiber.
PROFILE_PRESETS: dict[ConnectionProfile, ProfileParameters] = {
    ConnectionProfile.DOCSIS: ProfileParameters(
        safety_margin_factor=0.92,
        variance_threshold=0.10,
        backoff_percent=0.15,
        cooldown_minutes=20,
        latency_threshold_ms=10.0,
    ),
    ConnectionProfile.FIBER: ProfileParameters(
        safety_margin_factor=0.95,
        variance_threshold=0.10,
        backoff_percent=0.10,
        cooldown_minutes=15,
        latency_threshold_ms=5.0,
    ),
    ConnectionProfile.WIRELESS: ProfileParameters(
        safety_margin_factor=0.90,
        variance_threshold=0.15,
        backoff_percent=0.15,
        cooldown_minutes=20,
        latency_threshold_ms=15.0,
    ),
    ConnectionProfile.STARLINK: ProfileParameters(
        safety_margin_factor=0.90,
        variance_threshold=0.20,
        backoff_percent=0.20,
        cooldown_minutes=30,
        latency_threshold_ms=25.0,
    ),
    ConnectionProfile.CELLULAR: ProfileParameters(
        safety_margin_factor=0.90,
        variance_threshold=0.20,
        backoff_percent=0.20,
        cooldown_minutes=30,
        latency_threshold_ms=30.0,
    ),
}


def get_profile_parameters(profile: ConnectionProfile | str) -> ProfileParameters:
    """Resolve a profile (enum or its string value) to its parameters."""
    return PROFILE_PRESETS[ConnectionProfile(profile)]
