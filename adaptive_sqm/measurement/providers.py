"""Gateway-side measurement providers.

Both providers run their probe on the gateway through the remote command
channel, bound to the WAN interface, and parse its output. Anything that
does not produce a usable number raises MeasurementUnavailable; a partial
result is never returned.
"""

import json
import math
import re
import shlex
from dataclasses import dataclass
from typing import Optional, Protocol

from ..core.errors import MeasurementUnavailable, RemoteUnreachable
from ..engine.state import WanLinkConfig
from ..transport.remote import RemoteCommandChannel
from ..utils.input_validators import validate_interface_name, validate_ping_host, validate_speedtest_server_id
from ..utils.logging import get_logger

logger = get_logger("measurement.providers")

_PING_SUMMARY_RE = re.compile(r"min/avg/max(?:/(?:mdev|stddev))? = ([\d.]+)/([\d.]+)/([\d.]+)(?:/([\d.]+))?")
_PACKET_LOSS_RE = re.compile(r"([\d.]+)% packet loss")

_COMMAND_RE = re.compile(r"^[a-zA-Z0-9_./-]{1,128}$")


@dataclass(frozen=True)
class SpeedTestResult:
    download_mbps: float
    upload_mbps: float
    latency_ms: Optional[float] = None
    server: Optional[str] = None


@dataclass(frozen=True)
class PingResult:
    latency_ms: float
    jitter_ms: float
    packet_loss_percent: float = 0.0


class SpeedTestProvider(Protocol):
    async def run_speed_test(self, link: WanLinkConfig) -> SpeedTestResult: ...


class PingProvider(Protocol):
    async def ping(self, link: WanLinkConfig) -> PingResult: ...


def _bytes_per_sec_to_mbps(value) -> float:
    return float(value) * 8 / 1_000_000


def parse_speedtest_json(output: str) -> SpeedTestResult:
    """Parse Ookla CLI ``--format=json`` output.

    Bandwidth is reported in bytes per second.
    """
    try:
        data = json.loads(output)
        download = _bytes_per_sec_to_mbps(data["download"]["bandwidth"])
        upload = _bytes_per_sec_to_mbps(data["upload"]["bandwidth"])
    except (ValueError, KeyError, TypeError) as e:
        raise MeasurementUnavailable(f"unparsable speed test output: {e}")

    if not (math.isfinite(download) and math.isfinite(upload)) or download <= 0 or upload <= 0:
        raise MeasurementUnavailable(f"speed test returned no throughput ({download:.2f}/{upload:.2f} Mbps)")

    latency = None
    ping = data.get("ping") or {}
    if isinstance(ping.get("latency"), (int, float)):
        latency = float(ping["latency"])
    server = None
    if isinstance(data.get("server"), dict):
        server = data["server"].get("name")
    return SpeedTestResult(
        download_mbps=round(download, 2),
        upload_mbps=round(upload, 2),
        latency_ms=latency,
        server=server,
    )


def parse_ping_output(output: str) -> PingResult:
    """Parse the iputils / busybox summary line: avg is latency, mdev is jitter.

    busybox prints no mdev; half the min-max spread stands in for it.
    """
    match = _PING_SUMMARY_RE.search(output)
    if not match:
        raise MeasurementUnavailable("no ping replies")
    loss = 0.0
    loss_match = _PACKET_LOSS_RE.search(output)
    if loss_match:
        loss = float(loss_match.group(1))
    low, avg, high = float(match.group(1)), float(match.group(2)), float(match.group(3))
    jitter = float(match.group(4)) if match.group(4) else (high - low) / 2
    return PingResult(latency_ms=avg, jitter_ms=jitter, packet_loss_percent=loss)


class GatewaySpeedTestProvider:
    """Runs the Ookla speedtest CLI on the gateway for one WAN interface."""

    def __init__(self, channel: RemoteCommandChannel, host: str, timeout: float = 120.0, command: str = "speedtest"):
        if not _COMMAND_RE.match(command):
            raise ValueError(f"invalid speed test command: {command!r}")
        self._channel = channel
        self._host = host
        self._timeout = timeout
        self._command = command

    def build_command(self, link: WanLinkConfig) -> str:
        iface = validate_interface_name(link.interface)
        args = [self._command, "--format=json", "--accept-license", "--accept-gdpr", f"--interface={iface}"]
        server_id = validate_speedtest_server_id(link.speedtest_server_id)
        if server_id:
            args.append(f"--server-id={server_id}")
        return " ".join(shlex.quote(a) for a in args)

    async def run_speed_test(self, link: WanLinkConfig) -> SpeedTestResult:
        try:
            result = await self._channel.execute(self._host, self.build_command(link), self._timeout)
        except RemoteUnreachable as e:
            raise MeasurementUnavailable(f"gateway unreachable: {e}") from e
        if not result.success:
            raise MeasurementUnavailable(f"speed test exited with {result.exit_code}: {result.output[:200]}")
        return parse_speedtest_json(result.output)


class GatewayPingProvider:
    """Pings the link's ping host through its WAN interface from the gateway."""

    def __init__(self, channel: RemoteCommandChannel, host: str, count: int = 5, timeout: float = 20.0):
        self._channel = channel
        self._host = host
        self._count = int(count)
        self._timeout = timeout

    def build_command(self, link: WanLinkConfig) -> str:
        iface = validate_interface_name(link.interface)
        target = validate_ping_host(link.ping_host)
        return f"ping -c {self._count} -W 2 -I {shlex.quote(iface)} {shlex.quote(target)}"

    async def ping(self, link: WanLinkConfig) -> PingResult:
        try:
            result = await self._channel.execute(self._host, self.build_command(link), self._timeout)
        except RemoteUnreachable as e:
            raise MeasurementUnavailable(f"gateway unreachable: {e}") from e
        # ping exits 1 on partial loss but still prints a usable summary
        if result.exit_code not in (0, 1):
            raise MeasurementUnavailable(f"ping exited with {result.exit_code}: {result.output[:200]}")
        return parse_ping_output(result.output)
