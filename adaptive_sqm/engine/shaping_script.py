"""Shaping script rendering.

A fixed template plus strictly validated parameters. Nothing reaches the
template without passing ``utils.input_validators`` first, and numbers are
formatted with a fixed decimal point.
"""

import hashlib
from dataclasses import dataclass
from string import Template

from ..core.errors import InvalidShapingParameter
from ..utils.input_validators import (
    sanitize_connection_name,
    validate_interface_name,
    validate_rate_mbps,
    validate_remote_path,
)
from .state import WanLinkConfig

BOOT_SCRIPT_PRIORITY = 25

_SCRIPT_TEMPLATE = Template("""\
#!/bin/sh
# adaptive-sqm shaping fragment for $connection
# Re-applied by the gateway boot process; regenerated on every rate change.

IFACE="$iface"
IFB_DEVICE="$ifb"
DOWNLOAD_RATE="${down_kbit}kbit"
UPLOAD_RATE="${up_kbit}kbit"

ip link show "$$IFACE" >/dev/null 2>&1 || { echo "interface $$IFACE missing"; exit 1; }
if ! ip link show "$$IFB_DEVICE" >/dev/null 2>&1; then
    ip link add name "$$IFB_DEVICE" type ifb || exit 1
fi
ip link set dev "$$IFB_DEVICE" up || exit 1

# upload: shape egress on the WAN interface
tc qdisc replace dev "$$IFACE" root cake bandwidth "$$UPLOAD_RATE" $overhead || exit 1

# download: redirect ingress to the IFB device and shape its egress
tc qdisc replace dev "$$IFACE" handle ffff: ingress || exit 1
tc filter replace dev "$$IFACE" parent ffff: protocol all prio 10 u32 match u32 0 0 \\
    action mirred egress redirect dev "$$IFB_DEVICE" || exit 1
tc qdisc replace dev "$$IFB_DEVICE" root cake bandwidth "$$DOWNLOAD_RATE" $overhead ingress || exit 1

echo "adaptive-sqm: $$IFACE down=$$DOWNLOAD_RATE up=$$UPLOAD_RATE"
""")

_OVERHEAD_BY_PROFILE = {
    "docsis": "docsis",
    "fiber": "ethernet",
    "wireless": "ethernet",
    "starlink": "ethernet",
    "cellular": "ethernet",
}


@dataclass(frozen=True)
class RenderedScript:
    content: str
    content_hash: str
    remote_path: str


def format_rate_kbit(mbps: float) -> str:
    """Mbps to an integer kbit string: locale independent, no float artefacts."""
    return str(int(round(mbps * 1000)))


def boot_script_path(boot_dir: str, link: WanLinkConfig) -> str:
    slug = sanitize_connection_name(link.name)
    return f"{boot_dir.rstrip('/')}/{BOOT_SCRIPT_PRIORITY}-adaptive-sqm-{slug}.sh"


def content_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def render_shaping_script(link: WanLinkConfig, down_mbps: float, up_mbps: float, boot_dir: str) -> RenderedScript:
    """Render the shaping fragment for one link and its target path.

    Raises InvalidShapingParameter if any interpolated value is unsafe.
    """
    try:
        iface = validate_interface_name(link.interface)
        ifb = validate_interface_name(link.ifb_device)
        down = validate_rate_mbps(down_mbps, "download rate")
        up = validate_rate_mbps(up_mbps, "upload rate")
        path = validate_remote_path(boot_script_path(boot_dir, link))
    except ValueError as e:
        raise InvalidShapingParameter(str(e)) from e

    content = _SCRIPT_TEMPLATE.substitute(
        connection=sanitize_connection_name(link.name),
        iface=iface,
        ifb=ifb,
        down_kbit=format_rate_kbit(down),
        up_kbit=format_rate_kbit(up),
        overhead=_OVERHEAD_BY_PROFILE[link.profile.value],
    )
    return RenderedScript(content=content, content_hash=content_hash(content), remote_path=path)
