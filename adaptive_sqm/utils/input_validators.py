"""Input validation for every value that can reach a gateway shell.

Interface names, hosts, server ids, paths and rates are checked against
strict formats before they are interpolated into a shaping script or a
remote command.
"""

import ipaddress
import math
import re

# Shell metacharacters that must never reach the remote channel
_SHELL_META = re.compile(r'[;|&`$<>{}()\\"\'\s*?!\n\r]')

# Linux IFNAMSIZ is 16 including the terminating NUL
_INTERFACE_RE = re.compile(r'^[a-zA-Z0-9_.-]{1,15}$')

# RFC 1123 hostname
_HOSTNAME_RE = re.compile(r'^[a-zA-Z0-9]([a-zA-Z0-9.-]*[a-zA-Z0-9])?$')

_NUMERIC_RE = re.compile(r'^[0-9]{1,10}$')

_REMOTE_PATH_RE = re.compile(r'^/[a-zA-Z0-9_./-]{1,250}$')


def validate_interface_name(value: str) -> str:
    """Validate a network interface name (alphanumeric, dots/hyphens/underscores, max 15)."""
    value = (value or "").strip()
    if not _INTERFACE_RE.match(value):
        raise ValueError(
            "Invalid interface name: use alphanumeric characters, dots, hyphens or "
            f"underscores, max 15 chars (e.g. eth0, ppp0). Got: {value!r}"
        )
    return value


def validate_ping_host(value: str) -> str:
    """Validate a ping target: an IP address or an RFC 1123 hostname."""
    value = (value or "").strip()
    if not value:
        raise ValueError("Ping host is required")
    try:
        return str(ipaddress.ip_address(value))
    except ValueError:
        pass
    if len(value) > 253:
        raise ValueError("Ping host too long (max 253 characters)")
    if not _HOSTNAME_RE.match(value):
        raise ValueError(
            f"Invalid ping host: use an IP address or hostname (letters, numbers, hyphens, dots). Got: {value!r}"
        )
    for label in value.split("."):
        if len(label) > 63:
            raise ValueError("Ping host segment too long (max 63 characters per segment)")
        if label.startswith("-") or label.endswith("-"):
            raise ValueError("Ping host segments cannot start or end with a hyphen")
    return value


def validate_speedtest_server_id(value: str | None) -> str | None:
    """Validate an optional numeric speed-test server id. Empty means auto-select."""
    if value is None or not str(value).strip():
        return None
    value = str(value).strip()
    if not _NUMERIC_RE.match(value):
        raise ValueError(f"Speedtest server id must be numeric (max 10 digits). Got: {value!r}")
    return value


def validate_rate_mbps(value: float, name: str = "rate") -> float:
    """Validate a shaping rate: finite and strictly positive."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{name} must be a number, got: {value!r}")
    if not math.isfinite(value) or value <= 0:
        raise ValueError(f"{name} must be a finite positive number, got: {value!r}")
    return float(value)


def validate_remote_path(value: str) -> str:
    """Validate an absolute remote path: no metacharacters, traversal or null bytes."""
    if "\x00" in value:
        raise ValueError("Null bytes not allowed in remote path")
    if ".." in value:
        raise ValueError("Path traversal not allowed")
    if _SHELL_META.search(value) or not _REMOTE_PATH_RE.match(value):
        raise ValueError(f"Remote path contains forbidden characters: {value!r}")
    return value


def validate_time_of_day(hour: int, minute: int) -> tuple[int, int]:
    if not 0 <= hour <= 23:
        raise ValueError(f"Hour must be 0-23, got: {hour!r}")
    if not 0 <= minute <= 59:
        raise ValueError(f"Minute must be 0-59, got: {minute!r}")
    return hour, minute


def sanitize_connection_name(value: str | None) -> str:
    """Turn a friendly connection name into a slug safe for filenames and shell variables."""
    if not value or not value.strip():
        return "wan"
    sanitized = re.sub(r'[^a-z0-9-]', '-', value.lower())
    sanitized = re.sub(r'-+', '-', sanitized).strip("-")
    if not sanitized:
        return "wan"
    if len(sanitized) > 32:
        sanitized = sanitized[:32].rstrip("-")
    return sanitized


_USERNAME_RE = re.compile(r'^[a-z_][a-z0-9_-]{0,31}$')


def validate_username(value: str) -> str:
    """Validate a POSIX login name for the gateway channel."""
    if not _USERNAME_RE.match(value or ""):
        raise ValueError(f"Invalid username: lowercase alphanumeric, hyphen or underscore, max 32. Got: {value!r}")
    return value
