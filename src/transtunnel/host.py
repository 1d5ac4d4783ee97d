"""Host checks: privilege, external tools, sysctl values, outbound source address."""

from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
from pathlib import Path

logger = logging.getLogger(__name__)

REQUIRED_TOOLS = ("iptables", "iptables-save", "iptables-restore", "ipset", "ip")

_SYSCTL_ROOT = Path("/proc/sys")
_ROUTE_SRC = re.compile(r"\bsrc\s+(\d{1,3}(?:\.\d{1,3}){3})\b")


def is_root() -> bool:
    """Check if we can modify netfilter and routing state."""
    return os.geteuid() == 0


def missing_tools(tools: tuple[str, ...] = REQUIRED_TOOLS) -> list[str]:
    """Return the required executables not found on PATH."""
    return [tool for tool in tools if shutil.which(tool) is None]


def read_sysctl(key: str) -> str | None:
    """Read a sysctl like ``net.ipv4.ip_forward`` from /proc/sys."""
    path = _SYSCTL_ROOT / key.replace(".", "/")
    try:
        return path.read_text().strip()
    except OSError:
        return None


def discover_self_address(anchor: str) -> str | None:
    """Return the source address the kernel would use to reach ``anchor``."""
    try:
        result = subprocess.run(
            ["ip", "-4", "route", "get", anchor],
            capture_output=True,
            text=True,
            check=True,
            timeout=5,
        )
    except (subprocess.CalledProcessError, subprocess.TimeoutExpired, FileNotFoundError) as e:
        logger.warning("Cannot determine outbound source address: %s", e)
        return None

    source = parse_route_source(result.stdout)
    if source is None:
        logger.warning("No source address in route to %s", anchor)
    return source


def parse_route_source(output: str) -> str | None:
    """Extract the ``src`` address from ``ip route get`` output."""
    match = _ROUTE_SRC.search(output)
    return match.group(1) if match else None
