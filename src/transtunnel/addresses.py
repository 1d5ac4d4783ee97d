"""Address set builder — turns IP-list files and computed addresses into named sets.

Sources for each set:
1. User IP-list files (five categories), concatenated, comments and blanks dropped
2. A fixed table of reserved/special IPv4 ranges (dst_special only)
3. Literal server addresses and the host's outbound source address (dst_special only)
"""

from __future__ import annotations

import enum
import ipaddress
import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from transtunnel.config import SET_PREFIX
from transtunnel.errors import InputError
from transtunnel.policy.models import Policy

logger = logging.getLogger(__name__)

_PATH_SEPARATORS = re.compile(r"[,\s]+")
_IPV4_LITERAL = re.compile(r"(?<![\d.])(?:\d{1,3}\.){3}\d{1,3}(?![\d.])")

# ---------------------------------------------------------------------------
# Reserved and special-purpose IPv4 ranges. Traffic to these never enters
# the tunnel.
# ---------------------------------------------------------------------------

RESERVED_RANGES: tuple[str, ...] = (
    "0.0.0.0/8",
    "10.0.0.0/8",
    "100.64.0.0/10",
    "127.0.0.0/8",
    "169.254.0.0/16",
    "172.16.0.0/12",
    "192.0.0.0/24",
    "192.0.2.0/24",
    "192.31.196.0/24",
    "192.52.193.0/24",
    "192.88.99.0/24",
    "192.168.0.0/16",
    "192.175.48.0/24",
    "198.18.0.0/15",
    "198.51.100.0/24",
    "203.0.113.0/24",
    "224.0.0.0/4",
    "240.0.0.0/4",
    "255.255.255.255",
)


class SetKey(enum.Enum):
    """The six membership sets consulted by the decision chain."""

    SRC_DIRECT = "src_direct"
    SRC_PROXY = "src_proxy"
    SRC_NORMAL = "src_normal"
    DST_DIRECT = "dst_direct"
    DST_PROXY = "dst_proxy"
    DST_SPECIAL = "dst_special"

    @property
    def set_name(self) -> str:
        return f"{SET_PREFIX}{self.value}"


@dataclass(frozen=True)
class AddressSet:
    """A named collection of IPv4 addresses and CIDRs."""

    name: str
    entries: tuple[str, ...] = ()
    set_type: str = "hash:net"

    def contains(self, ip: str) -> bool:
        """Membership test. Entries that do not parse are never matched."""
        try:
            addr = ipaddress.IPv4Address(ip)
        except (ipaddress.AddressValueError, ValueError):
            return False
        for entry in self.entries:
            try:
                if addr in ipaddress.IPv4Network(entry, strict=False):
                    return True
            except (ipaddress.AddressValueError, ipaddress.NetmaskValueError, ValueError):
                continue
        return False


def split_paths(values: Iterable[str]) -> list[str]:
    """Split comma/space separated path lists into individual paths."""
    paths: list[str] = []
    for value in values:
        paths.extend(p for p in _PATH_SEPARATORS.split(value) if p)
    return paths


def read_list_file(path: str) -> list[str]:
    """Read one IP-list file. Raises InputError if it cannot be read."""
    try:
        text = Path(path).read_text(encoding="utf-8", errors="ignore")
    except OSError as e:
        raise InputError(path, e.strerror or str(e)) from e

    entries = []
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        entries.append(stripped)
    return entries


def load_entries(values: Iterable[str]) -> tuple[str, ...]:
    """Concatenate every referenced file, skipping unreadable ones with a warning."""
    seen: dict[str, None] = {}
    for path in split_paths(values):
        try:
            lines = read_list_file(path)
        except InputError as e:
            logger.warning("Skipping IP list: %s", e)
            continue
        logger.debug("Loaded %d entries from %s", len(lines), path)
        for line in lines:
            seen.setdefault(line, None)
    return tuple(seen)


def server_addresses(servers: Iterable[str]) -> list[str]:
    """Extract literal IPv4 addresses from the server arguments."""
    found: list[str] = []
    for server in servers:
        for candidate in _IPV4_LITERAL.findall(server):
            try:
                ipaddress.IPv4Address(candidate)
            except ValueError:
                continue
            found.append(candidate)
    return found


def build_sets(
    policy: Policy,
    self_address: str | None = None,
) -> dict[SetKey, AddressSet]:
    """Build all six address sets for a policy. Pure apart from file reads."""
    lists = policy.lists
    sources = {
        SetKey.SRC_DIRECT: lists.src_direct,
        SetKey.SRC_PROXY: lists.src_proxy,
        SetKey.SRC_NORMAL: lists.src_normal,
        SetKey.DST_DIRECT: lists.dst_direct,
        SetKey.DST_PROXY: lists.dst_proxy,
    }

    sets: dict[SetKey, AddressSet] = {}
    for key, values in sources.items():
        sets[key] = AddressSet(name=key.set_name, entries=load_entries(values))

    special: dict[str, None] = dict.fromkeys(RESERVED_RANGES)
    for addr in server_addresses(policy.servers):
        special.setdefault(addr, None)
    if self_address:
        special.setdefault(self_address, None)
    sets[SetKey.DST_SPECIAL] = AddressSet(
        name=SetKey.DST_SPECIAL.set_name,
        entries=tuple(special),
    )

    for key in SetKey:
        logger.debug("Set %s: %d entries", sets[key].name, len(sets[key].entries))
    return sets
