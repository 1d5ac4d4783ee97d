"""Global configuration — name prefixes, routing constants, env var overrides."""

from __future__ import annotations

import os
from dataclasses import dataclass

from transtunnel.errors import ValidationError

# Every chain and set this tool creates carries one of these prefixes.
CHAIN_PREFIX = "TRANSTUNNEL_"
SET_PREFIX = "transtunnel_"

RULE_TABLE = "mangle"
UINT32_MAX = 0xFFFFFFFF


def _env_int(name: str, minimum: int = 0) -> int | None:
    raw = os.environ.get(name)
    if not raw:
        return None
    try:
        value = int(raw, 0)
    except ValueError:
        raise ValidationError(f"invalid {name}: {raw!r} is not an integer") from None
    if not minimum <= value <= UINT32_MAX:
        raise ValidationError(
            f"invalid {name}: {raw!r} is outside {minimum}..{UINT32_MAX:#x}"
        )
    return value


@dataclass
class TransTunnelConfig:
    """Host-level constants shared by the compiler and the backends."""

    route_table: int = 233
    fwmark: int = 1
    route_priority: int | None = None
    anchor: str = "1.1.1.1"  # Public address used to discover our outbound source IP

    @classmethod
    def load(cls) -> TransTunnelConfig:
        """Load config from environment variables, falling back to defaults.

        Raises ValidationError for a malformed or out-of-range number.
        """
        config = cls()

        table = _env_int("TRANSTUNNEL_ROUTE_TABLE", minimum=1)
        if table is not None:
            config.route_table = table

        mark = _env_int("TRANSTUNNEL_FWMARK", minimum=1)
        if mark is not None:
            config.fwmark = mark

        priority = _env_int("TRANSTUNNEL_ROUTE_PRIORITY")
        if priority is not None:
            config.route_priority = priority

        anchor = os.environ.get("TRANSTUNNEL_ANCHOR")
        if anchor:
            config.anchor = anchor

        return config
