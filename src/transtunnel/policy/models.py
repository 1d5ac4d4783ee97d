"""Policy data models — the immutable, resolved configuration threaded through every stage."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field


class SourceDefault(enum.Enum):
    """What happens to a packet whose source is in no source set."""

    PASS_THROUGH = "direct"
    FORWARD_TO_PROXY = "proxy"
    EVALUATE_DESTINATION = "normal"


class DestinationDefault(enum.Enum):
    """What happens to a packet whose destination is in no destination set."""

    PASS_THROUGH = "direct"
    FORWARD_TO_PROXY = "proxy"


@dataclass(frozen=True)
class ListSources:
    """Raw IP-list arguments, one tuple of path lists per category."""

    src_direct: tuple[str, ...] = ()
    src_proxy: tuple[str, ...] = ()
    src_normal: tuple[str, ...] = ()
    dst_direct: tuple[str, ...] = ()
    dst_proxy: tuple[str, ...] = ()


@dataclass(frozen=True)
class Policy:
    """A fully resolved classification policy."""

    tunnel: str = ""
    src_default: SourceDefault = SourceDefault.EVALUATE_DESTINATION
    dst_default: DestinationDefault = DestinationDefault.FORWARD_TO_PROXY
    self_proxy: bool = False
    direct_mark: int | None = None
    extra_match: str | None = None
    interfaces: tuple[str, ...] = ()
    servers: tuple[str, ...] = ()
    lists: ListSources = field(default_factory=ListSources)
    flush_only: bool = False
