"""Policy resolver — validates user-facing options and maps tokens to chain defaults."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass

from transtunnel.errors import ValidationError
from transtunnel.policy.models import (
    DestinationDefault,
    ListSources,
    Policy,
    SourceDefault,
)

logger = logging.getLogger(__name__)

_MAX_MARK = 0xFFFFFFFF
_SEPARATORS = re.compile(r"[,\s]+")

_SOURCE_TOKENS: dict[str, SourceDefault] = {
    "direct": SourceDefault.PASS_THROUGH,
    "proxy": SourceDefault.FORWARD_TO_PROXY,
    "normal": SourceDefault.EVALUATE_DESTINATION,
}

_DESTINATION_TOKENS: dict[str, DestinationDefault] = {
    "direct": DestinationDefault.PASS_THROUGH,
    "proxy": DestinationDefault.FORWARD_TO_PROXY,
}


@dataclass
class Options:
    """Unvalidated options as they arrive from the CLI and the options file."""

    tunnel: str | None = None
    src_direct: tuple[str, ...] = ()
    src_proxy: tuple[str, ...] = ()
    src_normal: tuple[str, ...] = ()
    dst_direct: tuple[str, ...] = ()
    dst_proxy: tuple[str, ...] = ()
    src_default: str | None = None
    dst_default: str | None = None
    self_proxy: bool = False
    servers: tuple[str, ...] = ()
    interfaces: tuple[str, ...] = ()
    extra: str | None = None
    mark: str | int | None = None
    flush_only: bool = False


def split_values(values: Iterable[str]) -> tuple[str, ...]:
    """Split comma/space separated values and drop duplicates, keeping order."""
    seen: dict[str, None] = {}
    for value in values:
        for token in _SEPARATORS.split(str(value)):
            if token:
                seen.setdefault(token, None)
    return tuple(seen)


def resolve(options: Options) -> Policy:
    """Validate options and produce an immutable Policy.

    Raises ValidationError for a missing tunnel interface, a missing
    server/mark pair, unknown default tokens or an out-of-range mark.
    The tunnel and server/mark checks are skipped in flush-only mode.
    """
    tunnel = (options.tunnel or "").strip()
    servers = split_values(options.servers)
    mark = _parse_mark(options.mark)

    if not options.flush_only:
        if not tunnel:
            raise ValidationError("a tunnel interface is required (--tunnel)")
        if not servers and mark is None:
            raise ValidationError(
                "at least one of --server or --mark is required to keep the "
                "proxy client's own traffic out of the tunnel"
            )
    if servers and mark is not None:
        logger.warning(
            "Both --server and --mark given; mark %d takes precedence for "
            "locally generated traffic because it is matched later in the chain",
            mark,
        )

    extra = (options.extra or "").strip() or None

    return Policy(
        tunnel=tunnel,
        src_default=_lookup(_SOURCE_TOKENS, options.src_default, "src-default")
        or SourceDefault.EVALUATE_DESTINATION,
        dst_default=_lookup(_DESTINATION_TOKENS, options.dst_default, "dst-default")
        or DestinationDefault.FORWARD_TO_PROXY,
        self_proxy=bool(options.self_proxy),
        direct_mark=mark,
        extra_match=extra,
        interfaces=split_values(options.interfaces),
        servers=servers,
        lists=ListSources(
            src_direct=tuple(options.src_direct),
            src_proxy=tuple(options.src_proxy),
            src_normal=tuple(options.src_normal),
            dst_direct=tuple(options.dst_direct),
            dst_proxy=tuple(options.dst_proxy),
        ),
        flush_only=bool(options.flush_only),
    )


def _lookup(table: dict, token: str | None, option: str):
    if token is None or not str(token).strip():
        return None
    key = str(token).strip().lower()
    if key not in table:
        choices = ", ".join(sorted(table))
        raise ValidationError(f"invalid --{option} {token!r} (expected one of: {choices})")
    return table[key]


def _parse_mark(raw: str | int | None) -> int | None:
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return None
    try:
        value = raw if isinstance(raw, int) else int(str(raw).strip(), 0)
    except ValueError:
        raise ValidationError(f"invalid --mark {raw!r}: not a number") from None
    if not 0 <= value <= _MAX_MARK:
        raise ValidationError(f"invalid --mark {raw!r}: must fit in 32 bits")
    return value
