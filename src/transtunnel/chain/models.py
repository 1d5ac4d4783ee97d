"""Decision chain models — immutable rule nodes grouped into named sub-chains."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Union

from transtunnel.addresses import SetKey
from transtunnel.config import CHAIN_PREFIX


class Direction(enum.Enum):
    """Which packet address a set match inspects."""

    SRC = "src"
    DST = "dst"


class ChainName(enum.Enum):
    """Sub-chains of the decision chain, in installation order."""

    PREPARE = "PREPARE"
    SOURCE = "SOURCE"
    DESTINATION = "DESTINATION"
    FORWARD = "FORWARD"
    SELF_PREPARE = "SELF_PREPARE"

    @property
    def chain_name(self) -> str:
        return f"{CHAIN_PREFIX}{self.value}"


@dataclass(frozen=True)
class SetMatch:
    key: SetKey
    direction: Direction


@dataclass(frozen=True)
class MarkMatch:
    value: int


@dataclass(frozen=True)
class ExtraMatch:
    """Opaque user-supplied match expression, passed through to the backend."""

    expression: str


Condition = Union[SetMatch, MarkMatch, ExtraMatch]


@dataclass(frozen=True)
class Return:
    """Stop classification; the packet is left unmodified."""


@dataclass(frozen=True)
class Jump:
    """Continue in another sub-chain. Its outcome is final (goto semantics)."""

    target: ChainName


@dataclass(frozen=True)
class SetMark:
    value: int


Action = Union[Return, Jump, SetMark]


@dataclass(frozen=True)
class ChainRule:
    """A single rule: all conditions must hold (none = unconditional)."""

    conditions: tuple[Condition, ...]
    action: Action


@dataclass(frozen=True)
class DecisionChain:
    """The complete classification policy as first-match rule sequences."""

    prepare: tuple[ChainRule, ...]
    source: tuple[ChainRule, ...]
    destination: tuple[ChainRule, ...]
    forward: tuple[ChainRule, ...]
    self_prepare: tuple[ChainRule, ...] | None = None

    def chains(self) -> dict[ChainName, tuple[ChainRule, ...]]:
        """Sub-chains present in this chain, in installation order."""
        chains = {
            ChainName.PREPARE: self.prepare,
            ChainName.SOURCE: self.source,
            ChainName.DESTINATION: self.destination,
            ChainName.FORWARD: self.forward,
        }
        if self.self_prepare is not None:
            chains[ChainName.SELF_PREPARE] = self.self_prepare
        return chains

    def rules(self, name: ChainName) -> tuple[ChainRule, ...]:
        chains = self.chains()
        if name not in chains:
            raise KeyError(f"chain {name.value} is not part of this decision chain")
        return chains[name]
