"""Chain evaluator — walks a packet through a compiled DecisionChain. First-match-wins."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

from transtunnel.addresses import AddressSet, SetKey
from transtunnel.chain.models import (
    ChainName,
    ChainRule,
    Condition,
    DecisionChain,
    Direction,
    ExtraMatch,
    Jump,
    MarkMatch,
    Return,
    SetMark,
    SetMatch,
)


@dataclass(frozen=True)
class Packet:
    """The fields of a packet the chain can inspect."""

    src: str
    dst: str
    mark: int = 0
    extra_matches: bool = True  # Whether the opaque extra expression would match


@dataclass(frozen=True)
class Verdict:
    """Result of walking a packet through the chain."""

    mark: int | None
    trail: tuple[tuple[ChainName, int], ...]

    @property
    def proxied(self) -> bool:
        return self.mark is not None


class ChainEvaluator:
    """Simulates the installed classification for a single packet."""

    def __init__(self, chain: DecisionChain, sets: Mapping[SetKey, AddressSet]) -> None:
        self.chain = chain
        self._sets = sets

    def evaluate(self, packet: Packet, local: bool = False) -> Verdict:
        """Evaluate a routed packet, or a locally generated one when ``local``.

        Local packets only enter classification when self-proxy is
        compiled in; otherwise they are left unmodified.
        """
        if local:
            if self.chain.self_prepare is None:
                return Verdict(mark=None, trail=())
            current = ChainName.SELF_PREPARE
        else:
            current = ChainName.PREPARE

        trail: list[tuple[ChainName, int]] = []
        visited: set[ChainName] = set()
        while True:
            if current in visited:
                raise ValueError(f"chain loop through {current.value}")
            visited.add(current)

            hit = self._first_match(self.chain.rules(current), packet)
            if hit is None:
                return Verdict(mark=None, trail=tuple(trail))

            index, rule = hit
            trail.append((current, index))
            action = rule.action
            if isinstance(action, Return):
                return Verdict(mark=None, trail=tuple(trail))
            if isinstance(action, SetMark):
                return Verdict(mark=action.value, trail=tuple(trail))
            if isinstance(action, Jump):
                current = action.target
                continue
            raise TypeError(f"unknown action {action!r}")

    def _first_match(
        self,
        rules: tuple[ChainRule, ...],
        packet: Packet,
    ) -> tuple[int, ChainRule] | None:
        for index, rule in enumerate(rules):
            if all(self._holds(c, packet) for c in rule.conditions):
                return index, rule
        return None

    def _holds(self, condition: Condition, packet: Packet) -> bool:
        if isinstance(condition, SetMatch):
            address_set = self._sets.get(condition.key)
            if address_set is None:
                return False
            ip = packet.src if condition.direction is Direction.SRC else packet.dst
            return address_set.contains(ip)
        if isinstance(condition, MarkMatch):
            return packet.mark == condition.value
        if isinstance(condition, ExtraMatch):
            return packet.extra_matches
        raise TypeError(f"unknown condition {condition!r}")
