"""Decision chain compiler — a pure function from Policy to DecisionChain."""

from __future__ import annotations

from transtunnel.addresses import SetKey
from transtunnel.chain.models import (
    Action,
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
from transtunnel.policy.models import DestinationDefault, Policy, SourceDefault

FORWARD_MARK = 1

_SOURCE_TARGETS: dict[SourceDefault, Action] = {
    SourceDefault.PASS_THROUGH: Return(),
    SourceDefault.FORWARD_TO_PROXY: Jump(ChainName.FORWARD),
    SourceDefault.EVALUATE_DESTINATION: Jump(ChainName.DESTINATION),
}

_DESTINATION_TARGETS: dict[DestinationDefault, Action] = {
    DestinationDefault.PASS_THROUGH: Return(),
    DestinationDefault.FORWARD_TO_PROXY: Jump(ChainName.FORWARD),
}


def compile_chain(policy: Policy, fwmark: int = FORWARD_MARK) -> DecisionChain:
    """Build the decision chain for a policy.

    Rules within each sub-chain are first-match; their order is part of
    the classification contract.
    """
    extra = _extra(policy)

    prepare = (
        _rule((_dst(SetKey.DST_SPECIAL),), Return()),
        _rule(extra, Jump(ChainName.SOURCE)),
    )
    source = (
        _rule((_src(SetKey.SRC_DIRECT),), Return()),
        _rule((_src(SetKey.SRC_PROXY),), Jump(ChainName.FORWARD)),
        _rule((_src(SetKey.SRC_NORMAL),), Jump(ChainName.DESTINATION)),
        _rule((), _SOURCE_TARGETS[policy.src_default]),
    )
    destination = (
        _rule((_dst(SetKey.DST_DIRECT),), Return()),
        _rule((_dst(SetKey.DST_PROXY),), Jump(ChainName.FORWARD)),
        _rule((), _DESTINATION_TARGETS[policy.dst_default]),
    )
    forward = (_rule((), SetMark(fwmark)),)

    return DecisionChain(
        prepare=prepare,
        source=source,
        destination=destination,
        forward=forward,
        self_prepare=_self_prepare(policy, extra, fwmark) if policy.self_proxy else None,
    )


def _self_prepare(
    policy: Policy,
    extra: tuple[Condition, ...],
    fwmark: int,
) -> tuple[ChainRule, ...]:
    # Rows implied by the destination default are left out.
    rules = [_rule((_dst(SetKey.DST_SPECIAL),), Return())]
    if policy.dst_default is not DestinationDefault.PASS_THROUGH:
        rules.append(_rule((_dst(SetKey.DST_DIRECT),), Return()))
    if policy.dst_default is not DestinationDefault.FORWARD_TO_PROXY:
        rules.append(_rule((_dst(SetKey.DST_PROXY),) + extra, SetMark(fwmark)))
    if policy.direct_mark is not None:
        # The proxy client's own re-emitted traffic must not loop back in.
        rules.append(_rule((MarkMatch(policy.direct_mark),), Return()))
    if policy.dst_default is not DestinationDefault.PASS_THROUGH:
        rules.append(_rule(extra, SetMark(fwmark)))
    return tuple(rules)


def _extra(policy: Policy) -> tuple[Condition, ...]:
    if policy.extra_match:
        return (ExtraMatch(policy.extra_match),)
    return ()


def _src(key: SetKey) -> SetMatch:
    return SetMatch(key, Direction.SRC)


def _dst(key: SetKey) -> SetMatch:
    return SetMatch(key, Direction.DST)


def _rule(conditions: tuple[Condition, ...], action: Action) -> ChainRule:
    return ChainRule(conditions=conditions, action=action)
