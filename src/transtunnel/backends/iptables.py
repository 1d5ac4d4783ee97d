"""iptables backend — renders the decision chain into the mangle table.

Installation is a single ``iptables-restore --noflush`` transaction.
Removal saves the mangle table, drops every line that mentions one of our
chains, and restores the rest, so unrelated rules survive untouched.
"""

from __future__ import annotations

import logging

from transtunnel.backends.base import CommandRunner, run_command
from transtunnel.chain.models import (
    ChainName,
    ChainRule,
    Condition,
    DecisionChain,
    ExtraMatch,
    Jump,
    MarkMatch,
    Return,
    SetMark,
    SetMatch,
)
from transtunnel.config import CHAIN_PREFIX, RULE_TABLE

logger = logging.getLogger(__name__)

_TARGET_FLAGS = ("-j", "-g", "--jump", "--goto")


def render_chain(chain: DecisionChain, interfaces: tuple[str, ...] = ()) -> str:
    """Render an ``iptables-restore --noflush`` payload for the mangle table."""
    chains = chain.chains()
    lines = [f"*{RULE_TABLE}"]
    lines.extend(f":{name.chain_name} - [0:0]" for name in chains)

    for name, rules in chains.items():
        for index, rule in enumerate(rules):
            last = index == len(rules) - 1
            lines.extend(_render_rule(name, rule, last))

    prepare = ChainName.PREPARE.chain_name
    if interfaces:
        for position, iface in enumerate(interfaces, start=1):
            lines.append(f"-I PREROUTING {position} -i {iface} -j {prepare}")
    else:
        lines.append(f"-I PREROUTING 1 -j {prepare}")

    if chain.self_prepare is not None:
        lines.append(f"-I OUTPUT 1 -j {ChainName.SELF_PREPARE.chain_name}")

    lines.append("COMMIT")
    return "\n".join(lines) + "\n"


def _render_rule(name: ChainName, rule: ChainRule, last: bool) -> list[str]:
    head = f"-A {name.chain_name}"
    match = " ".join(_render_condition(c) for c in rule.conditions)
    prefix = f"{head} {match}" if match else head

    action = rule.action
    if isinstance(action, Return):
        return [f"{prefix} -j RETURN"]
    if isinstance(action, Jump):
        # goto: the target's outcome ends classification
        return [f"{prefix} -g {action.target.chain_name}"]
    if isinstance(action, SetMark):
        lines = [f"{prefix} -j MARK --set-mark {action.value}"]
        if not last:
            # MARK does not terminate; stop here so later rows cannot override
            lines.append(f"{prefix} -j RETURN")
        return lines
    raise TypeError(f"unknown action {action!r}")


def _render_condition(condition: Condition) -> str:
    if isinstance(condition, SetMatch):
        return (
            f"-m set --match-set {condition.key.set_name} "
            f"{condition.direction.value}"
        )
    if isinstance(condition, MarkMatch):
        return f"-m mark --mark {condition.value}"
    if isinstance(condition, ExtraMatch):
        return condition.expression.strip()
    raise TypeError(f"unknown condition {condition!r}")


def is_owned_line(line: str, prefix: str = CHAIN_PREFIX) -> bool:
    """Whether an iptables-save line declares, fills or targets one of our chains."""
    stripped = line.strip()
    if stripped.startswith(f":{prefix}"):
        return True

    tokens = stripped.split()
    if len(tokens) >= 2 and tokens[0] in ("-A", "-I") and tokens[1].startswith(prefix):
        return True
    for i, token in enumerate(tokens[:-1]):
        if token in _TARGET_FLAGS and tokens[i + 1].startswith(prefix):
            return True
    return False


def strip_owned_rules(saved: str, prefix: str = CHAIN_PREFIX) -> str:
    """Filter an iptables-save dump, dropping every line that belongs to us."""
    kept = [line for line in saved.splitlines() if not is_owned_line(line, prefix)]
    return "\n".join(kept) + "\n"


def _nonblank(text: str) -> list[str]:
    return [line for line in text.splitlines() if line.strip()]


class IptablesBackend:
    """Installs and removes the ``TRANSTUNNEL_*`` chains."""

    def __init__(self, runner: CommandRunner = run_command) -> None:
        self._run = runner

    def install(self, chain: DecisionChain, interfaces: tuple[str, ...]) -> None:
        payload = render_chain(chain, interfaces)
        self._run(["iptables-restore", "--noflush"], payload)
        logger.debug("Installed %d chains", len(chain.chains()))

    def flush_owned(self) -> None:
        saved = self._run(["iptables-save", "-t", RULE_TABLE])
        filtered = strip_owned_rules(saved)
        if _nonblank(filtered) == _nonblank(saved):
            logger.debug("No %s* rules in %s table", CHAIN_PREFIX, RULE_TABLE)
            return
        self._run(["iptables-restore"], filtered)
