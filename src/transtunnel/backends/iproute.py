"""iproute2 backend — fwmark rule and the dedicated routing table."""

from __future__ import annotations

import logging
import re

from transtunnel.backends.base import CommandRunner, run_command
from transtunnel.config import TransTunnelConfig
from transtunnel.errors import BackendError

logger = logging.getLogger(__name__)

# "32765:	from all fwmark 0x1 lookup 233"
_RULE_LINE = re.compile(
    r"^(?P<pref>\d+):\s+from all fwmark (?P<mark>0x[0-9a-fA-F]+|\d+)"
    r"(?:/0x[0-9a-fA-F]+)? lookup (?P<table>\S+)"
)


def find_mark_rules(output: str, fwmark: int, table: int) -> list[int]:
    """Return the preferences of ``ip rule`` entries sending ``fwmark`` to ``table``."""
    prefs: list[int] = []
    for line in output.splitlines():
        match = _RULE_LINE.match(line.strip())
        if not match:
            continue
        if int(match.group("mark"), 0) != fwmark:
            continue
        if match.group("table") != str(table):
            continue
        prefs.append(int(match.group("pref")))
    return prefs


class IprouteBackend:
    """Maps the proxy fwmark to a routing table whose default route is the tunnel."""

    def __init__(
        self,
        config: TransTunnelConfig,
        runner: CommandRunner = run_command,
    ) -> None:
        self._config = config
        self._run = runner

    def install(self, tunnel: str) -> None:
        table = str(self._config.route_table)
        rule = ["ip", "-4", "rule", "add", "fwmark", str(self._config.fwmark), "table", table]
        if self._config.route_priority is not None:
            rule += ["pref", str(self._config.route_priority)]
        self._run(rule)
        self._run(["ip", "-4", "route", "replace", "default", "dev", tunnel, "table", table])
        logger.debug("fwmark %d -> table %s -> dev %s", self._config.fwmark, table, tunnel)

    def flush_owned(self) -> None:
        output = self._run(["ip", "-4", "rule", "list"])
        prefs = find_mark_rules(output, self._config.fwmark, self._config.route_table)
        for pref in prefs:
            self._run([
                "ip", "-4", "rule", "del", "pref", str(pref),
                "fwmark", str(self._config.fwmark),
                "table", str(self._config.route_table),
            ])
        try:
            self._run(["ip", "-4", "route", "flush", "table", str(self._config.route_table)])
        except BackendError as e:
            # The kernel creates the table on first route insert
            if "does not exist" not in e.detail:
                raise
            logger.debug("Route table %d not present", self._config.route_table)
