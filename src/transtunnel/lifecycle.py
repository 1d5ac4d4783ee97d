"""Lifecycle manager — flush, then rebuild sets, routes and chain, in that order.

Ordering is the correctness mechanism: rules referencing a set are removed
before the set is destroyed, and sets exist before rules referencing them
are installed. Two instances running against one host at the same time are
not guarded against; the last writer wins.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping

from transtunnel import host
from transtunnel.addresses import AddressSet, SetKey
from transtunnel.backends.base import RouteBackend, RuleBackend, SetStore
from transtunnel.chain.compiler import compile_chain
from transtunnel.chain.models import DecisionChain
from transtunnel.config import TransTunnelConfig
from transtunnel.errors import BackendError, EnvironmentCheckError
from transtunnel.policy.models import Policy

logger = logging.getLogger(__name__)


class LifecycleManager:
    """Installs and tears down everything transtunnel owns on the host."""

    def __init__(
        self,
        sets: SetStore,
        rules: RuleBackend,
        routes: RouteBackend,
        config: TransTunnelConfig | None = None,
    ) -> None:
        self._sets = sets
        self._rules = rules
        self._routes = routes
        self.config = config or TransTunnelConfig()

    @classmethod
    def for_host(cls, config: TransTunnelConfig) -> LifecycleManager:
        """Build a manager backed by the real ipset/iptables/ip commands."""
        from transtunnel.backends.iproute import IprouteBackend
        from transtunnel.backends.ipset import IpsetStore
        from transtunnel.backends.iptables import IptablesBackend

        return cls(
            sets=IpsetStore(),
            rules=IptablesBackend(),
            routes=IprouteBackend(config),
            config=config,
        )

    def check_environment(self, install: bool = True) -> None:
        """Abort with EnvironmentCheckError before any mutation if the host is unfit."""
        if not host.is_root():
            raise EnvironmentCheckError("transtunnel must run as root")

        missing = host.missing_tools()
        if missing:
            raise EnvironmentCheckError(
                f"required tools not found: {', '.join(missing)}"
            )

        if not install:
            return

        forwarding = host.read_sysctl("net.ipv4.ip_forward")
        if forwarding != "1":
            raise EnvironmentCheckError(
                "net.ipv4.ip_forward must be 1 to route marked packets "
                f"(current: {forwarding or 'unknown'})"
            )
        if host.read_sysctl("net.ipv4.conf.all.rp_filter") == "1":
            logger.warning(
                "Strict reverse path filtering is enabled; replies from the "
                "tunnel may be dropped (set net.ipv4.conf.all.rp_filter=2)"
            )

    def flush(self) -> int:
        """Remove every owned artifact. Never raises BackendError.

        Returns the number of steps that failed.
        """
        failed = 0
        steps = (
            ("rules", self._rules.flush_owned),
            ("routes", self._routes.flush_owned),
            ("sets", self._sets.flush_owned),
        )
        for label, step in steps:
            try:
                step()
            except BackendError as e:
                failed += 1
                logger.warning("Flush of %s incomplete: %s", label, e)
            else:
                logger.debug("Flushed %s", label)
        logger.info("Flush complete (%d step(s) failed)", failed)
        return failed

    def install(
        self,
        policy: Policy,
        sets: Mapping[SetKey, AddressSet],
    ) -> DecisionChain:
        """Flush, then install sets, routes and the decision chain.

        BackendError propagates; a partial install is cleaned up by the
        leading flush of the next run.
        """
        chain = compile_chain(policy, fwmark=self.config.fwmark)

        self.flush()

        ordered = [sets[key] for key in SetKey]
        self._sets.load(ordered)
        logger.info(
            "Loaded %d address sets (%d entries)",
            len(ordered),
            sum(len(s.entries) for s in ordered),
        )

        self._routes.install(policy.tunnel)
        logger.info(
            "Routing fwmark %d via table %d into %s",
            self.config.fwmark,
            self.config.route_table,
            policy.tunnel,
        )

        self._rules.install(chain, policy.interfaces)
        logger.info(
            "Installed decision chain on %s%s",
            ", ".join(policy.interfaces) or "all interfaces",
            " and local output" if chain.self_prepare is not None else "",
        )
        return chain
