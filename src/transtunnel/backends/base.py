"""Backend protocols and the shared command runner."""

from __future__ import annotations

import logging
import subprocess
from collections.abc import Iterable
from typing import Protocol

from transtunnel.addresses import AddressSet
from transtunnel.chain.models import DecisionChain
from transtunnel.errors import BackendError

logger = logging.getLogger(__name__)


class CommandRunner(Protocol):
    def __call__(self, args: list[str], input_text: str | None = None) -> str:
        """Run a command and return its stdout. Raises BackendError on failure."""
        ...


def run_command(args: list[str], input_text: str | None = None) -> str:
    """Run an external command synchronously, without a timeout of our own."""
    logger.debug("Executing: %s", " ".join(args))
    try:
        result = subprocess.run(
            args,
            input=input_text,
            capture_output=True,
            text=True,
            check=True,
        )
    except subprocess.CalledProcessError as e:
        raise BackendError(args, e.stderr or "") from e
    except OSError as e:
        raise BackendError(args, str(e)) from e
    return result.stdout


class SetStore(Protocol):
    """Protocol for the set-membership store (ipset)."""

    def load(self, sets: Iterable[AddressSet]) -> None:
        """Create every set (even empty ones) and bulk-load its entries."""
        ...

    def flush_owned(self) -> None:
        """Destroy every set carrying our name prefix."""
        ...


class RuleBackend(Protocol):
    """Protocol for the packet-rule backend (iptables mangle table)."""

    def install(self, chain: DecisionChain, interfaces: tuple[str, ...]) -> None:
        """Atomically install the chain and its entry bindings."""
        ...

    def flush_owned(self) -> None:
        """Remove every rule and chain carrying our name prefix."""
        ...


class RouteBackend(Protocol):
    """Protocol for the policy-routing backend (ip rule / ip route)."""

    def install(self, tunnel: str) -> None:
        """Route marked packets into ``tunnel`` via the dedicated table."""
        ...

    def flush_owned(self) -> None:
        """Remove our fwmark rule(s) and empty the dedicated table."""
        ...
