"""ipset backend — bulk loads sets through ``ipset restore``."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from transtunnel.addresses import AddressSet
from transtunnel.backends.base import CommandRunner, run_command
from transtunnel.config import SET_PREFIX
from transtunnel.errors import BackendError

logger = logging.getLogger(__name__)

_MIN_MAXELEM = 65536


def render_sets(sets: Iterable[AddressSet]) -> str:
    """Render an ``ipset restore`` payload creating and filling every set."""
    lines: list[str] = []
    for address_set in sets:
        maxelem = max(_MIN_MAXELEM, len(address_set.entries))
        lines.append(
            f"create {address_set.name} {address_set.set_type} "
            f"family inet maxelem {maxelem}"
        )
        lines.append(f"flush {address_set.name}")
        lines.extend(f"add {address_set.name} {entry}" for entry in address_set.entries)
    return "\n".join(lines) + "\n"


class IpsetStore:
    """Manages the ``transtunnel_*`` sets."""

    def __init__(self, runner: CommandRunner = run_command) -> None:
        self._run = runner

    def load(self, sets: Iterable[AddressSet]) -> None:
        sets = list(sets)
        self._run(["ipset", "restore", "-exist"], render_sets(sets))
        logger.debug("Loaded %d sets via ipset restore", len(sets))

    def owned_sets(self) -> list[str]:
        output = self._run(["ipset", "list", "-n"])
        return [name for name in output.split() if name.startswith(SET_PREFIX)]

    def flush_owned(self) -> None:
        failures: list[BackendError] = []
        for name in self.owned_sets():
            try:
                self._run(["ipset", "destroy", name])
            except BackendError as e:
                logger.error("Failed to destroy set %s: %s", name, e)
                failures.append(e)
        if failures:
            raise failures[0]
