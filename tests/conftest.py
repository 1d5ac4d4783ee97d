"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from pathlib import Path

import pytest

from transtunnel.addresses import AddressSet, SetKey
from transtunnel.chain.models import DecisionChain, SetMatch
from transtunnel.config import CHAIN_PREFIX, SET_PREFIX, TransTunnelConfig
from transtunnel.errors import BackendError
from transtunnel.lifecycle import LifecycleManager
from transtunnel.policy.models import Policy


class RecordingRunner:
    """Stands in for run_command: records calls and returns canned stdout."""

    def __init__(
        self,
        outputs: dict[str, str] | None = None,
        fail: Iterable[str] | dict[str, str] = (),
    ) -> None:
        self.calls: list[tuple[list[str], str | None]] = []
        self.outputs = outputs or {}
        # prefix -> stderr of the failing command
        if isinstance(fail, dict):
            self.fail = dict(fail)
        else:
            self.fail = dict.fromkeys(fail, "simulated failure")

    def __call__(self, args: list[str], input_text: str | None = None) -> str:
        self.calls.append((list(args), input_text))
        command = " ".join(args)
        for prefix, detail in self.fail.items():
            if command.startswith(prefix):
                raise BackendError(args, detail)
        return self.outputs.get(command, "")

    @property
    def commands(self) -> list[str]:
        return [" ".join(args) for args, _ in self.calls]


class FakeHost:
    """In-memory model of the kernel state the three backends manage."""

    def __init__(self) -> None:
        self.sets: dict[str, tuple[str, ...]] = {"docker_allow": ("172.17.0.0/16",)}
        self.chains: dict[str, tuple] = {"DOCKER_MANGLE": ()}
        self.bindings: list[tuple[str, str, str]] = []
        self.mark_rules: list[tuple[int, int]] = []
        self.routes: dict[int, str] = {}

    def snapshot(self) -> dict:
        return {
            "sets": dict(self.sets),
            "chains": dict(self.chains),
            "bindings": list(self.bindings),
            "mark_rules": list(self.mark_rules),
            "routes": dict(self.routes),
        }


class FakeSetStore:
    def __init__(self, host: FakeHost) -> None:
        self.host = host

    def load(self, sets: Iterable[AddressSet]) -> None:
        for address_set in sets:
            self.host.sets[address_set.name] = address_set.entries

    def flush_owned(self) -> None:
        for name in list(self.host.sets):
            if name.startswith(SET_PREFIX):
                referenced = any(
                    isinstance(c, SetMatch) and c.key.set_name == name
                    for rules in self.host.chains.values()
                    for rule in rules
                    for c in rule.conditions
                )
                if referenced:
                    raise BackendError(["ipset", "destroy", name], "Set is in use")
                del self.host.sets[name]


class FakeRuleBackend:
    def __init__(self, host: FakeHost) -> None:
        self.host = host

    def install(self, chain: DecisionChain, interfaces: tuple[str, ...]) -> None:
        for name, rules in chain.chains().items():
            if name.chain_name in self.host.chains:
                raise BackendError(["iptables-restore"], "Chain already exists")
            for rule in rules:
                for condition in rule.conditions:
                    if isinstance(condition, SetMatch) and condition.key.set_name not in self.host.sets:
                        raise BackendError(["iptables-restore"], "Set does not exist")
        for name, rules in chain.chains().items():
            self.host.chains[name.chain_name] = rules
        for iface in interfaces or ("*",):
            self.host.bindings.append(("PREROUTING", iface, f"{CHAIN_PREFIX}PREPARE"))
        if chain.self_prepare is not None:
            self.host.bindings.append(("OUTPUT", "*", f"{CHAIN_PREFIX}SELF_PREPARE"))

    def flush_owned(self) -> None:
        for name in list(self.host.chains):
            if name.startswith(CHAIN_PREFIX):
                del self.host.chains[name]
        self.host.bindings = [b for b in self.host.bindings if not b[2].startswith(CHAIN_PREFIX)]


class FakeRouteBackend:
    def __init__(self, host: FakeHost, config: TransTunnelConfig) -> None:
        self.host = host
        self.config = config

    def install(self, tunnel: str) -> None:
        self.host.mark_rules.append((self.config.fwmark, self.config.route_table))
        self.host.routes[self.config.route_table] = tunnel

    def flush_owned(self) -> None:
        self.host.mark_rules.clear()
        self.host.routes.pop(self.config.route_table, None)


@pytest.fixture
def recording_runner() -> Callable[..., RecordingRunner]:
    return RecordingRunner


@pytest.fixture
def fake_host() -> FakeHost:
    return FakeHost()


@pytest.fixture
def manager(fake_host: FakeHost) -> LifecycleManager:
    config = TransTunnelConfig()
    return LifecycleManager(
        sets=FakeSetStore(fake_host),
        rules=FakeRuleBackend(fake_host),
        routes=FakeRouteBackend(fake_host, config),
        config=config,
    )


@pytest.fixture
def write_list(tmp_path: Path) -> Callable[[str, str], str]:
    """Write an IP-list file and return its path."""

    def _write(name: str, content: str) -> str:
        path = tmp_path / name
        path.write_text(content, encoding="utf-8")
        return str(path)

    return _write


@pytest.fixture
def make_sets() -> Callable[..., dict[SetKey, AddressSet]]:
    """Build the six sets directly, e.g. make_sets(src_proxy=["10.0.0.5"])."""

    def _make(**entries: Iterable[str]) -> dict[SetKey, AddressSet]:
        return {
            key: AddressSet(name=key.set_name, entries=tuple(entries.get(key.value, ())))
            for key in SetKey
        }

    return _make


@pytest.fixture
def basic_policy() -> Policy:
    return Policy(tunnel="tun0", servers=("203.0.113.5",))
