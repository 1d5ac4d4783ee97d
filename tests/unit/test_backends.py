"""Tests for the ipset, iptables and iproute2 backends against a recording runner."""

from __future__ import annotations

from dataclasses import replace

import pytest

from transtunnel.addresses import AddressSet
from transtunnel.backends.iproute import IprouteBackend, find_mark_rules
from transtunnel.backends.ipset import IpsetStore, render_sets
from transtunnel.backends.iptables import (
    IptablesBackend,
    is_owned_line,
    render_chain,
    strip_owned_rules,
)
from transtunnel.chain.compiler import compile_chain
from transtunnel.config import TransTunnelConfig
from transtunnel.errors import BackendError
from transtunnel.policy.models import DestinationDefault, Policy

SAVED_MANGLE = """\
# Generated by iptables-save v1.8.7 on Sat Oct 17 10:00:00 2026
*mangle
:PREROUTING ACCEPT [120:9000]
:INPUT ACCEPT [0:0]
:FORWARD ACCEPT [0:0]
:OUTPUT ACCEPT [80:6000]
:POSTROUTING ACCEPT [0:0]
:TRANSTUNNEL_PREPARE - [0:0]
:TRANSTUNNEL_SOURCE - [0:0]
-A PREROUTING -i eth0 -j TRANSTUNNEL_PREPARE
-A PREROUTING -i eth0 -j MARK --set-xmark 0x5/0xffffffff
-A OUTPUT -j TRANSTUNNEL_SELF_PREPARE
-A TRANSTUNNEL_PREPARE -m set --match-set transtunnel_dst_special dst -j RETURN
-A TRANSTUNNEL_PREPARE -g TRANSTUNNEL_SOURCE
COMMIT
# Completed on Sat Oct 17 10:00:00 2026
"""


# ---------------------------------------------------------------------------
# iptables
# ---------------------------------------------------------------------------


def test_render_default_chain(basic_policy: Policy):
    lines = render_chain(compile_chain(basic_policy)).splitlines()

    assert lines[0] == "*mangle"
    assert lines[-1] == "COMMIT"
    assert ":TRANSTUNNEL_PREPARE - [0:0]" in lines
    assert ":TRANSTUNNEL_SELF_PREPARE - [0:0]" not in lines
    assert "-A TRANSTUNNEL_PREPARE -m set --match-set transtunnel_dst_special dst -j RETURN" in lines
    assert "-A TRANSTUNNEL_PREPARE -g TRANSTUNNEL_SOURCE" in lines
    assert "-A TRANSTUNNEL_SOURCE -g TRANSTUNNEL_DESTINATION" in lines
    assert "-A TRANSTUNNEL_DESTINATION -g TRANSTUNNEL_FORWARD" in lines
    assert "-A TRANSTUNNEL_FORWARD -j MARK --set-mark 1" in lines
    assert "-I PREROUTING 1 -j TRANSTUNNEL_PREPARE" in lines
    assert not any(line.startswith("-I OUTPUT") for line in lines)


def test_render_keeps_source_order(basic_policy: Policy):
    lines = render_chain(compile_chain(basic_policy)).splitlines()
    proxy = lines.index("-A TRANSTUNNEL_SOURCE -m set --match-set transtunnel_src_proxy src -g TRANSTUNNEL_FORWARD")
    normal = lines.index(
        "-A TRANSTUNNEL_SOURCE -m set --match-set transtunnel_src_normal src -g TRANSTUNNEL_DESTINATION"
    )
    assert proxy < normal


def test_render_binds_each_interface_in_order(basic_policy: Policy):
    text = render_chain(compile_chain(basic_policy), ("eth0", "eth1"))
    assert "-I PREROUTING 1 -i eth0 -j TRANSTUNNEL_PREPARE\n-I PREROUTING 2 -i eth1 -j TRANSTUNNEL_PREPARE\n" in text


def test_render_extra_match(basic_policy: Policy):
    text = render_chain(compile_chain(replace(basic_policy, extra_match="-p tcp -m multiport --dports 80,443")))
    assert "-A TRANSTUNNEL_PREPARE -p tcp -m multiport --dports 80,443 -g TRANSTUNNEL_SOURCE" in text


def test_render_self_proxy_mark_rows():
    policy = Policy(
        tunnel="tun0",
        self_proxy=True,
        direct_mark=100,
        dst_default=DestinationDefault.PASS_THROUGH,
    )
    lines = render_chain(compile_chain(policy)).splitlines()
    self_rows = [line for line in lines if line.startswith("-A TRANSTUNNEL_SELF_PREPARE")]
    assert self_rows == [
        "-A TRANSTUNNEL_SELF_PREPARE -m set --match-set transtunnel_dst_special dst -j RETURN",
        "-A TRANSTUNNEL_SELF_PREPARE -m set --match-set transtunnel_dst_proxy dst -j MARK --set-mark 1",
        "-A TRANSTUNNEL_SELF_PREPARE -m set --match-set transtunnel_dst_proxy dst -j RETURN",
        "-A TRANSTUNNEL_SELF_PREPARE -m mark --mark 100 -j RETURN",
    ]
    assert "-I OUTPUT 1 -j TRANSTUNNEL_SELF_PREPARE" in lines


@pytest.mark.parametrize(
    ("line", "owned"),
    [
        (":TRANSTUNNEL_PREPARE - [0:0]", True),
        ("-A TRANSTUNNEL_SOURCE -j RETURN", True),
        ("-A PREROUTING -i eth0 -j TRANSTUNNEL_PREPARE", True),
        ("-A FOO -g TRANSTUNNEL_FORWARD", True),
        (":PREROUTING ACCEPT [0:0]", False),
        ("-A PREROUTING -m comment --comment TRANSTUNNEL_note -j ACCEPT", False),
        ("COMMIT", False),
    ],
)
def test_is_owned_line(line, owned):
    assert is_owned_line(line) is owned


def test_strip_owned_rules_keeps_foreign_rules():
    filtered = strip_owned_rules(SAVED_MANGLE)
    assert "TRANSTUNNEL_" not in filtered
    assert "-A PREROUTING -i eth0 -j MARK --set-xmark 0x5/0xffffffff" in filtered
    assert ":PREROUTING ACCEPT [120:9000]" in filtered
    assert filtered.splitlines()[-2] == "COMMIT"


def test_iptables_install(basic_policy, recording_runner):
    runner = recording_runner()
    chain = compile_chain(basic_policy)
    IptablesBackend(runner).install(chain, ("eth0",))
    assert runner.commands == ["iptables-restore --noflush"]
    assert runner.calls[0][1] == render_chain(chain, ("eth0",))


def test_iptables_flush_restores_filtered_table(recording_runner):
    runner = recording_runner(outputs={"iptables-save -t mangle": SAVED_MANGLE})
    IptablesBackend(runner).flush_owned()
    assert runner.commands == ["iptables-save -t mangle", "iptables-restore"]
    assert runner.calls[1][1] == strip_owned_rules(SAVED_MANGLE)


def test_iptables_flush_without_owned_rules_is_noop(recording_runner):
    runner = recording_runner(outputs={"iptables-save -t mangle": strip_owned_rules(SAVED_MANGLE)})
    IptablesBackend(runner).flush_owned()
    assert runner.commands == ["iptables-save -t mangle"]


def test_iptables_flush_empty_table_is_noop(recording_runner):
    runner = recording_runner(outputs={"iptables-save -t mangle": ""})
    IptablesBackend(runner).flush_owned()
    assert runner.commands == ["iptables-save -t mangle"]


# ---------------------------------------------------------------------------
# ipset
# ---------------------------------------------------------------------------


def test_render_sets_creates_empty_sets():
    payload = render_sets(
        [
            AddressSet(name="transtunnel_src_direct"),
            AddressSet(name="transtunnel_dst_proxy", entries=("1.2.3.0/24", "5.6.7.8")),
        ]
    )
    assert payload.splitlines() == [
        "create transtunnel_src_direct hash:net family inet maxelem 65536",
        "flush transtunnel_src_direct",
        "create transtunnel_dst_proxy hash:net family inet maxelem 65536",
        "flush transtunnel_dst_proxy",
        "add transtunnel_dst_proxy 1.2.3.0/24",
        "add transtunnel_dst_proxy 5.6.7.8",
    ]


def test_ipset_load(recording_runner):
    runner = recording_runner()
    IpsetStore(runner).load([AddressSet(name="transtunnel_src_proxy", entries=("10.0.0.1",))])
    assert runner.commands == ["ipset restore -exist"]
    assert "add transtunnel_src_proxy 10.0.0.1" in runner.calls[0][1]


def test_ipset_flush_destroys_only_owned(recording_runner):
    runner = recording_runner(
        outputs={"ipset list -n": "docker_allow\ntranstunnel_src_direct\ntranstunnel_dst_special\n"}
    )
    IpsetStore(runner).flush_owned()
    assert runner.commands == [
        "ipset list -n",
        "ipset destroy transtunnel_src_direct",
        "ipset destroy transtunnel_dst_special",
    ]


def test_ipset_flush_tries_every_set_before_failing(recording_runner):
    runner = recording_runner(
        outputs={"ipset list -n": "transtunnel_src_direct\ntranstunnel_dst_special\n"},
        fail=["ipset destroy transtunnel_src_direct"],
    )
    with pytest.raises(BackendError):
        IpsetStore(runner).flush_owned()
    assert "ipset destroy transtunnel_dst_special" in runner.commands


# ---------------------------------------------------------------------------
# iproute2
# ---------------------------------------------------------------------------

RULES = """\
0:	from all lookup local
100:	from all fwmark 0x1 lookup 233
101:	from all fwmark 0x1/0xff lookup 233
200:	from all fwmark 0x1 lookup 100
300:	from all fwmark 0x2 lookup 233
32766:	from all lookup main
32767:	from all lookup default
"""


def test_find_mark_rules():
    assert find_mark_rules(RULES, fwmark=1, table=233) == [100, 101]
    assert find_mark_rules(RULES, fwmark=7, table=233) == []


def test_iproute_install(recording_runner):
    runner = recording_runner()
    IprouteBackend(TransTunnelConfig(), runner).install("tun0")
    assert runner.commands == [
        "ip -4 rule add fwmark 1 table 233",
        "ip -4 route replace default dev tun0 table 233",
    ]


def test_iproute_install_with_priority(recording_runner):
    runner = recording_runner()
    IprouteBackend(TransTunnelConfig(route_priority=1000), runner).install("wg0")
    assert runner.commands[0] == "ip -4 rule add fwmark 1 table 233 pref 1000"


def test_iproute_flush(recording_runner):
    runner = recording_runner(outputs={"ip -4 rule list": RULES})
    IprouteBackend(TransTunnelConfig(), runner).flush_owned()
    assert runner.commands == [
        "ip -4 rule list",
        "ip -4 rule del pref 100 fwmark 1 table 233",
        "ip -4 rule del pref 101 fwmark 1 table 233",
        "ip -4 route flush table 233",
    ]


MISSING_TABLE = "Error: ipv4: FIB table does not exist.\nFlush terminated"


def test_iproute_flush_missing_table(recording_runner):
    runner = recording_runner(fail={"ip -4 route flush table 233": MISSING_TABLE})
    IprouteBackend(TransTunnelConfig(), runner).flush_owned()
    assert runner.commands == ["ip -4 rule list", "ip -4 route flush table 233"]


def test_iproute_flush_other_failure_propagates(recording_runner):
    runner = recording_runner(fail={"ip -4 route flush table 233": "RTNETLINK answers: Operation not permitted"})
    with pytest.raises(BackendError, match="Operation not permitted"):
        IprouteBackend(TransTunnelConfig(), runner).flush_owned()
