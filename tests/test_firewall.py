# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Tests for netfence/firewall.py."""

import logging
import subprocess
from ipaddress import IPv4Address
from unittest.mock import MagicMock, call, patch

import pytest

from netfence.dns import Resolver
from netfence.firewall import (
    BASE_RULES,
    FirewallApplier,
    FirewallCompilation,
    FirewallError,
    FirewallRuleSet,
    Protocol,
    Rule,
    Special,
    Verdict,
    compile_firewall,
    render_ip6tables_restore,
    render_iptables_restore,
)
from netfence.whitelist import Whitelist, parse_host_list


def _compile(
    hosts: str, resolver: Resolver, ports: frozenset[int] = frozenset({443})
) -> FirewallCompilation:
    return compile_firewall(parse_host_list(hosts), ports, resolver)


class TestRule:
    def test_loopback(self) -> None:
        assert Rule(Special.LOOPBACK).render() == "-A OUTPUT -o lo -j ACCEPT"

    def test_established(self) -> None:
        assert Rule(Special.ESTABLISHED).render() == (
            "-A OUTPUT -m conntrack --ctstate ESTABLISHED,RELATED -j ACCEPT"
        )

    def test_dns(self) -> None:
        assert Rule(Special.ANY, Protocol.UDP, 53).render() == (
            "-A OUTPUT -p udp --dport 53 -j ACCEPT"
        )

    def test_address(self) -> None:
        rule = Rule(IPv4Address("140.82.112.5"), Protocol.TCP, 443)
        assert rule.render() == (
            "-A OUTPUT -d 140.82.112.5/32 -p tcp --dport 443 -j ACCEPT"
        )
        assert rule.as_tuple() == ("ACCEPT", "140.82.112.5", "tcp", 443)

    def test_special_as_tuple(self) -> None:
        assert Rule(Special.LOOPBACK).as_tuple() == (
            "ACCEPT",
            "loopback",
            "all",
            None,
        )


class TestFirewallRuleSet:
    def test_default_policy_is_drop(self) -> None:
        assert FirewallRuleSet(rules=BASE_RULES).default_policy is Verdict.DROP

    def test_accept_policy_rejected(self) -> None:
        with pytest.raises(ValueError, match="default-deny"):
            FirewallRuleSet(rules=BASE_RULES, default_policy=Verdict.ACCEPT)


class TestCompileFirewall:
    def test_base_rules_come_first(self, fake_resolver: Resolver) -> None:
        compilation = _compile("api.github.com", fake_resolver)
        assert compilation.ruleset is not None
        assert compilation.ruleset.rules[:4] == BASE_RULES
        assert [r.destination for r in BASE_RULES] == [
            Special.LOOPBACK,
            Special.ESTABLISHED,
            Special.ANY,
            Special.ANY,
        ]

    def test_one_rule_per_address_and_port(
        self, fake_resolver: Resolver
    ) -> None:
        compilation = _compile(
            "api.github.com", fake_resolver, frozenset({80, 443})
        )
        assert compilation.ruleset is not None
        assert [r.as_tuple() for r in compilation.ruleset.endpoint_rules] == [
            ("ACCEPT", "140.82.112.5", "tcp", 80),
            ("ACCEPT", "140.82.112.5", "tcp", 443),
            ("ACCEPT", "140.82.112.6", "tcp", 80),
            ("ACCEPT", "140.82.112.6", "tcp", 443),
        ]

    def test_unresolvable_entry_skipped_with_warning(
        self, fake_resolver: Resolver, caplog: pytest.LogCaptureFixture
    ) -> None:
        with caplog.at_level(logging.WARNING, logger="netfence.firewall"):
            compilation = _compile(
                "api.github.com,badhost.invalid,api.anthropic.com",
                fake_resolver,
            )
        assert compilation.ruleset is not None
        assert not compilation.enforcement_disabled
        assert [e.hostname for e in compilation.endpoints] == [
            "api.github.com",
            "api.anthropic.com",
        ]
        assert len(compilation.warnings) == 1
        assert "badhost.invalid" in compilation.warnings[0]
        assert "badhost.invalid" in caplog.text
        destinations = {
            str(r.destination) for r in compilation.ruleset.endpoint_rules
        }
        assert destinations == {
            "140.82.112.5",
            "140.82.112.6",
            "160.79.104.10",
        }

    def test_subdomain_entry_skipped_with_warning(
        self, fake_resolver: Resolver
    ) -> None:
        compilation = _compile(".anthropic.com,pypi.org", fake_resolver)
        assert [e.hostname for e in compilation.endpoints] == ["pypi.org"]
        assert len(compilation.warnings) == 1
        assert ".anthropic.com" in compilation.warnings[0]
        assert "subdomain" in compilation.warnings[0]

    def test_empty_whitelist_disables_enforcement(
        self, fake_resolver: Resolver
    ) -> None:
        compilation = compile_firewall(Whitelist(), resolver=fake_resolver)
        assert compilation.enforcement_disabled
        assert compilation.ruleset is None

    def test_nothing_resolved_is_not_disabled(
        self, fake_resolver: Resolver
    ) -> None:
        """All entries unresolved still yields a default-deny rule set."""
        compilation = _compile("a.invalid,b.invalid", fake_resolver)
        assert not compilation.enforcement_disabled
        assert compilation.ruleset is not None
        assert compilation.ruleset.rules == BASE_RULES
        assert len(compilation.warnings) == 2

    def test_shared_addresses_deduplicated(
        self, fake_resolver: Resolver
    ) -> None:
        compilation = _compile("pypi.org,files.pythonhosted.org", fake_resolver)
        assert compilation.ruleset is not None
        assert len(compilation.ruleset.endpoint_rules) == 1
        assert len(compilation.endpoints) == 2

    def test_only_allowed_ports_opened(self, fake_resolver: Resolver) -> None:
        compilation = _compile("pypi.org", fake_resolver, frozenset({443}))
        assert compilation.ruleset is not None
        ports = {r.port for r in compilation.ruleset.endpoint_rules}
        assert ports == {443}

    def test_idempotent(self, fake_resolver: Resolver) -> None:
        first = _compile("api.github.com,pypi.org", fake_resolver)
        second = _compile("api.github.com,pypi.org", fake_resolver)
        assert first.ruleset == second.ruleset
        assert first.ruleset is not None
        assert render_iptables_restore(first.ruleset) == (
            render_iptables_restore(second.ruleset)  # type: ignore[arg-type]
        )

    def test_resolver_called_once_per_exact_host(self) -> None:
        resolver = MagicMock(return_value=frozenset({IPv4Address("1.1.1.1")}))
        _compile(".github.com,pypi.org,api.github.com", resolver)
        assert sorted(c.args[0] for c in resolver.call_args_list) == [
            "api.github.com",
            "pypi.org",
        ]


class TestRender:
    def test_iptables_payload(self, fake_resolver: Resolver) -> None:
        compilation = _compile("api.anthropic.com", fake_resolver)
        assert compilation.ruleset is not None
        payload = render_iptables_restore(compilation.ruleset)
        lines = payload.splitlines()
        assert "*filter" in lines
        assert ":OUTPUT DROP [0:0]" in lines
        assert lines[-1] == "COMMIT"
        assert lines.index("-A OUTPUT -o lo -j ACCEPT") < lines.index(
            "-A OUTPUT -d 160.79.104.10/32 -p tcp --dport 443 -j ACCEPT"
        )
        assert payload.endswith("\n")

    def test_ip6tables_drops_everything_but_loopback(self) -> None:
        lines = render_ip6tables_restore().splitlines()
        assert ":OUTPUT DROP [0:0]" in lines
        appended = [line for line in lines if line.startswith("-A")]
        assert appended == ["-A OUTPUT -o lo -j ACCEPT"]


class TestFirewallApplier:
    def _ruleset(self) -> FirewallRuleSet:
        return FirewallRuleSet(
            rules=(
                *BASE_RULES,
                Rule(IPv4Address("160.79.104.10"), Protocol.TCP, 443),
            )
        )

    def test_apply_loads_both_tables(self) -> None:
        ruleset = self._ruleset()
        with patch("netfence.firewall.subprocess.run") as mock_run:
            FirewallApplier().apply(ruleset)

        assert mock_run.call_args_list == [
            call(
                ["iptables-restore"],
                input=render_iptables_restore(ruleset),
                check=True,
                capture_output=True,
                text=True,
            ),
            call(
                ["ip6tables-restore"],
                input=render_ip6tables_restore(),
                check=True,
                capture_output=True,
                text=True,
            ),
        ]

    def test_apply_without_ip6tables(self) -> None:
        with patch("netfence.firewall.subprocess.run") as mock_run:
            FirewallApplier(ip6tables=None).apply(self._ruleset())
        assert mock_run.call_count == 1

    def test_apply_failure_raises(self) -> None:
        error = subprocess.CalledProcessError(
            2, ["iptables-restore"], stderr="line 3 failed\n"
        )
        with patch("netfence.firewall.subprocess.run", side_effect=error):
            with pytest.raises(FirewallError, match="line 3 failed"):
                FirewallApplier().apply(self._ruleset())

    def test_missing_binary_raises(self) -> None:
        with patch(
            "netfence.firewall.subprocess.run", side_effect=FileNotFoundError
        ):
            with pytest.raises(FirewallError, match="not found"):
                FirewallApplier().apply(self._ruleset())

    def _listing(self, policy: str, count: int) -> MagicMock:
        lines = [f"-P OUTPUT {policy}"]
        lines += ["-A OUTPUT -o lo -j ACCEPT"] * count
        return MagicMock(stdout="\n".join(lines) + "\n")

    def test_verify_ok(self) -> None:
        ruleset = self._ruleset()
        with patch(
            "netfence.firewall.subprocess.run",
            return_value=self._listing("DROP", len(ruleset.rules)),
        ) as mock_run:
            FirewallApplier().verify(ruleset)
        assert mock_run.call_args.args[0] == ["iptables", "-S", "OUTPUT"]

    def test_verify_rejects_accept_policy(self) -> None:
        ruleset = self._ruleset()
        with patch(
            "netfence.firewall.subprocess.run",
            return_value=self._listing("ACCEPT", len(ruleset.rules)),
        ):
            with pytest.raises(FirewallError, match="not DROP"):
                FirewallApplier().verify(ruleset)

    def test_verify_rejects_rule_count_mismatch(self) -> None:
        ruleset = self._ruleset()
        with patch(
            "netfence.firewall.subprocess.run",
            return_value=self._listing("DROP", 2),
        ):
            with pytest.raises(FirewallError, match="expected 5"):
                FirewallApplier().verify(ruleset)

    def test_verify_listing_failure(self) -> None:
        with patch(
            "netfence.firewall.subprocess.run",
            side_effect=subprocess.CalledProcessError(1, ["iptables"]),
        ):
            with pytest.raises(FirewallError, match="Cannot list"):
                FirewallApplier().verify(self._ruleset())

    def test_disable_opens_tables(self) -> None:
        with patch("netfence.firewall.subprocess.run") as mock_run:
            FirewallApplier().disable()
        assert mock_run.call_count == 2
        for c in mock_run.call_args_list:
            assert ":OUTPUT ACCEPT [0:0]" in c.kwargs["input"]
