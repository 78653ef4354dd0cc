# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Compile the whitelist into a default-deny packet-filter rule set.

Compilation is a pure step that produces a ``FirewallRuleSet`` value.
Applying it is a separate, single ``iptables-restore`` call that
atomically replaces the whole filter table; live rules are never
patched incrementally.

Rule order (first match wins):

1. loopback
2. ESTABLISHED/RELATED
3. DNS (udp and tcp port 53)
4. one ACCEPT per resolved address and allowed port
5. implicit DROP (the chain policy)

Only ``EXACT`` entries can be expressed here.  A ``SUBDOMAIN`` entry has
no fixed hostname to resolve, so it is skipped with a warning; use the
proxy strategy when subdomain scope is needed.
"""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass, field
from enum import Enum
from ipaddress import IPv4Address
from typing import TYPE_CHECKING

from netfence.dns import resolve_all, resolve_ipv4
from netfence.whitelist import Scope


if TYPE_CHECKING:
    from netfence.dns import Resolver
    from netfence.whitelist import Whitelist


logger = logging.getLogger(__name__)

DEFAULT_ALLOWED_PORTS = frozenset({80, 443})
DNS_PORT = 53


class FirewallError(Exception):
    """Raised when a rule set cannot be installed or verified."""


class Direction(Enum):
    OUTBOUND = "OUTPUT"


class Verdict(Enum):
    ACCEPT = "ACCEPT"
    DROP = "DROP"


class Protocol(Enum):
    TCP = "tcp"
    UDP = "udp"
    ALL = "all"


class Special(Enum):
    """Non-address rule destinations."""

    LOOPBACK = "loopback"
    ESTABLISHED = "established"
    ANY = "any"


@dataclass(frozen=True)
class Rule:
    """A single outbound ACCEPT rule.

    Attributes:
        destination: Resolved address, or one of the ``Special`` markers.
        protocol: Transport protocol.
        port: Destination port, None for any.
        action: Always ``ACCEPT``; denial comes from the chain policy.
        direction: Always ``OUTBOUND``.
    """

    destination: IPv4Address | Special
    protocol: Protocol = Protocol.ALL
    port: int | None = None
    action: Verdict = Verdict.ACCEPT
    direction: Direction = Direction.OUTBOUND

    def as_tuple(self) -> tuple[str, str, str, int | None]:
        """Return the ``(action, destination, protocol, port)`` shape."""
        destination = (
            self.destination.value
            if isinstance(self.destination, Special)
            else str(self.destination)
        )
        return (self.action.value, destination, self.protocol.value, self.port)

    def render(self) -> str:
        """Render as an ``iptables-restore`` append line."""
        parts = ["-A", self.direction.value]
        if self.destination is Special.LOOPBACK:
            parts += ["-o", "lo"]
        elif self.destination is Special.ESTABLISHED:
            parts += ["-m", "conntrack", "--ctstate", "ESTABLISHED,RELATED"]
        elif isinstance(self.destination, IPv4Address):
            parts += ["-d", f"{self.destination}/32"]
        if self.protocol is not Protocol.ALL:
            parts += ["-p", self.protocol.value]
            if self.port is not None:
                parts += ["--dport", str(self.port)]
        parts += ["-j", self.action.value]
        return " ".join(parts)


BASE_RULES: tuple[Rule, ...] = (
    Rule(Special.LOOPBACK),
    Rule(Special.ESTABLISHED),
    Rule(Special.ANY, Protocol.UDP, DNS_PORT),
    Rule(Special.ANY, Protocol.TCP, DNS_PORT),
)


@dataclass(frozen=True)
class FirewallRuleSet:
    """Ordered outbound rules under a DROP default policy."""

    rules: tuple[Rule, ...]
    default_policy: Verdict = Verdict.DROP

    def __post_init__(self) -> None:
        if self.default_policy is not Verdict.DROP:
            raise ValueError("Firewall rule sets are always default-deny")

    @property
    def endpoint_rules(self) -> tuple[Rule, ...]:
        """Rules that target a resolved address."""
        return tuple(
            r for r in self.rules if isinstance(r.destination, IPv4Address)
        )


@dataclass(frozen=True)
class ResolvedEndpoint:
    """A whitelisted hostname and the addresses it resolved to."""

    hostname: str
    addresses: frozenset[IPv4Address]
    ports: frozenset[int]


@dataclass(frozen=True)
class FirewallCompilation:
    """Result of ``compile_firewall()``.

    ``enforcement_disabled`` (empty whitelist, no rule set) is distinct
    from "every entry failed to resolve" (a rule set with only the base
    rules plus one warning per entry).

    Attributes:
        ruleset: Compiled rules, None when enforcement is disabled.
        endpoints: Successfully resolved endpoints, in whitelist order.
        warnings: Non-fatal problems, one message per skipped entry.
        enforcement_disabled: True when the whitelist was empty.
    """

    ruleset: FirewallRuleSet | None
    endpoints: tuple[ResolvedEndpoint, ...] = ()
    warnings: tuple[str, ...] = field(default=())
    enforcement_disabled: bool = False


def compile_firewall(
    whitelist: Whitelist,
    allowed_ports: frozenset[int] = DEFAULT_ALLOWED_PORTS,
    resolver: Resolver = resolve_ipv4,
    *,
    max_workers: int = 8,
) -> FirewallCompilation:
    """Resolve whitelist entries and build the outbound rule set.

    Deterministic: the same whitelist and DNS answers always produce the
    same rule set.  No previous state is consulted; callers replace the
    live table with the result.

    Args:
        whitelist: Operator whitelist.
        allowed_ports: TCP ports opened to each resolved address.
        resolver: Hostname to IPv4 addresses function.
        max_workers: Maximum concurrent DNS lookups.

    Returns:
        The compilation result.
    """
    if whitelist.is_empty:
        logger.warning(
            "Whitelist is empty: firewall enforcement DISABLED "
            "(no rule set compiled, all traffic allowed)"
        )
        return FirewallCompilation(ruleset=None, enforcement_disabled=True)

    warnings: list[str] = []
    exact_hosts: list[str] = []
    for entry in whitelist:
        if entry.scope is Scope.SUBDOMAIN:
            message = (
                f"Skipping {entry.pattern}: subdomain-scope entries cannot be "
                "enforced by the firewall (no fixed hostname to resolve); "
                "use the proxy strategy or list exact hostnames"
            )
            logger.warning(message)
            warnings.append(message)
        else:
            exact_hosts.append(entry.value)

    resolved = resolve_all(exact_hosts, resolver, max_workers=max_workers)

    ports = sorted(allowed_ports)
    rules: list[Rule] = list(BASE_RULES)
    seen: set[Rule] = set(rules)
    endpoints: list[ResolvedEndpoint] = []
    for hostname in exact_hosts:
        addresses = resolved[hostname]
        if not addresses:
            message = f"Could not resolve {hostname}: entry skipped"
            logger.warning(message)
            warnings.append(message)
            continue
        endpoints.append(
            ResolvedEndpoint(
                hostname=hostname,
                addresses=addresses,
                ports=frozenset(allowed_ports),
            )
        )
        for address in sorted(addresses):
            for port in ports:
                rule = Rule(address, Protocol.TCP, port)
                if rule not in seen:
                    seen.add(rule)
                    rules.append(rule)
        logger.info(
            "Allowing %s -> %s (ports %s)",
            hostname,
            ", ".join(str(a) for a in sorted(addresses)),
            ", ".join(str(p) for p in ports),
        )

    if not endpoints:
        logger.warning(
            "No whitelist entry resolved: only loopback and DNS are allowed"
        )

    return FirewallCompilation(
        ruleset=FirewallRuleSet(rules=tuple(rules)),
        endpoints=tuple(endpoints),
        warnings=tuple(warnings),
    )


def render_iptables_restore(ruleset: FirewallRuleSet) -> str:
    """Render *ruleset* as an ``iptables-restore`` filter table payload.

    Loading the payload without ``--noflush`` replaces the whole filter
    table in one transaction.
    """
    lines = [
        "# Generated by netfence",
        "*filter",
        ":INPUT ACCEPT [0:0]",
        ":FORWARD ACCEPT [0:0]",
        f":OUTPUT {ruleset.default_policy.value} [0:0]",
    ]
    lines += [rule.render() for rule in ruleset.rules]
    lines.append("COMMIT")
    return "\n".join(lines) + "\n"


def render_ip6tables_restore() -> str:
    """Render the IPv6 table: loopback only, everything else dropped.

    Whitelist entries are resolved to IPv4 only, so IPv6 egress would
    otherwise be an unfiltered side channel.
    """
    lines = [
        "# Generated by netfence",
        "*filter",
        ":INPUT ACCEPT [0:0]",
        ":FORWARD ACCEPT [0:0]",
        ":OUTPUT DROP [0:0]",
        "-A OUTPUT -o lo -j ACCEPT",
        "COMMIT",
    ]
    return "\n".join(lines) + "\n"


_OPEN_TABLE = (
    "*filter\n:INPUT ACCEPT [0:0]\n:FORWARD ACCEPT [0:0]\n"
    ":OUTPUT ACCEPT [0:0]\nCOMMIT\n"
)


class FirewallApplier:
    """Installs compiled rule sets into the kernel.

    Must run with ``CAP_NET_ADMIN`` inside the workload's network
    namespace, before the workload process starts.
    """

    def __init__(
        self,
        *,
        iptables: str = "iptables",
        ip6tables: str | None = "ip6tables",
    ) -> None:
        self._iptables = iptables
        self._ip6tables = ip6tables

    def _restore(self, binary: str, payload: str) -> None:
        try:
            subprocess.run(
                [f"{binary}-restore"],
                input=payload,
                check=True,
                capture_output=True,
                text=True,
            )
        except FileNotFoundError as e:
            raise FirewallError(f"{binary}-restore not found") from e
        except subprocess.CalledProcessError as e:
            raise FirewallError(
                f"{binary}-restore failed: {e.stderr.strip()}"
            ) from e

    def apply(self, ruleset: FirewallRuleSet) -> None:
        """Atomically replace the live filter table with *ruleset*.

        Raises:
            FirewallError: If the table cannot be loaded.
        """
        self._restore(self._iptables, render_iptables_restore(ruleset))
        if self._ip6tables is not None:
            self._restore(self._ip6tables, render_ip6tables_restore())
        logger.info(
            "Firewall applied: %d rules, default %s",
            len(ruleset.rules),
            ruleset.default_policy.value,
        )

    def verify(self, ruleset: FirewallRuleSet) -> None:
        """Check that the live OUTPUT chain reflects *ruleset*.

        Raises:
            FirewallError: If the policy is not DROP or the rule count
                differs from the compiled rule set.
        """
        try:
            result = subprocess.run(
                [self._iptables, "-S", "OUTPUT"],
                check=True,
                capture_output=True,
                text=True,
            )
        except (FileNotFoundError, subprocess.CalledProcessError) as e:
            raise FirewallError(f"Cannot list OUTPUT chain: {e}") from e

        lines = [line.strip() for line in result.stdout.splitlines()]
        if f"-P OUTPUT {ruleset.default_policy.value}" not in lines:
            raise FirewallError("OUTPUT chain policy is not DROP")
        installed = sum(1 for line in lines if line.startswith("-A OUTPUT"))
        if installed != len(ruleset.rules):
            raise FirewallError(
                f"OUTPUT chain has {installed} rules, "
                f"expected {len(ruleset.rules)}"
            )
        logger.debug("Firewall verified: %d rules active", installed)

    def disable(self) -> None:
        """Replace the filter table with an open one (teardown)."""
        self._restore(self._iptables, _OPEN_TABLE)
        if self._ip6tables is not None:
            self._restore(self._ip6tables, _OPEN_TABLE)
        logger.info("Firewall disabled")
