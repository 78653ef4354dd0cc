# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""The two enforcement strategies behind one compile capability.

The proxy strategy matches on the requested hostname; the firewall
strategy matches on addresses resolved once at compile time.  Both take
their pattern semantics from ``netfence.matcher``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, TypeVar

from netfence.dns import resolve_ipv4
from netfence.firewall import FirewallCompilation, compile_firewall
from netfence.proxy_acl import ProxyPolicy, compile_proxy_policy


if TYPE_CHECKING:
    from netfence.config import SandboxConfig
    from netfence.dns import Resolver


T = TypeVar("T")


class PolicyCompiler(Protocol[T]):
    """Turns a ``SandboxConfig`` into an artifact for the orchestrator."""

    def compile(self, config: SandboxConfig) -> T: ...


@dataclass(frozen=True)
class ProxyPolicyCompiler:
    """Proxy-mediated strategy (workload on an internal network)."""

    def compile(self, config: SandboxConfig) -> ProxyPolicy:
        config.log_enforcement_state()
        whitelist = config.whitelist
        if config.skip_firewall:
            whitelist = type(whitelist)()
        return compile_proxy_policy(
            whitelist,
            config.upstream,
            safe_ports=config.allowed_ports,
        )


@dataclass(frozen=True)
class FirewallPolicyCompiler:
    """Firewall-mediated strategy (rules inside the workload namespace)."""

    resolver: Resolver = resolve_ipv4

    def compile(self, config: SandboxConfig) -> FirewallCompilation:
        config.log_enforcement_state()
        if config.skip_firewall:
            return FirewallCompilation(ruleset=None, enforcement_disabled=True)
        return compile_firewall(
            config.whitelist,
            config.allowed_ports,
            self.resolver,
            max_workers=config.resolver_workers,
        )
