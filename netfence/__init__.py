# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Outbound-network allowlist enforcement for untrusted agent workloads.

A domain whitelist is compiled into either a squid access-control policy
(proxy mode, workload on an internal-only network) or a default-deny
iptables rule set (firewall mode, rules installed before the workload
starts).  Both strategies share one matcher for pattern semantics.
"""

from netfence.compiler import (
    FirewallPolicyCompiler,
    PolicyCompiler,
    ProxyPolicyCompiler,
)
from netfence.config import ConfigError, SandboxConfig, UpstreamConfig
from netfence.firewall import (
    FirewallCompilation,
    FirewallError,
    FirewallRuleSet,
    compile_firewall,
    render_iptables_restore,
)
from netfence.matcher import is_allowed, matches
from netfence.proxy_acl import (
    ProxyDecision,
    ProxyPolicy,
    Route,
    compile_proxy_policy,
    render_squid_conf,
)
from netfence.topology import NetworkTopology, TopologyError, place
from netfence.whitelist import (
    Scope,
    Whitelist,
    WhitelistEntry,
    WhitelistError,
    parse_host_list,
    parse_whitelist_text,
)


__all__ = [
    # whitelist
    "Scope",
    "Whitelist",
    "WhitelistEntry",
    "WhitelistError",
    "parse_host_list",
    "parse_whitelist_text",
    # matcher
    "is_allowed",
    "matches",
    # config
    "ConfigError",
    "SandboxConfig",
    "UpstreamConfig",
    # compilers
    "PolicyCompiler",
    "ProxyPolicyCompiler",
    "FirewallPolicyCompiler",
    # proxy
    "ProxyDecision",
    "ProxyPolicy",
    "Route",
    "compile_proxy_policy",
    "render_squid_conf",
    # firewall
    "FirewallCompilation",
    "FirewallError",
    "FirewallRuleSet",
    "compile_firewall",
    "render_iptables_restore",
    # topology
    "NetworkTopology",
    "TopologyError",
    "place",
]
