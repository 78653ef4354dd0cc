# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Compile the whitelist into a squid access-control policy.

The policy is a declarative value: ACL definitions, ordered
``http_access`` rules, an optional upstream peer and the routing rules
(``always_direct`` / ``never_direct``) that decide whether an allowed
request goes direct or via the upstream.  ``render_squid_conf()`` turns it
into squid configuration text; ``ProxyPolicy.decide()`` evaluates it
in-process with the same first-match semantics squid applies.

HTTPS is tunnelled with CONNECT.  The policy never enables TLS
interception, so certificates are never re-signed inside the boundary
and HTTPS payloads cannot be inspected.

Access and routing are independent: a destination on the no-proxy list
goes direct instead of through the upstream, but it still needs an
entry in the outer whitelist to be allowed at all.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING
from urllib.parse import quote

from netfence.matcher import matches, normalize_hostname
from netfence.whitelist import Scope, WhitelistEntry


if TYPE_CHECKING:
    from collections.abc import Iterable

    from netfence.config import UpstreamConfig
    from netfence.whitelist import Whitelist


logger = logging.getLogger(__name__)

ALLOWED_ACL = "allowed_domains"
NO_PROXY_ACL = "no_proxy_domains"
SSL_PORTS_ACL = "SSL_ports"
SAFE_PORTS_ACL = "Safe_ports"
CONNECT_ACL = "CONNECT"

#: Built-in squid ACL that matches every request.
ALL_ACL = "all"

DEFAULT_SAFE_PORTS = frozenset({80, 443})
DEFAULT_SSL_PORTS = frozenset({443})
DEFAULT_LISTEN_PORT = 3128
DEFAULT_CONNECT_TIMEOUT = 30
DEFAULT_ACCESS_LOG = "/var/log/squid/access.log"


class MatchKind(Enum):
    """Squid ACL types used by the compiled policy."""

    DSTDOMAIN = "dstdomain"
    PORT = "port"
    METHOD = "method"


class Action(Enum):
    ALLOW = "allow"
    DENY = "deny"


class RouteDirective(Enum):
    ALWAYS_DIRECT = "always_direct"
    NEVER_DIRECT = "never_direct"


class Route(Enum):
    """Where an allowed request is forwarded."""

    DIRECT = "direct"
    PARENT = "parent"


@dataclass(frozen=True)
class Acl:
    """One ``acl <name> <kind> <value>`` line.

    Lines sharing a name form a single ACL that matches if any line does.
    """

    name: str
    kind: MatchKind
    value: str

    def render(self) -> str:
        return f"acl {self.name} {self.kind.value} {self.value}"

    def matches(self, hostname: str, port: int, method: str) -> bool:
        if self.kind is MatchKind.DSTDOMAIN:
            return matches(WhitelistEntry.parse(self.value), hostname)
        if self.kind is MatchKind.PORT:
            return port == int(self.value)
        return method.upper() == self.value.upper()


@dataclass(frozen=True)
class AccessRule:
    """An ``http_access`` rule; all referenced ACLs must match.

    ACL references prefixed with ``!`` are negated.
    """

    action: Action
    acls: tuple[str, ...]

    def render(self) -> str:
        return f"http_access {self.action.value} {' '.join(self.acls)}"


@dataclass(frozen=True)
class RoutingRule:
    """An ``always_direct`` / ``never_direct`` allow rule."""

    directive: RouteDirective
    acl: str

    def render(self) -> str:
        return f"{self.directive.value} allow {self.acl}"


@dataclass(frozen=True)
class UpstreamPeer:
    """Parent proxy descriptor (``cache_peer``)."""

    host: str
    port: int
    login: str | None = None

    def render(self) -> str:
        line = f"cache_peer {self.host} parent {self.port} 0 no-query default"
        if self.login:
            line += f" login={self.login}"
        return line


@dataclass(frozen=True)
class ProxyDecision:
    """Outcome of evaluating a request against a ``ProxyPolicy``.

    Attributes:
        allowed: Whether the access rules allow the request.
        route: Forwarding route for allowed requests, None when denied.
    """

    allowed: bool
    route: Route | None


@dataclass(frozen=True)
class ProxyPolicy:
    """Compiled application-layer policy.

    Attributes:
        acls: ACL definitions referenced by ``access_rules``.
        access_rules: Ordered ``http_access`` rules, terminal deny last.
        upstream_peer: Optional parent proxy.
        no_proxy_acls: ACL lines for destinations that bypass the parent.
        routing_rules: Ordered routing rules (``always_direct`` first).
        enforcement_disabled: True when compiled from an empty whitelist.
        intercept_tls: Always False; TLS is tunnelled, never terminated.
    """

    acls: tuple[Acl, ...]
    access_rules: tuple[AccessRule, ...]
    upstream_peer: UpstreamPeer | None = None
    no_proxy_acls: tuple[Acl, ...] = ()
    routing_rules: tuple[RoutingRule, ...] = ()
    enforcement_disabled: bool = False
    intercept_tls: bool = False

    def __post_init__(self) -> None:
        if self.intercept_tls:
            raise ValueError("ProxyPolicy never intercepts TLS")

    def _acl_matches(
        self, ref: str, hostname: str, port: int, method: str
    ) -> bool:
        negate = ref.startswith("!")
        name = ref.lstrip("!")
        if name == ALL_ACL:
            result = True
        else:
            result = any(
                acl.matches(hostname, port, method)
                for acl in (*self.acls, *self.no_proxy_acls)
                if acl.name == name
            )
        return not result if negate else result

    def decide(
        self, hostname: str, port: int = 443, method: str = "CONNECT"
    ) -> ProxyDecision:
        """Evaluate a request the way squid evaluates the rendered config.

        ``http_access`` rules are first-match; a request that matches no
        rule is denied.  For allowed requests ``always_direct`` is checked
        before ``never_direct``.

        Args:
            hostname: Requested destination host.
            port: Destination port.
            method: HTTP method (``CONNECT`` for HTTPS tunnels).

        Returns:
            The access decision and route.
        """
        host = normalize_hostname(hostname)
        allowed = False
        for rule in self.access_rules:
            if all(
                self._acl_matches(ref, host, port, method) for ref in rule.acls
            ):
                allowed = rule.action is Action.ALLOW
                break

        if not allowed:
            logger.debug("Proxy policy denies %s:%d (%s)", host, port, method)
            return ProxyDecision(allowed=False, route=None)

        if self.upstream_peer is None:
            return ProxyDecision(allowed=True, route=Route.DIRECT)
        for routing in self.routing_rules:
            if self._acl_matches(routing.acl, host, port, method):
                if routing.directive is RouteDirective.ALWAYS_DIRECT:
                    return ProxyDecision(allowed=True, route=Route.DIRECT)
                return ProxyDecision(allowed=True, route=Route.PARENT)
        return ProxyDecision(allowed=True, route=Route.DIRECT)


def _dstdomain_value(entry: WhitelistEntry) -> str:
    # squid's ".example.com" already covers the bare "example.com".
    return entry.pattern


def _both_forms(entries: Iterable[WhitelistEntry]) -> list[str]:
    """Return dotted and undotted forms of each entry, de-duplicated.

    ``.internal.corp`` and ``internal.corp`` both expand to the pair
    ``internal.corp`` / ``.internal.corp`` so neither form is lost.
    """
    values: list[str] = []
    for entry in entries:
        if entry.scope is Scope.SUBDOMAIN:
            forms = (f".{entry.value}", entry.value)
        else:
            forms = (entry.value, f".{entry.value}")
        for form in forms:
            if form not in values:
                values.append(form)
    return values


def _peer_login(username: str, password: str) -> str:
    # squid splits options on whitespace and URL-decodes login=.
    return f"{quote(username, safe='')}:{quote(password, safe='')}"


def _port_acls(
    safe_ports: frozenset[int], ssl_ports: frozenset[int]
) -> list[Acl]:
    acls = [
        Acl(SSL_PORTS_ACL, MatchKind.PORT, str(p)) for p in sorted(ssl_ports)
    ]
    acls += [
        Acl(SAFE_PORTS_ACL, MatchKind.PORT, str(p)) for p in sorted(safe_ports)
    ]
    acls.append(Acl(CONNECT_ACL, MatchKind.METHOD, "CONNECT"))
    return acls


def compile_proxy_policy(
    whitelist: Whitelist,
    upstream: UpstreamConfig | None = None,
    *,
    safe_ports: frozenset[int] = DEFAULT_SAFE_PORTS,
    ssl_ports: frozenset[int] = DEFAULT_SSL_PORTS,
) -> ProxyPolicy:
    """Compile *whitelist* and optional *upstream* into a ``ProxyPolicy``.

    One ``dstdomain`` ACL line is emitted per whitelist entry, followed
    by the allow rule and a terminal ``deny all``.  With an upstream, all
    traffic is forced through the parent (``never_direct allow all``)
    except no-proxy destinations, which get ``always_direct`` first.

    An empty whitelist produces a policy flagged
    ``enforcement_disabled`` that allows everything.  This is logged as
    a warning, never applied silently.

    Args:
        whitelist: Outer domain whitelist.
        upstream: Optional corporate proxy passthrough.
        safe_ports: Ports any request may target.
        ssl_ports: Ports CONNECT tunnels may target.

    Returns:
        The compiled policy.
    """
    peer: UpstreamPeer | None = None
    no_proxy_acls: tuple[Acl, ...] = ()
    routing: list[RoutingRule] = []
    if upstream is not None:
        for warning in upstream.credential_warnings():
            logger.warning(warning)
        login = (
            _peer_login(upstream.username, upstream.password)
            if upstream.username and upstream.password
            else None
        )
        peer = UpstreamPeer(host=upstream.host, port=upstream.port, login=login)
        no_proxy_acls = tuple(
            Acl(NO_PROXY_ACL, MatchKind.DSTDOMAIN, value)
            for value in _both_forms(upstream.no_proxy)
        )
        if no_proxy_acls:
            routing.append(
                RoutingRule(RouteDirective.ALWAYS_DIRECT, NO_PROXY_ACL)
            )
        routing.append(RoutingRule(RouteDirective.NEVER_DIRECT, ALL_ACL))
        logger.info(
            "Routing via upstream proxy %s:%d (%d direct-bypass ACLs)",
            upstream.host,
            upstream.port,
            len(no_proxy_acls),
        )

    if whitelist.is_empty:
        logger.warning(
            "Whitelist is empty: proxy policy compiled with enforcement "
            "DISABLED (all destinations allowed)"
        )
        return ProxyPolicy(
            acls=(),
            access_rules=(AccessRule(Action.ALLOW, (ALL_ACL,)),),
            upstream_peer=peer,
            no_proxy_acls=no_proxy_acls,
            routing_rules=tuple(routing),
            enforcement_disabled=True,
        )

    acls = _port_acls(safe_ports, ssl_ports)
    acls += [
        Acl(ALLOWED_ACL, MatchKind.DSTDOMAIN, _dstdomain_value(entry))
        for entry in whitelist
    ]
    access_rules = (
        AccessRule(Action.DENY, (f"!{SAFE_PORTS_ACL}",)),
        AccessRule(Action.DENY, (CONNECT_ACL, f"!{SSL_PORTS_ACL}")),
        AccessRule(Action.ALLOW, (ALLOWED_ACL,)),
        AccessRule(Action.DENY, (ALL_ACL,)),
    )
    logger.info("Compiled proxy policy: %d allowed domains", len(whitelist))
    return ProxyPolicy(
        acls=tuple(acls),
        access_rules=access_rules,
        upstream_peer=peer,
        no_proxy_acls=no_proxy_acls,
        routing_rules=tuple(routing),
    )


def render_squid_conf(
    policy: ProxyPolicy,
    *,
    listen_port: int = DEFAULT_LISTEN_PORT,
    connect_timeout: int = DEFAULT_CONNECT_TIMEOUT,
    access_log: str = DEFAULT_ACCESS_LOG,
) -> str:
    """Render *policy* as squid configuration text.

    The output is a pure function of the arguments, so identical
    policies render byte-identical configuration.

    Args:
        policy: Compiled policy.
        listen_port: Port squid listens on inside the internal network.
        connect_timeout: Seconds before an upstream connect attempt fails.
        access_log: Path of squid's access log (read by ``AccessLog``).

    Returns:
        Configuration text ending in a newline.
    """
    lines = ["# Generated by netfence. Do not edit.", ""]
    if policy.enforcement_disabled:
        lines += [
            "# !!! ENFORCEMENT DISABLED: empty whitelist.",
            "# !!! All destinations are allowed.",
            "",
        ]

    lines.append(f"http_port {listen_port}")
    lines.append("")

    if policy.acls:
        lines += [acl.render() for acl in policy.acls]
        lines.append("")
    lines += [rule.render() for rule in policy.access_rules]
    lines.append("")

    if policy.upstream_peer is not None:
        lines.append("# Upstream proxy")
        lines.append(policy.upstream_peer.render())
        if policy.no_proxy_acls:
            lines += [acl.render() for acl in policy.no_proxy_acls]
        lines += [rule.render() for rule in policy.routing_rules]
        lines.append("")

    lines += [
        f"connect_timeout {connect_timeout} seconds",
        "cache deny all",
        f"access_log stdio:{access_log} squid",
        "forwarded_for delete",
        "via off",
    ]
    return "\n".join(lines) + "\n"
