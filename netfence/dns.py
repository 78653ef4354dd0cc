# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Hostname resolution for the firewall compiler.

Addresses are resolved once at compile time and never refreshed while
the instance runs.  A whitelisted service that rotates its IPs becomes
unreachable until the rule set is recompiled.
"""

from __future__ import annotations

import logging
import socket
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from ipaddress import IPv4Address


log = logging.getLogger(__name__)

#: Resolver signature: hostname -> IPv4 addresses (empty when unresolved).
Resolver = Callable[[str], frozenset[IPv4Address]]


def resolve_ipv4(hostname: str) -> frozenset[IPv4Address]:
    """Return the IPv4 (A record) addresses of *hostname*.

    Resolution failures are not errors here: the caller decides how to
    treat an unresolvable entry.

    Args:
        hostname: Hostname to resolve.

    Returns:
        The set of addresses, empty if resolution failed.
    """
    try:
        infos = socket.getaddrinfo(
            hostname, None, family=socket.AF_INET, type=socket.SOCK_STREAM
        )
    except (socket.gaierror, UnicodeError) as exc:
        log.debug("Could not resolve %s: %s", hostname, exc)
        return frozenset()
    return frozenset(IPv4Address(info[4][0]) for info in infos)


def resolve_all(
    hostnames: list[str],
    resolver: Resolver = resolve_ipv4,
    *,
    max_workers: int = 8,
) -> dict[str, frozenset[IPv4Address]]:
    """Resolve *hostnames* with bounded parallelism.

    Entries have no ordering dependency on each other, so lookups run
    concurrently.  The returned mapping preserves the input order.

    Args:
        hostnames: Hostnames to resolve.
        resolver: Resolution function.
        max_workers: Maximum concurrent lookups.

    Returns:
        Mapping of hostname to its addresses.
    """
    if not hostnames:
        return {}
    workers = max(1, min(max_workers, len(hostnames)))
    with ThreadPoolExecutor(
        max_workers=workers, thread_name_prefix="netfence-dns"
    ) as pool:
        results = list(pool.map(resolver, hostnames))
    return dict(zip(hostnames, results, strict=True))
