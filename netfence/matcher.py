# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Domain matching shared by the proxy and firewall compilers.

Both enforcement strategies take their pattern semantics from here so
the two cannot drift apart.  Pure functions, no I/O.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from netfence.whitelist import Scope


if TYPE_CHECKING:
    from collections.abc import Iterable

    from netfence.whitelist import WhitelistEntry


def normalize_hostname(hostname: str) -> str:
    """Case-fold a hostname and strip surrounding space and a root dot."""
    host = hostname.strip().lower()
    if host.endswith("."):
        host = host[:-1]
    return host


def matches(entry: WhitelistEntry, hostname: str) -> bool:
    """Check whether *hostname* is covered by *entry*.

    ``EXACT`` entries match only the identical hostname.  ``SUBDOMAIN``
    entries match the bare domain or anything ending in ``"." + value``,
    so ``.anthropic.com`` covers ``api.anthropic.com`` but not
    ``anthropic.com.evil.net`` or ``evilanthropic.com``.

    Args:
        entry: Whitelist entry.
        hostname: Candidate hostname as presented in the request.

    Returns:
        True if the hostname matches.
    """
    host = normalize_hostname(hostname)
    value = entry.value.lower()
    if host == value:
        return True
    if entry.scope is Scope.SUBDOMAIN:
        return host.endswith("." + value)
    return False


def is_allowed(entries: Iterable[WhitelistEntry], hostname: str) -> bool:
    """Return True if any entry matches *hostname*.

    The whitelist is a flat allow list: there are no deny entries and no
    precedence between entries.
    """
    return any(matches(entry, hostname) for entry in entries)
