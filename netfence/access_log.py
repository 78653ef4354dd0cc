# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Reader for the enforcement proxy's access log.

A request to a non-whitelisted destination is an expected outcome, not
an error: squid answers it with ``TCP_DENIED/403``.  This module makes
those denials observable and countable without touching the proxy.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlsplit


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccessLogEntry:
    """One line of squid's native access log format."""

    timestamp: float
    client: str
    result_code: str
    status: int
    method: str
    host: str

    @property
    def denied(self) -> bool:
        return "DENIED" in self.result_code


@dataclass
class AccessSummary:
    """Per-host request counts."""

    allowed: Counter[str] = field(default_factory=Counter)
    denied: Counter[str] = field(default_factory=Counter)

    @property
    def total_denied(self) -> int:
        return sum(self.denied.values())


def _host_of(method: str, url: str) -> str:
    if method == "CONNECT" or "://" not in url:
        host = url.rsplit(":", 1)[0] if ":" in url else url
        return host.lower()
    return (urlsplit(url).hostname or "").lower()


def parse_access_line(line: str) -> AccessLogEntry | None:
    """Parse a native-format line, returning None for anything else.

    Example line::

        1718000000.123  12 10.199.1.2 TCP_DENIED/403 3900 CONNECT
            evil.com:443 - HIER_NONE/- text/html

    (shown wrapped; the log holds one entry per line)
    """
    fields = line.split()
    if len(fields) < 7:
        return None
    try:
        timestamp = float(fields[0])
        code, _, status = fields[3].partition("/")
        status_code = int(status)
    except ValueError:
        return None
    method = fields[5]
    return AccessLogEntry(
        timestamp=timestamp,
        client=fields[2],
        result_code=code,
        status=status_code,
        method=method,
        host=_host_of(method, fields[6]),
    )


class AccessLog:
    """Read access to the proxy access log file."""

    def __init__(self, log_path: Path) -> None:
        self._path = log_path

    @property
    def path(self) -> Path:
        return self._path

    def exists(self) -> bool:
        return self._path.exists()

    def tail(self, offset: int = 0) -> tuple[list[AccessLogEntry], int]:
        """Read entries appended after byte *offset*.

        Returns:
            Tuple of (new_entries, new_offset).  Pass new_offset to the
            next call to poll incrementally.
        """
        if not self._path.exists():
            return [], 0

        try:
            with self._path.open("r") as f:
                f.seek(offset)
                content = f.read()
                new_offset = f.tell()
        except OSError as e:
            logger.warning("Failed to read access log %s: %s", self._path, e)
            return [], offset

        entries = []
        for line in content.splitlines():
            entry = parse_access_line(line)
            if entry is not None:
                entries.append(entry)
        return entries, new_offset

    def summary(self) -> AccessSummary:
        """Count allowed and denied requests per host."""
        entries, _ = self.tail(0)
        result = AccessSummary()
        for entry in entries:
            if entry.denied:
                result.denied[entry.host] += 1
            else:
                result.allowed[entry.host] += 1
        if result.denied:
            logger.info(
                "Proxy denied %d requests to %d hosts",
                result.total_denied,
                len(result.denied),
            )
        return result
