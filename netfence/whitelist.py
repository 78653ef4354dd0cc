# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Typed domain whitelist with text, comma-list and YAML parsing.

The whitelist is the single operator input to both enforcement
strategies.  It is parsed once at startup and never mutated; any change
requires recompiling the artifacts and restarting the instance.

Text format (one entry per line, ``#`` starts a comment)::

    .anthropic.com        # subdomain scope
    api.github.com        # exact scope

A pattern with a leading dot has ``Scope.SUBDOMAIN`` and matches the bare
domain as well as every deeper subdomain.  A bare pattern has
``Scope.EXACT`` and matches only that literal hostname.

Keep entries narrow.  A subdomain entry for a shared hosting domain
(``.github.io``, ``.herokuapp.com``, ``.s3.amazonaws.com``) lets any third
party who can register a subdomain there receive traffic from the
sandbox.  The matcher does not second-guess such entries.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

import yaml


if TYPE_CHECKING:
    from collections.abc import Iterator


class WhitelistError(ValueError):
    """Raised when a whitelist entry cannot be parsed."""


class Scope(Enum):
    """Match scope of a whitelist entry."""

    EXACT = "exact"
    SUBDOMAIN = "subdomain"


_LABEL_RE = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")
_MAX_HOSTNAME_LENGTH = 253


@dataclass(frozen=True)
class WhitelistEntry:
    """A single configured pattern.

    Attributes:
        value: Case-folded hostname without the leading dot.
        scope: Whether the entry matches only ``value`` or also its
            subdomains.
    """

    value: str
    scope: Scope

    @property
    def pattern(self) -> str:
        """The entry in its configured textual form."""
        if self.scope is Scope.SUBDOMAIN:
            return f".{self.value}"
        return self.value

    @classmethod
    def parse(cls, raw: str) -> WhitelistEntry:
        """Parse a single pattern such as ``.anthropic.com``.

        Args:
            raw: Pattern text.  Surrounding whitespace is ignored.

        Returns:
            Parsed entry.

        Raises:
            WhitelistError: If the pattern is not a valid hostname.
        """
        text = raw.strip().lower()
        scope = Scope.EXACT
        if text.startswith("."):
            scope = Scope.SUBDOMAIN
            text = text[1:]
        validate_hostname(text, raw)
        return cls(value=text, scope=scope)


def validate_hostname(hostname: str, raw: str | None = None) -> None:
    """Raise ``WhitelistError`` unless *hostname* is a plain DNS name."""
    if raw is None:
        raw = hostname
    if not hostname:
        raise WhitelistError(f"Empty whitelist pattern: {raw!r}")
    if len(hostname) > _MAX_HOSTNAME_LENGTH:
        raise WhitelistError(f"Whitelist pattern too long: {raw!r}")
    if "*" in hostname:
        raise WhitelistError(
            f"Wildcards are not supported in whitelist pattern {raw!r}; "
            "use a leading dot (e.g. '.example.com') for subdomain scope"
        )
    for label in hostname.split("."):
        if not _LABEL_RE.match(label):
            raise WhitelistError(f"Invalid hostname in whitelist: {raw!r}")


@dataclass(frozen=True)
class Whitelist:
    """Ordered, de-duplicated set of whitelist entries.

    An empty whitelist is the explicit "do not enforce" state, not
    "deny everything".  Compilers report it as enforcement disabled.
    """

    entries: tuple[WhitelistEntry, ...] = ()

    @property
    def is_empty(self) -> bool:
        """Whether no entries are configured."""
        return not self.entries

    def __iter__(self) -> Iterator[WhitelistEntry]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def patterns(self) -> list[str]:
        """Entries in their configured textual form."""
        return [e.pattern for e in self.entries]


def _dedupe(entries: list[WhitelistEntry]) -> Whitelist:
    seen: set[WhitelistEntry] = set()
    unique: list[WhitelistEntry] = []
    for entry in entries:
        if entry not in seen:
            seen.add(entry)
            unique.append(entry)
    return Whitelist(entries=tuple(unique))


def merge_whitelists(*whitelists: Whitelist) -> Whitelist:
    """Combine several whitelists, keeping first-occurrence order."""
    return _dedupe([e for wl in whitelists for e in wl.entries])


def parse_whitelist_text(text: str) -> Whitelist:
    """Parse the line-based whitelist file format.

    Args:
        text: File contents.

    Returns:
        Parsed ``Whitelist``.

    Raises:
        WhitelistError: If any line holds an invalid pattern.  The message
            names the offending line number.
    """
    entries: list[WhitelistEntry] = []
    for lineno, line in enumerate(text.splitlines(), start=1):
        content = line.split("#", 1)[0].strip()
        if not content:
            continue
        try:
            entries.append(WhitelistEntry.parse(content))
        except WhitelistError as e:
            raise WhitelistError(f"line {lineno}: {e}") from e
    return _dedupe(entries)


def parse_host_list(value: str) -> Whitelist:
    """Parse a comma-separated host list (``ALLOWED_HOSTS`` form).

    Args:
        value: Comma-separated patterns.  Blank items are skipped.

    Returns:
        Parsed ``Whitelist``.
    """
    entries = [
        WhitelistEntry.parse(item) for item in value.split(",") if item.strip()
    ]
    return _dedupe(entries)


def parse_whitelist_yaml(data: bytes) -> Whitelist:
    """Parse a YAML whitelist with a top-level ``domains`` list.

    Args:
        data: Raw YAML bytes.

    Returns:
        Parsed ``Whitelist``.

    Raises:
        WhitelistError: If the YAML is invalid or malformed.
    """
    try:
        config = yaml.safe_load(data)
    except yaml.YAMLError as e:
        raise WhitelistError(f"Invalid whitelist YAML: {e}") from e

    if config is None:
        config = {}
    if not isinstance(config, dict):
        raise WhitelistError("Whitelist YAML must be a mapping")

    raw_domains = config.get("domains") or []
    if not isinstance(raw_domains, list):
        raise WhitelistError("Whitelist 'domains' must be a list")

    entries: list[WhitelistEntry] = []
    for index, raw in enumerate(raw_domains):
        if raw is None or isinstance(raw, (dict, list)):
            raise WhitelistError(
                f"Whitelist 'domains' item {index} must be a hostname, "
                f"got {raw!r}"
            )
        entries.append(WhitelistEntry.parse(str(raw)))
    return _dedupe(entries)
