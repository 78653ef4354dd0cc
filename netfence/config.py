# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Immutable sandbox configuration.

The configuration is assembled once at startup, either from environment
variables (the form used inside containers) or from a YAML file, and is
never mutated afterwards.  Components receive the ``SandboxConfig`` they
need instead of reading process state themselves.

Environment variables:

* ``ALLOWED_HOSTS`` -- comma-separated whitelist patterns
* ``WHITELIST_FILE`` -- path to a whitelist file (text or YAML)
* ``UPSTREAM_PROXY_HOST`` -- corporate proxy, optionally ``host:port``
* ``UPSTREAM_PROXY_PORT`` -- corporate proxy port (default 3128)
* ``UPSTREAM_PROXY_USER`` / ``UPSTREAM_PROXY_PASSWORD``
* ``NO_PROXY_DOMAINS`` -- comma-separated upstream bypass list
* ``SKIP_FIREWALL`` -- disable enforcement (logged loudly)
* ``ALLOWED_PORTS`` -- comma-separated firewall ports (default 80,443)

The YAML file lives at ``$XDG_CONFIG_HOME/netfence/netfence.yaml`` by
default and accepts ``!env VAR`` tags for any scalar value::

    whitelist:
      - .anthropic.com
      - api.github.com
    upstream:
      host: !env UPSTREAM_PROXY_HOST
      port: 8080
      no_proxy: [.internal.corp]
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml
from platformdirs import user_config_path

from netfence.dotenv_loader import load_dotenv_once
from netfence.logging import SecretFilter
from netfence.whitelist import (
    Whitelist,
    WhitelistEntry,
    WhitelistError,
    merge_whitelists,
    parse_host_list,
    parse_whitelist_text,
    parse_whitelist_yaml,
    validate_hostname,
)


if TYPE_CHECKING:
    from collections.abc import Mapping


logger = logging.getLogger(__name__)

_APP_NAME = "netfence"

DEFAULT_UPSTREAM_PORT = 3128
DEFAULT_PROXY_PORT = 3128
DEFAULT_ALLOWED_PORTS = frozenset({80, 443})
DEFAULT_RESOLVER_WORKERS = 8

_BOOL_TRUTHY = frozenset({"true", "1", "yes", "on"})
_BOOL_FALSY = frozenset({"false", "0", "no", "off", ""})


class ConfigError(Exception):
    """Fatal configuration error; aborts startup of the instance."""


def get_config_path() -> Path:
    """Return the default YAML config path (XDG config directory)."""
    return user_config_path(_APP_NAME) / "netfence.yaml"


# ---------------------------------------------------------------------------
# Value parsing
# ---------------------------------------------------------------------------


def _coerce_bool(value: object, name: str) -> bool:
    if isinstance(value, bool):
        return value
    s = str(value).lower().strip()
    if s in _BOOL_TRUTHY:
        return True
    if s in _BOOL_FALSY:
        return False
    raise ConfigError(f"Cannot convert {name}={value!r} to bool")


def _parse_port(value: object, name: str) -> int:
    try:
        port = int(str(value).strip())
    except ValueError as e:
        raise ConfigError(f"Malformed {name}: {value!r}") from e
    _check_port(port, name)
    return port


def _check_port(port: int, name: str) -> None:
    if not 1 <= port <= 65535:
        raise ConfigError(f"{name} out of range: {port}")


def parse_port_list(value: str | list[Any]) -> frozenset[int]:
    """Parse ``"80,443"`` (or a YAML list) into a set of ports.

    Raises:
        ConfigError: If any item is not a valid port or the list is empty.
    """
    items = value.split(",") if isinstance(value, str) else value
    ports = frozenset(
        _parse_port(item, "allowed port") for item in items if str(item).strip()
    )
    if not ports:
        raise ConfigError("Allowed ports list is empty")
    return ports


def parse_no_proxy(value: str | list[Any]) -> tuple[WhitelistEntry, ...]:
    """Parse the upstream bypass list into whitelist entries."""
    items = value.split(",") if isinstance(value, str) else value
    try:
        return tuple(
            WhitelistEntry.parse(str(item))
            for item in items
            if str(item).strip()
        )
    except WhitelistError as e:
        raise ConfigError(f"Malformed no-proxy domain: {e}") from e


def load_whitelist_file(path: Path) -> Whitelist:
    """Load a whitelist file; ``.yaml``/``.yml`` use the YAML format.

    Raises:
        ConfigError: If the file cannot be read or parsed.
    """
    try:
        data = path.read_bytes()
    except OSError as e:
        raise ConfigError(f"Cannot read whitelist file {path}: {e}") from e
    try:
        if path.suffix in (".yaml", ".yml"):
            return parse_whitelist_yaml(data)
        return parse_whitelist_text(data.decode("utf-8"))
    except (WhitelistError, UnicodeDecodeError) as e:
        raise ConfigError(f"{path}: {e}") from e


# ---------------------------------------------------------------------------
# Upstream proxy
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class UpstreamConfig:
    """Corporate forward proxy that the enforcement point routes through.

    Attributes:
        host: Upstream proxy hostname or IPv4 address.
        port: Upstream proxy port.
        no_proxy: Destinations that bypass the upstream and go direct.
            They are still subject to the outer whitelist.
        username: Optional proxy login user.
        password: Optional proxy login password (auto-redacted in logs).
    """

    host: str
    port: int
    no_proxy: tuple[WhitelistEntry, ...] = ()
    username: str | None = None
    password: str | None = None

    def __post_init__(self) -> None:
        try:
            validate_hostname(self.host)
        except WhitelistError as e:
            raise ConfigError(
                f"Malformed upstream proxy host: {self.host!r}"
            ) from e
        _check_port(self.port, "upstream proxy port")
        if self.password:
            SecretFilter.register_secret(self.password)

    @property
    def has_credentials(self) -> bool:
        """Whether both user and password are configured."""
        return bool(self.username and self.password)

    def credential_warnings(self) -> list[str]:
        """Describe incomplete credential configuration, if any."""
        if self.username and not self.password:
            return [
                f"Upstream proxy user {self.username!r} has no password; "
                "upstream requests will be sent without credentials"
            ]
        if self.password and not self.username:
            return [
                "Upstream proxy password is set without a user; "
                "upstream requests will be sent without credentials"
            ]
        return []


def parse_upstream(
    host: str | None,
    port: str | int | None = None,
    *,
    no_proxy: str | list[Any] = "",
    username: str | None = None,
    password: str | None = None,
    default_port: int | None = DEFAULT_UPSTREAM_PORT,
) -> UpstreamConfig | None:
    """Build an ``UpstreamConfig`` from loosely formatted inputs.

    *host* may be a bare host, ``host:port`` or ``http://host:port/``.  An
    explicit *port* wins over a port embedded in *host*, which wins over
    *default_port*.

    Returns:
        The upstream config, or None when *host* is empty.

    Raises:
        ConfigError: If the host is malformed, or no port is given and
            there is no default.
    """
    raw = (host or "").strip()
    if not raw:
        if no_proxy:
            logger.warning(
                "NO_PROXY_DOMAINS is set but no upstream proxy is "
                "configured; the bypass list has no effect"
            )
        return None

    text = raw
    if "://" in text:
        scheme, _, text = text.partition("://")
        if scheme.lower() != "http":
            raise ConfigError(
                f"Unsupported upstream proxy scheme {scheme!r} in {raw!r}"
            )
    text = text.rstrip("/")

    embedded_port: int | None = None
    if ":" in text:
        text, _, port_text = text.rpartition(":")
        embedded_port = _parse_port(
            port_text, f"upstream proxy port in {raw!r}"
        )

    if port is not None and str(port).strip():
        resolved_port = _parse_port(port, "upstream proxy port")
    elif embedded_port is not None:
        resolved_port = embedded_port
    elif default_port is not None:
        resolved_port = default_port
    else:
        raise ConfigError(
            f"Upstream proxy {raw!r} has no port and no default port"
        )

    return UpstreamConfig(
        host=text.lower(),
        port=resolved_port,
        no_proxy=parse_no_proxy(no_proxy) if no_proxy else (),
        username=username or None,
        password=password or None,
    )


# ---------------------------------------------------------------------------
# Sandbox configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SandboxConfig:
    """Complete, immutable input to the enforcement compilers.

    Attributes:
        whitelist: Operator whitelist.  Empty means enforcement disabled.
        upstream: Optional corporate proxy passthrough.
        skip_firewall: Explicit escape hatch that disables enforcement.
        allowed_ports: Ports opened to resolved whitelist addresses.
        proxy_port: Port the enforcement proxy listens on.
        resolver_workers: Upper bound on parallel DNS lookups.
        container_command: Container runtime (podman or docker).
    """

    whitelist: Whitelist = field(default_factory=Whitelist)
    upstream: UpstreamConfig | None = None
    skip_firewall: bool = False
    allowed_ports: frozenset[int] = DEFAULT_ALLOWED_PORTS
    proxy_port: int = DEFAULT_PROXY_PORT
    resolver_workers: int = DEFAULT_RESOLVER_WORKERS
    container_command: str = "podman"

    def __post_init__(self) -> None:
        if not self.allowed_ports:
            raise ConfigError("Allowed ports list is empty")
        for port in self.allowed_ports:
            _check_port(port, "allowed port")
        _check_port(self.proxy_port, "proxy port")
        if self.resolver_workers < 1:
            raise ConfigError(
                f"Resolver workers must be >= 1: {self.resolver_workers}"
            )

    @property
    def enforcement_enabled(self) -> bool:
        """False when either escape hatch is active."""
        return not self.skip_firewall and not self.whitelist.is_empty

    def log_enforcement_state(self) -> None:
        """Log the enforcement state; escape hatches log at WARNING."""
        if self.skip_firewall:
            logger.warning(
                "!!! NETWORK ENFORCEMENT DISABLED: SKIP_FIREWALL is set. "
                "The workload has unrestricted network access. !!!"
            )
        elif self.whitelist.is_empty:
            logger.warning(
                "!!! NETWORK ENFORCEMENT DISABLED: the whitelist is empty. "
                "The workload has unrestricted network access. !!!"
            )
        else:
            logger.info(
                "Network enforcement enabled: %d whitelist entries, ports %s",
                len(self.whitelist),
                ",".join(str(p) for p in sorted(self.allowed_ports)),
            )
        if self.upstream is not None:
            logger.info(
                "Upstream proxy: %s:%d (%d no-proxy domains)",
                self.upstream.host,
                self.upstream.port,
                len(self.upstream.no_proxy),
            )

    @classmethod
    def from_environ(
        cls, environ: Mapping[str, str] | None = None
    ) -> SandboxConfig:
        """Assemble the configuration from environment variables.

        When *environ* is None, ``.env`` files are loaded first and the
        process environment is used.

        Raises:
            ConfigError: If any value is malformed.
        """
        if environ is None:
            load_dotenv_once()
            environ = os.environ

        try:
            whitelist = parse_host_list(environ.get("ALLOWED_HOSTS", ""))
        except WhitelistError as e:
            raise ConfigError(f"ALLOWED_HOSTS: {e}") from e

        whitelist_file = environ.get("WHITELIST_FILE", "").strip()
        if whitelist_file:
            whitelist = merge_whitelists(
                whitelist, load_whitelist_file(Path(whitelist_file))
            )

        upstream = parse_upstream(
            environ.get("UPSTREAM_PROXY_HOST"),
            environ.get("UPSTREAM_PROXY_PORT"),
            no_proxy=environ.get("NO_PROXY_DOMAINS", ""),
            username=environ.get("UPSTREAM_PROXY_USER"),
            password=environ.get("UPSTREAM_PROXY_PASSWORD"),
        )

        kwargs: dict[str, Any] = {}
        if environ.get("ALLOWED_PORTS", "").strip():
            kwargs["allowed_ports"] = parse_port_list(environ["ALLOWED_PORTS"])

        return cls(
            whitelist=whitelist,
            upstream=upstream,
            skip_firewall=_coerce_bool(
                environ.get("SKIP_FIREWALL", ""), "SKIP_FIREWALL"
            ),
            **kwargs,
        )

    @classmethod
    def from_yaml(cls, path: Path | None = None) -> SandboxConfig:
        """Load the configuration from a YAML file.

        Args:
            path: Config file path.  Defaults to ``get_config_path()``.

        Raises:
            ConfigError: If the file is missing or invalid.
        """
        load_dotenv_once()
        config_path = path or get_config_path()
        if not config_path.exists():
            raise ConfigError(f"Config file not found: {config_path}")

        try:
            with config_path.open() as f:
                raw = yaml.load(f, Loader=_make_loader())  # noqa: S506
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e

        if raw is None:
            raw = {}
        if not isinstance(raw, dict):
            raise ConfigError(f"{config_path}: top level must be a mapping")

        return cls._from_mapping(raw, base_dir=config_path.parent)

    @classmethod
    def _from_mapping(
        cls, raw: dict[str, Any], *, base_dir: Path
    ) -> SandboxConfig:
        patterns = _resolve_list(raw.get("whitelist"), "whitelist")
        try:
            whitelist = parse_host_list(",".join(patterns))
        except WhitelistError as e:
            raise ConfigError(f"whitelist: {e}") from e

        whitelist_file = _raw_resolve(raw.get("whitelist_file"))
        if whitelist_file:
            file_path = Path(whitelist_file).expanduser()
            if not file_path.is_absolute():
                file_path = base_dir / file_path
            whitelist = merge_whitelists(
                whitelist, load_whitelist_file(file_path)
            )

        upstream: UpstreamConfig | None = None
        raw_upstream = raw.get("upstream")
        if raw_upstream:
            if not isinstance(raw_upstream, dict):
                raise ConfigError("'upstream' must be a mapping")
            no_proxy = _resolve_list(
                raw_upstream.get("no_proxy"), "upstream.no_proxy"
            )
            upstream = parse_upstream(
                _raw_resolve(raw_upstream.get("host")),
                _raw_resolve(raw_upstream.get("port")),
                no_proxy=no_proxy,
                username=_raw_resolve(raw_upstream.get("username")),
                password=_raw_resolve(raw_upstream.get("password")),
            )

        kwargs: dict[str, Any] = {}
        if raw.get("allowed_ports") is not None:
            kwargs["allowed_ports"] = parse_port_list(
                _resolve_list(raw["allowed_ports"], "allowed_ports")
            )
        if raw.get("proxy_port") is not None:
            kwargs["proxy_port"] = _parse_port(
                _raw_resolve(raw["proxy_port"]), "proxy_port"
            )
        if raw.get("resolver_workers") is not None:
            try:
                kwargs["resolver_workers"] = int(
                    _raw_resolve(raw["resolver_workers"]) or ""
                )
            except ValueError as e:
                raise ConfigError(
                    f"Malformed resolver_workers: {raw['resolver_workers']!r}"
                ) from e
        if raw.get("container_command"):
            kwargs["container_command"] = _raw_resolve(
                raw["container_command"]
            )

        return cls(
            whitelist=whitelist,
            upstream=upstream,
            skip_firewall=_coerce_bool(
                _raw_resolve(raw.get("skip_firewall")) or "", "skip_firewall"
            ),
            **kwargs,
        )


# ---------------------------------------------------------------------------
# YAML ``!env`` support
# ---------------------------------------------------------------------------


class _EnvVar:
    """Placeholder for an unresolved ``!env VAR_NAME`` tag."""

    def __init__(self, var_name: str) -> None:
        self.var_name = var_name


def _env_constructor(loader: yaml.SafeLoader, node: yaml.Node) -> _EnvVar:
    """Handle ``!env VAR_NAME`` in YAML."""
    value = loader.construct_scalar(node)  # type: ignore[arg-type]
    return _EnvVar(str(value))


def _make_loader() -> type[yaml.SafeLoader]:
    """Create a YAML loader that understands ``!env``."""

    class EnvLoader(yaml.SafeLoader):
        pass

    EnvLoader.add_constructor("!env", _env_constructor)
    return EnvLoader


def _raw_resolve(value: object) -> str | None:
    """Resolve an ``_EnvVar`` to its string value, or stringify literals.

    Returns None if the value is None or the env var is not set.
    """
    if isinstance(value, _EnvVar):
        return os.environ.get(value.var_name)
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _resolve_list(value: object, name: str) -> list[str]:
    """Resolve a YAML list of scalars, dropping empty values.

    Raises:
        ConfigError: If *value* is present but not a list.
    """
    if value is None:
        return []
    if not isinstance(value, list):
        raise ConfigError(
            f"Config '{name}' must be a list, got {type(value).__name__}"
        )
    result: list[str] = []
    for item in value:
        resolved = _raw_resolve(item)
        if resolved:
            result.append(resolved)
    return result
