# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Network placement that makes proxy bypass structurally impossible.

Proxy mode: each instance gets one ``EXTERNAL`` network (route to the
internet) and one ``INTERNAL`` network (created with ``--internal``, no
route out).  The enforcement point (squid) is dual-homed; the workload
is attached to the internal network only, so even a fully compromised
workload has no interface that can reach the internet.

Firewall mode: a single container carries both the workload and the
compiled rule set.  There is no topology guarantee; the invariant is an
ordering one: the rule set must be installed and verified in DROP state
before the workload process starts.

Topology violations raise ``TopologyError`` and must abort startup.
"""

from __future__ import annotations

import logging
import os
import subprocess
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum

from netfence.firewall import FirewallApplier, FirewallRuleSet


logger = logging.getLogger(__name__)

NETWORK_PREFIX = "netfence-"


class TopologyError(Exception):
    """Fatal violation of the network placement invariants."""


class NetworkKind(Enum):
    EXTERNAL = "external"
    INTERNAL = "internal"


class Role(Enum):
    """What a container does in the instance."""

    ENFORCEMENT_POINT = "enforcement_point"
    WORKLOAD = "workload"
    SIDECAR = "sidecar"


@dataclass(frozen=True)
class Network:
    """A container network.

    Attributes:
        name: Runtime network name.
        kind: ``EXTERNAL`` networks route to the internet;
            ``INTERNAL`` networks do not.
        subnet: Optional CIDR subnet.
    """

    name: str
    kind: NetworkKind
    subnet: str | None = None

    def create_args(self, container_command: str = "podman") -> list[str]:
        """Return the command that creates this network."""
        cmd = [container_command, "network", "create"]
        if self.kind is NetworkKind.INTERNAL:
            cmd.append("--internal")
        if self.subnet:
            cmd += ["--subnet", self.subnet]
        cmd.append(self.name)
        return cmd


@dataclass(frozen=True)
class Container:
    name: str
    role: Role


@dataclass(frozen=True)
class NetworkTopology:
    """Networks of one instance and which containers attach to which.

    ``placements`` pairs each container with its networks, in placement
    order.  The value is fully immutable and hashable.
    """

    networks: frozenset[Network]
    placements: tuple[tuple[Container, frozenset[Network]], ...] = ()

    @property
    def containers(self) -> tuple[Container, ...]:
        return tuple(c for c, _ in self.placements)

    def _single(self, kind: NetworkKind) -> Network:
        found = [n for n in self.networks if n.kind is kind]
        if len(found) != 1:
            raise TopologyError(
                f"Expected exactly one {kind.value} network, found {len(found)}"
            )
        return found[0]

    @property
    def external(self) -> Network:
        return self._single(NetworkKind.EXTERNAL)

    @property
    def internal(self) -> Network:
        return self._single(NetworkKind.INTERNAL)

    @property
    def enforcement_point(self) -> Container:
        points = [
            c for c in self.containers if c.role is Role.ENFORCEMENT_POINT
        ]
        if len(points) != 1:
            raise TopologyError(
                f"Expected exactly one enforcement point, found {len(points)}"
            )
        return points[0]

    def networks_of(self, container: Container) -> frozenset[Network]:
        for placed, networks in self.placements:
            if placed == container:
                return networks
        return frozenset()

    def container_network_args(self, container: Container) -> list[str]:
        """Return ``--network`` arguments for starting *container*.

        The external network (if any) comes first so its default route
        is the one the dual-homed proxy uses.
        """
        ordered = sorted(
            self.networks_of(container),
            key=lambda n: (n.kind is not NetworkKind.EXTERNAL, n.name),
        )
        args: list[str] = []
        for network in ordered:
            args += ["--network", network.name]
        return args


def validate_topology(topology: NetworkTopology) -> None:
    """Check the placement invariants.

    Raises:
        TopologyError: If the network counts are wrong, a placement
            references an unknown network, the enforcement point is not
            dual-homed, or any other container touches the external
            network.
    """
    external = topology.external
    internal = topology.internal
    proxy = topology.enforcement_point

    if len(set(topology.containers)) != len(topology.containers):
        raise TopologyError("A container is placed more than once")

    for container, networks in topology.placements:
        unknown = networks - topology.networks
        if unknown:
            raise TopologyError(
                f"Container {container.name} attached to unknown network(s): "
                f"{', '.join(sorted(n.name for n in unknown))}"
            )
        if not networks:
            raise TopologyError(f"Container {container.name} has no network")

    if topology.networks_of(proxy) != frozenset({external, internal}):
        raise TopologyError(
            f"Enforcement point {proxy.name} must be attached to both "
            f"{external.name} and {internal.name}"
        )

    for container, networks in topology.placements:
        if container == proxy:
            continue
        if networks != frozenset({internal}):
            raise TopologyError(
                f"{container.role.value} container {container.name} must be "
                f"attached only to internal network {internal.name}; "
                f"found {', '.join(sorted(n.name for n in networks))}"
            )


def place(
    containers: Sequence[Container],
    *,
    instance_id: str,
    internal_subnet: str | None = None,
) -> NetworkTopology:
    """Build and validate the proxy-mode topology for one instance.

    Args:
        containers: Exactly one enforcement point, exactly one workload,
            and any number of sidecars.
        instance_id: Identifier used to name the instance's networks.
        internal_subnet: Optional subnet for the internal network.

    Returns:
        The validated topology.

    Raises:
        TopologyError: If the container roles are not as required.
    """
    roles = [c.role for c in containers]
    if roles.count(Role.ENFORCEMENT_POINT) != 1:
        raise TopologyError("Exactly one enforcement point is required")
    if roles.count(Role.WORKLOAD) != 1:
        raise TopologyError("Exactly one workload container is required")

    external = Network(
        f"{NETWORK_PREFIX}{instance_id}-external", NetworkKind.EXTERNAL
    )
    internal = Network(
        f"{NETWORK_PREFIX}{instance_id}-internal",
        NetworkKind.INTERNAL,
        subnet=internal_subnet,
    )
    placements = tuple(
        (
            container,
            frozenset({external, internal})
            if container.role is Role.ENFORCEMENT_POINT
            else frozenset({internal}),
        )
        for container in containers
    )

    topology = NetworkTopology(
        networks=frozenset({external, internal}), placements=placements
    )
    validate_topology(topology)
    logger.info(
        "Placed %d containers: %s dual-homed on %s + %s",
        len(containers),
        topology.enforcement_point.name,
        external.name,
        internal.name,
    )
    return topology


def proxy_environment(proxy_host: str, proxy_port: int) -> dict[str, str]:
    """Environment that points workload tools at the enforcement proxy."""
    url = f"http://{proxy_host}:{proxy_port}"
    return {
        "HTTP_PROXY": url,
        "HTTPS_PROXY": url,
        "http_proxy": url,
        "https_proxy": url,
        "NO_PROXY": "localhost,127.0.0.1",
        "no_proxy": "localhost,127.0.0.1",
    }


# ---------------------------------------------------------------------------
# Live namespace checks
# ---------------------------------------------------------------------------


def has_default_route(route_table: str) -> bool:
    """Return True if ``ip [-6] route show`` output has a default route."""
    for line in route_table.splitlines():
        first = line.strip().split(" ", 1)[0]
        if first in ("default", "0.0.0.0/0", "::/0"):
            return True
    return False


def assert_no_default_route(route_table: str, container_name: str) -> None:
    """Raise ``TopologyError`` if *route_table* has a default route."""
    if has_default_route(route_table):
        raise TopologyError(
            f"Container {container_name} has a default route; the workload "
            "must not have a path to the internet"
        )


def read_route_table(
    container_command: str, container_name: str, *, ipv6: bool = False
) -> str:
    """Capture ``ip route show`` (or ``ip -6 route show``) from a container.

    Raises:
        TopologyError: If the routes cannot be read.  An unverifiable
            namespace is treated as a violation.
    """
    ip = ["ip", "-6"] if ipv6 else ["ip"]
    try:
        result = subprocess.run(
            [container_command, "exec", container_name, *ip, "route", "show"],
            check=True,
            capture_output=True,
            text=True,
        )
    except (FileNotFoundError, subprocess.CalledProcessError) as e:
        raise TopologyError(
            f"Cannot read route table of {container_name}: {e}"
        ) from e
    return result.stdout


def verify_workload_isolation(
    topology: NetworkTopology, container_command: str = "podman"
) -> None:
    """Check every non-proxy container's live namespace for a default route.

    Raises:
        TopologyError: If any such container can route to the internet.
    """
    validate_topology(topology)
    for container in topology.containers:
        if container.role is Role.ENFORCEMENT_POINT:
            continue
        for ipv6 in (False, True):
            routes = read_route_table(
                container_command, container.name, ipv6=ipv6
            )
            assert_no_default_route(routes, container.name)
        logger.info("Verified %s has no default route", container.name)


# ---------------------------------------------------------------------------
# Firewall mode
# ---------------------------------------------------------------------------


class FirewallTopology:
    """Single-container mode: rules first, then the workload.

    ``start_workload()`` refuses to run until ``install()`` has applied
    and verified the rule set (or enforcement was explicitly disabled).
    """

    def __init__(
        self,
        applier: FirewallApplier,
        ruleset: FirewallRuleSet | None,
    ) -> None:
        self._applier = applier
        self._ruleset = ruleset
        self._ready = False

    @property
    def ready(self) -> bool:
        return self._ready

    def install(self) -> None:
        """Apply and verify the rule set.

        Raises:
            FirewallError: If the rules cannot be applied or verified.
        """
        if self._ruleset is None:
            logger.warning(
                "!!! No firewall rule set: workload starts WITHOUT network "
                "enforcement !!!"
            )
        else:
            self._applier.apply(self._ruleset)
            self._applier.verify(self._ruleset)
        self._ready = True

    def start_workload(
        self,
        argv: Sequence[str],
        exec_fn: Callable[[str, list[str]], object] = os.execvp,
    ) -> object:
        """Replace the current process with the workload.

        Raises:
            TopologyError: If called before ``install()``.
        """
        if not self._ready:
            raise TopologyError(
                "Refusing to start the workload before the firewall is "
                "installed and verified"
            )
        if not argv:
            raise TopologyError("No workload command given")
        logger.info("Starting workload: %s", argv[0])
        return exec_fn(argv[0], list(argv))
