# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""In-container entrypoint for the firewall strategy.

Runs as root inside the workload container (with ``CAP_NET_ADMIN``):

1. assemble ``SandboxConfig`` from the environment
2. compile the rule set (resolving whitelist hostnames once)
3. atomically install and verify it
4. drop privileges and exec the workload

The workload never starts before step 3 has completed.  The rules live
in the container's network namespace and disappear with it.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Sequence

from netfence.compiler import FirewallPolicyCompiler
from netfence.config import SandboxConfig
from netfence.dns import Resolver, resolve_ipv4
from netfence.firewall import FirewallApplier, FirewallError
from netfence.topology import FirewallTopology


logger = logging.getLogger(__name__)

DEFAULT_RUN_AS = "coder"
DEFAULT_COMMAND = ("bash",)


def run_entrypoint(
    argv: Sequence[str],
    *,
    config: SandboxConfig | None = None,
    applier: FirewallApplier | None = None,
    resolver: Resolver = resolve_ipv4,
    run_as: str | None = DEFAULT_RUN_AS,
    exec_fn: Callable[[str, list[str]], object] = os.execvp,
    euid: int | None = None,
) -> object:
    """Install the firewall, then replace this process with the workload.

    Args:
        argv: Workload command; defaults to an interactive shell.
        config: Configuration; read from the environment when None.
        applier: Firewall installer.
        resolver: Hostname resolver used during compilation.
        run_as: User to drop to via ``gosu``; None keeps the current user.
        exec_fn: Process replacement function.
        euid: Effective user id; defaults to ``os.geteuid()``.

    Returns:
        Whatever *exec_fn* returns (``os.execvp`` never returns).

    Raises:
        FirewallError: If enforcement is enabled but cannot be installed,
            including when not running as root.
    """
    if config is None:
        config = SandboxConfig.from_environ()
    if euid is None:
        euid = os.geteuid()

    command = list(argv) or list(DEFAULT_COMMAND)

    if euid != 0:
        if config.enforcement_enabled:
            raise FirewallError(
                "Firewall enforcement requires root; refusing to start the "
                "workload without network restrictions"
            )
        config.log_enforcement_state()
        logger.warning("Not running as root: starting workload unprivileged")
        return exec_fn(command[0], command)

    compilation = FirewallPolicyCompiler(resolver=resolver).compile(config)
    topology = FirewallTopology(
        applier or FirewallApplier(), compilation.ruleset
    )
    topology.install()

    if run_as:
        command = ["gosu", run_as, *command]
    return topology.start_workload(command, exec_fn)
