# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""netfence CLI -- multi-command entry point.

Subcommands:

* ``check``          -- validate the configuration and report its state
* ``proxy-config``   -- compile and print the squid configuration
* ``firewall-rules`` -- compile and print the iptables-restore payload
* ``explain``        -- show how the proxy policy treats a hostname
* ``topology``       -- print the network commands for a proxy instance
* ``denials``        -- summarize denials from a proxy access log
* ``run``            -- install the firewall, then exec the workload

Configuration comes from ``--config PATH``, else the default YAML file
if it exists, else the environment.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from netfence.access_log import AccessLog
from netfence.compiler import FirewallPolicyCompiler, ProxyPolicyCompiler
from netfence.config import ConfigError, SandboxConfig, get_config_path
from netfence.firewall import FirewallError, render_iptables_restore
from netfence.logging import configure_logging
from netfence.proxy_acl import render_squid_conf
from netfence.topology import (
    Container,
    Role,
    TopologyError,
    place,
    proxy_environment,
)


logger = logging.getLogger(__name__)

_USAGE = """\
usage: netfence <command> [args]

commands:
  check           Validate the configuration and report its state
  proxy-config    Print the compiled squid configuration
  firewall-rules  Print the compiled iptables-restore payload
  explain         Show how the proxy policy treats a hostname
  topology        Print network commands for a proxy-mode instance
  denials         Summarize denied requests from a proxy access log
  run             Install the firewall, then exec the workload

Run 'netfence <command> --help' for command-specific help.\
"""


def _load_config(path: str | None) -> SandboxConfig:
    if path is not None:
        return SandboxConfig.from_yaml(Path(path))
    default = get_config_path()
    if default.exists():
        return SandboxConfig.from_yaml(default)
    return SandboxConfig.from_environ()


def _parser(prog: str, description: str) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=f"netfence {prog}", description=description
    )
    parser.add_argument("--config", help="YAML config file")
    return parser


def _write(text: str, output: str | None) -> None:
    if output:
        Path(output).write_text(text)
        logger.info("Wrote %s", output)
    else:
        sys.stdout.write(text)


# ── subcommands ─────────────────────────────────────────────────────


def cmd_check(argv: list[str]) -> int:
    """Validate configuration and print the whitelist and its state."""
    args = _parser("check", "Validate the configuration").parse_args(argv)
    config = _load_config(args.config)
    config.log_enforcement_state()

    if config.skip_firewall:
        print("enforcement: DISABLED (SKIP_FIREWALL)")
    elif config.whitelist.is_empty:
        print("enforcement: DISABLED (empty whitelist)")
    else:
        print("enforcement: enabled")
    for entry in config.whitelist:
        print(f"  {entry.pattern:<40} {entry.scope.value}")
    if config.upstream is not None:
        print(f"upstream: {config.upstream.host}:{config.upstream.port}")
        for entry in config.upstream.no_proxy:
            print(f"  direct: {entry.pattern}")
        for warning in config.upstream.credential_warnings():
            print(f"warning: {warning}")
    return 0


def cmd_proxy_config(argv: list[str]) -> int:
    """Compile the whitelist into squid configuration."""
    parser = _parser("proxy-config", "Print the squid configuration")
    parser.add_argument("--listen-port", type=int, default=None)
    parser.add_argument("-o", "--output", help="Write to file")
    args = parser.parse_args(argv)

    config = _load_config(args.config)
    policy = ProxyPolicyCompiler().compile(config)
    text = render_squid_conf(
        policy, listen_port=args.listen_port or config.proxy_port
    )
    _write(text, args.output)
    return 0


def cmd_firewall_rules(argv: list[str]) -> int:
    """Compile the whitelist into an iptables-restore payload.

    Exits 0 with a comment-only payload when enforcement is disabled, so
    the output is never mistaken for a deny-all table.
    """
    parser = _parser("firewall-rules", "Print the iptables-restore payload")
    parser.add_argument("-o", "--output", help="Write to file")
    args = parser.parse_args(argv)

    config = _load_config(args.config)
    compilation = FirewallPolicyCompiler().compile(config)
    for warning in compilation.warnings:
        print(f"warning: {warning}", file=sys.stderr)
    if compilation.ruleset is None:
        _write("# netfence: enforcement disabled, no rules\n", args.output)
        return 0
    _write(render_iptables_restore(compilation.ruleset), args.output)
    return 0


def cmd_explain(argv: list[str]) -> int:
    """Print the proxy decision for each hostname; exit 1 if any denied."""
    parser = _parser("explain", "Show the proxy decision for hostnames")
    parser.add_argument("hosts", nargs="+")
    parser.add_argument("--port", type=int, default=443)
    args = parser.parse_args(argv)

    policy = ProxyPolicyCompiler().compile(_load_config(args.config))
    all_allowed = True
    for host in args.hosts:
        decision = policy.decide(host, port=args.port)
        if decision.allowed and decision.route is not None:
            print(f"{host}: allowed ({decision.route.value})")
        else:
            all_allowed = False
            print(f"{host}: denied")
    return 0 if all_allowed else 1


def cmd_topology(argv: list[str]) -> int:
    """Print the commands that create a proxy-mode instance's networks."""
    parser = _parser("topology", "Print proxy-mode network commands")
    parser.add_argument("--instance-id", required=True)
    parser.add_argument("--proxy", default="netfence-proxy")
    parser.add_argument("--workload", default="netfence-agent")
    parser.add_argument("--subnet", default=None)
    args = parser.parse_args(argv)

    config = _load_config(args.config)
    proxy = Container(args.proxy, Role.ENFORCEMENT_POINT)
    workload = Container(args.workload, Role.WORKLOAD)
    topology = place(
        [proxy, workload],
        instance_id=args.instance_id,
        internal_subnet=args.subnet,
    )
    cmd = config.container_command
    for network in sorted(topology.networks, key=lambda n: n.name):
        print(" ".join(network.create_args(cmd)))
    print(f"# {proxy.name}: {' '.join(topology.container_network_args(proxy))}")
    print(
        f"# {workload.name}: "
        f"{' '.join(topology.container_network_args(workload))}"
    )
    for key, value in proxy_environment(proxy.name, config.proxy_port).items():
        print(f"# {workload.name} env: {key}={value}")
    return 0


def cmd_denials(argv: list[str]) -> int:
    """Summarize denied requests from a squid access log."""
    parser = argparse.ArgumentParser(prog="netfence denials")
    parser.add_argument("log", type=Path)
    args = parser.parse_args(argv)

    log = AccessLog(args.log)
    if not log.exists():
        print(f"netfence: access log not found: {args.log}", file=sys.stderr)
        return 1
    summary = log.summary()
    for host, count in summary.denied.most_common():
        print(f"{count:>6}  {host}")
    print(f"total denied: {summary.total_denied}")
    return 0


def cmd_run(argv: list[str]) -> int:
    """Install the firewall and exec the workload (``run -- cmd ...``)."""
    from netfence.entrypoint import DEFAULT_RUN_AS, run_entrypoint

    parser = argparse.ArgumentParser(prog="netfence run")
    parser.add_argument("--user", default=DEFAULT_RUN_AS)
    parser.add_argument("--no-drop", action="store_true")
    parser.add_argument("command", nargs=argparse.REMAINDER)
    args = parser.parse_args(argv)

    command = args.command
    if command and command[0] == "--":
        command = command[1:]
    run_entrypoint(command, run_as=None if args.no_drop else args.user)
    return 0


# ── CLI plumbing ────────────────────────────────────────────────────


_DISPATCH: dict[str, str] = {
    "check": "cmd_check",
    "proxy-config": "cmd_proxy_config",
    "firewall-rules": "cmd_firewall_rules",
    "explain": "cmd_explain",
    "topology": "cmd_topology",
    "denials": "cmd_denials",
    "run": "cmd_run",
}


def main(argv: list[str] | None = None) -> int:
    """Dispatch to a subcommand and map fatal errors to exit code 1."""
    if argv is None:
        argv = sys.argv[1:]

    if not argv or argv[0] in ("-h", "--help"):
        print(_USAGE)
        return 0

    if argv[0] not in _DISPATCH:
        print(f"netfence: unknown command '{argv[0]}'", file=sys.stderr)
        print(_USAGE, file=sys.stderr)
        return 2

    configure_logging(level=logging.INFO)

    # Look up handler by name so tests can mock individual commands.
    import netfence.cli as _self

    handler = getattr(_self, _DISPATCH[argv[0]])
    try:
        return handler(argv[1:])
    except (ConfigError, TopologyError, FirewallError) as e:
        logger.error("%s", e)
        return 1


def cli() -> None:
    """Console script entry point."""
    sys.exit(main())
