# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Tests for netfence/cli.py."""

import socket
from collections.abc import Iterator
from pathlib import Path
from unittest.mock import patch

import pytest

from netfence.cli import cli, main


@pytest.fixture(autouse=True)
def _no_logging_setup() -> Iterator[None]:
    """Keep main() from replacing pytest's log handlers."""
    with patch("netfence.cli.configure_logging"):
        yield


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "netfence.yaml"
    path.write_text(
        "whitelist:\n"
        "  - .anthropic.com\n"
        "  - api.github.com\n"
        "upstream:\n"
        "  host: proxy.corp:8080\n"
        "  no_proxy: [.internal.corp]\n"
    )
    return path


class TestDispatch:
    def test_no_args_prints_usage(
        self, capsys: pytest.CaptureFixture[str]
    ) -> None:
        assert main([]) == 0
        assert "usage: netfence" in capsys.readouterr().out

    def test_unknown_command(self, capsys: pytest.CaptureFixture[str]) -> None:
        assert main(["bogus"]) == 2
        assert "unknown command 'bogus'" in capsys.readouterr().err

    def test_dispatches_by_name(self) -> None:
        with patch("netfence.cli.cmd_check", return_value=0) as mock_cmd:
            assert main(["check", "--config", "x.yaml"]) == 0
        mock_cmd.assert_called_once_with(["--config", "x.yaml"])

    def test_config_error_exits_1(self, tmp_path: Path) -> None:
        assert main(["check", "--config", str(tmp_path / "missing")]) == 1

    def test_cli_exits_with_status(self) -> None:
        with patch("netfence.cli.main", return_value=3):
            with pytest.raises(SystemExit) as excinfo:
                cli()
        assert excinfo.value.code == 3


class TestCheck:
    def test_reports_state(
        self, config_file: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        assert main(["check", "--config", str(config_file)]) == 0
        out = capsys.readouterr().out
        assert "enforcement: enabled" in out
        assert ".anthropic.com" in out
        assert "subdomain" in out
        assert "upstream: proxy.corp:8080" in out
        assert "direct: .internal.corp" in out

    def test_skip_firewall(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        path = tmp_path / "netfence.yaml"
        path.write_text("whitelist: [pypi.org]\nskip_firewall: true\n")
        assert main(["check", "--config", str(path)]) == 0
        assert "DISABLED (SKIP_FIREWALL)" in capsys.readouterr().out

    def test_falls_back_to_environment(
        self,
        tmp_path: Path,
        monkeypatch: pytest.MonkeyPatch,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        monkeypatch.setattr(
            "netfence.cli.get_config_path", lambda: tmp_path / "none.yaml"
        )
        monkeypatch.setenv("ALLOWED_HOSTS", "")
        monkeypatch.delenv("WHITELIST_FILE", raising=False)
        monkeypatch.delenv("UPSTREAM_PROXY_HOST", raising=False)
        monkeypatch.delenv("SKIP_FIREWALL", raising=False)
        monkeypatch.delenv("ALLOWED_PORTS", raising=False)
        assert main(["check"]) == 0
        assert "DISABLED (empty whitelist)" in capsys.readouterr().out


class TestProxyConfig:
    def test_prints_squid_conf(
        self, config_file: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        assert main(["proxy-config", "--config", str(config_file)]) == 0
        out = capsys.readouterr().out
        assert "acl allowed_domains dstdomain .anthropic.com" in out
        assert "http_access deny all" in out
        assert "cache_peer proxy.corp parent 8080" in out
        assert "http_port 3128" in out

    def test_writes_output_file(
        self, config_file: Path, tmp_path: Path
    ) -> None:
        out_path = tmp_path / "squid.conf"
        rc = main(
            [
                "proxy-config",
                "--config",
                str(config_file),
                "--listen-port",
                "3129",
                "-o",
                str(out_path),
            ]
        )
        assert rc == 0
        assert "http_port 3129" in out_path.read_text()


class TestFirewallRules:
    def test_prints_payload(
        self,
        tmp_path: Path,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        path = tmp_path / "netfence.yaml"
        path.write_text("whitelist: [api.github.com, .anthropic.com]\n")
        answer = [
            (socket.AF_INET, socket.SOCK_STREAM, 6, "", ("140.82.112.5", 0))
        ]
        with patch("netfence.dns.socket.getaddrinfo", return_value=answer):
            assert main(["firewall-rules", "--config", str(path)]) == 0
        captured = capsys.readouterr()
        assert ":OUTPUT DROP [0:0]" in captured.out
        assert "-d 140.82.112.5/32 -p tcp --dport 443" in captured.out
        assert "warning: Skipping .anthropic.com" in captured.err

    def test_disabled(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        path = tmp_path / "netfence.yaml"
        path.write_text("whitelist: []\n")
        assert main(["firewall-rules", "--config", str(path)]) == 0
        out = capsys.readouterr().out
        assert "enforcement disabled" in out
        assert "*filter" not in out


class TestExplain:
    def test_all_allowed(
        self, config_file: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        rc = main(
            ["explain", "--config", str(config_file), "api.anthropic.com"]
        )
        assert rc == 0
        assert "api.anthropic.com: allowed (parent)" in capsys.readouterr().out

    def test_any_denied(
        self, config_file: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        rc = main(
            [
                "explain",
                "--config",
                str(config_file),
                "api.github.com",
                "github.com",
            ]
        )
        assert rc == 1
        out = capsys.readouterr().out
        assert "api.github.com: allowed" in out
        assert "github.com: denied" in out


class TestTopology:
    def test_prints_network_commands(
        self, config_file: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        rc = main(
            [
                "topology",
                "--config",
                str(config_file),
                "--instance-id",
                "t1",
            ]
        )
        assert rc == 0
        out = capsys.readouterr().out
        assert (
            "podman network create --internal netfence-t1-internal" in out
        )
        assert "podman network create netfence-t1-external" in out
        assert "# netfence-agent: --network netfence-t1-internal" in out
        assert "HTTPS_PROXY=http://netfence-proxy:3128" in out


class TestDenials:
    def test_summary(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        log = tmp_path / "access.log"
        log.write_text(
            "1718000000.123 12 10.199.1.2 TCP_DENIED/403 3900 CONNECT "
            "evil.com:443 - HIER_NONE/- text/html\n"
        )
        assert main(["denials", str(log)]) == 0
        out = capsys.readouterr().out
        assert "evil.com" in out
        assert "total denied: 1" in out

    def test_missing_log(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        assert main(["denials", str(tmp_path / "nope.log")]) == 1
        assert "not found" in capsys.readouterr().err


class TestRun:
    def test_passes_command_and_user(self) -> None:
        with patch("netfence.entrypoint.run_entrypoint") as mock_run:
            assert main(["run", "--user", "agent", "--", "claude", "-p"]) == 0
        mock_run.assert_called_once_with(["claude", "-p"], run_as="agent")

    def test_no_drop(self) -> None:
        with patch("netfence.entrypoint.run_entrypoint") as mock_run:
            assert main(["run", "--no-drop", "bash"]) == 0
        mock_run.assert_called_once_with(["bash"], run_as=None)
