# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Shared pytest fixtures used across the test modules."""

from collections.abc import Iterator
from ipaddress import IPv4Address

import pytest

from netfence.dns import Resolver
from netfence.dotenv_loader import reset_dotenv_state
from netfence.logging import SecretFilter


#: Canned DNS answers for ``fake_resolver``.
FAKE_DNS: dict[str, tuple[str, ...]] = {
    "api.github.com": ("140.82.112.6", "140.82.112.5"),
    "api.anthropic.com": ("160.79.104.10",),
    "pypi.org": ("151.101.0.223",),
    "files.pythonhosted.org": ("151.101.0.223",),
}


@pytest.fixture(autouse=True)
def _isolated_state(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Keep registered secrets and ``.env`` loading out of other tests."""
    SecretFilter.clear_secrets()
    reset_dotenv_state()
    monkeypatch.setattr("netfence.config.load_dotenv_once", lambda: None)
    yield
    SecretFilter.clear_secrets()
    reset_dotenv_state()


@pytest.fixture
def fake_resolver() -> Resolver:
    """Resolver backed by ``FAKE_DNS``; unknown names do not resolve."""

    def resolve(hostname: str) -> frozenset[IPv4Address]:
        return frozenset(
            IPv4Address(a) for a in FAKE_DNS.get(hostname.lower(), ())
        )

    return resolve
