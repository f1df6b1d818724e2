"""Shared fakes for the probe and dashboard tests."""

import asyncio
import time

import pytest

from hostnet import InterfaceAddress
from probe import Config, supervise


class FakeNetwork:
    """Stands in for HostNetwork; outcomes are looked up per server/target."""

    def __init__(self, servers=(), config_error=None, address=None, address_error=None,
                 dns_outcomes=None, gateway="192.0.2.1", tcp_outcomes=None):
        self.servers = list(servers)
        self.config_error = config_error
        self.address = address or InterfaceAddress("192.0.2.10", 24)
        self.address_error = address_error
        self.dns_outcomes = dns_outcomes or {}
        self.gateway = gateway
        self.tcp_outcomes = tcp_outcomes or {}
        self.dns_starts = []
        self.tcp_calls = []

    def primary_address(self, interface):
        if self.address_error is not None:
            raise self.address_error
        return self.address

    async def default_gateway(self, interface):
        return self.gateway

    def read_dns_servers(self, path):
        if self.config_error is not None:
            raise self.config_error
        return list(self.servers)

    def query_dns(self, server, local, qname, timeout):
        self.dns_starts.append((server, time.monotonic()))
        outcome = self.dns_outcomes.get(server, 0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def tcp_connect(self, host, port, local, timeout):
        self.tcp_calls.append((host, port))
        outcome = self.tcp_outcomes.get((host, port), 12.5)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture
def fake_net():
    return FakeNetwork


@pytest.fixture
def run_probe():
    """Run one probe under the supervisor and return every message it emitted."""
    def _run(probe_type, net, cfg=None, interface="eth0"):
        messages = []
        probe = probe_type(interface, messages.append, cfg or Config(check_spacing_ms=1), net)
        asyncio.run(supervise(probe))
        return messages
    return _run
