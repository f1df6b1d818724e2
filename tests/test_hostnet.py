"""
Tests for the host networking layer.

Run: python3 -m pytest tests/test_hostnet.py -v
"""

import asyncio
import inspect
import socket
import threading
from collections import namedtuple
from unittest.mock import AsyncMock, MagicMock, patch

import dns.message
import dns.query
import dns.rcode
import pytest

import hostnet
from hostnet import (
    BindError,
    ConnectError,
    DnsConfigUnparseable,
    DnsConfigUnreadable,
    HostNetwork,
    InterfaceAddress,
    MalformedReply,
    NoAddressError,
    QueryTimeout,
    is_noerror,
    netmask_to_prefix,
    parse_default_gateway,
    parse_resolv_conf,
)

snicaddr = namedtuple("snicaddr", "family address netmask broadcast ptp")
LINK = getattr(socket, "AF_PACKET", 17)
LOOPBACK = InterfaceAddress("127.0.0.1", 8)
UNASSIGNED = InterfaceAddress("203.0.113.77", 24)


def _if_addrs():
    return {
        "lo": [snicaddr(socket.AF_INET, "127.0.0.1", "255.0.0.0", None, None)],
        "eth0": [
            snicaddr(LINK, "aa:bb:cc:dd:ee:ff", None, None, None),
            snicaddr(socket.AF_INET6, "fe80::1%eth0", "ffff:ffff:ffff:ffff::", None, None),
            snicaddr(socket.AF_INET, "192.0.2.10", "255.255.255.0", None, None),
        ],
        "wg0": [snicaddr(socket.AF_INET6, "fd00::2", "ffff:ffff:ffff:ffff:ffff:ffff:ffff:ff00", None, None)],
        "down0": [snicaddr(LINK, "11:22:33:44:55:66", None, None, None)],
    }


class TestParsers:
    """Tests for the pure text helpers."""

    def test_resolv_conf(self):
        text = (
            "# generated\n"
            "search example.net\n"
            "nameserver 10.0.0.1\n"
            "; comment\n"
            "nameserver 2001:db8::53\n"
            "nameserver fe80::1%eth0\n"
            "options edns0\n"
        )
        assert parse_resolv_conf(text) == ["10.0.0.1", "2001:db8::53", "fe80::1"]

    def test_resolv_conf_keeps_duplicates(self):
        assert parse_resolv_conf("nameserver 1.1.1.1\nnameserver 1.1.1.1\n") == ["1.1.1.1", "1.1.1.1"]

    def test_resolv_conf_without_nameservers(self):
        assert parse_resolv_conf("search lan\n") == []

    @pytest.mark.parametrize("text", ["nameserver\n", "nameserver not-an-ip\n"])
    def test_resolv_conf_unparseable(self, text):
        with pytest.raises(DnsConfigUnparseable):
            parse_resolv_conf(text)

    def test_default_gateway(self):
        text = (
            "default via 192.168.1.1 proto dhcp metric 600\n"
            "192.168.1.0/24 proto kernel scope link src 192.168.1.20\n"
        )
        assert parse_default_gateway(text) == "192.168.1.1"

    def test_no_default_route(self):
        assert parse_default_gateway("192.168.1.0/24 proto kernel scope link\n") is None
        assert parse_default_gateway("") is None

    def test_default_route_without_next_hop(self):
        assert parse_default_gateway("default scope link\n") is None
        assert parse_default_gateway("default dev tun0 scope link\n") is None

    def test_netmask_to_prefix(self):
        assert netmask_to_prefix("255.255.255.0") == 24
        assert netmask_to_prefix("255.255.240.0") == 20
        assert netmask_to_prefix("ffff:ffff:ffff:ffff::") == 64
        assert netmask_to_prefix(None) is None
        assert netmask_to_prefix("garbage") is None

    def test_noerror(self):
        assert is_noerror(dns.rcode.NOERROR)
        assert not is_noerror(dns.rcode.SERVFAIL)


class TestInterfaces:
    """Tests for interface enumeration via psutil."""

    @patch("hostnet.psutil.net_if_addrs", side_effect=_if_addrs)
    def test_lists_interfaces_with_addresses(self, _mock):
        assert HostNetwork().interfaces() == ["lo", "eth0", "wg0"]

    @patch("hostnet.psutil.net_if_addrs", side_effect=_if_addrs)
    def test_ipv4_preferred(self, _mock):
        assert HostNetwork().primary_address("eth0") == InterfaceAddress("192.0.2.10", 24)

    @patch("hostnet.psutil.net_if_addrs", side_effect=_if_addrs)
    def test_ipv6_only(self, _mock):
        addr = HostNetwork().primary_address("wg0")
        assert addr == InterfaceAddress("fd00::2", 120)
        assert addr.family == socket.AF_INET6

    @patch("hostnet.psutil.net_if_addrs", side_effect=_if_addrs)
    def test_missing_or_addressless(self, _mock):
        with pytest.raises(NoAddressError):
            HostNetwork().primary_address("nope0")
        with pytest.raises(NoAddressError):
            HostNetwork().primary_address("down0")


class TestGateway:
    """Tests for the `ip route` subprocess wrapper."""

    def test_parses_subprocess_output(self):
        proc = MagicMock(returncode=0)
        proc.communicate = AsyncMock(return_value=(b"default via 10.1.1.1 dev eth0\n", b""))
        with patch("hostnet.asyncio.create_subprocess_exec", AsyncMock(return_value=proc)) as spawn:
            assert asyncio.run(HostNetwork().default_gateway("eth0")) == "10.1.1.1"
        assert spawn.call_args[0][:5] == ("ip", "route", "show", "dev", "eth0")

    def test_missing_binary(self):
        with patch("hostnet.asyncio.create_subprocess_exec", AsyncMock(side_effect=FileNotFoundError)):
            assert asyncio.run(HostNetwork().default_gateway("eth0")) is None

    def test_nonzero_exit(self):
        proc = MagicMock(returncode=1)
        proc.communicate = AsyncMock(return_value=(b"", b"Cannot find device"))
        with patch("hostnet.asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
            assert asyncio.run(HostNetwork().default_gateway("nope0")) is None


class TestReadDnsServers:
    """Tests for reading resolv.conf from disk."""

    def test_reads_file(self, tmp_path):
        p = tmp_path / "resolv.conf"
        p.write_text("nameserver 10.0.0.1\n")
        assert HostNetwork().read_dns_servers(str(p)) == ["10.0.0.1"]

    def test_missing_file(self, tmp_path):
        with pytest.raises(DnsConfigUnreadable):
            HostNetwork().read_dns_servers(str(tmp_path / "missing.conf"))


class _UdpResponder:
    """Loopback UDP server answering one datagram per `mode`."""

    def __init__(self, mode):
        self.mode = mode
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.sock.bind(("127.0.0.1", 0))
        self.sock.settimeout(2.0)
        self.port = self.sock.getsockname()[1]
        self.thread = threading.Thread(target=self._serve, daemon=True)

    def _serve(self):
        try:
            wire, peer = self.sock.recvfrom(512)
        except OSError:
            return
        if self.mode == "silent":
            return
        if self.mode == "garbage":
            self.sock.sendto(b"\x00\x01", peer)
            return
        reply = dns.message.make_response(dns.message.from_wire(wire))
        if self.mode == "servfail":
            reply.set_rcode(dns.rcode.SERVFAIL)
        elif self.mode == "wrong-id":
            reply.id = (reply.id + 1) & 0xFFFF
        self.sock.sendto(reply.to_wire(), peer)

    def __enter__(self):
        self.thread.start()
        return self

    def __exit__(self, *exc):
        self.thread.join(timeout=3)
        self.sock.close()


class TestQueryDns:
    """Tests for the DNS transport against a loopback responder."""

    @pytest.mark.parametrize("mode,rcode", [("ok", dns.rcode.NOERROR), ("servfail", dns.rcode.SERVFAIL)])
    def test_returns_rcode(self, monkeypatch, mode, rcode):
        with _UdpResponder(mode) as srv:
            monkeypatch.setattr(hostnet, "DNS_PORT", srv.port)
            assert HostNetwork().query_dns("127.0.0.1", LOOPBACK, "example.com", 1.0) == rcode

    def test_timeout(self, monkeypatch):
        with _UdpResponder("silent") as srv:
            monkeypatch.setattr(hostnet, "DNS_PORT", srv.port)
            with pytest.raises(QueryTimeout):
                HostNetwork().query_dns("127.0.0.1", LOOPBACK, "example.com", 0.2)

    def test_malformed_reply(self, monkeypatch):
        with _UdpResponder("garbage") as srv:
            monkeypatch.setattr(hostnet, "DNS_PORT", srv.port)
            with pytest.raises(MalformedReply):
                HostNetwork().query_dns("127.0.0.1", LOOPBACK, "example.com", 1.0)

    def test_reply_for_another_query(self, monkeypatch):
        with _UdpResponder("wrong-id") as srv:
            monkeypatch.setattr(hostnet, "DNS_PORT", srv.port)
            with pytest.raises(MalformedReply):
                HostNetwork().query_dns("127.0.0.1", LOOPBACK, "example.com", 1.0)

    def test_receive_matches_reply_to_query(self):
        assert "query" in inspect.signature(dns.query.receive_udp).parameters

    def test_bind_error(self):
        with pytest.raises(BindError):
            HostNetwork().query_dns("127.0.0.1", UNASSIGNED, "example.com", 0.2)


class TestTcpConnect:
    """Tests for the bound TCP connect."""

    def test_connects(self):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as listener:
            listener.bind(("127.0.0.1", 0))
            listener.listen(1)
            port = listener.getsockname()[1]
            elapsed = HostNetwork().tcp_connect("127.0.0.1", port, LOOPBACK, 1.0)
        assert elapsed >= 0.0

    def test_refused(self):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind(("127.0.0.1", 0))
            port = s.getsockname()[1]
        with pytest.raises(ConnectError):
            HostNetwork().tcp_connect("127.0.0.1", port, LOOPBACK, 1.0)

    def test_bind_error(self):
        with pytest.raises(BindError):
            HostNetwork().tcp_connect("127.0.0.1", 80, UNASSIGNED, 0.2)
