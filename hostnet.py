# hostnet.py
"""
Host networking layer - the platform collaborators the probes talk to.

- Interface enumeration and primary address lookup (psutil)
- Default gateway lookup (`ip route show dev <iface>` subprocess)
- resolv.conf nameserver reader
- DNS transport: one UDP query bound to the interface address (dnspython)
- TCP connect bound to the interface address

Every failure is raised as one of the exception types below so the probes can
classify it; nothing here catches and hides an error.
"""
from __future__ import annotations

import asyncio
import ipaddress
import logging
import socket
import time
from dataclasses import dataclass
from typing import List, Optional

import dns.exception
import dns.message
import dns.query
import dns.rcode
import psutil

log = logging.getLogger("netcheck.hostnet")

DNS_PORT = 53


# -------------------------
# Failure taxonomy
# -------------------------

class NoAddressError(LookupError):
    """The interface does not exist or carries no IP address."""


class DnsConfigError(Exception):
    pass


class DnsConfigUnreadable(DnsConfigError):
    pass


class DnsConfigUnparseable(DnsConfigError):
    pass


class TransportError(Exception):
    pass


class BindError(TransportError):
    """The local interface address cannot be used to originate traffic."""


class SendError(TransportError):
    pass


class RecvError(TransportError):
    pass


class QueryTimeout(TransportError):
    pass


class MalformedReply(TransportError):
    pass


class ConnectError(TransportError):
    pass


# -------------------------
# Interfaces
# -------------------------

@dataclass(frozen=True)
class InterfaceAddress:
    address: str
    prefix_len: Optional[int] = None

    @property
    def family(self) -> int:
        return socket.AF_INET6 if ipaddress.ip_address(self.address).version == 6 else socket.AF_INET


def netmask_to_prefix(netmask: Optional[str]) -> Optional[int]:
    if not netmask:
        return None
    try:
        return bin(int(ipaddress.ip_address(netmask))).count("1")
    except ValueError:
        return None


def _pick_primary(addrs) -> Optional[InterfaceAddress]:
    # IPv4 wins over IPv6; first seen within a family wins
    for family in (socket.AF_INET, socket.AF_INET6):
        for a in addrs:
            if a.family == family and a.address:
                address = a.address.split("%", 1)[0]
                return InterfaceAddress(address=address, prefix_len=netmask_to_prefix(a.netmask))
    return None


def parse_default_gateway(text: str) -> Optional[str]:
    """Pull the gateway from `ip route show dev X` output ("default via GW ...")."""
    for line in text.splitlines():
        if "default" not in line:
            continue
        parts = line.split()
        if len(parts) >= 3 and parts[1] == "via":
            return parts[2]
        return None
    return None


def parse_resolv_conf(text: str) -> List[str]:
    servers: List[str] = []
    for lineno, line in enumerate(text.splitlines(), start=1):
        line = line.strip()
        if not line or line[0] in "#;":
            continue
        parts = line.split()
        if parts[0] != "nameserver":
            continue
        if len(parts) < 2:
            raise DnsConfigUnparseable(f"line {lineno}: nameserver without an address")
        raw = parts[1].split("%", 1)[0]
        try:
            ipaddress.ip_address(raw)
        except ValueError:
            raise DnsConfigUnparseable(f"line {lineno}: invalid nameserver address {parts[1]!r}") from None
        servers.append(raw)
    return servers


class HostNetwork:
    """Real host implementation of every collaborator the probes need."""

    def interfaces(self) -> List[str]:
        """Interface names that carry at least one IP address, in OS order."""
        names = []
        for name, addrs in psutil.net_if_addrs().items():
            if _pick_primary(addrs) is not None:
                names.append(name)
        return names

    def primary_address(self, interface: str) -> InterfaceAddress:
        addrs = psutil.net_if_addrs().get(interface)
        if not addrs:
            raise NoAddressError(f"interface {interface!r} not found")
        primary = _pick_primary(addrs)
        if primary is None:
            raise NoAddressError(f"interface {interface!r} has no address")
        return primary

    async def default_gateway(self, interface: str, timeout: float = 2.0) -> Optional[str]:
        cmd = ["ip", "route", "show", "dev", interface]
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
            )
        except FileNotFoundError:
            log.warning("ip binary not found; gateway lookup skipped")
            return None
        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            return None
        if proc.returncode != 0:
            return None
        return parse_default_gateway(stdout.decode(errors="ignore"))

    def read_dns_servers(self, path: str) -> List[str]:
        try:
            with open(path, "r", encoding="utf-8") as f:
                text = f.read()
        except (OSError, UnicodeDecodeError) as e:
            raise DnsConfigUnreadable(f"{path}: {e}") from e
        return parse_resolv_conf(text)

    def query_dns(self, server: str, local: InterfaceAddress, qname: str, timeout: float) -> int:
        """Send one A query for `qname` to `server` from `local`; return the reply rcode."""
        try:
            sock = socket.socket(local.family, socket.SOCK_DGRAM)
        except OSError as e:
            raise BindError(str(e)) from e
        with sock:
            try:
                sock.bind((local.address, 0))
            except OSError as e:
                raise BindError(f"cannot bind {local.address}: {e}") from e
            sock.setblocking(False)
            query = dns.message.make_query(qname, "A")
            destination = (server, DNS_PORT)
            expiration = time.time() + timeout
            try:
                dns.query.send_udp(sock, query, destination, expiration)
            except dns.exception.Timeout as e:
                raise QueryTimeout(f"send to {server} timed out") from e
            except OSError as e:
                raise SendError(f"send to {server}: {e}") from e
            try:
                reply, _ = dns.query.receive_udp(sock, destination, expiration, query=query)
            except dns.exception.Timeout as e:
                raise QueryTimeout(f"no reply from {server} within {timeout}s") from e
            except OSError as e:
                raise RecvError(f"receive from {server}: {e}") from e
            except dns.exception.DNSException as e:
                raise MalformedReply(f"bad reply from {server}: {e}") from e
        return reply.rcode()

    def tcp_connect(self, host: str, port: int, local: InterfaceAddress, timeout: float) -> float:
        """Open and close one TCP connection; return the connect time in ms."""
        try:
            sock = socket.socket(local.family, socket.SOCK_STREAM)
        except OSError as e:
            raise BindError(str(e)) from e
        with sock:
            try:
                sock.bind((local.address, 0))
            except OSError as e:
                raise BindError(f"cannot bind {local.address}: {e}") from e
            sock.settimeout(timeout)
            start = time.monotonic()
            try:
                sock.connect((host, port))
            except socket.timeout as e:
                raise QueryTimeout(f"connect to {host}:{port} timed out") from e
            except OSError as e:
                raise ConnectError(f"connect to {host}:{port}: {e}") from e
            return (time.monotonic() - start) * 1000.0


def is_noerror(rcode: int) -> bool:
    return rcode == dns.rcode.NOERROR
