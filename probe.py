# probe.py
"""
Netcheck probes - the data-producing side of the dashboard.

- Loads the optional YAML config
- Result channel: unbounded FIFO from every probe to the aggregator
- One long-running asyncio task per diagnostic category
  (local addressing, DNS reachability, TCP reachability)
- Each probe publishes a sequence of partial snapshots and always ends with a
  terminal one; I/O failures become message payloads, never exceptions

Requirements:
  PyYAML
  dnspython, psutil (via hostnet.py)
"""
from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Sequence

import yaml

from hostnet import (
    BindError,
    DnsConfigError,
    HostNetwork,
    NoAddressError,
    TransportError,
    is_noerror,
)
from netstate import (
    Category,
    CheckResult,
    DnsReachabilityMessage,
    DnsServerStatus,
    DnsSnapshot,
    FetchOutcome,
    LocalAddressingMessage,
    LocalSnapshot,
    ProbeMessage,
    TcpReachabilityMessage,
    TcpSnapshot,
    TcpTargetStatus,
)

log = logging.getLogger("netcheck.probe")

# -------------------------
# Config models (lightweight)
# -------------------------

@dataclass
class TcpTarget:
    host: str
    port: int


def _default_tcp_targets() -> List[TcpTarget]:
    return [TcpTarget("1.1.1.1", 53), TcpTarget("1.1.1.1", 80), TcpTarget("1.1.1.1", 443)]


@dataclass
class Config:
    resolv_conf: str = "/etc/resolv.conf"
    dns_query_name: str = "example.com"
    dns_timeout_secs: float = 1.0
    check_spacing_ms: int = 50
    tcp_timeout_secs: float = 2.0
    tcp_targets: List[TcpTarget] = dataclasses.field(default_factory=_default_tcp_targets)
    tick_ms: int = 50

    @property
    def check_spacing(self) -> float:
        return self.check_spacing_ms / 1000.0

    @property
    def tick(self) -> float:
        return self.tick_ms / 1000.0


def load_config(path: Optional[str]) -> Config:
    if not path:
        return Config()
    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ValueError("Config root must be a mapping")

    def _positive(k: str, default, cast):
        try:
            val = cast(raw.get(k, default))
        except (TypeError, ValueError):
            raise ValueError(f"Invalid value for {k}: {raw.get(k)!r}") from None
        if val <= 0:
            raise ValueError(f"{k} must be positive, got {val}")
        return val

    cfg = Config(
        resolv_conf=str(raw.get("resolv_conf", "/etc/resolv.conf")),
        dns_query_name=str(raw.get("dns_query_name", "example.com")),
        dns_timeout_secs=_positive("dns_timeout_secs", 1.0, float),
        check_spacing_ms=_positive("check_spacing_ms", 50, int),
        tcp_timeout_secs=_positive("tcp_timeout_secs", 2.0, float),
        tick_ms=_positive("tick_ms", 50, int),
    )
    if "tcp_targets" in raw:
        targets = []
        for t in raw["tcp_targets"] or []:
            for k in ("host", "port"):
                if not isinstance(t, dict) or k not in t:
                    raise ValueError(f"TCP target missing key {k}: {t}")
            try:
                port = int(t["port"])
            except (TypeError, ValueError):
                raise ValueError(f"Invalid port for TCP target {t['host']}: {t['port']!r}") from None
            if not 1 <= port <= 65535:
                raise ValueError(f"Port out of range for TCP target {t['host']}: {port}")
            targets.append(TcpTarget(host=str(t["host"]), port=port))
        cfg.tcp_targets = targets
    return cfg


# -------------------------
# Result channel
# -------------------------

class ResultChannel:
    """Unbounded FIFO; any number of producers, one consumer that never blocks."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()

    def emit(self, msg: ProbeMessage) -> None:
        self._queue.put_nowait(msg)

    def drain(self) -> List[ProbeMessage]:
        out: List[ProbeMessage] = []
        while True:
            try:
                out.append(self._queue.get_nowait())
            except asyncio.QueueEmpty:
                return out


def dedupe(items: Iterable[str]) -> List[str]:
    seen = set()
    out = []
    for x in items:
        if x not in seen:
            seen.add(x)
            out.append(x)
    return out


# -------------------------
# Probe framework
# -------------------------

class Probe:
    """
    One category's worth of diagnostic work for the chosen interface.

    Subclasses implement `run()` and `failure_snapshot()`. Everything goes out
    through `publish()`; a `final=True` publish is the terminal message and
    nothing may follow it.
    """

    category: Category
    message_type: type

    def __init__(self, interface: str, emit: Callable[[ProbeMessage], None], cfg: Config,
                 net: HostNetwork, clock: Callable[[], float] = time.monotonic) -> None:
        self.interface = interface
        self.cfg = cfg
        self.net = net
        self.clock = clock
        self.finished = False
        self.last = None
        self._emit = emit

    def publish(self, snapshot, final: bool = False) -> None:
        if self.finished:
            raise RuntimeError(f"{self.category.value} probe already sent its terminal message")
        self.last = snapshot
        self._emit(self.message_type(snapshot, final))
        if final:
            self.finished = True

    async def pace(self, started: float) -> None:
        """Sleep out whatever is left of the minimum spacing since `started`."""
        remaining = self.cfg.check_spacing - (self.clock() - started)
        if remaining > 0:
            await asyncio.sleep(remaining)

    async def run(self) -> None:
        raise NotImplementedError

    def failure_snapshot(self, error: str):
        raise NotImplementedError


class LocalAddressingProbe(Probe):
    category = Category.LOCAL
    message_type = LocalAddressingMessage

    async def run(self) -> None:
        try:
            addr = self.net.primary_address(self.interface)
        except NoAddressError as e:
            log.warning("local addressing: %s", e)
            self.publish(LocalSnapshot(gateway_checked=True, error=str(e)), final=True)
            return
        snap = LocalSnapshot(address=addr.address, prefix_len=addr.prefix_len)
        self.publish(snap)
        gateway = await self.net.default_gateway(self.interface)
        self.publish(dataclasses.replace(snap, gateway=gateway, gateway_checked=True), final=True)

    def failure_snapshot(self, error: str) -> LocalSnapshot:
        return dataclasses.replace(self.last or LocalSnapshot(), gateway_checked=True, error=error)


class DnsProbe(Probe):
    category = Category.DNS
    message_type = DnsReachabilityMessage

    async def run(self) -> None:
        try:
            servers = self.net.read_dns_servers(self.cfg.resolv_conf)
        except DnsConfigError as e:
            log.warning("dns: cannot read configuration: %s", e)
            self.publish(DnsSnapshot(fetch=FetchOutcome.UNAVAILABLE, error=str(e)), final=True)
            return
        try:
            local = self.net.primary_address(self.interface)
        except NoAddressError as e:
            self._bind_failed(str(e))
            return

        servers = dedupe(servers)
        snap = DnsSnapshot(
            fetch=FetchOutcome.AVAILABLE,
            servers=tuple(DnsServerStatus(address=s) for s in servers),
        )
        self.publish(snap, final=not servers)

        started: Optional[float] = None
        for idx, server in enumerate(servers):
            if started is not None:
                await self.pace(started)
            started = self.clock()
            try:
                rcode = await asyncio.to_thread(
                    self.net.query_dns, server, local, self.cfg.dns_query_name, self.cfg.dns_timeout_secs
                )
                result = CheckResult.SUCCESS if is_noerror(rcode) else CheckResult.FAILURE
            except BindError as e:
                self._bind_failed(str(e))
                return
            except TransportError as e:
                log.info("dns: %s failed: %s", server, e)
                result = CheckResult.FAILURE
            snap = dataclasses.replace(snap, servers=tuple(
                dataclasses.replace(s, result=result) if s.address == server else s
                for s in snap.servers
            ))
            self.publish(snap, final=idx == len(servers) - 1)

    def _bind_failed(self, error: str) -> None:
        log.warning("dns: cannot use interface %s: %s", self.interface, error)
        self.publish(DnsSnapshot(fetch=FetchOutcome.UNAVAILABLE, bind_failed=True, error=error), final=True)

    def failure_snapshot(self, error: str) -> DnsSnapshot:
        if self.last is not None and self.last.fetch is FetchOutcome.AVAILABLE:
            return dataclasses.replace(self.last, error=error)
        return DnsSnapshot(fetch=FetchOutcome.UNAVAILABLE, error=error)


class TcpProbe(Probe):
    category = Category.TCP
    message_type = TcpReachabilityMessage

    async def run(self) -> None:
        targets = self.cfg.tcp_targets
        try:
            local = self.net.primary_address(self.interface)
        except NoAddressError as e:
            self._bind_failed(str(e))
            return
        snap = TcpSnapshot(targets=tuple(TcpTargetStatus(host=t.host, port=t.port) for t in targets))
        self.publish(snap, final=not targets)

        started: Optional[float] = None
        for idx, target in enumerate(targets):
            if started is not None:
                await self.pace(started)
            started = self.clock()
            connect_ms = None
            try:
                connect_ms = await asyncio.to_thread(
                    self.net.tcp_connect, target.host, target.port, local, self.cfg.tcp_timeout_secs
                )
                result = CheckResult.SUCCESS
            except BindError as e:
                self._bind_failed(str(e))
                return
            except TransportError as e:
                log.info("tcp: %s:%d failed: %s", target.host, target.port, e)
                result = CheckResult.FAILURE
            statuses = list(snap.targets)
            statuses[idx] = dataclasses.replace(statuses[idx], result=result, connect_ms=connect_ms)
            snap = dataclasses.replace(snap, targets=tuple(statuses))
            self.publish(snap, final=idx == len(targets) - 1)

    def _bind_failed(self, error: str) -> None:
        log.warning("tcp: cannot use interface %s: %s", self.interface, error)
        self.publish(TcpSnapshot(bind_failed=True, error=error), final=True)

    def failure_snapshot(self, error: str) -> TcpSnapshot:
        return dataclasses.replace(self.last or TcpSnapshot(), error=error)


PROBES = (LocalAddressingProbe, DnsProbe, TcpProbe)


# -------------------------
# Scheduling
# -------------------------

async def supervise(probe: Probe) -> None:
    """Run one probe to completion; guarantee it ends with a terminal message."""
    try:
        await probe.run()
    except Exception as e:
        log.exception("%s probe crashed", probe.category.value)
        if not probe.finished:
            probe.publish(probe.failure_snapshot(f"probe crashed: {e}"), final=True)
        return
    if not probe.finished:
        if probe.last is not None:
            probe.publish(probe.last, final=True)
        else:
            probe.publish(probe.failure_snapshot("probe produced no result"), final=True)


def spawn_probes(interface: str, channel: ResultChannel, cfg: Config, net: HostNetwork,
                 probe_types: Sequence[type] = PROBES) -> List[asyncio.Task]:
    log.info("starting %d probes on %s", len(probe_types), interface)
    tasks = []
    for probe_type in probe_types:
        probe = probe_type(interface, channel.emit, cfg, net)
        tasks.append(asyncio.create_task(supervise(probe), name=f"probe-{probe.category.value}"))
    return tasks


async def stop_probes(tasks: Sequence[asyncio.Task]) -> None:
    for t in tasks:
        t.cancel()
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)
