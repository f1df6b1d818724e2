# netstate.py
"""
Network state model: per-category snapshots, the ProbeMessage union that
carries them, and the Aggregator that folds messages into one NetworkSnapshot.

Sub-snapshots are frozen; a probe publishes a new value for every update, so
whatever the renderer holds can never change under it.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import FrozenSet, Optional, Set, Tuple, Union


class Category(enum.Enum):
    LOCAL = "local"
    DNS = "dns"
    TCP = "tcp"


class FetchOutcome(enum.Enum):
    PENDING = "pending"
    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"


class CheckResult(enum.Enum):
    UNKNOWN = "unknown"
    SUCCESS = "success"
    FAILURE = "failure"


# --------------------
# Sub-snapshots
# --------------------

@dataclass(frozen=True)
class LocalSnapshot:
    address: Optional[str] = None
    prefix_len: Optional[int] = None
    gateway: Optional[str] = None
    gateway_checked: bool = False
    error: Optional[str] = None


@dataclass(frozen=True)
class DnsServerStatus:
    address: str
    result: CheckResult = CheckResult.UNKNOWN


@dataclass(frozen=True)
class DnsSnapshot:
    fetch: FetchOutcome = FetchOutcome.PENDING
    servers: Tuple[DnsServerStatus, ...] = ()
    # True once the interface address proved unusable for sending queries
    bind_failed: bool = False
    error: Optional[str] = None


@dataclass(frozen=True)
class TcpTargetStatus:
    host: str
    port: int
    result: CheckResult = CheckResult.UNKNOWN
    connect_ms: Optional[float] = None

    @property
    def label(self) -> str:
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class TcpSnapshot:
    targets: Tuple[TcpTargetStatus, ...] = ()
    bind_failed: bool = False
    error: Optional[str] = None


# --------------------
# Messages
# --------------------

@dataclass(frozen=True)
class LocalAddressingMessage:
    snapshot: LocalSnapshot
    final: bool = False
    category = Category.LOCAL


@dataclass(frozen=True)
class DnsReachabilityMessage:
    snapshot: DnsSnapshot
    final: bool = False
    category = Category.DNS


@dataclass(frozen=True)
class TcpReachabilityMessage:
    snapshot: TcpSnapshot
    final: bool = False
    category = Category.TCP


ProbeMessage = Union[LocalAddressingMessage, DnsReachabilityMessage, TcpReachabilityMessage]


# --------------------
# Aggregate
# --------------------

@dataclass
class NetworkSnapshot:
    local: LocalSnapshot = field(default_factory=LocalSnapshot)
    dns: DnsSnapshot = field(default_factory=DnsSnapshot)
    tcp: TcpSnapshot = field(default_factory=TcpSnapshot)
    finished: FrozenSet[Category] = frozenset()

    def is_finished(self, category: Category) -> bool:
        return category in self.finished


class Aggregator:
    """Owns the NetworkSnapshot. Each message replaces its category's value."""

    def __init__(self) -> None:
        self._snapshot = NetworkSnapshot()
        self._finished: Set[Category] = set()

    @property
    def snapshot(self) -> NetworkSnapshot:
        return self._snapshot

    def apply(self, msg: ProbeMessage) -> None:
        snap = self._snapshot
        if isinstance(msg, LocalAddressingMessage):
            snap.local = msg.snapshot
        elif isinstance(msg, DnsReachabilityMessage):
            snap.dns = msg.snapshot
        elif isinstance(msg, TcpReachabilityMessage):
            snap.tcp = msg.snapshot
        else:
            raise TypeError(f"unknown probe message: {msg!r}")
        if msg.final:
            self._finished.add(msg.category)
            snap.finished = frozenset(self._finished)
