# tui.py
"""
Netcheck TUI - interactive terminal dashboard that diagnoses connectivity of
one network interface.

Flow:
- Pick an interface (skipped when the host has exactly one)
- One probe per category starts on the chosen interface
- Every tick: drain probe results into the aggregator, repaint, then wait up
  to one tick for a key
- Press 'q' to quit gracefully; Ctrl-C also works

Requirements:
  rich
  typer
  PyYAML (via probe.py import)

Usage:
  python tui.py dashboard
  python tui.py dashboard --config ./config.yaml --log-file ./netcheck.log
  python tui.py check
"""
from __future__ import annotations

import asyncio
import enum
import logging
import os
import signal
import sys
from typing import Callable, Dict, List, Optional, Sequence

import typer
from rich import box
from rich.console import Console, Group, RenderableType
from rich.live import Live
from rich.panel import Panel
from rich.spinner import Spinner
from rich.table import Table
from rich.text import Text

from hostnet import DnsConfigError, HostNetwork, NoAddressError
from netstate import Aggregator, Category, CheckResult, FetchOutcome, NetworkSnapshot
from probe import Config, ResultChannel, load_config, spawn_probes, stop_probes
from session import Session

app = typer.Typer(add_completion=False, help="Netcheck interactive network diagnostics")
console = Console()
log = logging.getLogger("netcheck.tui")


# --------------------
# Keyboard handling
# --------------------

class Key(enum.Enum):
    UP = "up"
    DOWN = "down"
    ENTER = "enter"
    QUIT = "quit"


class KeyDecodeError(ValueError):
    pass


_ESCAPES = {
    b"\x1b[A": Key.UP,
    b"\x1bOA": Key.UP,
    b"\x1b[B": Key.DOWN,
    b"\x1bOB": Key.DOWN,
}
_SINGLE = {
    b"k": Key.UP,
    b"j": Key.DOWN,
    b"\r": Key.ENTER,
    b"\n": Key.ENTER,
    b"q": Key.QUIT,
    b"Q": Key.QUIT,
}


def decode_keys(data: bytes) -> List[Key]:
    """Turn raw cbreak-mode stdin bytes into keys; unknown input is dropped."""
    try:
        data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise KeyDecodeError(f"undecodable input {data!r}") from e
    keys: List[Key] = []
    i = 0
    while i < len(data):
        if data[i:i + 1] == b"\x1b":
            seq = data[i:i + 3]
            if seq[1:2] in (b"[", b"O") and len(seq) == 3:
                key = _ESCAPES.get(seq)
                i += 3
            else:
                key = None
                i += 1
        else:
            key = _SINGLE.get(data[i:i + 1])
            i += 1
        if key is not None:
            keys.append(key)
    return keys


class TerminalInput:
    """Puts stdin in cbreak mode and feeds decoded keys into an asyncio queue."""

    def __init__(self, stream, keys: asyncio.Queue, on_error: Callable[[Exception], None]):
        self.stream = stream
        self.keys = keys
        self.on_error = on_error
        self._fd: Optional[int] = None
        self._saved = None

    def __enter__(self) -> "TerminalInput":
        if not self.stream.isatty():
            log.info("stdin is not a terminal; keyboard input disabled")
            return self
        import termios
        import tty
        self._fd = self.stream.fileno()
        self._saved = termios.tcgetattr(self._fd)
        tty.setcbreak(self._fd)
        asyncio.get_running_loop().add_reader(self._fd, self._readable)
        return self

    def __exit__(self, *exc) -> None:
        if self._fd is None:
            return
        import termios
        asyncio.get_running_loop().remove_reader(self._fd)
        termios.tcsetattr(self._fd, termios.TCSADRAIN, self._saved)
        self._fd = None

    def _readable(self) -> None:
        data = os.read(self._fd, 64)
        if not data:
            asyncio.get_running_loop().remove_reader(self._fd)
            return
        try:
            keys = decode_keys(data)
        except KeyDecodeError as e:
            self.on_error(e)
            return
        for k in keys:
            self.keys.put_nowait(k)


# --------------------
# Rendering
# --------------------

def fmt_result(result: CheckResult, done: bool = False, pending: str = "checking") -> RenderableType:
    if result is CheckResult.SUCCESS:
        return Text("ok", style="bold green")
    if result is CheckResult.FAILURE:
        return Text("FAIL", style="bold red")
    if done:
        return Text("not checked", style="dim")
    return Spinner("dots", text=Text(pending, style="dim"))


def _panel(body: RenderableType, title: str, done: bool) -> Panel:
    subtitle = Text("done", style="dim") if done else None
    return Panel(body, title=title, subtitle=subtitle, box=box.ROUNDED)


def build_local_panel(snapshot: NetworkSnapshot) -> Panel:
    local = snapshot.local
    done = snapshot.is_finished(Category.LOCAL)
    tbl = Table.grid(padding=(0, 1))
    tbl.add_column(style="bold")
    tbl.add_column()
    if local.address is None and local.error is None:
        tbl.add_row("Address", Spinner("dots", text=Text("looking up", style="dim")))
    elif local.address is not None:
        cidr = f"{local.address}/{local.prefix_len}" if local.prefix_len is not None else local.address
        tbl.add_row("Address", Text(cidr))
    if local.address is not None:
        if not local.gateway_checked:
            tbl.add_row("Gateway", Spinner("dots", text=Text("looking up", style="dim")))
        elif local.gateway:
            tbl.add_row("Gateway", Text(local.gateway))
        else:
            tbl.add_row("Gateway", Text("none", style="yellow"))
    parts: List[RenderableType] = [tbl]
    if local.error:
        parts.append(Text(local.error, style="bold red"))
    return _panel(Group(*parts), "Local", done)


def build_dns_panel(snapshot: NetworkSnapshot, interface: str) -> Panel:
    dns = snapshot.dns
    done = snapshot.is_finished(Category.DNS)
    parts: List[RenderableType] = []
    if dns.bind_failed:
        parts.append(Text(f"Cannot use interface {interface} to send queries", style="bold red"))
    elif dns.fetch is FetchOutcome.UNAVAILABLE:
        parts.append(Text("Cannot read DNS configuration", style="bold red"))
    elif dns.fetch is FetchOutcome.PENDING:
        parts.append(Spinner("dots", text=Text("reading configuration", style="dim")))
    elif not dns.servers:
        parts.append(Text("No nameservers configured", style="yellow"))
    else:
        tbl = Table(box=box.SIMPLE_HEAVY, padding=(0, 1))
        tbl.add_column("Server", no_wrap=True)
        tbl.add_column("Resolves", justify="right", no_wrap=True)
        for s in dns.servers:
            tbl.add_row(Text(s.address, style="bold"), fmt_result(s.result, done))
        parts.append(tbl)
    if dns.error:
        parts.append(Text(dns.error, style="dim"))
    return _panel(Group(*parts), "DNS", done)


def build_tcp_panel(snapshot: NetworkSnapshot, interface: str) -> Panel:
    tcp = snapshot.tcp
    done = snapshot.is_finished(Category.TCP)
    parts: List[RenderableType] = []
    if tcp.bind_failed:
        parts.append(Text(f"Cannot use interface {interface} to open connections", style="bold red"))
    elif not tcp.targets and not done:
        parts.append(Spinner("dots", text=Text("starting", style="dim")))
    elif not tcp.targets and tcp.error:
        parts.append(Text("Failed to start", style="bold red"))
    elif not tcp.targets:
        parts.append(Text("No TCP targets configured", style="yellow"))
    else:
        tbl = Table(box=box.SIMPLE_HEAVY, padding=(0, 1))
        tbl.add_column("Target", no_wrap=True)
        tbl.add_column("Connect", justify="right", no_wrap=True)
        for t in tcp.targets:
            if t.result is CheckResult.SUCCESS and t.connect_ms is not None:
                cell: RenderableType = Text(f"{t.connect_ms:.0f}ms", style="bold green")
            else:
                cell = fmt_result(t.result, done, pending="connecting")
            tbl.add_row(Text(t.label, style="bold"), cell)
        parts.append(tbl)
    if tcp.error:
        parts.append(Text(tcp.error, style="dim"))
    return _panel(Group(*parts), "TCP", done)


def build_footer(keys: str, status: Optional[str]) -> Text:
    footer = Text(keys, style="dim")
    if status:
        footer.append("   ")
        footer.append(status, style="yellow")
    return footer


def build_selection_view(session: Session, addresses: Dict[str, str], status: Optional[str] = None) -> Panel:
    tbl = Table(box=box.SIMPLE_HEAVY, padding=(0, 1))
    tbl.add_column("", width=1, no_wrap=True)
    tbl.add_column("Interface", no_wrap=True)
    tbl.add_column("Address", no_wrap=True)
    for idx, name in enumerate(session.interfaces):
        hovered = idx == session.hover
        style = "reverse" if hovered else ""
        tbl.add_row(">" if hovered else " ", Text(name, style="bold"), addresses.get(name, ""), style=style)
    footer = build_footer("Up/Down select  Enter confirm  Q quit", status)
    return Panel(Group(tbl, footer), title="Netcheck - Select an interface", box=box.SQUARE)


def build_running_view(session: Session, snapshot: NetworkSnapshot, status: Optional[str] = None) -> Panel:
    interface = session.chosen or ""
    grid = Table.grid(expand=True, padding=(0, 1))
    for _ in range(3):
        grid.add_column(ratio=1)
    grid.add_row(
        build_local_panel(snapshot),
        build_dns_panel(snapshot, interface),
        build_tcp_panel(snapshot, interface),
    )
    footer = build_footer("Q quit", status)
    return Panel(Group(grid, footer), title=f"Netcheck - {interface}", box=box.SQUARE)


def build_view(session: Session, snapshot: NetworkSnapshot, addresses: Dict[str, str],
               status: Optional[str] = None) -> Panel:
    if session.running:
        return build_running_view(session, snapshot, status)
    return build_selection_view(session, addresses, status)


# --------------------
# Render driver
# --------------------

class Dashboard:
    """
    Owns the session, aggregator and probe tasks. All state mutation happens
    on the event loop, inside `tick()`.
    """

    def __init__(self, interfaces: Sequence[str], cfg: Config, net: HostNetwork,
                 paint: Callable[[RenderableType], None], keys: asyncio.Queue,
                 addresses: Optional[Dict[str, str]] = None, spawn=spawn_probes):
        self.cfg = cfg
        self.net = net
        self.paint = paint
        self.keys = keys
        self.addresses = addresses or {}
        self.aggregator = Aggregator()
        self.channel: Optional[ResultChannel] = None
        self.tasks: List[asyncio.Task] = []
        self.status: Optional[str] = None
        self.stopping = False
        self._spawn = spawn
        self.session = Session(interfaces, on_start=self._start_probes)

    def _start_probes(self, interface: str) -> None:
        self.channel = ResultChannel()
        self.tasks = self._spawn(interface, self.channel, self.cfg, self.net)

    def request_stop(self) -> None:
        self.stopping = True

    def report_input_error(self, err: Exception) -> None:
        log.warning("input error: %s", err)
        self.status = f"input error: {err}"

    def handle_key(self, key: Key) -> None:
        self.status = None
        if key is Key.QUIT:
            self.request_stop()
            return
        if self.session.running:
            return
        if key is Key.UP:
            self.session.move_hover(-1)
        elif key is Key.DOWN:
            self.session.move_hover(1)
        elif key is Key.ENTER:
            self.session.confirm()

    async def tick(self) -> None:
        if self.session.running and self.channel is not None:
            for msg in self.channel.drain():
                self.aggregator.apply(msg)
        self.paint(build_view(self.session, self.aggregator.snapshot, self.addresses, self.status))
        try:
            key = await asyncio.wait_for(self.keys.get(), timeout=self.cfg.tick)
        except asyncio.TimeoutError:
            return
        self.handle_key(key)

    async def run(self) -> None:
        try:
            while not self.stopping:
                await self.tick()
        finally:
            await stop_probes(self.tasks)


async def run_dashboard(interfaces: Sequence[str], addresses: Dict[str, str], cfg: Config, net: HostNetwork) -> None:
    keys: asyncio.Queue = asyncio.Queue()
    with Live(console=console, screen=True, auto_refresh=False) as live:
        board = Dashboard(interfaces, cfg, net, paint=lambda view: live.update(view, refresh=True),
                          keys=keys, addresses=addresses)
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, board.request_stop)
            except NotImplementedError:
                pass
        with TerminalInput(sys.stdin, keys, on_error=board.report_input_error):
            await board.run()


# --------------------
# CLI
# --------------------

def setup_logging(log_file: Optional[str]) -> logging.Logger:
    """Logs go to a file when asked; the dashboard owns the terminal otherwise."""
    root = logging.getLogger("netcheck")
    root.setLevel(logging.INFO)
    root.propagate = False
    if log_file:
        fh = logging.FileHandler(log_file)
        fh.setFormatter(logging.Formatter("[%(asctime)s] %(levelname)s %(name)s: %(message)s",
                                          datefmt="%Y-%m-%d %H:%M:%S"))
        root.addHandler(fh)
    else:
        root.addHandler(logging.NullHandler())
    return root


def _load_config_or_exit(path: Optional[str]) -> Config:
    try:
        return load_config(path)
    except (OSError, ValueError) as e:
        typer.secho(f"Invalid config: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(2)


def interface_addresses(net: HostNetwork, interfaces: Sequence[str]) -> Dict[str, str]:
    out = {}
    for name in interfaces:
        try:
            out[name] = net.primary_address(name).address
        except NoAddressError:
            out[name] = ""
    return out


@app.command()
def dashboard(config: Optional[str] = typer.Option(None, help="Path to config.yaml"),
              log_file: Optional[str] = typer.Option(None, help="Write diagnostics log to this file")):
    """Run the interactive connectivity dashboard."""
    cfg = _load_config_or_exit(config)
    setup_logging(log_file)
    net = HostNetwork()
    interfaces = net.interfaces()
    if not interfaces:
        typer.secho("Error: no network interfaces with an IP address were found", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    addresses = interface_addresses(net, interfaces)
    log.info("found %d interfaces: %s", len(interfaces), ", ".join(interfaces))
    asyncio.run(run_dashboard(interfaces, addresses, cfg, net))


@app.command()
def check(config: Optional[str] = typer.Option(None, help="Path to config.yaml")):
    """Print interfaces, DNS servers and config summary without starting the dashboard."""
    cfg = _load_config_or_exit(config)
    net = HostNetwork()
    interfaces = net.interfaces()
    if not interfaces:
        typer.secho("No network interfaces with an IP address found", fg=typer.colors.RED)
        raise typer.Exit(1)
    for name, address in interface_addresses(net, interfaces).items():
        typer.echo(f"interface {name}: {address or 'no address'}")
    try:
        servers = net.read_dns_servers(cfg.resolv_conf)
        typer.echo(f"nameservers ({cfg.resolv_conf}): {', '.join(servers) if servers else 'none'}")
    except DnsConfigError as e:
        typer.secho(f"nameservers: cannot read {cfg.resolv_conf}: {e}", fg=typer.colors.YELLOW)
    targets = ", ".join(f"{t.host}:{t.port}" for t in cfg.tcp_targets) or "none"
    typer.echo(f"DNS query: {cfg.dns_query_name} | timeout: {cfg.dns_timeout_secs}s | spacing: {cfg.check_spacing_ms}ms")
    typer.echo(f"TCP targets: {targets} | tick: {cfg.tick_ms}ms")


if __name__ == "__main__":
    app()
