# session.py
"""Interface-selection state machine that gates when probing starts."""
from __future__ import annotations

import enum
from typing import Callable, List, Optional, Sequence


class Stage(enum.Enum):
    SELECTING_INTERFACE = "selecting"
    RUNNING = "running"


class NoInterfacesError(RuntimeError):
    pass


class Session:
    """
    Starts in SELECTING_INTERFACE, or directly in RUNNING when only one
    interface exists. RUNNING is terminal. `on_start(interface)` fires exactly
    once, on entering RUNNING.
    """

    def __init__(self, interfaces: Sequence[str], on_start: Optional[Callable[[str], None]] = None) -> None:
        if not interfaces:
            raise NoInterfacesError("no network interfaces with an IP address were found")
        self.interfaces: List[str] = list(interfaces)
        self.hover = 0
        self.chosen: Optional[str] = None
        self.stage = Stage.SELECTING_INTERFACE
        self._on_start = on_start
        if len(self.interfaces) == 1:
            self._start(self.interfaces[0])

    @property
    def running(self) -> bool:
        return self.stage is Stage.RUNNING

    def move_hover(self, delta: int) -> None:
        if self.running:
            return
        self.hover = max(0, min(len(self.interfaces) - 1, self.hover + delta))

    def confirm(self) -> bool:
        """Pick the hovered interface. Returns False when already running."""
        if self.running:
            return False
        self._start(self.interfaces[self.hover])
        return True

    def _start(self, interface: str) -> None:
        self.chosen = interface
        self.stage = Stage.RUNNING
        if self._on_start is not None:
            self._on_start(interface)
