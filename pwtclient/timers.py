"""
Request timeout bookkeeping.

One timer slot per in-flight (address, command) pair. Slots are keyed, so
re-sending a command before its answer arrives restarts the existing timer
instead of arming a second one. Stopped slots stay around as idle and get
re-keyed for the next command that needs one; stop_all() trims the idle set
down to ``max_idle`` so the pool cannot grow without bound across
reconnects.

All methods must be called from the event loop that owns the pool.
"""

import asyncio
import logging
from typing import Callable, Optional

from .constants import REQUEST_TIMEOUT, CommandTag

logger = logging.getLogger(__name__)

TimeoutHandler = Callable[[str, int], None]

_Key = tuple[str, int]


class RequestTimer:
    """Single-shot timer tagged with (address, command)."""

    def __init__(self, pool: "RequestTimerPool", address: str, command: int):
        self._pool = pool
        self.address = address
        self.command = command
        self._handle: Optional[asyncio.TimerHandle] = None

    @property
    def key(self) -> _Key:
        return (self.address, int(self.command))

    @property
    def active(self) -> bool:
        return self._handle is not None

    def start(self, loop: asyncio.AbstractEventLoop, timeout: float):
        self.stop()
        self._handle = loop.call_later(timeout, self._expire)

    def stop(self):
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _expire(self):
        self._handle = None
        self._pool._on_expired(self)

    def __repr__(self):
        state = "active" if self.active else "idle"
        return f"RequestTimer({self.address}, {self.command}, {state})"


class RequestTimerPool:
    """Reusable set of request timers."""

    def __init__(
        self,
        on_timeout: TimeoutHandler,
        *,
        timeout: float = REQUEST_TIMEOUT,
        max_idle: int = len(CommandTag),
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        self._on_timeout = on_timeout
        self._timeout = timeout
        self._max_idle = max_idle
        self._loop = loop
        self._timers: dict[_Key, RequestTimer] = {}

    @property
    def timeout(self) -> float:
        return self._timeout

    @property
    def size(self) -> int:
        return len(self._timers)

    @property
    def active_count(self) -> int:
        return sum(1 for t in self._timers.values() if t.active)

    def is_active(self, address: str, command: int) -> bool:
        timer = self._timers.get((address, int(command)))
        return timer is not None and timer.active

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def start(self, address: str, command: int):
        """Arm (or re-arm) the timer for (address, command)."""
        key = (address, int(command))
        timer = self._timers.get(key)

        if timer is None:
            timer = self._take_idle()
            if timer is not None:
                del self._timers[timer.key]
                timer.address, timer.command = key
            else:
                timer = RequestTimer(self, address, int(command))
            self._timers[key] = timer

        timer.start(self._get_loop(), self._timeout)

    def _take_idle(self) -> Optional[RequestTimer]:
        for timer in self._timers.values():
            if not timer.active:
                return timer
        return None

    def stop_for(self, address: str, command: int):
        """Stop the active timer for (address, command), if there is one."""
        timer = self._timers.get((address, int(command)))
        if timer is not None and timer.active:
            timer.stop()

    def stop_all(self):
        """Stop every timer and evict idle slots beyond max_idle."""
        for timer in self._timers.values():
            timer.stop()

        excess = len(self._timers) - self._max_idle
        if excess > 0:
            for key in list(self._timers)[:excess]:
                del self._timers[key]
            logger.debug(f"Evicted {excess} idle request timers")

    def _on_expired(self, timer: RequestTimer):
        try:
            self._on_timeout(timer.address, timer.command)
        except Exception as e:
            logger.warning(f"Timeout handler exception: {e}")
